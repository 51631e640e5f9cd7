# =============================================================================
# Database Package
# =============================================================================
# Provides the async SQLAlchemy engine, ORM models and the RecordStore
# persistence interface used by the orchestration core.
#
# Key exports:
#   - Base: SQLAlchemy declarative base for ORM models
#   - Suite, Agent, Workflow, Chat, Message, ExternalDataSourceConfig,
#     UsageRecord: ORM models
#   - get_record_store: factory for the configured RecordStore
# =============================================================================
