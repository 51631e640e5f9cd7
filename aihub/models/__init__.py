# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the HTTP surface, kept apart from the ORM
# models in aihub/db/models.py so credential columns such as
# ExternalDataSourceConfig.encrypted_api_key can never leak into a response.
# =============================================================================
