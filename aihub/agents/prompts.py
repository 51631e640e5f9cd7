# =============================================================================
# Prompt Assembler — Evidence-Tagged System & User Prompts
# =============================================================================
#
# SYSTEM PROMPT (in order):
#   1. BASE_SYSTEM_PROMPT   — source tags, "INSUFFICIENT VERIFIED DATA" rule,
#                             mandatory report structure
#   2. Specialisation       — built-in prompt picked by keyword on the agent's
#                             name/description, else the agent's own prompt
#   3. Tool guidance        — only when tools are offered this turn
#   4. Previous agent block — only inside a workflow chain
#   5. Context priority     — DOC > API > WEB
#
# USER TURN (in order):
#   chat history → USER QUESTION → [DOC] (always present) → [WEB] (if any)
#   → exactly one of [API] evidence or "tools available" → INSTRUCTIONS
#
# Evidence items are numbered ([DOC-1], [WEB-2], [API-1]) so the model can
# cite them individually.
# =============================================================================

from __future__ import annotations

import json
from typing import Any

from aihub.db.models import Agent
from aihub.services.tool_invoker import format_drug_records

# ---------------------------------------------------------------------------
# Base Policy
# ---------------------------------------------------------------------------

BASE_SYSTEM_PROMPT = """\
You are an Evidence-Based Analysis Agent.
You MUST always combine:
• User question
• Uploaded document chunks (RAG)
• Web search results
• External API data
based on the features enabled for this Agent.

STRICT RULES:
1. DO NOT hallucinate facts, numbers, regulations, or events.
2. Every claim must be backed by a specific source tag:
 • [DOC] for uploaded document evidence
 • [WEB] for web search evidence
 • [API] for external API evidence
 • [AGENT] for previous agent output in workflow chains
 • [ASSUMPTION] only if explicitly stated by user
3. If data cannot be verified, you MUST write: "INSUFFICIENT VERIFIED DATA".
4. UNCITED CLAIMS ARE NOT PERMITTED.
5. If web search or API features are disabled for this Agent, do not fabricate data; use only available sources.
6. Use ONLY the data available in:
 • User documents
 • Real web search results
 • External API responses
7. Never rely on "general knowledge" unless explicitly supported by cited results.

MANDATORY REPORT STRUCTURE (ALL AGENTS MUST FOLLOW):
1. Executive Summary
 • Summary of findings
 • List of data sources used
 • List of missing or insufficient data
2. Data Sources Used
 • Uploaded documents (list filenames + short excerpts)
 • Web search results (title + URL)
 • External APIs used (API name + description)
 If a section uses only one type of data, explicitly say so.
3. Verified Insights Only
 • Each statement MUST include [DOC], [WEB], [API], or [AGENT].
4. Citations & References
 • Full URLs
 • Document snippets
 • API response snippets
5. Insufficient Data
 • What could not be verified
 • Why
 • What would be needed to verify it
6. Final Conclusion
 • Only evidence-backed interpretation
 • No speculation
 • No invented statistics
 • Highlight contradictions between sources

RESPONSE FORMAT:
Always output structured sections.
NEVER output free-flowing paragraphs without sections.

If this Agent is part of a workflow chain:
• Accept previous Agent output as validated input.
• Use it as an additional data source called [AGENT]."""


# ---------------------------------------------------------------------------
# Built-in Specialisations
# ---------------------------------------------------------------------------
# Selected by keyword on agent name or description, first match wins:
#   "market" → market_intelligence, "regulatory" → regulatory_pathway,
#   "technical" / "feasibility" → technical_feasibility,
#   "valuation" → valuation
# ---------------------------------------------------------------------------

AGENT_PROMPTS: dict[str, str] = {
    "market_intelligence": """\
You are the Market Intelligence Agent.
Your job is to produce a complete, evidence-based market analysis by fusing:
• User documents (DOC)
• Web search (WEB)
• Crunchbase or other external APIs (API)

TASKS:
1. Identify and verify market size (TAM, SAM, SOM) using:
 • Document data (DOC)
 • Verified market numbers from WEB/API
 If no real numbers are found → mark as "INSUFFICIENT VERIFIED DATA".
2. Identify global and regional competitors.
3. For each competitor, retrieve (via API or WEB):
 • Funding
 • Valuation
 • Investors
 • Last financing round
4. Identify acquisitions, partnerships, and trends (WEB).
5. Fuse findings into a structured Market Analysis Report using the GLOBAL REPORT FORMAT.

RULE:
If ANY metric cannot be verified:
→ "INSUFFICIENT VERIFIED DATA"
Never invent market size numbers.""",

    "regulatory_pathway": """\
You are the Regulatory Strategy Agent.
You must create a fully verified regulatory pathway using:
• User documents (DOC)
• Real FDA/EMA sources (WEB/API)

TASKS:
1. Determine device classification (FDA Class I/II/III) using FDA databases (API/WEB).
2. Identify predicate devices from real records.
3. Extract device characteristics from user documents (DOC).
4. Map required validation and performance testing.
5. List applicable standards ONLY IF confirmed by WEB/API.
6. Build an evidence-backed Regulatory Pathway Report using the GLOBAL REPORT FORMAT.

RULES:
• No guessed classifications
• No invented regulatory steps
• No fake standards
• Every claim must be VERIFIED and CITED
If uncertain → "INSUFFICIENT VERIFIED DATA\"""",

    "technical_feasibility": """\
You are the Technical Feasibility Agent.
Your job is to evaluate the scientific and engineering feasibility of the technology using:
• Technical PDFs, protocols, data (DOC)
• Scientific sources (WEB)
• Patent data (API)

TASKS:
1. Extract and summarize technical mechanisms (DOC).
2. Identify known limitations or risks using scientific WEB results.
3. Retrieve relevant patents (API) and summarize verified claims.
4. Evaluate scalability of manufacturing using DOC+WEB.
5. Produce a Technical Feasibility Report using the GLOBAL REPORT FORMAT.

RULE:
You must not invent mechanisms, biochemical steps, or scientific facts.
If evidence missing → "INSUFFICIENT VERIFIED DATA".""",

    "valuation": """\
You are the Valuation Agent.
Your job is to generate a strictly evidence-backed valuation using:
• Financial model documents (DOC)
• Comparable company data (API/WEB)

TASKS:
1. Perform DCF using ONLY the values provided within the user's financial documents (DOC).
2. Fetch comparable companies:
 • Funding
 • Valuation
 • Investors
 • Revenue
from Crunchbase or API/WEB.
3. Build a Valuation Report using the GLOBAL REPORT FORMAT.
4. Produce a valuation range using:
 • DCF (DOC)
 • Comparable analysis (API/WEB)

RULE:
No invented numbers.
If inputs are missing, list them in "INSUFFICIENT DATA".""",
}

_SPECIALISATION_KEYWORDS: list[tuple[tuple[str, ...], str]] = [
    (("market",), "market_intelligence"),
    (("regulatory",), "regulatory_pathway"),
    (("technical", "feasibility"), "technical_feasibility"),
    (("valuation",), "valuation"),
]

CONTEXT_PRIORITY_RULES = """\
CONTEXT PRIORITY RULES:
When DOC, WEB, and API data conflict:
1. DOC (user documents) take highest priority.
2. API (structured sources like Crunchbase, FDA, Patents) next.
3. WEB search last.

If conflict is detected:
• Highlight the contradiction, but side with DOC unless DOC clearly states uncertainty.

If an API returns no data:
• Do not guess or create fake companies.
• Mark that section as 'Insufficient Data – API returned no matching records.'
"""

NO_DOC_EVIDENCE = (
    "No relevant document chunks found for this query.\n"
    "If documents were uploaded, they may not contain relevant information "
    "for this question."
)

NO_API_EVIDENCE = (
    "No external API data was retrieved. External APIs may not be "
    "configured, or the API calls failed."
)


# ---------------------------------------------------------------------------
# System Prompt
# ---------------------------------------------------------------------------


def detect_specialisation(agent: Agent) -> str | None:
    """Built-in specialisation key for an agent, or None."""
    name = (agent.name or "").lower()
    description = (agent.description or "").lower()
    for keywords, key in _SPECIALISATION_KEYWORDS:
        if any(k in name or k in description for k in keywords):
            return key
    return None


def _tool_guidance(tools: list[dict[str, Any]]) -> str:
    lines = [
        "TOOL USAGE INSTRUCTIONS:",
        "You have access to external API tools that you MUST use when "
        "relevant to answer the user's question.",
        "Available tools:",
    ]
    for tool in tools:
        function = tool.get("function", tool)
        lines.append(f"- {function['name']}: {function.get('description', '')}")
    lines += [
        "",
        "IMPORTANT: Always call the appropriate tool(s) BEFORE generating "
        "your final response.",
        "Do not say 'No external API data' if you haven't called the tools yet.",
        "Use the tool results to provide accurate, verified information.",
    ]
    return "\n".join(lines)


def build_system_prompt(
    agent: Agent,
    previous_agent_output: str | None = None,
    tools: list[dict[str, Any]] | None = None,
) -> str:
    """
    Assemble the full system prompt for one agent turn.

    Args:
        agent: The agent being run.
        previous_agent_output: Last successful output in a workflow chain.
        tools: Tool schemas offered this turn (guidance lists their names).
    """
    sections = [BASE_SYSTEM_PROMPT]

    specialisation = detect_specialisation(agent)
    if specialisation:
        sections.append(AGENT_PROMPTS[specialisation])
    elif agent.system_prompt:
        sections.append(agent.system_prompt)

    if tools:
        sections.append(_tool_guidance(tools))

    if previous_agent_output:
        sections.append(
            "PREVIOUS AGENT OUTPUT (use as [AGENT] source):\n"
            + previous_agent_output
        )

    sections.append(CONTEXT_PRIORITY_RULES)
    return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# User Turn
# ---------------------------------------------------------------------------


def _format_doc_block(retrieved_context: list[dict[str, Any]]) -> str:
    lines = ["UPLOADED DOCUMENT EVIDENCE [DOC]:"]
    if not retrieved_context:
        lines.append(NO_DOC_EVIDENCE)
        return "\n".join(lines)

    for index, snippet in enumerate(retrieved_context, start=1):
        metadata = snippet.get("metadata") or {}
        lines.append(f"[DOC-{index}] {snippet.get('content', '')}")
        source = metadata.get("file_name") or snippet.get("source")
        if source:
            lines.append(f"Source: {source}")
    return "\n".join(lines)


def _format_web_block(web_results: list[dict[str, Any]]) -> str:
    lines = ["WEB SEARCH EVIDENCE [WEB]:"]
    for index, result in enumerate(web_results, start=1):
        lines.append(f"[WEB-{index}] {result.get('title', '')}")
        lines.append(f"Snippet: {result.get('snippet', '')}")
        lines.append(f"URL: {result.get('link') or result.get('url', '')}")
        lines.append("")
    return "\n".join(lines).rstrip()


def _format_drug_records(records: list[dict[str, Any]]) -> list[str]:
    lines = [f"Number of records: {len(records)}", "Drug Information:"]
    lines.extend(format_drug_records(records, indent="  "))
    return lines


def _format_api_block(external_data: list[dict[str, Any]]) -> str:
    lines = ["EXTERNAL API EVIDENCE [API]:"]
    if not external_data:
        lines.append(NO_API_EVIDENCE)
        return "\n".join(lines)

    for index, entry in enumerate(external_data, start=1):
        source = str(entry.get("source") or "unknown")
        data = entry.get("data")
        lines.append(f"[API-{index}] Source: {source.upper()}")

        if entry.get("status") == "FAILED_OR_EMPTY" or not data:
            lines.append("Status: No data returned or API call failed.")
            if entry.get("error"):
                lines.append(f"Error: {entry['error']}")
            if entry.get("message"):
                lines.append(f"Message: {entry['message']}")
        else:
            lines.append(
                f"Status: SUCCESS - Data retrieved from {source.upper()} API"
            )
            if (
                source == "fda"
                and isinstance(data, list)
                and entry.get("endpoint", "drug") == "drug"
            ):
                lines.extend(_format_drug_records(data))
            else:
                lines.append(
                    "Data: " + json.dumps(data, indent=4, ensure_ascii=False, default=str)
                )

        if entry.get("url"):
            lines.append(f"API URL: {entry['url']}")
        if entry.get("endpoint"):
            lines.append(f"Endpoint Type: {entry['endpoint']}")
        lines.append("")
    return "\n".join(lines).rstrip()


TOOLS_AVAILABLE_BLOCK = (
    "EXTERNAL API TOOLS AVAILABLE:\n"
    "You have access to external API tools. Use the appropriate tool(s) to "
    "fetch data before answering.\n"
    "Call the tools now to get the information needed to answer the user's "
    "question."
)

INSTRUCTIONS_BLOCK = (
    "INSTRUCTIONS:\n"
    "Answer the user question using ONLY the evidence provided above.\n"
    "Every claim MUST be tagged with [DOC], [WEB], [API], or [AGENT].\n"
    "If evidence is missing, state 'INSUFFICIENT VERIFIED DATA'.\n"
    "Follow the MANDATORY REPORT STRUCTURE."
)


def build_user_turn(
    question: str,
    retrieved_context: list[dict[str, Any]] | None = None,
    web_results: list[dict[str, Any]] | None = None,
    external_data: list[dict[str, Any]] | None = None,
    chat_history: list[dict[str, str]] | None = None,
    tools_available: bool = False,
) -> str:
    """
    Assemble the user turn with all gathered evidence.

    The [DOC] block is always present. When tools are available the [API]
    block is replaced by an instruction to call them.
    """
    sections: list[str] = []

    if chat_history:
        lines = ["PREVIOUS CONVERSATION CONTEXT:"]
        for message in chat_history:
            role = str(message.get("role") or "user").upper()
            lines.append(f"{role}: {message.get('content', '')}")
        sections.append("\n".join(lines))

    sections.append(f"USER QUESTION: {question}")
    sections.append(_format_doc_block(retrieved_context or []))

    if web_results:
        sections.append(_format_web_block(web_results))

    if tools_available:
        sections.append(TOOLS_AVAILABLE_BLOCK)
    else:
        sections.append(_format_api_block(external_data or []))

    sections.append(INSTRUCTIONS_BLOCK)
    return "\n\n".join(sections) + "\n"
