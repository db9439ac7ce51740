"""
Prompts for the enrichment agent.

The system prompt describes the job and the tool catalog. When the user has
uploaded rows, a data-context block describing them (size, headers, a short
sample and the exact enrichment workflow) is appended to the latest user
message, once per conversation.
"""
import json
from typing import Optional

from api.services.identifier_extractor import DetectedFields
from api.services.tool_gateway import ToolSpec
from config.enrichment_config import (
    DEFAULT_PROFILE_DOMAINS,
    ENRICHED_MARKER_COLUMNS,
    PROFILE_TOOL,
    RESOLVE_TOOL,
)

# Present in every data-context block; used to add the block only once
DATA_CONTEXT_MARKER = "CSV file with the following information"

SAMPLE_ROWS = 3
SAMPLE_MAX_CHARS = 2000
MAX_HEADERS_SHOWN = 10

_STATIC_PROMPT = """\
You are a contact enrichment assistant.

The user uploads contact lists (emails, phone numbers, postal addresses) and asks you to resolve each contact to a person and enrich it with profile data using the identity tools below.

## How to enrich

1. Call resolve_identities with the identifiers to get person_ids.
2. Call get_person with the EXACT person_ids returned in step 1, as strings.
3. Report what was found: how many contacts matched, notable patterns, anything that failed.

## Rules

- Never invent person_ids or profile data.
- Batch identifiers into as few calls as possible.
- If a tool returns an error, say so plainly and continue with what worked.
- Be concise. Use bullet points for lists."""


def build_system_prompt(tools: Optional[list[ToolSpec]] = None) -> str:
    """Build the system prompt, listing the tools advertised by the tool service."""
    if not tools:
        return _STATIC_PROMPT
    lines = [_STATIC_PROMPT, "", "## Available tools", ""]
    for tool in tools:
        description = (tool.description or "").strip().splitlines()
        summary = description[0] if description else ""
        lines.append(f"- **{tool.name}**: {summary}" if summary else f"- **{tool.name}**")
    return "\n".join(lines)


def is_already_enriched(rows: list[dict]) -> bool:
    """True when the first row carries columns written by a previous enrichment."""
    if not rows:
        return False
    first = rows[0]
    return any(column in first for column in ENRICHED_MARKER_COLUMNS)


def _headers_line(headers: list[str]) -> str:
    shown = ", ".join(headers[:MAX_HEADERS_SHOWN])
    if len(headers) > MAX_HEADERS_SHOWN:
        return f"{shown} ... ({len(headers)} total columns)"
    return shown


_STRING_IDS_RULE = f"""\
**CRITICAL**: When calling {PROFILE_TOOL}, the person_ids parameter MUST be an array of STRINGS, not numbers!
Correct: {{"person_ids": ["123456", "789012"], ...}}
Wrong: {{"person_ids": [123456, 789012], ...}}"""


def _enriched_instructions() -> str:
    return f"""\
The data has already been enriched with person information. You can:
- Add additional enrichment by calling {PROFILE_TOOL} with additional domains (e.g., household, financial) for person_ids that are already in the data
- Update existing records with more data
- Analyze the enriched data to provide insights

{_STRING_IDS_RULE}"""


def _fresh_instructions() -> str:
    domains = "\n".join(f"   - {d}" for d in DEFAULT_PROFILE_DOMAINS)
    return f"""\
IMPORTANT: To enrich this data, you MUST follow these steps:

Step 1: Use {RESOLVE_TOOL} to get person_ids from the identifiers (emails, phones, or addresses)
Format for email:
{{
  "id_type": "email",
  "id_hash": "plaintext",
  "identifiers": ["email1@example.com", "email2@example.com"]
}}

Step 2: Use {PROFILE_TOOL} with the EXACT person_ids you received from {RESOLVE_TOOL}

{_STRING_IDS_RULE}

You MUST use the EXACT person_ids that were returned from {RESOLVE_TOOL} in Step 1.
Do NOT make up person_ids. Use ALL person_ids from the {RESOLVE_TOOL} response.

Call {PROFILE_TOOL} with these domains to get comprehensive data:
{domains}

Please help me enrich this data by completing BOTH steps with the EXACT person_ids."""


def build_data_context(rows: list[dict], headers: list[str], detected_fields: DetectedFields) -> str:
    """
    Describe the uploaded rows for the model.

    Args:
        rows: Uploaded rows
        headers: Column headers in upload order
        detected_fields: Identifier columns

    Returns:
        Context block to append to the user's message
    """
    enriched = is_already_enriched(rows)
    sample = json.dumps(rows[:SAMPLE_ROWS], indent=2, default=str)[:SAMPLE_MAX_CHARS]

    lines = [
        f"I have {'previously enriched' if enriched else 'uploaded a'} {DATA_CONTEXT_MARKER}:",
        f"- Total rows: {len(rows)}",
    ]
    if enriched:
        lines.append("- Data status: Previously enriched with demographic and interest data")
    else:
        lines.append(f"- Detected fields: {json.dumps(detected_fields.to_dict())}")
    lines.append(f"- Column headers: {_headers_line(headers)}")
    lines.append(f"- First {SAMPLE_ROWS} rows (sample):")
    lines.append(f"{sample}...")
    lines.append("")
    lines.append(_enriched_instructions() if enriched else _fresh_instructions())
    return "\n".join(lines)


def _has_data_context(messages: list[dict]) -> bool:
    for message in messages:
        content = message.get("content")
        if isinstance(content, str) and DATA_CONTEXT_MARKER in content:
            return True
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and DATA_CONTEXT_MARKER in str(block.get("text", "")):
                    return True
    return False


def attach_data_context(
    messages: list[dict],
    rows: list[dict],
    headers: list[str],
    detected_fields: DetectedFields,
) -> list[dict]:
    """
    Append the data-context block to the last user message.

    Returns a new list; the caller's messages are not modified. Nothing is
    added when there are no rows or when an earlier message already carries
    the block.
    """
    if not rows or not messages or _has_data_context(messages):
        return list(messages)

    context = build_data_context(rows, headers, detected_fields)
    last = messages[-1]
    content = last["content"]
    if isinstance(content, str):
        new_content = f"{content}\n\n{context}"
    else:
        new_content = list(content) + [{"type": "text", "text": context}]
    return list(messages[:-1]) + [{"role": last["role"], "content": new_content}]
