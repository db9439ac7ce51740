"""
Decoding of raw tool-service results.

A tool result's `content` arrives in one of three shapes:
  - a string holding JSON (or an embedded error message)
  - a list of typed blocks, where a `text` block holds JSON or an error message
  - an already-structured object

`decode_tool_result` discriminates on the shape explicitly and returns one of
three payload variants: JsonPayload, BusinessError or MalformedPayload.
Callers branch on the variant; nothing downstream assumes a shape.
"""
import logging
from dataclasses import dataclass
from typing import Any, Union

from api.services.json_repair import decode_json
from config.enrichment_config import TOOL_ERROR_MARKER

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JsonPayload:
    """Successfully decoded tool result."""
    data: Any


@dataclass(frozen=True)
class BusinessError:
    """Error reported by the tool service inside an otherwise successful response."""
    message: str


@dataclass(frozen=True)
class MalformedPayload:
    """Result that could not be decoded into data."""
    reason: str
    raw_preview: str = ""


ToolPayload = Union[JsonPayload, BusinessError, MalformedPayload]


def is_error_text(text: str) -> bool:
    return text.lstrip().startswith(TOOL_ERROR_MARKER)


def _decode_text(text: str) -> ToolPayload:
    if is_error_text(text):
        return BusinessError(message=text.strip())
    decoded = decode_json(text)
    if decoded is None:
        return MalformedPayload(reason="text is not JSON", raw_preview=text[:200])
    return JsonPayload(data=decoded)


def _first_text_block(blocks: list) -> Union[str, None]:
    for block in blocks:
        if isinstance(block, dict) and block.get("type") == "text":
            return block.get("text") or ""
        if getattr(block, "type", None) == "text":
            return getattr(block, "text", "") or ""
    return None


def decode_content(content: Any) -> ToolPayload:
    """Decode a tool result's `content` field, whatever its shape."""
    if content is None:
        return MalformedPayload(reason="missing content")

    if isinstance(content, str):
        return _decode_text(content)

    if isinstance(content, list):
        text = _first_text_block(content)
        if text is None:
            if content and all(isinstance(item, dict) and "type" not in item for item in content):
                # A bare list of records rather than typed blocks
                return JsonPayload(data=content)
            return MalformedPayload(reason="no text block in content", raw_preview=str(content)[:200])
        return _decode_text(text)

    if isinstance(content, dict):
        return JsonPayload(data=content)

    return MalformedPayload(reason=f"unexpected content type {type(content).__name__}")


def _decode_structured(structured: dict) -> ToolPayload:
    wrapped = structured.get("result")
    if len(structured) == 1 and isinstance(wrapped, str):
        return _decode_text(wrapped)
    return JsonPayload(data=structured)


def decode_tool_result(result: Any) -> ToolPayload:
    """
    Decode a raw tool result (`{"content": ..., "isError": ...}`).

    Results flagged `isError` are business errors regardless of their text.
    Text content is decoded first; `structuredContent` is used only when the
    text does not decode, with a lone string-valued `result` wrapper unwrapped.
    """
    if result is None:
        return MalformedPayload(reason="empty result")

    if isinstance(result, dict):
        if result.get("isError"):
            text = ""
            content = result.get("content")
            if isinstance(content, str):
                text = content
            elif isinstance(content, list):
                text = _first_text_block(content) or ""
            return BusinessError(message=text.strip() or "tool reported an error")
        structured = result.get("structuredContent")
        if "content" not in result and not structured:
            return JsonPayload(data=result)
        payload = decode_content(result.get("content"))
        if isinstance(payload, MalformedPayload) and isinstance(structured, dict) and structured:
            return _decode_structured(structured)
        return payload

    return decode_content(result)
