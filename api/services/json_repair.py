"""
Robust decoding of loosely-formed JSON found in profile payloads.

Profile domains returned by the identity service frequently carry JSON that was
serialized by hand upstream: single quotes, bare keys, trailing commas, stray
control characters. `decode_json` tries a strict parse first and then walks a
breadth-first worklist of repaired variants until one parses.

`flatten_profile` turns a decoded profile into the flat string-keyed record
that gets merged onto an uploaded row.
"""
import json
import logging
import re
from collections import deque
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

# Upper bound on repaired variants tried for a single value
MAX_VARIANTS = 64

_BARE_KEY_RE = re.compile(r'([{,]\s*)([A-Za-z_$][\w$\-.]*)\s*:')
_TRAILING_COMMA_RE = re.compile(r',\s*([}\]])')
_CONTROL_CHARS_RE = re.compile(r'[\x00-\x1f\x7f]')
_PY_LITERAL_RE = re.compile(r'\b(None|True|False)\b')
_PY_LITERALS = {"None": "null", "True": "true", "False": "false"}


def _single_to_double_quotes(text: str) -> str:
    return text.replace("'", '"')


def _quote_bare_keys(text: str) -> str:
    return _BARE_KEY_RE.sub(r'\1"\2":', text)


def _strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r'\1', text)


def _strip_control_chars(text: str) -> str:
    return _CONTROL_CHARS_RE.sub(' ', text)


def _normalize_python_literals(text: str) -> str:
    return _PY_LITERAL_RE.sub(lambda m: _PY_LITERALS[m.group(1)], text)


# Each repair is deterministic and idempotent
REPAIRS: list[Callable[[str], str]] = [
    _single_to_double_quotes,
    _quote_bare_keys,
    _strip_trailing_commas,
    _strip_control_chars,
    _normalize_python_literals,
]


def _strict_parse(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (ValueError, TypeError):
        return False, None


def decode_json(text: Any) -> Optional[Any]:
    """
    Parse a string suspected to be JSON, repairing it if needed.

    Never raises. Returns the parsed value, or None if neither the original
    nor any repaired variant parses.

    Examples:
        >>> decode_json("{name: 'John', age: 30,}")
        {'name': 'John', 'age': 30}
        >>> decode_json("not json at all") is None
        True
    """
    if not isinstance(text, str):
        return None
    candidate = text.strip()
    if not candidate:
        return None

    ok, value = _strict_parse(candidate)
    if ok:
        return value

    seen = {candidate}
    queue = deque([candidate])
    while queue and len(seen) < MAX_VARIANTS:
        current = queue.popleft()
        for repair in REPAIRS:
            variant = repair(current)
            if variant in seen:
                continue
            seen.add(variant)
            ok, value = _strict_parse(variant)
            if ok:
                logger.debug(f"Repaired JSON after {len(seen) - 1} variant(s)")
                return value
            queue.append(variant)
            if len(seen) >= MAX_VARIANTS:
                break

    logger.debug(f"Could not decode JSON value: {candidate[:120]!r}")
    return None


def _looks_like_json_object(value: str) -> bool:
    stripped = value.strip()
    return stripped.startswith("{") and stripped.endswith("}")


def _to_scalar_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(_to_scalar_string(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return str(value)


def flatten_nested(data: dict, prefix: str = "", out: Optional[dict[str, str]] = None) -> dict[str, str]:
    """
    Flatten nested objects into `parent_child` keys.

    An object carrying a `value` key is a leaf with metadata: its value becomes
    the scalar, and `<key>_cluster_id` is emitted next to it when present.
    """
    if out is None:
        out = {}
    for key, value in data.items():
        new_key = f"{prefix}_{key}" if prefix else str(key)

        if value is None:
            out[new_key] = ""
        elif isinstance(value, dict):
            if "value" in value:
                out[new_key] = _to_scalar_string(value["value"])
                if "cluster_id" in value:
                    out[f"{new_key}_cluster_id"] = _to_scalar_string(value["cluster_id"])
            else:
                flatten_nested(value, new_key, out)
        else:
            out[new_key] = _to_scalar_string(value)
    return out


def flatten_profile(domains: dict) -> dict[str, str]:
    """
    Flatten a profile's domains into a flat string-keyed record.

    Domain values that hold serialized JSON (keys ending in `.json`, or string
    values shaped like an object) are decoded and merged before flattening.
    Values that cannot be decoded are kept as raw strings.
    """
    flattened: dict[str, str] = {}
    parsed: dict[str, Any] = {}

    for key, value in domains.items():
        if isinstance(value, str) and (key.endswith(".json") or _looks_like_json_object(value)):
            decoded = decode_json(value)
            if isinstance(decoded, dict):
                parsed.update(decoded)
            else:
                flattened[key] = value
        elif isinstance(value, dict):
            parsed[key] = value
        elif isinstance(value, list):
            flattened[key] = ", ".join(_to_scalar_string(v) for v in value)
        elif value is not None:
            flattened[key] = _to_scalar_string(value)

    flatten_nested(parsed, out=flattened)
    return flattened
