"""
Bulk export retrieval for profile results.

For large requests the tool service answers `get_person` with links to an
export file instead of inline profiles. This module finds those links in a
decoded result, downloads the export and extracts its profile list.

Export JSON is either an array of profiles or `{"profiles": [...]}`; each
entry carries its fields under `domains` or at the top level.
"""
import logging
from typing import Any, Optional

import httpx

from api.services.json_repair import decode_json
from api.services.tool_payloads import JsonPayload, decode_tool_result
from api.services.resilience import (
    RetryableStatusError,
    RetryConfig,
    is_retryable_status,
    retry_async,
)
from config.enrichment_config import EXPORT_LINK_KEYS, PROFILE_TOOL

logger = logging.getLogger(__name__)

EXPORT_FETCH_RETRY = RetryConfig(
    max_retries=2,
    base_delay=1.0,
    max_delay=10.0,
    retryable_exceptions=(httpx.TransportError, TimeoutError, RetryableStatusError),
)


def collect_export_links(data: Any) -> list[str]:
    """Export URLs found under the known link keys of a decoded result."""
    if not isinstance(data, dict):
        return []
    links: list[str] = []
    for key in EXPORT_LINK_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            links.append(value.strip())
        elif isinstance(value, list):
            links.extend(v.strip() for v in value if isinstance(v, str) and v.strip())
    # Preserve order, drop duplicates
    return list(dict.fromkeys(links))


def export_links_in_log(tool_calls: list[dict]) -> list[str]:
    """Export URLs carried by any profile result in a tool-call log."""
    links: list[str] = []
    for call in tool_calls:
        if call.get("name") != PROFILE_TOOL:
            continue
        payload = decode_tool_result(call.get("result"))
        if isinstance(payload, JsonPayload):
            links.extend(collect_export_links(payload.data))
    return list(dict.fromkeys(links))


def profiles_from_export(data: Any) -> list[dict]:
    """
    Profile domain dicts from an export payload.

    Returns:
        One `domains` dict per profile entry; entries that are not objects are skipped
    """
    if isinstance(data, list):
        entries = data
    elif isinstance(data, dict) and isinstance(data.get("profiles"), list):
        entries = data["profiles"]
    else:
        return []

    profiles = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        domains = entry.get("domains")
        profiles.append(domains if isinstance(domains, dict) else entry)
    return profiles


class ExportFetcher:
    """Downloads export files over HTTP with retry on transient failures."""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self._transport = transport

    @retry_async(EXPORT_FETCH_RETRY)
    async def fetch(self, url: str) -> Any:
        """
        Download and decode one export file.

        Raises:
            httpx.HTTPStatusError: Non-retryable HTTP error
            RetryableStatusError: Transient HTTP status after all retries
            ValueError: Body is not JSON
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport, follow_redirects=True) as client:
            response = await client.get(url)
            if is_retryable_status(response.status_code):
                raise RetryableStatusError(response.status_code, url)
            response.raise_for_status()

            try:
                return response.json()
            except ValueError:
                decoded = decode_json(response.text)
                if decoded is None:
                    raise ValueError(f"Export at {url} is not JSON")
                return decoded

    async def fetch_profiles(self, url: str) -> list[dict]:
        """Download an export and return its profile domain dicts."""
        data = await self.fetch(url)
        profiles = profiles_from_export(data)
        logger.info(f"Fetched {len(profiles)} profiles from export")
        return profiles
