"""
Identity reconciliation for an enrichment run.

Consumes the tool-call log of the agent run plus the uploaded rows and
produces the enriched dataset:

1. Seed the identifier map from every `resolve_identities` result.
2. Seed it from the person-id column, without overwriting step 1.
3. Auto-resolve identifiers the agent never resolved, in batches.
4. Seed the profile map from every `get_person` result, following export links.
5. Gap-fill: fetch profiles for resolved person ids that have none, in batches.
6. Merge rows.

The model often resolves identities and fetches profiles in calls that do not
cover the same ids, so steps 3 and 5 close those gaps explicitly. A bad record
or a failed batch is logged, recorded as a warning and skipped; it never
aborts the run. Calls issued here are appended to the same tool-call log.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterator, Optional

import httpx

from api.services.export_fetcher import ExportFetcher, collect_export_links
from api.services.identifier_extractor import (
    CandidateSet,
    DetectedFields,
    extract_candidates,
    normalize_identifier,
)
from api.services.resilience import RetryableStatusError, ToolTransportError
from api.services.row_merge import merge_outcomes
from api.services.tool_gateway import ToolGateway
from api.services.tool_payloads import BusinessError, MalformedPayload, decode_tool_result
from config.enrichment_config import (
    DEFAULT_PROFILE_DOMAINS,
    IDENTIFIER_KINDS,
    PROFILE_PERSON_ID_KEY,
    PROFILE_TOOL,
    RESOLVE_TOOL,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 45


class IdentifierMap:
    """
    Normalized identifier -> person id.

    Authoritative writes (from resolution results) always win, and the last
    authoritative write for a key wins. Fallback writes (inferred from a
    person-id column) only fill keys that are still absent.
    """

    def __init__(self):
        self._map: dict[str, str] = {}

    def record(self, identifier, person_id, authoritative: bool) -> bool:
        """Record a mapping; returns True when the map changed."""
        key = normalize_identifier(identifier)
        if not key or person_id is None or not str(person_id).strip():
            return False
        pid = str(person_id).strip()
        if not authoritative and key in self._map:
            return False
        self._map[key] = pid
        return True

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._map.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self._map

    def __len__(self) -> int:
        return len(self._map)

    def __iter__(self) -> Iterator[str]:
        return iter(self._map)

    def as_dict(self) -> dict[str, str]:
        return dict(self._map)


@dataclass
class ReconciliationResult:
    """Everything the reconciler learned, plus the merged rows."""
    identifier_to_person_id: dict[str, str] = field(default_factory=dict)
    person_id_to_profile: dict[str, dict] = field(default_factory=dict)
    resolved_ids: list[str] = field(default_factory=list)
    enriched_rows: list[dict] = field(default_factory=list)
    export_links: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    resolved_count: int = 0
    enriched_count: int = 0


def chunked(items: list, size: int) -> Iterator[list]:
    """Split a list into consecutive batches of at most `size` items."""
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _error_result(error: Exception) -> dict:
    return {"content": [{"type": "text", "text": f"Error: {error}"}], "isError": True}


class _RunState:
    """Mutable maps for one reconciliation run."""

    def __init__(self):
        self.identifiers = IdentifierMap()
        self.profiles: dict[str, dict] = {}
        self.resolved_ids: dict[str, None] = {}  # insertion-ordered set
        self.export_links: list[str] = []
        self.warnings: list[str] = []

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def add_resolved(self, person_id: str) -> None:
        self.resolved_ids.setdefault(person_id, None)


class IdentityReconciler:
    """Builds identifier and profile maps from the tool-call log and merges rows."""

    def __init__(
        self,
        gateway: ToolGateway,
        export_fetcher: Optional[ExportFetcher] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.gateway = gateway
        self.export_fetcher = export_fetcher or ExportFetcher()
        self.batch_size = batch_size

    # ----------------------------------------------------------------------
    # Resolution results
    # ----------------------------------------------------------------------

    def _ingest_resolution(self, call: dict, state: _RunState) -> int:
        """Record every identifier of every identity in one resolution result."""
        payload = decode_tool_result(call.get("result"))
        if isinstance(payload, BusinessError):
            state.warn(f"{RESOLVE_TOOL} returned an error: {payload.message[:200]}")
            return 0
        if isinstance(payload, MalformedPayload):
            state.warn(f"Skipping malformed {RESOLVE_TOOL} result: {payload.reason}")
            return 0

        data = payload.data
        if isinstance(data, dict):
            identities = data.get("identities")
        elif isinstance(data, list):
            identities = data
        else:
            identities = None
        if not isinstance(identities, list):
            state.warn(f"{RESOLVE_TOOL} result has no identities list")
            return 0

        recorded = 0
        for identity in identities:
            if not isinstance(identity, dict):
                continue
            person_id = identity.get("person_id")
            if person_id is None or not str(person_id).strip():
                state.warn(f"Skipping identity without person_id: {str(identity)[:120]}")
                continue
            person_id = str(person_id).strip()
            state.add_resolved(person_id)

            identifiers = identity.get("identifiers") or {}
            if not isinstance(identifiers, dict):
                continue
            for kind in IDENTIFIER_KINDS:
                values = identifiers.get(kind) or []
                if isinstance(values, str):
                    values = [values]
                for value in values:
                    if state.identifiers.record(value, person_id, authoritative=True):
                        recorded += 1
        return recorded

    def _seed_from_person_id_column(
        self, rows: list[dict], detected_fields: DetectedFields, state: _RunState
    ) -> None:
        column = detected_fields.person_ids
        if not column:
            return
        for row in rows:
            person_id = row.get(column)
            if person_id is None or not str(person_id).strip():
                continue
            person_id = str(person_id).strip()
            state.add_resolved(person_id)
            for kind in IDENTIFIER_KINDS:
                identifier_column = detected_fields.field_for(kind)
                if identifier_column:
                    state.identifiers.record(row.get(identifier_column), person_id, authoritative=False)

    async def _auto_resolve(
        self, candidates: CandidateSet, tool_calls: list[dict], state: _RunState
    ) -> None:
        for kind in IDENTIFIER_KINDS:
            kind_candidates = candidates.for_kind(kind)
            unmapped = [
                kind_candidates.display[normalized]
                for normalized in kind_candidates.normalized_values()
                if normalized not in state.identifiers
            ]
            if not unmapped:
                continue

            logger.info(f"Auto-resolving {len(unmapped)} unmapped {kind} identifiers")
            for batch in chunked(unmapped, self.batch_size):
                arguments = {"id_type": kind, "id_hash": "plaintext", "identifiers": batch}
                try:
                    result = await self.gateway.execute(RESOLVE_TOOL, arguments)
                except ToolTransportError as e:
                    state.warn(f"Auto-resolve batch of {len(batch)} {kind} identifiers failed: {e}")
                    tool_calls.append({"name": RESOLVE_TOOL, "input": arguments, "result": _error_result(e)})
                    continue
                call = {"name": RESOLVE_TOOL, "input": arguments, "result": result}
                tool_calls.append(call)
                self._ingest_resolution(call, state)

    # ----------------------------------------------------------------------
    # Profile results
    # ----------------------------------------------------------------------

    def _store_profile(self, profile: dict, state: _RunState) -> bool:
        domains = profile.get("domains") if isinstance(profile.get("domains"), dict) else profile
        person_id = domains.get(PROFILE_PERSON_ID_KEY) or domains.get("person_id") or profile.get("person_id")
        if person_id is None or not str(person_id).strip():
            state.warn(f"Skipping profile without {PROFILE_PERSON_ID_KEY}: {str(profile)[:120]}")
            return False
        state.profiles[str(person_id).strip()] = domains
        return True

    async def _follow_export(self, url: str, state: _RunState) -> None:
        try:
            profiles = await self.export_fetcher.fetch_profiles(url)
        except (httpx.HTTPError, RetryableStatusError, ValueError) as e:
            state.warn(f"Could not fetch export {url}: {e}")
            return
        for domains in profiles:
            self._store_profile(domains, state)

    async def _ingest_profiles(self, call: dict, state: _RunState) -> int:
        """Store every profile in one profile result; returns how many were stored."""
        payload = decode_tool_result(call.get("result"))
        if isinstance(payload, BusinessError):
            state.warn(f"{PROFILE_TOOL} returned an error: {payload.message[:200]}")
            return 0
        if isinstance(payload, MalformedPayload):
            state.warn(f"Skipping malformed {PROFILE_TOOL} result: {payload.reason}")
            return 0

        data = payload.data
        before = len(state.profiles)

        links = collect_export_links(data)
        for link in links:
            if link in state.export_links:
                continue
            state.export_links.append(link)
            await self._follow_export(link, state)

        entries = []
        if isinstance(data, dict) and isinstance(data.get("profiles"), list):
            entries = data["profiles"]
        elif isinstance(data, list):
            entries = data
        elif not links:
            state.warn(f"{PROFILE_TOOL} result has no profiles list")

        for entry in entries:
            if isinstance(entry, dict):
                self._store_profile(entry, state)
        return len(state.profiles) - before

    async def _gap_fill(self, tool_calls: list[dict], state: _RunState) -> None:
        missing = [pid for pid in state.resolved_ids if pid not in state.profiles]
        if not missing:
            return

        logger.info(f"Gap-filling profiles for {len(missing)} resolved person ids")
        for batch in chunked(missing, self.batch_size):
            arguments = {"person_ids": batch, "domains": list(DEFAULT_PROFILE_DOMAINS)}
            try:
                result = await self.gateway.execute(PROFILE_TOOL, arguments)
            except ToolTransportError as e:
                state.warn(f"Gap-fill batch of {len(batch)} person ids failed: {e}")
                tool_calls.append({"name": PROFILE_TOOL, "input": arguments, "result": _error_result(e)})
                continue
            call = {"name": PROFILE_TOOL, "input": arguments, "result": result}
            tool_calls.append(call)
            await self._ingest_profiles(call, state)

    # ----------------------------------------------------------------------
    # Entry point
    # ----------------------------------------------------------------------

    async def reconcile(
        self,
        tool_calls: list[dict],
        rows: list[dict],
        detected_fields: DetectedFields,
    ) -> ReconciliationResult:
        """
        Reconcile the tool-call log against the uploaded rows.

        Args:
            tool_calls: Tool-call log (`name`, `input`, `result`); appended to in place
            rows: Uploaded rows, never modified
            detected_fields: Identifier columns of the rows

        Returns:
            ReconciliationResult with maps, enriched rows, export links and warnings
        """
        state = _RunState()

        for call in [c for c in tool_calls if c.get("name") == RESOLVE_TOOL and c.get("result")]:
            self._ingest_resolution(call, state)
        logger.info(f"Identifier mappings from agent resolution calls: {len(state.identifiers)}")

        self._seed_from_person_id_column(rows, detected_fields, state)

        candidates = extract_candidates(rows, detected_fields)
        await self._auto_resolve(candidates, tool_calls, state)

        for call in [c for c in tool_calls if c.get("name") == PROFILE_TOOL and c.get("result")]:
            await self._ingest_profiles(call, state)
        logger.info(f"Profiles from profile calls: {len(state.profiles)}")

        await self._gap_fill(tool_calls, state)

        missing = [pid for pid in state.resolved_ids if pid not in state.profiles]
        if missing:
            state.warn(f"{len(missing)} resolved person ids still have no profile")

        outcomes = merge_outcomes(rows, detected_fields, state.identifiers, state.profiles)

        result = ReconciliationResult(
            identifier_to_person_id=state.identifiers.as_dict(),
            person_id_to_profile=state.profiles,
            resolved_ids=list(state.resolved_ids),
            enriched_rows=[o.row for o in outcomes],
            export_links=state.export_links,
            warnings=state.warnings,
            resolved_count=sum(1 for o in outcomes if o.person_id),
            enriched_count=sum(1 for o in outcomes if o.enriched),
        )
        logger.info(
            f"Reconciled {len(rows)} rows: {result.resolved_count} resolved, "
            f"{result.enriched_count} enriched, {len(result.warnings)} warnings"
        )
        return result
