"""
Identifier candidate extraction for uploaded contact rows.

Scans the detected email / phone / address columns of the uploaded rows and
builds per-kind candidate sets keyed by normalized value (trimmed, lower-cased).
Several rows may share one normalized value; the first raw value seen is kept
for display and every raw occurrence stays reachable from its normalized key.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def normalize_identifier(raw) -> str:
    """Normalize an identifier for map lookups: trimmed and lower-cased."""
    if raw is None:
        return ""
    return str(raw).strip().lower()


@dataclass
class DetectedFields:
    """Column names detected for each identifier kind in the uploaded table."""
    emails: Optional[str] = None
    phones: Optional[str] = None
    addresses: Optional[str] = None
    person_ids: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "DetectedFields":
        """Build from the request's camelCase keys (`emails`, `phones`, `addresses`, `personIds`)."""
        data = data or {}
        return cls(
            emails=data.get("emails") or None,
            phones=data.get("phones") or None,
            addresses=data.get("addresses") or None,
            person_ids=data.get("personIds") or data.get("person_ids") or None,
        )

    def to_dict(self) -> dict:
        out = {}
        if self.emails:
            out["emails"] = self.emails
        if self.phones:
            out["phones"] = self.phones
        if self.addresses:
            out["addresses"] = self.addresses
        if self.person_ids:
            out["personIds"] = self.person_ids
        return out

    def field_for(self, kind: str) -> Optional[str]:
        """Column name for an identifier kind ("email", "phone", "address")."""
        return {
            "email": self.emails,
            "phone": self.phones,
            "address": self.addresses,
        }.get(kind)

    def is_empty(self) -> bool:
        return not (self.emails or self.phones or self.addresses or self.person_ids)


@dataclass
class IdentifierCandidate:
    """A single identifier value read from one row."""
    kind: str
    raw: str
    normalized: str


@dataclass
class IdentifierCandidates:
    """Deduplicated candidates for one identifier kind."""
    kind: str
    display: dict[str, str] = field(default_factory=dict)
    occurrences: dict[str, list[str]] = field(default_factory=dict)

    def add(self, raw) -> Optional[IdentifierCandidate]:
        if raw is None:
            return None
        raw_str = str(raw)
        normalized = normalize_identifier(raw_str)
        if not normalized:
            return None
        self.display.setdefault(normalized, raw_str.strip())
        self.occurrences.setdefault(normalized, []).append(raw_str)
        return IdentifierCandidate(kind=self.kind, raw=raw_str, normalized=normalized)

    def normalized_values(self) -> list[str]:
        return list(self.display.keys())

    def __len__(self) -> int:
        return len(self.display)

    def __contains__(self, normalized: str) -> bool:
        return normalized in self.display


@dataclass
class CandidateSet:
    """All identifier candidates extracted from an upload."""
    emails: IdentifierCandidates = field(default_factory=lambda: IdentifierCandidates("email"))
    phones: IdentifierCandidates = field(default_factory=lambda: IdentifierCandidates("phone"))
    addresses: IdentifierCandidates = field(default_factory=lambda: IdentifierCandidates("address"))
    person_ids: list[str] = field(default_factory=list)

    def for_kind(self, kind: str) -> IdentifierCandidates:
        return {"email": self.emails, "phone": self.phones, "address": self.addresses}[kind]

    @property
    def total(self) -> int:
        return len(self.emails) + len(self.phones) + len(self.addresses)


def extract_candidates(rows: Iterable[dict], detected_fields: DetectedFields) -> CandidateSet:
    """
    Extract deduplicated identifier candidates from uploaded rows.

    Args:
        rows: Uploaded rows (string-keyed dicts)
        detected_fields: Which columns hold emails / phones / addresses / person ids

    Returns:
        CandidateSet with per-kind candidates and already-known person ids
    """
    candidates = CandidateSet()
    seen_person_ids: set[str] = set()

    for row in rows:
        for kind in ("email", "phone", "address"):
            column = detected_fields.field_for(kind)
            if column and column in row:
                candidates.for_kind(kind).add(row.get(column))

        if detected_fields.person_ids:
            person_id = row.get(detected_fields.person_ids)
            if person_id is not None and str(person_id).strip():
                pid = str(person_id).strip()
                if pid not in seen_person_ids:
                    seen_person_ids.add(pid)
                    candidates.person_ids.append(pid)

    logger.info(
        f"Extracted candidates: {len(candidates.emails)} emails, {len(candidates.phones)} phones, "
        f"{len(candidates.addresses)} addresses, {len(candidates.person_ids)} known person ids"
    )
    return candidates


def detect_fields(headers: Iterable[str]) -> DetectedFields:
    """
    Detect identifier columns from header names.

    Used when the caller did not send `detectedFields`. The first matching
    header wins for each kind.
    """
    headers = list(headers)
    lowered = [h.lower() for h in headers]

    def first(predicate) -> Optional[str]:
        for original, lower in zip(headers, lowered):
            if predicate(lower):
                return original
        return None

    return DetectedFields(
        emails=first(lambda h: "email" in h or "e-mail" in h),
        phones=first(lambda h: "phone" in h or "mobile" in h or "cell" in h or h == "telephone"),
        addresses=first(lambda h: ("address" in h and "email" not in h) or "street" in h or "location" in h),
        person_ids=first(lambda h: "person_id" in h or "personid" in h or h == "id"),
    )
