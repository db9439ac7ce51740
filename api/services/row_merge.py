"""
Row merge: joins uploaded rows with resolved profiles.

Each row's person id comes from the explicit person-id column when there is
one, otherwise from the first identifier that maps to a person, checked in the
fixed order phone, email, address. Rows whose person has a profile get a fresh
copy with the flattened profile fields and `person_id` added. Existing
non-empty columns are never overwritten. Output order matches input order.
"""
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from api.services.identifier_extractor import DetectedFields, normalize_identifier
from api.services.json_repair import flatten_profile
from config.enrichment_config import IDENTIFIER_KINDS

logger = logging.getLogger(__name__)


@dataclass
class MergeOutcome:
    """Merge result for one uploaded row."""
    index: int
    row: dict
    person_id: Optional[str] = None
    enriched: bool = False


def _is_blank(value) -> bool:
    return value is None or str(value).strip() == ""


def find_person_id(
    row: dict,
    detected_fields: DetectedFields,
    identifier_map: Mapping[str, str],
) -> Optional[str]:
    """Person id for a row, or None when nothing maps."""
    if detected_fields.person_ids:
        explicit = row.get(detected_fields.person_ids)
        if not _is_blank(explicit):
            return str(explicit).strip()

    for kind in IDENTIFIER_KINDS:
        column = detected_fields.field_for(kind)
        if not column:
            continue
        value = row.get(column)
        if _is_blank(value):
            continue
        person_id = identifier_map.get(normalize_identifier(value))
        if person_id:
            return person_id
    return None


def merge_row(row: dict, person_id: Optional[str], profile: Optional[dict]) -> dict:
    """
    Fresh copy of `row` with the profile's flattened fields added.

    Args:
        row: Uploaded row (not modified)
        person_id: Person id determined for the row
        profile: Profile domains for that person, or None

    Returns:
        New row dict
    """
    merged = dict(row)
    if not person_id or profile is None:
        return merged

    for key, value in flatten_profile(profile).items():
        if _is_blank(merged.get(key)):
            merged[key] = value
    if _is_blank(merged.get("person_id")):
        merged["person_id"] = person_id
    return merged


def merge_outcomes(
    rows: list[dict],
    detected_fields: DetectedFields,
    identifier_map: Mapping[str, str],
    profiles: Mapping[str, dict],
) -> list[MergeOutcome]:
    """Merge every row, returning outcomes sorted by original row index."""
    outcomes = []
    for index, row in enumerate(rows):
        person_id = find_person_id(row, detected_fields, identifier_map)
        profile = profiles.get(person_id) if person_id else None
        outcomes.append(MergeOutcome(
            index=index,
            row=merge_row(row, person_id, profile),
            person_id=person_id,
            enriched=profile is not None,
        ))
        if person_id and profile is None:
            logger.debug(f"Row {index}: person {person_id} has no profile")

    outcomes.sort(key=lambda o: o.index)
    return outcomes


def merge_rows(
    rows: list[dict],
    detected_fields: DetectedFields,
    identifier_map: Mapping[str, str],
    profiles: Mapping[str, dict],
) -> list[dict]:
    """Enriched rows; `result[i]` corresponds to `rows[i]`."""
    return [o.row for o in merge_outcomes(rows, detected_fields, identifier_map, profiles)]
