"""
ICP (Ideal Customer Profile) attribute analysis.

Counts how often each `attribute=value` pair occurs across enriched rows,
skipping contact, name, internal and domain-table fields, and keeps the
common ones. The selected subset can then be compiled into a boolean cluster
expression for an audience-size query.
"""
import logging
from collections import Counter
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from config.enrichment_config import (
    ICP_EXCLUDED_FIELDS,
    ICP_EXCLUDED_PATTERNS,
    ICP_MAX_NEGATIVE,
    ICP_MAX_POSITIVE,
    ICP_MAX_TOTAL,
    ICP_MAX_VALUE_LENGTH,
    ICP_MIN_PERCENT,
    ICP_NULL_LIKE_VALUES,
    ICP_PRESELECT_COUNT,
)

logger = logging.getLogger(__name__)


class ICPAttribute(BaseModel):
    """One attribute/value pair and how common it is."""
    model_config = ConfigDict(populate_by_name=True)

    attribute: str = ""
    attribute_name: str = Field(alias="attributeName")
    attribute_value: str = Field(alias="attributeValue")
    cluster_name: str = Field(default="", alias="clusterName")
    count: int = 0
    percentage: float = 0.0
    selected: bool = False
    operator: Literal["AND", "OR"] = "AND"

    def model_post_init(self, __context) -> None:
        if not self.attribute:
            self.attribute = f"{self.attribute_name}={self.attribute_value}"
        if not self.cluster_name:
            self.cluster_name = self.attribute_name

    @property
    def cluster_key(self) -> str:
        """Key used to look the attribute up in a cluster-id map."""
        return f"{self.cluster_name}={self.attribute_value}"

    @property
    def is_negative(self) -> bool:
        return self.attribute_value.lower() == "false"


class ICPAnalysis(BaseModel):
    """Most common attributes of an enriched dataset."""
    model_config = ConfigDict(populate_by_name=True)

    top_attributes: list[ICPAttribute] = Field(default_factory=list, alias="topAttributes")
    total_profiles: int = Field(default=0, alias="totalProfiles")


def is_excluded_field(name: str) -> bool:
    """True for contact, name, internal, domain-table and cluster-id fields."""
    if name.lower() in ICP_EXCLUDED_FIELDS:
        return True
    return any(pattern.search(name) for pattern in ICP_EXCLUDED_PATTERNS)


def _attribute_value(value) -> Optional[str]:
    """Scalar value as a countable string, or None when it should be skipped."""
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, (str, int, float)):
        text = str(value).strip()
    else:
        return None
    if not text or len(text) >= ICP_MAX_VALUE_LENGTH:
        return None
    if text.lower() in ICP_NULL_LIKE_VALUES:
        return None
    return text


def analyze_icp(enriched_rows: list[dict]) -> ICPAnalysis:
    """
    Find the attribute/value pairs common across enriched rows.

    Args:
        enriched_rows: Rows after profile merge

    Returns:
        ICPAnalysis with at most 35 attributes sorted by percentage, the top 5
        positive ones pre-selected
    """
    total = len(enriched_rows)
    if total == 0:
        return ICPAnalysis(top_attributes=[], total_profiles=0)

    counts: Counter = Counter()
    for row in enriched_rows:
        for name, raw_value in row.items():
            if is_excluded_field(name):
                continue
            value = _attribute_value(raw_value)
            if value is None:
                continue
            counts[(name, value)] += 1

    attributes = [
        ICPAttribute(
            attribute_name=name,
            attribute_value=value,
            count=count,
            percentage=round(count * 100 / total, 2),
        )
        for (name, value), count in counts.items()
        # Integer comparison keeps the 5% boundary exact
        if count * 100 >= ICP_MIN_PERCENT * total
    ]

    def by_frequency(attr: ICPAttribute):
        return (-attr.count, attr.attribute)

    positive = sorted((a for a in attributes if not a.is_negative), key=by_frequency)[:ICP_MAX_POSITIVE]
    negative = sorted((a for a in attributes if a.is_negative), key=by_frequency)[:ICP_MAX_NEGATIVE]
    top = sorted(positive + negative, key=lambda a: (-a.percentage, a.attribute))[:ICP_MAX_TOTAL]

    preselected = 0
    for attr in top:
        if preselected >= ICP_PRESELECT_COUNT:
            break
        if not attr.is_negative:
            attr.selected = True
            preselected += 1

    logger.info(f"ICP analysis: {len(counts)} distinct attributes, {len(top)} kept over {total} profiles")
    return ICPAnalysis(top_attributes=top, total_profiles=total)


def build_cluster_expression(selected: list[ICPAttribute], cluster_id_map: dict[str, str]) -> str:
    """
    Compile selected attributes into a boolean cluster expression.

    Attributes without a known cluster id are skipped. Each kept attribute's
    operator joins it to the next kept term.

    Examples:
        `a` (AND), `b` (OR), `c` with ids 1, 2, 3 -> "1 AND 2 OR 3"

    Returns:
        The expression, or "" when no attribute has a known cluster id
    """
    known = []
    for attr in selected:
        cluster_id = cluster_id_map.get(attr.cluster_key)
        if cluster_id:
            known.append((attr, str(cluster_id)))

    if not known:
        return ""

    expression = known[0][1]
    for (previous, _), (_, cluster_id) in zip(known, known[1:]):
        expression += f" {previous.operator} {cluster_id}"
    return expression
