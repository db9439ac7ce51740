"""
Audience-size estimate for a selected ICP.

list_clusters (attribute names -> cluster ids) -> cluster expression ->
find_persons with a count-only query -> total.
"""
import logging
from typing import Optional

from api.services.icp_analyzer import ICPAttribute, build_cluster_expression
from api.services.tool_gateway import ToolGateway
from api.services.tool_payloads import JsonPayload, decode_tool_result
from config.enrichment_config import FIND_PERSONS_TOOL, LIST_CLUSTERS_TOOL

logger = logging.getLogger(__name__)


def cluster_id_map(clusters: list) -> dict[str, str]:
    """`name=value` -> cluster id, from a list_clusters `clusters` array."""
    mapping = {}
    for cluster in clusters:
        if not isinstance(cluster, dict):
            continue
        cluster_id = cluster.get("cluster_id")
        if cluster_id is None or "name" not in cluster:
            continue
        mapping[f"{cluster['name']}={cluster.get('value')}"] = str(cluster_id)
    return mapping


def _parse_total(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


async def estimate_audience(gateway: ToolGateway, selected: list[ICPAttribute]) -> Optional[int]:
    """
    Estimate how many people match the selected attributes.

    Args:
        gateway: Tool gateway
        selected: Attributes the user selected, with their operators

    Returns:
        Matching person count, or None when no estimate can be made
    """
    if not selected:
        return None

    cluster_names = list(dict.fromkeys(attr.cluster_name for attr in selected))
    logger.info(f"Estimating audience for {len(selected)} attributes across {len(cluster_names)} clusters")

    listing = decode_tool_result(
        await gateway.execute(LIST_CLUSTERS_TOOL, {"cluster_names": cluster_names})
    )
    if not isinstance(listing, JsonPayload):
        logger.warning(f"{LIST_CLUSTERS_TOOL} gave no usable result: {listing}")
        return None

    clusters = listing.data.get("clusters") if isinstance(listing.data, dict) else None
    if not clusters:
        logger.info("No clusters found for the selected attributes")
        return None

    expression = build_cluster_expression(selected, cluster_id_map(clusters))
    if not expression:
        logger.info("None of the selected attributes has a known cluster id")
        return None

    found = decode_tool_result(
        await gateway.execute(FIND_PERSONS_TOOL, {
            "expression": expression,
            "identifier_type": "email",
            "limit": 1,
            "format": "none",
        })
    )
    if not isinstance(found, JsonPayload) or not isinstance(found.data, dict):
        logger.warning(f"Could not read {FIND_PERSONS_TOOL} result: {found}")
        return 0
    return _parse_total(found.data.get("total"))
