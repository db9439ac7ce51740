"""
ICP and audience API routes.

- POST /icp/analyze: attribute frequencies over enriched rows
- POST /estimate-audience: count of people matching the selected attributes
"""
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from api.dependencies import get_gateway
from api.services.audience import estimate_audience
from api.services.icp_analyzer import ICPAnalysis, ICPAttribute, analyze_icp
from api.services.tool_gateway import ToolGateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["icp"])


class AnalyzeICPRequest(BaseModel):
    rows: list[dict[str, Any]] = Field(default_factory=list, description="Enriched rows")


class EstimateAudienceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    selected_attributes: list[ICPAttribute] = Field(default_factory=list, alias="selectedAttributes")


class EstimateAudienceResponse(BaseModel):
    estimate: Optional[int] = None


@router.post("/icp/analyze", response_model=ICPAnalysis)
async def analyze(request: AnalyzeICPRequest):
    """Most common attribute/value pairs of an enriched dataset."""
    return analyze_icp(request.rows)


@router.post("/estimate-audience", response_model=EstimateAudienceResponse)
async def estimate(
    request: EstimateAudienceRequest,
    gateway: ToolGateway = Depends(get_gateway),
):
    """
    Estimate the audience size for the selected attributes.

    `estimate` is null when nothing is selected or none of the selected
    attributes maps to a known cluster.
    """
    total = await estimate_audience(gateway, request.selected_attributes)
    return EstimateAudienceResponse(estimate=total)
