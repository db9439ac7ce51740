"""
Enrichment API route.

POST /enrich runs the agent conversation over the user's messages and, when
rows were uploaded, reconciles the agent's tool calls into enriched rows and
an ICP summary.
"""
import asyncio
import logging
from typing import Any, Literal, Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from api.dependencies import (
    get_export_fetcher,
    get_gateway,
    get_llm_caller,
    get_provider,
    get_settings,
)
from api.services.agent_loop import AgentConfig, ConversationOrchestrator
from api.services.enrichment_prompt import attach_data_context, build_system_prompt
from api.services.export_fetcher import ExportFetcher, export_links_in_log
from api.services.icp_analyzer import ICPAnalysis, analyze_icp
from api.services.identifier_extractor import DetectedFields, detect_fields
from api.services.identity_reconciler import IdentityReconciler
from api.services.llm_providers import LLMProvider
from api.services.resilience import RateLimitedCaller, RequestTimeoutError
from api.services.tool_gateway import ToolGateway
from config.settings import Settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["enrichment"])


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: Union[str, list[dict[str, Any]]]


class UploadedData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rows: list[dict[str, Any]] = Field(default_factory=list)
    headers: list[str] = Field(default_factory=list)
    detected_fields: Optional[dict[str, Optional[str]]] = Field(default=None, alias="detectedFields")

    def resolved_headers(self) -> list[str]:
        if self.headers:
            return self.headers
        return list(self.rows[0].keys()) if self.rows else []

    def resolved_fields(self) -> DetectedFields:
        """Caller-sent identifier columns, else detected from the headers."""
        if self.detected_fields:
            fields = DetectedFields.from_dict(self.detected_fields)
            if not fields.is_empty():
                return fields
        return detect_fields(self.resolved_headers())


class EnrichRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessage] = Field(..., min_length=1, description="Conversation so far")
    uploaded_data: Optional[UploadedData] = Field(default=None, alias="uploadedData")


class EnrichResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    response: str
    tool_calls: list[dict[str, Any]] = Field(default_factory=list, alias="toolCalls")
    enriched_data: Optional[list[dict[str, Any]]] = Field(default=None, alias="enrichedData")
    export_links: list[str] = Field(default_factory=list, alias="exportLinks")
    resolved_count: int = Field(default=0, alias="resolvedCount")
    enriched_count: int = Field(default=0, alias="enrichedCount")
    icp_analysis: Optional[ICPAnalysis] = Field(default=None, alias="icpAnalysis")
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

async def run_enrichment(
    request: EnrichRequest,
    gateway: ToolGateway,
    provider: LLMProvider,
    caller: RateLimitedCaller,
    export_fetcher: ExportFetcher,
    settings: Settings,
) -> EnrichResponse:
    """Agent conversation, then reconciliation of its tool calls against the upload."""
    messages = [m.model_dump() for m in request.messages]
    uploaded = request.uploaded_data
    rows = uploaded.rows if uploaded else []
    detected_fields = uploaded.resolved_fields() if uploaded else DetectedFields()

    if rows:
        messages = attach_data_context(messages, rows, uploaded.resolved_headers(), detected_fields)

    orchestrator = ConversationOrchestrator(
        provider=provider,
        gateway=gateway,
        config=AgentConfig.from_settings(settings),
        caller=caller,
    )
    system_prompt = build_system_prompt(await gateway.list_tools())
    result = await orchestrator.run(messages, system_prompt)

    response = EnrichResponse(response=result.response, tool_calls=result.tool_calls)

    if result.tool_calls and rows:
        logger.info(f"Processing {len(result.tool_calls)} tool calls against {len(rows)} rows...")
        reconciler = IdentityReconciler(gateway, export_fetcher, batch_size=settings.batch_size)
        reconciled = await reconciler.reconcile(result.tool_calls, rows, detected_fields)

        # Includes the auto-resolve and gap-fill calls the reconciler appended
        response.tool_calls = result.tool_calls
        response.enriched_data = reconciled.enriched_rows
        response.export_links = reconciled.export_links
        response.resolved_count = reconciled.resolved_count
        response.enriched_count = reconciled.enriched_count
        response.warnings = reconciled.warnings
        if reconciled.enriched_count:
            response.icp_analysis = analyze_icp(reconciled.enriched_rows)
    elif result.tool_calls:
        response.export_links = export_links_in_log(result.tool_calls)

    return response


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/enrich", response_model=EnrichResponse)
async def enrich(
    request: EnrichRequest,
    gateway: ToolGateway = Depends(get_gateway),
    provider: LLMProvider = Depends(get_provider),
    caller: RateLimitedCaller = Depends(get_llm_caller),
    export_fetcher: ExportFetcher = Depends(get_export_fetcher),
    settings: Settings = Depends(get_settings),
):
    """
    Run one enrichment turn.

    The conversation runs against the LLM with the tool service's tools; when
    rows are uploaded the agent's tool calls are reconciled into
    `enrichedData`, with identifier gaps resolved and missing profiles fetched.
    """
    try:
        return await asyncio.wait_for(
            run_enrichment(request, gateway, provider, caller, export_fetcher, settings),
            timeout=settings.request_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        logger.error(f"Enrichment request timed out after {settings.request_timeout_seconds}s")
        raise RequestTimeoutError(settings.request_timeout_seconds) from e
