"""
FastAPI dependencies for the enrichment routes.

Long-lived objects (tool-service connection, LLM provider, rate-limited
caller) live on `app.state`, created in the lifespan. Routes receive them
through `Depends`, which lets tests swap them with `app.dependency_overrides`.
"""
import logging
from typing import AsyncIterator

from fastapi import Depends, Request

from api.services.export_fetcher import ExportFetcher
from api.services.llm_providers import LLMProvider, build_provider
from api.services.resilience import RateLimitedCaller, RateLimitPolicy
from api.services.tool_gateway import ToolGateway, ToolServiceConnection
from config.settings import Settings, settings as app_settings

logger = logging.getLogger(__name__)


def get_settings() -> Settings:
    return app_settings


def get_connection(request: Request) -> ToolServiceConnection:
    return request.app.state.tool_connection


async def get_gateway(
    connection: ToolServiceConnection = Depends(get_connection),
) -> AsyncIterator[ToolGateway]:
    """Hold the tool-service connection for the duration of one request."""
    await connection.acquire()
    try:
        yield ToolGateway(connection)
    finally:
        await connection.release()


def get_provider(request: Request, settings: Settings = Depends(get_settings)) -> LLMProvider:
    """LLM provider, built on first use and shared by all requests."""
    provider = getattr(request.app.state, "llm_provider", None)
    if provider is None:
        provider = build_provider(settings)
        request.app.state.llm_provider = provider
        logger.info(f"LLM provider initialized: {provider.name}")
    return provider


def get_llm_caller(
    request: Request,
    provider: LLMProvider = Depends(get_provider),
    settings: Settings = Depends(get_settings),
) -> RateLimitedCaller:
    """Shared caller, so call spacing holds across concurrent requests."""
    caller = getattr(request.app.state, "llm_caller", None)
    if caller is None:
        caller = RateLimitedCaller(
            is_rate_limit=provider.is_rate_limit,
            retry_hint=provider.retry_hint,
            policy=RateLimitPolicy(
                max_attempts=settings.llm_max_attempts,
                max_delay=settings.llm_max_backoff_seconds,
                min_interval=settings.min_call_interval_seconds,
            ),
        )
        request.app.state.llm_caller = caller
    return caller


def get_export_fetcher(settings: Settings = Depends(get_settings)) -> ExportFetcher:
    return ExportFetcher(timeout=settings.export_timeout_seconds)
