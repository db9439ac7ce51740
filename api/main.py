"""
Contact Enrichment Service
FastAPI Application Entry Point

Run with:

    uvicorn api.main:app --host 0.0.0.0 --port 8000
"""
# Load environment variables from .env file first, before any imports
from dotenv import load_dotenv
load_dotenv()

import logging
from contextlib import asynccontextmanager

import anthropic
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from google.genai import errors as genai_errors

from api.routes import audience_router, enrich_router
from api.services.resilience import (
    EnrichmentValidationError,
    RequestTimeoutError,
    ServiceUnavailableError,
    user_friendly_error,
)
from api.services.tool_gateway import ToolServiceConnection
from config.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    # Startup: tool-service handle (connects lazily on first request)
    app.state.tool_connection = ToolServiceConnection.from_settings(settings)
    app.state.llm_provider = None
    app.state.llm_caller = None
    if settings.mcp_configured:
        logger.info("Tool service configured; connecting on first request")
    else:
        logger.warning("MCP_SERVER_URL is not set; enrichment requests will fail")

    yield  # Application runs here

    # Shutdown: close the tool-service session
    await app.state.tool_connection.aclose()


app = FastAPI(
    title="Contact Enrichment",
    description="Conversational identity resolution and profile enrichment for uploaded contact lists",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(enrich_router)
app.include_router(audience_router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert validation errors to 400 with clear messages."""
    errors = exc.errors()

    # Flatten errors into readable "field: message" strings
    details = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", []) if part != "body")
        message = error.get("msg", "invalid value")
        details.append(f"{location}: {message}" if location else message)

    for error in errors:
        if "messages" in [str(part) for part in error.get("loc", [])]:
            return JSONResponse(
                status_code=400,
                content={"error": "Messages array is required", "details": "; ".join(details)}
            )
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "details": "; ".join(details)}
    )


@app.exception_handler(EnrichmentValidationError)
async def enrichment_validation_handler(request: Request, exc: EnrichmentValidationError):
    return JSONResponse(status_code=400, content={"error": "Validation error", "details": str(exc)})


@app.exception_handler(ServiceUnavailableError)
async def service_unavailable_handler(request: Request, exc: ServiceUnavailableError):
    """Tool service / LLM provider failures."""
    logger.error(f"Upstream failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=502,
        content={"error": f"{exc.service} unavailable", "details": user_friendly_error(exc)}
    )


@app.exception_handler(anthropic.APIError)
@app.exception_handler(genai_errors.APIError)
async def llm_error_handler(request: Request, exc: Exception):
    """LLM provider errors that survived the retry layer."""
    logger.error(f"LLM provider failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=502,
        content={"error": "LLM provider unavailable", "details": user_friendly_error(exc)}
    )


@app.exception_handler(RequestTimeoutError)
async def timeout_handler(request: Request, exc: RequestTimeoutError):
    return JSONResponse(
        status_code=504,
        content={"error": "Request timed out", "details": user_friendly_error(exc)}
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Error handling {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "details": str(exc) or type(exc).__name__}
    )


@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint that reports configuration of critical dependencies."""
    if settings.llm_provider == "gemini":
        llm_key = settings.google_api_key
    else:
        llm_key = settings.anthropic_api_key

    connection = request.app.state.tool_connection
    checks = {
        "llm_api_key_configured": bool(llm_key and llm_key.strip()),
        "tool_service_configured": settings.mcp_configured,
    }

    all_healthy = all(checks.values())

    return {
        "status": "healthy" if all_healthy else "degraded",
        "service": "contact-enrichment",
        "llm_provider": settings.llm_provider,
        "tool_service_connected": connection.connected,
        "tools_available": len(connection.tools),
        "checks": checks,
    }
