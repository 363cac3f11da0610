"""
FastAPI Application Module

Server side of the BizLevel AI assistant. ``POST /api/chat`` brokers a
conversation between the browser and the model provider: it trims the
history, injects the system prompt, bounds the upstream call with a hard
timeout and turns every failure into a renderable assistant message plus a
machine-readable ``error`` field.

Key Features:
- Async request handling with FastAPI
- Error taxonomy mapped to distinct HTTP statuses
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest
from structlog import get_logger

from ..config import Settings, configure_logging, settings
from ..domain.errors import ConfigurationError
from ..domain.models import ChatRequest, ChatResponse, ChatTurn, build_upstream_messages
from ..services.llm import LLMService
from .errors import FALLBACK_REPLY, describe_failure

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("chat_requests_total", "Total chat proxy requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter(
    "chat_errors_total", "Chat proxy failures by category", ["category"], registry=CUSTOM_REGISTRY
)
UPSTREAM_TIME = Histogram(
    "chat_upstream_seconds", "Time spent waiting for the model provider", registry=CUSTOM_REGISTRY
)

logger = get_logger()

_llm_service: Optional[LLMService] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configures logging on startup and reports the provider configuration"""
    configure_logging()
    logger.info(
        "application_startup_complete",
        model=settings.llm_model,
        credentials_configured=settings.has_credentials,
    )

    yield

    logger.info("application_shutdown_complete")


def get_settings() -> Settings:
    """Returns the application settings"""
    return settings


def get_completion_client() -> LLMService:
    """Returns the model provider client"""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService(settings)
    return _llm_service


app = FastAPI(
    title="BizLevel Chat API",
    description="Proxy between the BizLevel assistant UI and the model provider",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Logs each request with its status and duration"""
    started = time.perf_counter()
    logger.info("request_started", path=request.url.path, method=request.method)
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise
    logger.info(
        "request_finished",
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    return response


def _failure_response(exc: BaseException) -> JSONResponse:
    failure = describe_failure(exc)
    ERRORS.labels(category=failure.category).inc()
    logger.error(
        "chat_request_failed",
        category=failure.category,
        status_code=failure.status_code,
        error=str(exc),
    )
    body = ChatResponse(
        message=ChatTurn(role="assistant", content=FALLBACK_REPLY),
        error=failure.error,
    )
    return JSONResponse(status_code=failure.status_code, content=body.model_dump())


@app.post("/api/chat", response_model=ChatResponse, response_model_exclude_none=True)
async def chat(
    request: ChatRequest,
    config: Settings = Depends(get_settings),
    llm_service: LLMService = Depends(get_completion_client),
):
    """
    Forwards the tail of the conversation to the model provider.
    Only the last ``proxy_history_limit`` turns are sent, always behind the
    system prompt, and the call is cancelled after ``proxy_timeout`` seconds.
    """
    REQUESTS.inc()
    if not config.has_credentials:
        return _failure_response(ConfigurationError("Gemini API key is not configured"))

    upstream = build_upstream_messages(request.messages, config.proxy_history_limit)
    logger.info(
        "chat_request_received",
        received=len(request.messages),
        forwarded=len(upstream) - 1,
    )
    try:
        with UPSTREAM_TIME.time():
            content = await asyncio.wait_for(
                llm_service.complete(upstream), timeout=config.proxy_timeout
            )
    except Exception as e:
        return _failure_response(e)

    logger.info("chat_request_completed", response_length=len(content))
    return ChatResponse(message=ChatTurn(role="assistant", content=content))


@app.get("/health")
async def health(config: Settings = Depends(get_settings)):
    """Liveness probe reporting whether the provider credential is set"""
    return {
        "status": "ok",
        "model": config.llm_model,
        "credentials_configured": config.has_credentials,
    }


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
