"""
Anchor Error Explainer - explain Solana/Anchor error codes with AI, cache and static fallback.
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

load_dotenv()

import metrics  # Prometheus instrumentation
from config import Settings
from exceptions import ConfigError, InvalidErrorCodeError, ShutdownInProgressError
from explanation_service import ExplanationService, build_service
from models import (
    ExplainRequest,
    ExplainResponse,
    HealthResponse,
    RateLimitResult,
    StatusResponse,
    validate_error_code,
)

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

VERSION = "1.0.0"
DEBUG_MODE = os.getenv("DEBUG_MODE", "false").lower() == "true"
RATE_LIMITED_PATHS = {"/v1/explain"}

# Initialized during startup
service: Optional[ExplanationService] = None

# Graceful shutdown tracking
active_requests = 0
shutdown_event: Optional[asyncio.Event] = None
shutdown_timeout_sec = 10


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: load config and start the service. Shutdown: drain requests, stop timers, close clients."""
    global service, shutdown_event

    shutdown_event = asyncio.Event()

    try:
        settings = Settings.from_env()
    except ConfigError as e:
        logger.error(f"Startup failed: {e}")
        raise
    logging.getLogger().setLevel(settings.log_level.upper())

    service = build_service(settings)
    await service.start()
    logger.info("Error explainer started")
    if DEBUG_MODE:
        logger.warning("DEBUG MODE ENABLED - Debug endpoints exposed")

    yield

    logger.info("Shutting down gracefully...")
    shutdown_event.set()

    start_shutdown = time.time()
    while active_requests > 0 and time.time() - start_shutdown < shutdown_timeout_sec:
        logger.info(f"Waiting for {active_requests} active request(s) to complete...")
        await asyncio.sleep(0.1)

    if active_requests > 0:
        logger.warning(f"Shutdown timeout: {active_requests} request(s) still active after {shutdown_timeout_sec}s")

    await service.shutdown()
    logger.info("Error explainer shut down")


app = FastAPI(
    title="Anchor Error Explainer",
    description="Explains Solana/Anchor error codes with multi-provider AI, tiered caching and static fallback",
    version=VERSION,
    lifespan=lifespan,
)


def client_identity(request: Request) -> str:
    """Client IP: first X-Forwarded-For hop, then X-Real-IP, then the peer address."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit_headers(result: RateLimitResult) -> dict:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at)),
    }
    if result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return headers


@app.middleware("http")
async def rate_limit_requests(request: Request, call_next):
    """
    Enforce the per-client fixed window on explain requests.

    Denials are answered here (429) without touching the service.
    Allowed responses carry the X-RateLimit-* headers as information.
    """
    if request.url.path not in RATE_LIMITED_PATHS or service is None:
        return await call_next(request)

    result = service.check_rate_limit(client_identity(request))
    if not result.allowed:
        return JSONResponse(
            status_code=429,
            content={
                "error": "rate_limit_exceeded",
                "message": f"Too many requests. Try again in {result.retry_after} seconds.",
                "retry_after": result.retry_after,
            },
            headers=rate_limit_headers(result),
        )

    response = await call_next(request)
    response.headers.update(rate_limit_headers(result))
    return response


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Log request method, path and latency, and record Prometheus request metrics.

    Also tracks in-flight requests for the graceful drain and rejects new
    requests once shutdown has begun.
    """
    global active_requests

    if shutdown_event and shutdown_event.is_set():
        logger.warning(f"Rejecting request during shutdown: {request.method} {request.url.path}")
        return await shutdown_error_handler(request, ShutdownInProgressError("Server is shutting down"))

    active_requests += 1
    start_time = time.time()
    endpoint = request.url.path

    logger.info(f"→ {request.method} {endpoint}")

    try:
        response = await call_next(request)
    finally:
        active_requests -= 1

    latency_seconds = time.time() - start_time
    logger.info(f"← {response.status_code} | {latency_seconds * 1000:.1f}ms")
    metrics.record_request(endpoint=endpoint, status=response.status_code, duration_seconds=latency_seconds)

    return response


@app.exception_handler(InvalidErrorCodeError)
async def invalid_error_code_handler(request: Request, exc: InvalidErrorCodeError):
    """Malformed or out-of-range error code. Status: 400 Bad Request."""
    logger.info(f"Rejected error code input: {exc}")
    return JSONResponse(status_code=400, content={"error": "invalid_error_code", "message": str(exc)})


@app.exception_handler(ShutdownInProgressError)
async def shutdown_error_handler(request: Request, exc: ShutdownInProgressError):
    """Server is draining. Status: 503 Service Unavailable."""
    return JSONResponse(
        status_code=503,
        content={"error": "server_shutting_down", "message": str(exc)},
        headers={"Retry-After": str(shutdown_timeout_sec)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions (last resort). Status: 500."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "message": "An unexpected error occurred"},
    )


@app.get("/", tags=["health"])
async def root() -> dict:
    """Connectivity check."""
    return {"message": "Anchor error explainer is running", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check() -> HealthResponse:
    """Health check for load balancers."""
    return HealthResponse(status="healthy", version=VERSION)


@app.post("/v1/explain", response_model=ExplainResponse, tags=["explain"])
async def explain(request: ExplainRequest) -> ExplainResponse:
    """Explain an error code. Always answers; degraded answers come from the static table."""
    validated = validate_error_code(request.error_code)
    explanation = await service.explain_error(validated.code, request.context)
    return ExplainResponse(
        code=explanation.code,
        explanation=explanation.explanation,
        fixes=explanation.fixes,
        source=explanation.source,
        confidence=explanation.confidence,
        cached=explanation.source == "cache",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/v1/status", response_model=StatusResponse, tags=["monitoring"])
async def status() -> StatusResponse:
    """Provider health, circuit state, cache tiers and rate limiter stats."""
    return StatusResponse(**service.status())


@app.get("/metrics", tags=["monitoring"])
async def prometheus_metrics() -> Response:
    """Prometheus metrics endpoint (text format, Prometheus scraping standard)."""
    return Response(content=generate_latest(metrics.REGISTRY), media_type=CONTENT_TYPE_LATEST)


# Debug endpoints (conditionally enabled via DEBUG_MODE)
if DEBUG_MODE:
    @app.get("/v1/rate-limit/{client_key}", tags=["debug"])
    async def rate_limit_status(client_key: str) -> dict:
        """Current window for a client without counting a request."""
        return service.rate_limiter.get_status(client_key).model_dump()

    @app.delete("/v1/rate-limit/{client_key}", tags=["debug"])
    async def reset_rate_limit(client_key: str) -> dict:
        """Drop a client's rate limit window."""
        service.rate_limiter.reset(client_key)
        return {"status": "success", "client_key": client_key}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
