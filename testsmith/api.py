"""Read-only reporting API.

Every endpoint except ``/health`` is admitted through a fixed-window rate
limiter keyed by the caller's ``X-API-Key`` header, or by client host when
no key is sent. Denied requests get HTTP 429 with a ``Retry-After`` header.
"""

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from testsmith.engine.aggregator import ResultAggregator
from testsmith.exceptions import EntityNotFoundError, RateLimitExceeded, TestsmithError
from testsmith.ratelimit import RateLimiter
from testsmith.store.base import EntityStore

log = structlog.get_logger(__name__)


def client_key(request: Request) -> str:
    """Identify the caller for rate limiting."""
    api_key = request.headers.get("X-API-Key")
    if api_key:
        return f"key:{api_key}"
    host = request.client.host if request.client else "unknown"
    return f"host:{host}"


def create_app(
    store: EntityStore,
    limiter: RateLimiter,
    aggregator: ResultAggregator | None = None,
) -> FastAPI:
    """Build the reporting application.

    Args:
        store: Store the statistics are read from.
        limiter: Limiter for inbound requests. Keep it separate from the
            generation provider's limiter.
        aggregator: Statistics calculator.
    """
    aggregator = aggregator or ResultAggregator()
    app = FastAPI(title="testsmith reporting API")

    async def rate_limited(request: Request) -> None:
        limiter.check(client_key(request))

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        log.warning("api_rate_limited", path=request.url.path, retry_after_ms=exc.retry_after_ms)
        return JSONResponse(
            status_code=429,
            content={"detail": "Rate limit exceeded", "retry_after_ms": exc.retry_after_ms},
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )

    @app.exception_handler(EntityNotFoundError)
    async def not_found_handler(request: Request, exc: EntityNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": exc.message})

    @app.exception_handler(TestsmithError)
    async def error_handler(request: Request, exc: TestsmithError) -> JSONResponse:
        log.error("api_request_failed", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=500, content={"detail": exc.message})

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "healthy", "service": "testsmith"}

    @app.get("/pull-requests/{number}/stats", dependencies=[Depends(rate_limited)])
    async def pull_request_stats(number: int) -> dict:
        pull_request = await store.get_pull_request(number)
        stats = aggregator.pull_request_stats(
            pull_request,
            await store.list_suites(number),
            await store.list_executions(number),
        )
        return stats.to_dict()

    @app.get("/executions/{execution_id}", dependencies=[Depends(rate_limited)])
    async def execution_stats(execution_id: str) -> dict:
        execution = await store.get_execution(execution_id)
        return aggregator.execution_stats(execution).to_dict()

    @app.get("/dashboard", dependencies=[Depends(rate_limited)])
    async def dashboard() -> dict:
        stats = aggregator.dashboard_stats(
            await store.list_pull_requests(),
            await store.list_suites(),
            await store.list_executions(),
        )
        return stats.to_dict()

    return app
