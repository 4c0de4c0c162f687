import logging
import time
from typing import Any

from fastapi import FastAPI
from starlette.requests import Request

from loadhunter.api.routes import health
from loadhunter.core.metrics import MetricsRegistry

logger = logging.getLogger(__name__)


def create_app(metrics: MetricsRegistry, repository: Any) -> FastAPI:
    app = FastAPI(title="loadhunter-inbound-worker")
    app.state.metrics = metrics
    app.state.repository = repository

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        started_at = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started_at) * 1000.0
        logger.debug(
            "http request method=%s path=%s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    app.include_router(health.router, tags=["health"])
    return app
