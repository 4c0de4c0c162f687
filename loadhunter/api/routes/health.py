from dataclasses import asdict

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from loadhunter.core.metrics import MetricsRegistry
from loadhunter.schemas.health import HealthOut, ReadyOut, WindowReportOut
from loadhunter.services.repository import RepositoryError

router = APIRouter()


def _metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


@router.get("/healthz", response_model=HealthOut)
async def healthz(request: Request) -> HealthOut:
    return HealthOut(**asdict(_metrics(request).health_snapshot()))


@router.get("/metrics")
async def metrics(request: Request) -> Response:
    return Response(content=_metrics(request).render_prometheus(), media_type=CONTENT_TYPE_LATEST)


@router.get("/metrics/window", response_model=WindowReportOut)
async def metrics_window(request: Request, reset: bool = False) -> WindowReportOut:
    return WindowReportOut.model_validate(asdict(_metrics(request).window_report(reset=reset)))


@router.get("/readyz", response_model=ReadyOut)
async def readyz(request: Request) -> JSONResponse:
    repository = request.app.state.repository
    try:
        ready = await repository.ping()
    except (RepositoryError, OSError) as exc:
        return JSONResponse(status_code=503, content=ReadyOut(status="unavailable", error=str(exc)).model_dump())
    if not ready:
        return JSONResponse(status_code=503, content=ReadyOut(status="unavailable").model_dump(exclude_none=True))
    return JSONResponse(status_code=200, content=ReadyOut(status="ready").model_dump(exclude_none=True))
