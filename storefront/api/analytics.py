"""Client performance analytics (web vitals) endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from storefront.dependencies import get_performance_buffer
from storefront.metrics import PerformanceBuffer
from storefront.schemas import PerformanceMetricInput, success

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


@router.post("/performance")
def record_performance_metric(
    metric: PerformanceMetricInput,
    request: Request,
    buffer: PerformanceBuffer = Depends(get_performance_buffer),
):
    forwarded = request.headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else "unknown")
    buffer.record(
        metric.model_dump(),
        user_agent=request.headers.get("user-agent", ""),
        ip=ip,
    )
    return success(None, message="Metric recorded")


@router.get("/performance")
def get_performance_stats(
    metric: Optional[str] = None,
    since: Optional[int] = None,
    buffer: PerformanceBuffer = Depends(get_performance_buffer),
):
    return success(buffer.stats(metric=metric, since=since))
