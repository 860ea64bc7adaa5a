"""
Prometheus metrics endpoint.

Public, like any scrape target. Exposes the dedicated registry populated by
``@measure_operation`` and the slot/saga/sync counters.
"""

from fastapi import APIRouter, Response

from ...monitoring.prometheus_metrics import prometheus_metrics

router = APIRouter(tags=["monitoring"])


@router.get("/prometheus")
def get_prometheus_metrics() -> Response:
    return Response(
        content=prometheus_metrics.get_metrics(),
        media_type=prometheus_metrics.get_content_type(),
    )
