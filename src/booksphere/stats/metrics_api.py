"""Scrape endpoint for pipeline gauges."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from .metrics_exporter import MetricsExporter

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

router = APIRouter(tags=["metrics"])


def get_metrics_exporter(request: Request) -> MetricsExporter:
    exporter = getattr(request.app.state, "metrics_exporter", None)
    if exporter is None:
        raise RuntimeError("Metrics exporter is not configured")
    return exporter


@router.get("/metrics")
def metrics(exporter: MetricsExporter = Depends(get_metrics_exporter)) -> Response:
    return Response(content=exporter.collect(), media_type=PROMETHEUS_CONTENT_TYPE)
