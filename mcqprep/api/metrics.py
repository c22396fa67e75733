from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from mcqprep.core.metrics import METRICS

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse)
def metrics_endpoint():
    """Ledger, webhook, reward and HTTP counters in the Prometheus text format."""
    return PlainTextResponse(METRICS.export_prometheus(), media_type=PROMETHEUS_CONTENT_TYPE)
