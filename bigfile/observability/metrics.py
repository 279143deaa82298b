# bigfile/observability/metrics.py
from fastapi import APIRouter
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

router = APIRouter(tags=["observability"])

chunk_counter = Counter(
    "bigfile_chunks_total",
    "Aantal ontvangen chunks",
    ["result"],  # accepted|out_of_order|already_staged
)

merge_counter = Counter(
    "bigfile_merges_total",
    "Aantal merges (compose + opruimen staging)",
    ["result"],  # success|compose_error
)

verify_counter = Counter(
    "bigfile_verify_total",
    "Integriteitscontroles na merge",
    ["result"],  # verified|integrity_error
)

chunk_size_hist = Histogram(
    "bigfile_chunk_size_bytes",
    "Grootte van geaccepteerde chunks",
    buckets=(1e5, 1e6, 5e6, 1e7, 3e7, 6.4e7, 1.28e8),
)

latency_hist = Histogram(
    "bigfile_api_latency_seconds",
    "API latency per route",
    ["route"],
)


@router.get("/metrics", include_in_schema=True)
def metrics() -> Response:
    # Prometheus expects text/plain; version=0.0.4
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
