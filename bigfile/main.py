# bigfile/main.py
import time

from botocore.exceptions import ClientError
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bigfile.aws.s3_errors import map_s3_client_error
from bigfile.core.logging_config import logger, setup_logging
from bigfile.core.settings import settings
from bigfile.middleware.request_id import RequestIdMiddleware
from bigfile.observability.metrics import router as metrics_router
from bigfile.routers import chunked, objects
from bigfile.services.errors import UploadError

setup_logging()

# ----------------------------------------------------
# App init
# ----------------------------------------------------
app = FastAPI(title="bigfile", version="0.1.0")

logger.info("startup", service="bigfile-api", storage_backend=settings.STORAGE_BACKEND)


# ----------------------------------------------------
# Health
# ----------------------------------------------------
@app.get("/health", include_in_schema=True)
def health() -> dict:
    return {"status": "ok"}


# ----------------------------------------------------
# Logging middleware
# ----------------------------------------------------
@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    start = time.time()

    request_id = getattr(request.state, "request_id", None) or request.headers.get(
        "X-Request-ID", "unknown"
    )
    client_ip = request.client.host if request.client else "unknown"

    bound_logger = logger.bind(
        request_id=request_id,
        ip=client_ip,
        endpoint=str(request.url.path),
        method=request.method,
    )

    bound_logger.info("request_started")
    response = await call_next(request)
    latency_ms = round((time.time() - start) * 1000, 2)

    bound_logger.bind(status_code=response.status_code, latency_ms=latency_ms).info(
        "request_finished"
    )
    return response


# ----------------------------------------------------
# Middleware
# ----------------------------------------------------
app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------------------------------------
# Exception handlers
# ----------------------------------------------------
@app.exception_handler(UploadError)
def upload_error_handler(request: Request, exc: UploadError):
    headers = {"Retry-After": "1"} if exc.retryable else None
    if exc.status_code >= 500:
        logger.warning("upload_error", error_type=type(exc).__name__, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=headers)


@app.exception_handler(ClientError)
def s3_client_error_handler(request: Request, exc: ClientError):
    status, body = map_s3_client_error(exc)
    logger.warning("s3_client_error", status=status, code=body["error"]["code"])
    return JSONResponse(status_code=status, content=body)


# ----------------------------------------------------
# Routers
# ----------------------------------------------------
app.include_router(chunked.router)
app.include_router(objects.router)
app.include_router(metrics_router)  # /metrics
