# bigfile/aws/s3_errors.py
import logging
from typing import Any, Dict, Optional, Tuple

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "NoSuchBucket", "404"}
PRECONDITION_CODES = {"PreconditionFailed", "ConditionalRequestConflict", "412"}
_TRANSIENT_CODES = {
    "SlowDown", "Throttling", "RequestTimeout",
    "InternalError", "ServiceUnavailable", "InternalServerError",
}


def error_code(e: ClientError) -> str:
    return str((e.response.get("Error", {}) or {}).get("Code", ""))


def http_status(e: ClientError) -> Optional[int]:
    status = (e.response.get("ResponseMetadata", {}) or {}).get("HTTPStatusCode")
    return int(status) if status is not None else None


def is_not_found(e: ClientError) -> bool:
    return error_code(e) in NOT_FOUND_CODES or http_status(e) == 404


def is_precondition_failed(e: ClientError) -> bool:
    return error_code(e) in PRECONDITION_CODES or http_status(e) in (409, 412)


def is_transient_s3(exc: BaseException) -> bool:
    # Netwerk/endpoint timeouts
    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return True
    if isinstance(exc, BotoCoreError):
        return True
    if isinstance(exc, ClientError):
        if error_code(exc) in _TRANSIENT_CODES:
            return True
        status = http_status(exc)
        if status is not None and 500 <= status < 600:
            return True
    return False


def map_s3_client_error(e: ClientError) -> Tuple[int, Dict[str, Any]]:
    err = e.response.get("Error", {}) or {}
    meta = e.response.get("ResponseMetadata", {}) or {}

    code: str = err.get("Code", "")
    msg: str = err.get("Message", "") or str(e)
    aws_http: int = int(meta.get("HTTPStatusCode", 500))
    request_id: Optional[str] = meta.get("RequestId")

    status = 502
    hint = None

    if code in NOT_FOUND_CODES:
        status = 404
        hint = "Bucket or key does not exist."
    elif code in {"AccessDenied"}:
        status = 403
        hint = "Check the access key / bucket policy of the object store."
    elif code in {"SignatureDoesNotMatch"}:
        status = 403
        hint = "Check S3_REGION against the bucket region and the clock (NTP)."
    elif code in {"BucketAlreadyOwnedByYou", "BucketAlreadyExists", "BucketNotEmpty"}:
        status = 409
    elif code in {"RequestTimeout", "SlowDown", "Throttling"}:
        status = 429
        hint = "Object store throttling/timeout; retry shortly."
    elif code in {"InvalidRequest", "EntityTooSmall", "InvalidBucketName"} or aws_http == 400:
        status = 400
    elif 500 <= aws_http < 600:
        status = 502
        hint = "Transient object store failure; retry shortly."

    body = {
        "ok": False,
        "error": {
            "type": "S3ClientError",
            "code": code,
            "message": msg,
            "hint": hint,
            "request_id": request_id,
            "s3_http": aws_http,
        },
    }
    return status, body
