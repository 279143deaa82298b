# bigfile/services/errors.py
from typing import Any, Dict, Optional


class UploadError(Exception):
    """Basis voor alle fouten die we expliciet naar de client vertalen."""

    status_code = 500
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_body(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "error": {
                "type": type(self).__name__,
                "message": self.message,
                "retryable": self.retryable,
                **self.context,
            },
        }


class InvalidRequest(UploadError):
    status_code = 400


class InvalidChunkRequest(InvalidRequest):
    pass


class SessionStateMismatch(UploadError):
    """Declared total chunk count changed for an existing fingerprint."""

    status_code = 409


class SessionAlreadyMerged(UploadError):
    """New chunks for a fingerprint whose merge already finished."""

    status_code = 409


class ComposeError(UploadError):
    status_code = 503
    retryable = True


class MergeInProgress(UploadError):
    status_code = 503
    retryable = True


class StorageUnavailable(UploadError):
    status_code = 503
    retryable = True

    def __init__(self, message: str, cause: Optional[BaseException] = None, **context: Any):
        super().__init__(message, **context)
        self.cause = cause


class ObjectNotFound(UploadError):
    status_code = 404


class BucketNotEmpty(UploadError):
    status_code = 409
