# bigfile/services/merger.py
import time
from typing import Callable, List

import structlog

from bigfile.infra.retry import retry_on
from bigfile.observability.metrics import merge_counter
from bigfile.services.chunk_tracker import chunk_key
from bigfile.services.errors import ComposeError, StorageUnavailable
from bigfile.services.storage import ObjectStore

logger = structlog.get_logger(__name__)


class StagingCleanupIncomplete(Exception):
    def __init__(self, remaining: List[str]):
        super().__init__(f"{len(remaining)} staging chunks not deleted")
        self.remaining = remaining


class Merger:
    """Voegt de chunks van een sessie samen tot het definitieve object."""

    def __init__(
        self,
        storage: ObjectStore,
        staging_bucket: str,
        cleanup_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.storage = storage
        self.staging_bucket = staging_bucket
        self.cleanup_attempts = cleanup_attempts
        self._sleep = sleep

    def merge(self, fingerprint: str, total_chunks: int, dest_bucket: str, final_name: str) -> str:
        """
        Compose ``fingerprint/0 .. fingerprint/(total-1)`` naar ``dest_bucket/final_name``
        en ruim daarna de staging chunks op. Retourneert de key van het finale object.

        Een mislukte compose laat staging intact en gooit ``ComposeError``.
        """
        sources = [chunk_key(fingerprint, i) for i in range(total_chunks)]
        log = logger.bind(fingerprint=fingerprint, bucket=dest_bucket, final_name=final_name)

        self.storage.create_bucket(dest_bucket)

        log.info("merge_started", total_chunks=total_chunks)
        try:
            self.storage.compose(dest_bucket, final_name, self.staging_bucket, sources)
        except (ComposeError, StorageUnavailable) as e:
            merge_counter.labels(result="compose_error").inc()
            log.error("merge_compose_failed", error=str(e))
            if isinstance(e, ComposeError):
                raise
            raise ComposeError(f"compose failed: {e.message}", bucket=dest_bucket, key=final_name) from e

        merge_counter.labels(result="success").inc()
        log.info("merge_done", total_chunks=total_chunks)

        self._cleanup_staging(fingerprint, sources)
        return final_name

    def _cleanup_staging(self, fingerprint: str, sources: List[str]) -> None:
        remaining = list(sources)

        def _attempt() -> None:
            nonlocal remaining
            remaining = self.storage.delete_many(self.staging_bucket, remaining)
            if remaining:
                raise StagingCleanupIncomplete(remaining)

        def _log_retry(attempt: int, exc: Exception, sleep_s: float) -> None:
            logger.warning(
                "staging_cleanup_retry",
                fingerprint=fingerprint,
                attempt=attempt,
                sleep_s=round(sleep_s, 2),
                error=type(exc).__name__,
            )

        try:
            retry_on(
                _attempt,
                attempts=self.cleanup_attempts,
                is_retryable=lambda e: isinstance(e, (StagingCleanupIncomplete, StorageUnavailable)),
                on_retry=_log_retry,
                sleep=self._sleep,
            )
        except Exception as e:
            # best-effort: achtergebleven staging chunks zijn onschadelijk
            logger.warning(
                "staging_cleanup_failed",
                fingerprint=fingerprint,
                remaining=len(remaining),
                error=str(e),
            )
