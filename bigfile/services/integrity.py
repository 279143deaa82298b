# bigfile/services/integrity.py
import hashlib
from contextlib import closing
from dataclasses import dataclass

import structlog

from bigfile.observability.metrics import verify_counter
from bigfile.services.storage import ObjectStore

logger = structlog.get_logger(__name__)


def hex_digest_length(algorithm: str) -> int:
    return hashlib.new(algorithm).digest_size * 2


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    expected: str
    actual: str


class IntegrityVerifier:
    def __init__(self, storage: ObjectStore, algorithm: str = "md5", block_size: int = 1024 * 1024):
        hashlib.new(algorithm)  # onbekend algoritme -> ValueError bij opstarten
        self.storage = storage
        self.algorithm = algorithm
        self.block_size = block_size

    def digest(self, bucket: str, key: str) -> str:
        h = hashlib.new(self.algorithm)
        with closing(self.storage.get(bucket, key)) as stream:
            for block in iter(lambda: stream.read(self.block_size), b""):
                h.update(block)
        return h.hexdigest()

    def verify(self, bucket: str, key: str, expected_fingerprint: str) -> VerificationResult:
        """
        Herbereken de digest van het samengevoegde object en vergelijk met de fingerprint.
        Bij een mismatch wordt het object verwijderd.
        """
        actual = self.digest(bucket, key)
        expected = expected_fingerprint.strip().lower()
        if actual.lower() == expected:
            verify_counter.labels(result="verified").inc()
            logger.info("integrity_verified", bucket=bucket, key=key, digest=actual)
            return VerificationResult(ok=True, expected=expected, actual=actual)

        verify_counter.labels(result="integrity_error").inc()
        logger.warning(
            "integrity_mismatch",
            bucket=bucket,
            key=key,
            expected=expected,
            actual=actual,
            algorithm=self.algorithm,
        )
        self.storage.delete(bucket, key)
        return VerificationResult(ok=False, expected=expected, actual=actual)
