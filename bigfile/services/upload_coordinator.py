# bigfile/services/upload_coordinator.py
"""
Resumable chunked upload.

Een sessie wordt alleen geïdentificeerd door de fingerprint (content hash van
het hele bestand). De voortgang wordt afgeleid uit de chunks in de staging
bucket (``staging/<fingerprint>/<index>``); er is geen aparte sessietabel.

Per chunk:
  1. welke indices ontbreken nog?
  2. niets meer open -> (opnieuw) afronden
  3. index != kleinste ontbrekende index -> client moet die index sturen
  4. anders chunk wegschrijven en de volgende index teruggeven,
     of bij de laatste chunk mergen + verifiëren.
"""
from __future__ import annotations

import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import structlog

from bigfile.core.settings import Settings
from bigfile.observability.metrics import chunk_counter, chunk_size_hist
from bigfile.services.chunk_tracker import ChunkTracker, StagingSnapshot, chunk_key
from bigfile.services.errors import (
    InvalidChunkRequest,
    MergeInProgress,
    ObjectNotFound,
    SessionAlreadyMerged,
    SessionStateMismatch,
    StorageUnavailable,
)
from bigfile.services.integrity import IntegrityVerifier, hex_digest_length
from bigfile.services.merge_lock import MergeLock
from bigfile.services.merger import Merger
from bigfile.services.session_state import (
    MANIFEST_MARKER,
    MERGE_CLAIM_MARKER,
    OUTCOME_MARKER,
    SessionOutcomeRecord,
    SessionState,
)
from bigfile.services.storage import ObjectStore

logger = structlog.get_logger(__name__)

_HEX_RE = re.compile(r"^[0-9a-f]+$")


class OutcomeKind(str, Enum):
    NEXT_INDEX = "next_index"
    VERIFIED = "verified"
    INTEGRITY_ERROR = "integrity_error"


@dataclass(frozen=True)
class UploadOutcome:
    kind: OutcomeKind
    next_index: Optional[int] = None

    @classmethod
    def next(cls, index: int) -> UploadOutcome:
        return cls(OutcomeKind.NEXT_INDEX, index)

    @classmethod
    def verified(cls) -> UploadOutcome:
        return cls(OutcomeKind.VERIFIED)

    @classmethod
    def integrity_error(cls) -> UploadOutcome:
        return cls(OutcomeKind.INTEGRITY_ERROR)

    @property
    def complete(self) -> bool:
        return self.kind is not OutcomeKind.NEXT_INDEX


@dataclass(frozen=True)
class SessionStatus:
    fingerprint: str
    total_chunks: int
    missing: List[int]
    state: str  # in_progress | staged | merged | verified | integrity_error | aborted

    @property
    def next_index(self) -> Optional[int]:
        return self.missing[0] if self.missing and self.state == "in_progress" else None


class UploadCoordinator:
    def __init__(
        self,
        storage: ObjectStore,
        staging_bucket: str,
        *,
        algorithm: str = "md5",
        verify_block_size: int = 1024 * 1024,
        max_chunk_bytes: Optional[int] = None,
        merge_wait_seconds: float = 30.0,
        merge_poll_interval: float = 0.25,
        claim_ttl_seconds: float = 15 * 60,
        cleanup_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.storage = storage
        self.staging_bucket = staging_bucket
        self.tracker = ChunkTracker(storage, staging_bucket)
        self.state = SessionState(storage, staging_bucket)
        self.merger = Merger(storage, staging_bucket, cleanup_attempts=cleanup_attempts, sleep=sleep)
        self.verifier = IntegrityVerifier(storage, algorithm=algorithm, block_size=verify_block_size)
        self.lock = MergeLock(storage, staging_bucket, claim_ttl_seconds=claim_ttl_seconds)
        self.fingerprint_length = hex_digest_length(algorithm)
        self.max_chunk_bytes = max_chunk_bytes
        self.merge_wait_seconds = merge_wait_seconds
        self.merge_poll_interval = merge_poll_interval
        self._sleep = sleep
        self._clock = clock
        self._staging_ready = False

    @classmethod
    def from_settings(cls, storage: ObjectStore, cfg: Settings) -> UploadCoordinator:
        return cls(
            storage,
            cfg.STAGING_BUCKET,
            algorithm=cfg.FINGERPRINT_ALGORITHM,
            verify_block_size=cfg.VERIFY_BLOCK_SIZE,
            max_chunk_bytes=cfg.max_chunk_bytes,
            merge_wait_seconds=cfg.MERGE_WAIT_SECONDS,
            merge_poll_interval=cfg.MERGE_POLL_INTERVAL,
            claim_ttl_seconds=cfg.MERGE_CLAIM_TTL_SECONDS,
            cleanup_attempts=cfg.CLEANUP_RETRY_ATTEMPTS,
        )

    # ------------------------------------------------------------------
    # validatie
    # ------------------------------------------------------------------
    def normalize_fingerprint(self, fingerprint: str) -> str:
        fp = (fingerprint or "").strip().lower()
        if len(fp) != self.fingerprint_length or not _HEX_RE.match(fp):
            raise InvalidChunkRequest(
                f"fingerprint must be a {self.verifier.algorithm} hex digest",
                fingerprint=fingerprint,
            )
        return fp

    def _validate_total(self, total_chunks: int) -> None:
        if total_chunks < 1:
            raise InvalidChunkRequest("total chunk count must be >= 1", total_chunks=total_chunks)

    def _validate(self, fingerprint: str, total_chunks: int, index: int, data: bytes, final_name: str) -> str:
        fp = self.normalize_fingerprint(fingerprint)
        self._validate_total(total_chunks)
        if index < 0 or index >= total_chunks:
            raise InvalidChunkRequest(
                "chunk index out of range", index=index, total_chunks=total_chunks
            )
        if not final_name or final_name.startswith("/"):
            raise InvalidChunkRequest("final object name is required", final_name=final_name)
        if self.max_chunk_bytes is not None and len(data) > self.max_chunk_bytes:
            raise InvalidChunkRequest(
                "chunk too large", size=len(data), max_bytes=self.max_chunk_bytes
            )
        return fp

    def _ensure_staging(self) -> None:
        if not self._staging_ready:
            self.storage.create_bucket(self.staging_bucket)
            self._staging_ready = True

    # ------------------------------------------------------------------
    # protocol
    # ------------------------------------------------------------------
    def accept_chunk(
        self,
        fingerprint: str,
        total_chunks: int,
        index: int,
        data: bytes,
        dest_bucket: str,
        final_name: str,
    ) -> UploadOutcome:
        fp = self._validate(fingerprint, total_chunks, index, data, final_name)
        self._ensure_staging()
        log = logger.bind(fingerprint=fp, index=index, total_chunks=total_chunks)

        snapshot = self.tracker.snapshot(fp)

        if snapshot.has_marker(OUTCOME_MARKER):
            record = self.state.read_outcome(fp)
            if record is not None and record.status == "integrity_error" and index == 0:
                # client begint opnieuw na een -2: verse sessie op dezelfde fingerprint
                self._reset_session(fp, log)
                snapshot = self.tracker.snapshot(fp)
            elif record is not None:
                return self._closed_session(fp, record, total_chunks, index, final_name, log)

        manifest_total = None
        if snapshot.has_marker(MANIFEST_MARKER):
            manifest = self.state.read_manifest(fp)
            manifest_total = manifest.total_chunks if manifest else None
            self._check_total(fp, manifest_total, total_chunks, log)

        if snapshot.has_marker(MERGE_CLAIM_MARKER):
            # een andere aanvraag is aan het mergen; wacht op de uitkomst
            return self._finalize(fp, total_chunks, dest_bucket, final_name)

        missing = snapshot.missing(total_chunks)
        if not missing:
            chunk_counter.labels(result="already_staged").inc()
            log.info("session_already_staged")
            return self._finalize(fp, total_chunks, dest_bucket, final_name)

        expected = missing[0]
        if index != expected:
            chunk_counter.labels(result="out_of_order").inc()
            log.info("chunk_out_of_order", expected=expected)
            return UploadOutcome.next(expected)

        if manifest_total is None:
            manifest = self.state.ensure_manifest(fp, total_chunks)
            self._check_total(fp, manifest.total_chunks, total_chunks, log)

        self.storage.put(self.staging_bucket, chunk_key(fp, index), data)
        chunk_counter.labels(result="accepted").inc()
        chunk_size_hist.observe(len(data))
        log.info("chunk_accepted", size=len(data))

        after = self.tracker.snapshot(fp)
        if after.has_marker(OUTCOME_MARKER) or after.has_marker(MERGE_CLAIM_MARKER):
            return self._finalize(fp, total_chunks, dest_bucket, final_name)

        missing = after.missing(total_chunks)
        if missing:
            return UploadOutcome.next(missing[0])
        return self._finalize(fp, total_chunks, dest_bucket, final_name)

    def session_status(self, fingerprint: str, total_chunks: int) -> SessionStatus:
        fp = self.normalize_fingerprint(fingerprint)
        self._validate_total(total_chunks)
        snapshot: StagingSnapshot = self.tracker.snapshot(fp)

        if snapshot.has_marker(OUTCOME_MARKER):
            record = self.state.read_outcome(fp)
            if record is not None:
                if record.total_chunks != total_chunks:
                    raise SessionStateMismatch(
                        "declared total chunk count differs from the session",
                        fingerprint=fp, declared=total_chunks, expected=record.total_chunks,
                    )
                return SessionStatus(fp, total_chunks, [], record.status)

        if snapshot.has_marker(MANIFEST_MARKER):
            manifest = self.state.read_manifest(fp)
            if manifest is not None and manifest.total_chunks != total_chunks:
                raise SessionStateMismatch(
                    "declared total chunk count differs from the session",
                    fingerprint=fp, declared=total_chunks, expected=manifest.total_chunks,
                )

        missing = snapshot.missing(total_chunks)
        return SessionStatus(fp, total_chunks, missing, "in_progress" if missing else "staged")

    # ------------------------------------------------------------------
    # sessie afgesloten / afgebroken
    # ------------------------------------------------------------------
    def _closed_session(
        self,
        fp: str,
        record: SessionOutcomeRecord,
        total_chunks: int,
        index: int,
        final_name: str,
        log,
    ) -> UploadOutcome:
        if record.status == "aborted" or record.total_chunks != total_chunks:
            log.warning("session_state_mismatch", recorded_status=record.status, expected=record.total_chunks)
            raise SessionStateMismatch(
                "session was aborted or declared a different total chunk count",
                fingerprint=fp, declared=total_chunks, expected=record.total_chunks,
            )
        if index != total_chunks - 1 or final_name != record.final_name:
            log.warning("session_already_merged", status=record.status, recorded_name=record.final_name)
            raise SessionAlreadyMerged(
                "fingerprint already merged; start a new upload session",
                fingerprint=fp, status=record.status, final_name=record.final_name,
            )
        # herhaalde melding van de laatste chunk: zelfde uitkomst teruggeven
        if not record.final:
            return self._finalize(fp, total_chunks, record.bucket, record.final_name)
        return self._observe(fp, record)

    def _check_total(self, fp: str, expected: Optional[int], declared: int, log) -> None:
        if expected is None or expected == declared:
            return
        log.warning("session_state_mismatch", expected=expected)
        self._abort(fp, expected)
        raise SessionStateMismatch(
            "declared total chunk count differs from the session",
            fingerprint=fp, declared=declared, expected=expected,
        )

    def _abort(self, fp: str, total_chunks: int) -> None:
        """Sessie is niet meer te vertrouwen: staging opruimen en fingerprint sluiten."""
        if not self.lock.try_claim(fp):
            # merge loopt al; die bepaalt de uitkomst
            return
        try:
            if self.state.read_outcome(fp) is not None:
                return
            self.state.write_outcome(fp, "aborted", total_chunks, "", "")
            chunks = [chunk_key(fp, i) for i in sorted(self.tracker.present_indices(fp))]
            if chunks:
                self.storage.delete_many(self.staging_bucket, chunks)
            logger.warning("session_aborted", fingerprint=fp, removed_chunks=len(chunks))
        finally:
            self._release(fp)

    def _reset_session(self, fp: str, log) -> None:
        """Ruim markers en achtergebleven chunks van een mislukte sessie op."""
        with self.lock.hold_local(fp):
            if not self.lock.try_claim(fp):
                raise MergeInProgress("session is being reset on another worker; retry", fingerprint=fp)
            try:
                record = self.state.read_outcome(fp)
                if record is None or record.status != "integrity_error":
                    # een andere aanvraag was ons voor
                    return
                chunks = [chunk_key(fp, i) for i in sorted(self.tracker.present_indices(fp))]
                if chunks:
                    self.storage.delete_many(self.staging_bucket, chunks)
                self.state.clear(fp, MANIFEST_MARKER)
                # outcome als laatste: zolang hij er staat kan de reset opnieuw
                self.state.clear(fp, OUTCOME_MARKER)
                log.info("session_restarted", removed_chunks=len(chunks))
            finally:
                self._release(fp)

    def _observe(self, fp: str, record: SessionOutcomeRecord) -> UploadOutcome:
        if record.status == "aborted":
            raise SessionStateMismatch(
                "session was aborted", fingerprint=fp, expected=record.total_chunks
            )
        if record.status == "verified":
            return UploadOutcome.verified()
        return UploadOutcome.integrity_error()

    # ------------------------------------------------------------------
    # merge + verificatie, maximaal één keer per fingerprint
    # ------------------------------------------------------------------
    def _finalize(self, fp: str, total_chunks: int, dest_bucket: str, final_name: str) -> UploadOutcome:
        with self.lock.hold_local(fp):
            record = self.state.read_outcome(fp)
            if record is not None and record.final:
                return self._observe(fp, record)

            if not self.lock.try_claim(fp):
                return self._await_outcome(fp)

            try:
                # opnieuw kijken: een andere worker kan net klaar zijn
                record = self.state.read_outcome(fp)
                if record is not None and record.final:
                    return self._observe(fp, record)

                if record is None:
                    missing = self.tracker.missing_indices(fp, total_chunks)
                    if missing:
                        return UploadOutcome.next(missing[0])
                    self.merger.merge(fp, total_chunks, dest_bucket, final_name)
                    record = self.state.write_outcome(fp, "merged", total_chunks, dest_bucket, final_name)

                return self._verify(fp, record)
            finally:
                self._release(fp)

    def _verify(self, fp: str, record: SessionOutcomeRecord) -> UploadOutcome:
        try:
            result = self.verifier.verify(record.bucket, record.final_name, fp)
            ok = result.ok
        except ObjectNotFound:
            logger.warning("merged_object_missing", fingerprint=fp, bucket=record.bucket, key=record.final_name)
            ok = False

        status = "verified" if ok else "integrity_error"
        self.state.write_outcome(fp, status, record.total_chunks, record.bucket, record.final_name)
        logger.info("session_complete", fingerprint=fp, status=status, bucket=record.bucket, key=record.final_name)
        return UploadOutcome.verified() if ok else UploadOutcome.integrity_error()

    def _await_outcome(self, fp: str) -> UploadOutcome:
        deadline = self._clock() + self.merge_wait_seconds
        while True:
            record = self.state.read_outcome(fp)
            if record is not None and record.final:
                return self._observe(fp, record)
            if self._clock() >= deadline:
                raise MergeInProgress("merge in progress on another worker; retry", fingerprint=fp)
            self._sleep(self.merge_poll_interval)

    def _release(self, fp: str) -> None:
        try:
            self.lock.release(fp)
        except StorageUnavailable as e:
            # claim verloopt vanzelf na de TTL
            logger.warning("merge_claim_release_failed", fingerprint=fp, error=e.message)
