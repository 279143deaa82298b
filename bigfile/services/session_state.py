# bigfile/services/session_state.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ValidationError

from bigfile.services.errors import ObjectNotFound, StorageUnavailable
from bigfile.services.storage import ObjectStore

MANIFEST_MARKER = ".manifest"
OUTCOME_MARKER = ".outcome"
MERGE_CLAIM_MARKER = ".merging"

OutcomeStatus = Literal["merged", "verified", "integrity_error", "aborted"]


def marker_key(fingerprint: str, marker: str) -> str:
    return f"{fingerprint}/{marker}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManifest(BaseModel):
    total_chunks: int
    created_at: datetime


class SessionOutcomeRecord(BaseModel):
    # merged = compose gelukt, verificatie nog niet afgerond
    # aborted = sessie afgebroken na een gewijzigd totaal aantal chunks
    status: OutcomeStatus
    total_chunks: int
    bucket: str
    final_name: str
    updated_at: datetime

    @property
    def final(self) -> bool:
        return self.status != "merged"


class SessionState:
    """Manifest- en outcome-markers naast de chunks in de staging namespace."""

    def __init__(self, storage: ObjectStore, staging_bucket: str):
        self.storage = storage
        self.staging_bucket = staging_bucket

    def _read(self, fingerprint: str, marker: str, model):
        try:
            raw = self.storage.read_bytes(self.staging_bucket, marker_key(fingerprint, marker))
        except ObjectNotFound:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            raise StorageUnavailable(
                f"corrupt session marker {marker}", cause=e, fingerprint=fingerprint
            ) from e

    def read_manifest(self, fingerprint: str) -> Optional[SessionManifest]:
        return self._read(fingerprint, MANIFEST_MARKER, SessionManifest)

    def ensure_manifest(self, fingerprint: str, total_chunks: int) -> SessionManifest:
        """Schrijf het manifest als eerste; bij een race wint de eerste schrijver."""
        manifest = SessionManifest(total_chunks=total_chunks, created_at=_utcnow())
        created = self.storage.put_if_absent(
            self.staging_bucket,
            marker_key(fingerprint, MANIFEST_MARKER),
            manifest.model_dump_json().encode("utf-8"),
        )
        if created:
            return manifest
        existing = self.read_manifest(fingerprint)
        return existing or manifest

    def clear(self, fingerprint: str, marker: str) -> None:
        self.storage.delete(self.staging_bucket, marker_key(fingerprint, marker))

    def read_outcome(self, fingerprint: str) -> Optional[SessionOutcomeRecord]:
        return self._read(fingerprint, OUTCOME_MARKER, SessionOutcomeRecord)

    def write_outcome(
        self,
        fingerprint: str,
        status: OutcomeStatus,
        total_chunks: int,
        bucket: str,
        final_name: str,
    ) -> SessionOutcomeRecord:
        record = SessionOutcomeRecord(
            status=status,
            total_chunks=total_chunks,
            bucket=bucket,
            final_name=final_name,
            updated_at=_utcnow(),
        )
        self.storage.put(
            self.staging_bucket,
            marker_key(fingerprint, OUTCOME_MARKER),
            record.model_dump_json().encode("utf-8"),
            content_type="application/json",
        )
        return record
