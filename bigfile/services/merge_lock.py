# bigfile/services/merge_lock.py
"""
Per-fingerprint mutual exclusion rond de overgang "alles staat in staging" -> merge.

Twee lagen:
- ``KeyedLocks``: threading locks per fingerprint binnen één worker proces;
- ``MergeLock.try_claim``: een ``.merging`` marker via put-if-absent in de
  staging namespace, zodat ook workers in andere processen elkaar uitsluiten.
"""
from __future__ import annotations

import os
import socket
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

import structlog
from pydantic import BaseModel, ValidationError

from bigfile.services.errors import ObjectNotFound
from bigfile.services.session_state import MERGE_CLAIM_MARKER, marker_key
from bigfile.services.storage import ObjectStore

logger = structlog.get_logger(__name__)


class KeyedLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class MergeClaimRecord(BaseModel):
    owner: str
    claimed_at: float


class MergeLock:
    def __init__(
        self,
        storage: ObjectStore,
        staging_bucket: str,
        claim_ttl_seconds: float = 15 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.staging_bucket = staging_bucket
        self.claim_ttl_seconds = claim_ttl_seconds
        self._clock = clock
        self._local = KeyedLocks()
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    def hold_local(self, fingerprint: str):
        return self._local.hold(fingerprint)

    def _claim_key(self, fingerprint: str) -> str:
        return marker_key(fingerprint, MERGE_CLAIM_MARKER)

    def _put_claim(self, fingerprint: str) -> bool:
        record = MergeClaimRecord(owner=self.owner, claimed_at=self._clock())
        return self.storage.put_if_absent(
            self.staging_bucket,
            self._claim_key(fingerprint),
            record.model_dump_json().encode("utf-8"),
        )

    def _read_claim(self, fingerprint: str) -> Optional[MergeClaimRecord]:
        try:
            raw = self.storage.read_bytes(self.staging_bucket, self._claim_key(fingerprint))
        except ObjectNotFound:
            return None
        try:
            return MergeClaimRecord.model_validate_json(raw)
        except ValidationError:
            # onleesbare claim telt als verlopen
            return MergeClaimRecord(owner="unknown", claimed_at=0.0)

    def try_claim(self, fingerprint: str) -> bool:
        """True als deze worker de merge mag uitvoeren."""
        if self._put_claim(fingerprint):
            return True

        current = self._read_claim(fingerprint)
        if current is None:
            # claim net vrijgegeven; één nieuwe poging
            return self._put_claim(fingerprint)

        age = self._clock() - current.claimed_at
        if age > self.claim_ttl_seconds:
            logger.warning(
                "merge_claim_stale",
                fingerprint=fingerprint,
                owner=current.owner,
                age_seconds=round(age, 1),
            )
            self.storage.delete(self.staging_bucket, self._claim_key(fingerprint))
            return self._put_claim(fingerprint)
        return False

    def release(self, fingerprint: str) -> None:
        self.storage.delete(self.staging_bucket, self._claim_key(fingerprint))
