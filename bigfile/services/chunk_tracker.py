# bigfile/services/chunk_tracker.py
from dataclasses import dataclass, field
from typing import FrozenSet, List

from bigfile.services.errors import ObjectNotFound
from bigfile.services.storage import ObjectStore


def chunk_prefix(fingerprint: str) -> str:
    return f"{fingerprint}/"


def chunk_key(fingerprint: str, index: int) -> str:
    # staging/<fingerprint>/<index>
    return f"{fingerprint}/{index}"


def _parse_index(name: str):
    if name.isascii() and name.isdigit() and str(int(name)) == name:
        return int(name)
    return None


@dataclass(frozen=True)
class StagingSnapshot:
    """Eén listing van ``fingerprint/``: chunk-indices plus eventuele markers."""

    fingerprint: str
    indices: FrozenSet[int] = field(default_factory=frozenset)
    markers: FrozenSet[str] = field(default_factory=frozenset)

    def missing(self, total_chunks: int) -> List[int]:
        return [i for i in range(total_chunks) if i not in self.indices]

    def has_marker(self, name: str) -> bool:
        return name in self.markers


class ChunkTracker:
    """Leidt de voortgang van een sessie af uit wat er in de staging bucket staat."""

    def __init__(self, storage: ObjectStore, staging_bucket: str):
        self.storage = storage
        self.staging_bucket = staging_bucket

    def snapshot(self, fingerprint: str) -> StagingSnapshot:
        prefix = chunk_prefix(fingerprint)
        try:
            keys = self.storage.list(self.staging_bucket, prefix)
        except ObjectNotFound:
            # staging bucket bestaat nog niet: niets ontvangen
            keys = []

        indices = set()
        markers = set()
        for key in keys:
            tail = key[len(prefix):]
            index = _parse_index(tail)
            if index is not None:
                indices.add(index)
            elif tail.startswith("."):
                markers.add(tail)
        return StagingSnapshot(fingerprint, frozenset(indices), frozenset(markers))

    def present_indices(self, fingerprint: str) -> FrozenSet[int]:
        return self.snapshot(fingerprint).indices

    def missing_indices(self, fingerprint: str, total_chunks: int) -> List[int]:
        """Oplopende indices in ``[0, total_chunks)`` die nog niet in staging staan."""
        return self.snapshot(fingerprint).missing(total_chunks)
