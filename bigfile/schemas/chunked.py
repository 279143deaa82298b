# bigfile/schemas/chunked.py
from typing import List, Optional

from pydantic import BaseModel


class SessionStatusOut(BaseModel):
    fingerprint: str
    total_chunks: int
    missing: List[int]
    next_index: Optional[int]
    state: str  # in_progress | staged | merged | verified | integrity_error | aborted
