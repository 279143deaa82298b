# bigfile/schemas/objects.py
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class UploadedObjectOut(BaseModel):
    bucket: str
    key: str
    size: int
    content_type: str


class ObjectInfoOut(BaseModel):
    bucket: str
    key: str
    size: int
    etag: Optional[str] = None
    content_type: str
    last_modified: Optional[datetime] = None
