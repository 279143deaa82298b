# Services package for bigfile

from .storage import LocalStorage, ObjectStore, S3Storage, get_storage
from .upload_coordinator import UploadCoordinator, UploadOutcome

__all__ = [
    "LocalStorage",
    "ObjectStore",
    "S3Storage",
    "get_storage",
    "UploadCoordinator",
    "UploadOutcome",
]
