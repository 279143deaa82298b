# bigfile/routers/objects.py
"""Directe doorgeefluiken naar de object store (single-shot upload, download, buckets)."""
from contextlib import closing
from datetime import date
from pathlib import PurePath
from typing import Iterator, List
from uuid import uuid4

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import PlainTextResponse, StreamingResponse

from bigfile.core.settings import settings
from bigfile.schemas.objects import ObjectInfoOut, UploadedObjectOut
from bigfile.services.errors import ObjectNotFound
from bigfile.services.storage import ObjectStore, get_storage

router = APIRouter(prefix="/minio", tags=["objects"])

_STREAM_BLOCK = 64 * 1024


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _safe_filename(name: str) -> str:
    """Maak bestandsnaam URL/FS-safe."""
    name = PurePath(name or "").name  # strip pad
    return "".join(ch if ch.isalnum() or ch in (".", "-", "_") else "_" for ch in name) or "upload"


def build_object_name(filename: str, rename: bool, today: date) -> str:
    """
    ``YYYY-MM-DD/<bestandsnaam>`` of, bij rename, ``YYYY-MM-DD/<uuid>.<ext>``.
    """
    safe = _safe_filename(filename)
    if not rename:
        return f"{today.isoformat()}/{safe}"
    ext = PurePath(safe).suffix
    return f"{today.isoformat()}/{uuid4().hex}{ext}"


def _iter_stream(stream) -> Iterator[bytes]:
    with closing(stream):
        for block in iter(lambda: stream.read(_STREAM_BLOCK), b""):
            yield block


# -----------------------------------------------------------------------------
# Objecten
# -----------------------------------------------------------------------------
@router.post("/upload", response_model=UploadedObjectOut)
def upload_file(
    file: UploadFile = File(...),
    rename: bool = Query(False),
    storage: ObjectStore = Depends(get_storage),
) -> UploadedObjectOut:
    bucket = settings.S3_BUCKET
    key = build_object_name(file.filename or "", rename, date.today())
    content_type = file.content_type or "application/octet-stream"
    data = file.file.read()

    storage.create_bucket(bucket)
    storage.put(bucket, key, data, content_type=content_type)
    return UploadedObjectOut(bucket=bucket, key=key, size=len(data), content_type=content_type)


@router.get("/download")
def download(
    file_name: str = Query(..., alias="fileName"),
    storage: ObjectStore = Depends(get_storage),
) -> StreamingResponse:
    stream = storage.get(settings.S3_BUCKET, file_name)
    download_name = PurePath(file_name).name
    return StreamingResponse(
        _iter_stream(stream),
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{download_name}"'},
    )


@router.get("/getFiles", response_model=List[str])
def get_all_files(
    bucket: str = Query(...),
    storage: ObjectStore = Depends(get_storage),
) -> List[str]:
    return storage.list(bucket)


@router.delete("/deleteFile")
def delete_file(
    bucket: str = Query(...),
    file_name: str = Query(..., alias="fileName"),
    storage: ObjectStore = Depends(get_storage),
) -> dict:
    storage.delete(bucket, file_name)
    return {"deleted": file_name, "bucket": bucket}


@router.get("/getObject", response_model=ObjectInfoOut)
def get_object(
    bucket: str = Query(...),
    object_name: str = Query(..., alias="objectName"),
    storage: ObjectStore = Depends(get_storage),
) -> ObjectInfoOut:
    st = storage.stat(bucket, object_name)
    return ObjectInfoOut(
        bucket=st.bucket,
        key=st.key,
        size=st.size,
        etag=st.etag,
        content_type=st.content_type,
        last_modified=st.last_modified,
    )


@router.get("/getPresignedObjectUrl", response_class=PlainTextResponse)
def get_presigned_object_url(
    bucket: str = Query(...),
    object_name: str = Query(..., alias="objectName"),
    expires: int = Query(..., gt=0, le=7 * 24 * 3600),  # S3 max: 7 dagen
    storage: ObjectStore = Depends(get_storage),
) -> PlainTextResponse:
    # S3 tekent ook voor niet-bestaande keys
    if not storage.exists(bucket, object_name):
        raise ObjectNotFound(f"object not found: {bucket}/{object_name}", bucket=bucket, key=object_name)
    return PlainTextResponse(storage.presigned_get_url(bucket, object_name, expires))


# -----------------------------------------------------------------------------
# Buckets
# -----------------------------------------------------------------------------
@router.get("/listBuckets", response_model=List[str])
def list_buckets(storage: ObjectStore = Depends(get_storage)) -> List[str]:
    return storage.list_buckets()


@router.post("/createBucket")
def create_bucket(
    bucket: str = Query(...),
    storage: ObjectStore = Depends(get_storage),
) -> dict:
    storage.create_bucket(bucket)
    return {"bucket": bucket, "status": "ok"}


@router.delete("/deleteBucket")
def delete_bucket(
    bucket: str = Query(...),
    storage: ObjectStore = Depends(get_storage),
) -> dict:
    storage.delete_bucket(bucket)
    return {"bucket": bucket, "deleted": True}
