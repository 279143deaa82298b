# bigfile/services/storage.py
import logging
import mimetypes
import os
import shutil
import uuid
from abc import ABC, abstractmethod
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from bigfile.aws.s3_errors import (
    error_code,
    is_not_found,
    is_precondition_failed,
    is_transient_s3,
)
from bigfile.core.settings import Settings, settings as default_settings
from bigfile.services.errors import (
    BucketNotEmpty,
    ComposeError,
    InvalidRequest,
    ObjectNotFound,
    StorageUnavailable,
)

logger = logging.getLogger(__name__)

# S3 multipart limieten
MAX_COMPOSE_PARTS = 10_000
_DELETE_BATCH = 1000


@dataclass(frozen=True)
class ObjectStat:
    bucket: str
    key: str
    size: int
    etag: Optional[str]
    content_type: str
    last_modified: Optional[datetime]


# =========================
# Abstracte Storage
# =========================
class ObjectStore(ABC):
    """
    Bucket/key object store zoals de chunked upload hem nodig heeft.

    Alle methodes zijn atomair per aanroep; een ``put`` is direct zichtbaar
    voor een volgende ``list``/``get``.
    """

    @abstractmethod
    def put(self, bucket: str, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        """Schrijf (of overschrijf) een object."""

    @abstractmethod
    def put_if_absent(self, bucket: str, key: str, data: bytes) -> bool:
        """Schrijf alleen als de key nog niet bestaat. False als hij al bestond."""

    @abstractmethod
    def get(self, bucket: str, key: str) -> BinaryIO:
        """Open een leesbare stream; de caller sluit hem."""

    @abstractmethod
    def list(self, bucket: str, prefix: str = "") -> List[str]:
        """Alle keys (recursief) onder een prefix."""

    @abstractmethod
    def stat(self, bucket: str, key: str) -> ObjectStat:
        ...

    @abstractmethod
    def delete(self, bucket: str, key: str) -> None:
        ...

    @abstractmethod
    def delete_many(self, bucket: str, keys: Sequence[str]) -> List[str]:
        """Verwijder meerdere keys; retourneert de keys die níet verwijderd konden worden."""

    @abstractmethod
    def compose(self, dest_bucket: str, dest_key: str, source_bucket: str, source_keys: Sequence[str]) -> None:
        """Server-side concatenatie van ``source_keys`` (in volgorde) naar ``dest_key``."""

    @abstractmethod
    def bucket_exists(self, bucket: str) -> bool:
        ...

    @abstractmethod
    def make_bucket(self, bucket: str) -> None:
        ...

    @abstractmethod
    def list_buckets(self) -> List[str]:
        ...

    @abstractmethod
    def delete_bucket(self, bucket: str) -> None:
        ...

    @abstractmethod
    def presigned_get_url(self, bucket: str, key: str, expires: int) -> str:
        ...

    def create_bucket(self, bucket: str) -> None:
        """Idempotent: maak de bucket alleen aan als hij nog niet bestaat."""
        if not self.bucket_exists(bucket):
            self.make_bucket(bucket)

    def read_bytes(self, bucket: str, key: str) -> bytes:
        with closing(self.get(bucket, key)) as stream:
            return stream.read()

    def exists(self, bucket: str, key: str) -> bool:
        try:
            self.stat(bucket, key)
            return True
        except ObjectNotFound:
            return False


# =========================
# Local Storage
# =========================
class LocalStorage(ObjectStore):
    """Lokale bestandsopslag: ``root/<bucket>/<key>``. Voor dev en tests."""

    def __init__(self, base_path: str = "data"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        # tijdelijke bestanden buiten de buckets, bucketnamen beginnen nooit met '.'
        self._tmp_dir = self.base_path / ".tmp"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)

    def _bucket_path(self, bucket: str) -> Path:
        if not bucket or bucket.startswith(".") or "/" in bucket:
            raise InvalidRequest(f"invalid bucket name: {bucket!r}")
        return self.base_path / bucket

    def _full_path(self, bucket: str, key: str) -> Path:
        if not key or key.startswith("/") or ".." in key.split("/"):
            raise InvalidRequest(f"invalid object key: {key!r}")
        return self._bucket_path(bucket) / key

    def _require_bucket(self, bucket: str) -> Path:
        root = self._bucket_path(bucket)
        if not root.is_dir():
            raise ObjectNotFound(f"bucket not found: {bucket}", bucket=bucket)
        return root

    def _tmp_file(self) -> Path:
        return self._tmp_dir / uuid.uuid4().hex

    @contextmanager
    def _io(self, bucket: str, key: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except FileNotFoundError as e:
            raise ObjectNotFound(f"object not found: {bucket}/{key}", bucket=bucket, key=key) from e
        except OSError as e:
            logger.error(f"Local storage error voor {bucket}/{key}: {e}")
            raise StorageUnavailable(f"local storage error: {e}", cause=e, bucket=bucket) from e

    def _prune_empty_dirs(self, path: Path, stop: Path) -> None:
        parent = path.parent
        while parent != stop and parent.is_dir():
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    def put(self, bucket: str, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        self._require_bucket(bucket)
        dst = self._full_path(bucket, key)
        tmp = self._tmp_file()
        with self._io(bucket, key):
            dst.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, dst)
        logger.debug(f"Bestand opgeslagen: {dst}")

    def put_if_absent(self, bucket: str, key: str, data: bytes) -> bool:
        self._require_bucket(bucket)
        dst = self._full_path(bucket, key)
        tmp = self._tmp_file()
        with self._io(bucket, key):
            dst.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            try:
                # hard link faalt atomair als dst al bestaat
                os.link(tmp, dst)
                return True
            except FileExistsError:
                return False
            finally:
                tmp.unlink(missing_ok=True)

    def get(self, bucket: str, key: str) -> BinaryIO:
        self._require_bucket(bucket)
        path = self._full_path(bucket, key)
        with self._io(bucket, key):
            if not path.is_file():
                raise FileNotFoundError(str(path))
            return open(path, "rb")

    def list(self, bucket: str, prefix: str = "") -> List[str]:
        root = self._require_bucket(bucket)
        keys = []
        # os.walk slaat mappen over die tijdens het lopen verdwijnen (opruimen na merge)
        for dirpath, _dirnames, filenames in os.walk(root):
            for name in filenames:
                key = (Path(dirpath) / name).relative_to(root).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    def stat(self, bucket: str, key: str) -> ObjectStat:
        self._require_bucket(bucket)
        path = self._full_path(bucket, key)
        with self._io(bucket, key):
            if not path.is_file():
                raise FileNotFoundError(str(path))
            st = path.stat()
        ctype, _ = mimetypes.guess_type(key)
        return ObjectStat(
            bucket=bucket,
            key=key,
            size=st.st_size,
            etag=None,
            content_type=ctype or "application/octet-stream",
            last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )

    def delete(self, bucket: str, key: str) -> None:
        root = self._require_bucket(bucket)
        path = self._full_path(bucket, key)
        with self._io(bucket, key):
            path.unlink(missing_ok=True)
            self._prune_empty_dirs(path, root)

    def delete_many(self, bucket: str, keys: Sequence[str]) -> List[str]:
        failed = []
        for key in keys:
            try:
                self.delete(bucket, key)
            except (StorageUnavailable, ObjectNotFound) as e:
                logger.error(f"Object deletion error: {key}: {e}")
                failed.append(key)
        return failed

    def compose(self, dest_bucket: str, dest_key: str, source_bucket: str, source_keys: Sequence[str]) -> None:
        if not source_keys:
            raise ComposeError("compose needs at least one source", bucket=dest_bucket, key=dest_key)
        self._require_bucket(source_bucket)
        self._require_bucket(dest_bucket)
        dst = self._full_path(dest_bucket, dest_key)
        tmp = self._tmp_file()
        try:
            with open(tmp, "wb") as out:
                for src_key in source_keys:
                    with open(self._full_path(source_bucket, src_key), "rb") as src:
                        shutil.copyfileobj(src, out)
            dst.parent.mkdir(parents=True, exist_ok=True)
            os.replace(tmp, dst)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise ComposeError(f"compose failed: {e}", bucket=dest_bucket, key=dest_key) from e

    def bucket_exists(self, bucket: str) -> bool:
        return self._bucket_path(bucket).is_dir()

    def make_bucket(self, bucket: str) -> None:
        with self._io(bucket):
            self._bucket_path(bucket).mkdir(parents=True, exist_ok=True)

    def list_buckets(self) -> List[str]:
        return sorted(p.name for p in self.base_path.iterdir() if p.is_dir() and not p.name.startswith("."))

    def delete_bucket(self, bucket: str) -> None:
        root = self._require_bucket(bucket)
        if any(root.iterdir()):
            raise BucketNotEmpty(f"bucket not empty: {bucket}", bucket=bucket)
        with self._io(bucket):
            root.rmdir()

    def presigned_get_url(self, bucket: str, key: str, expires: int) -> str:
        # geen signing lokaal: direct file-URL (zoals put_bytes in lokale modus)
        return f"file://{self._full_path(bucket, key).resolve()}"


# =========================
# S3 Storage
# =========================
class S3Storage(ObjectStore):
    """S3 / MinIO implementatie via boto3."""

    def __init__(self, client, region: Optional[str] = None):
        self.s3_client = client
        self.region = region or client.meta.region_name

    @contextmanager
    def _call(self, op: str, bucket: str, key: Optional[str] = None) -> Iterator[None]:
        """
        Vertaal botocore fouten:
        - 404/NoSuchKey/NoSuchBucket -> ObjectNotFound
        - netwerk/throttling/5xx     -> StorageUnavailable (retryable)
        - overige ClientErrors gaan ongewijzigd door (zie map_s3_client_error)
        """
        try:
            yield
        except ClientError as e:
            if is_not_found(e):
                raise ObjectNotFound(f"not found: {bucket}/{key or ''}", bucket=bucket, key=key) from e
            if is_transient_s3(e):
                logger.warning("S3 %s failed (code=%s) bucket=%s key=%s", op, error_code(e), bucket, key)
                raise StorageUnavailable(f"s3 {op} failed: {error_code(e)}", cause=e, bucket=bucket) from e
            raise
        except BotoCoreError as e:
            logger.warning("S3 %s failed (%s) bucket=%s key=%s", op, type(e).__name__, bucket, key)
            raise StorageUnavailable(f"s3 {op} failed: {e}", cause=e, bucket=bucket) from e

    def put(self, bucket: str, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        extra = {"ContentType": content_type} if content_type else {}
        with self._call("put_object", bucket, key):
            self.s3_client.put_object(Bucket=bucket, Key=key, Body=data, **extra)

    def put_if_absent(self, bucket: str, key: str, data: bytes) -> bool:
        try:
            with self._call("put_object", bucket, key):
                self.s3_client.put_object(Bucket=bucket, Key=key, Body=data, IfNoneMatch="*")
            return True
        except ClientError as e:
            if is_precondition_failed(e):
                return False
            raise

    def get(self, bucket: str, key: str) -> BinaryIO:
        with self._call("get_object", bucket, key):
            return self.s3_client.get_object(Bucket=bucket, Key=key)["Body"]

    def list(self, bucket: str, prefix: str = "") -> List[str]:
        keys: List[str] = []
        with self._call("list_objects_v2", bucket, prefix):
            paginator = self.s3_client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []) or [])
        return keys

    def stat(self, bucket: str, key: str) -> ObjectStat:
        with self._call("head_object", bucket, key):
            r = self.s3_client.head_object(Bucket=bucket, Key=key)
        return ObjectStat(
            bucket=bucket,
            key=key,
            size=int(r.get("ContentLength", 0)),
            etag=(r.get("ETag") or "").strip('"') or None,  # S3 geeft quotes terug
            content_type=r.get("ContentType") or "application/octet-stream",
            last_modified=r.get("LastModified"),
        )

    def delete(self, bucket: str, key: str) -> None:
        with self._call("delete_object", bucket, key):
            self.s3_client.delete_object(Bucket=bucket, Key=key)

    def delete_many(self, bucket: str, keys: Sequence[str]) -> List[str]:
        failed: List[str] = []
        for start in range(0, len(keys), _DELETE_BATCH):
            batch = keys[start:start + _DELETE_BATCH]
            with self._call("delete_objects", bucket):
                r = self.s3_client.delete_objects(
                    Bucket=bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
            for err in r.get("Errors", []) or []:
                logger.error("Object deletion error: %s: %s", err.get("Key"), err.get("Message"))
                failed.append(err.get("Key"))
        return failed

    def compose(self, dest_bucket: str, dest_key: str, source_bucket: str, source_keys: Sequence[str]) -> None:
        if not source_keys:
            raise ComposeError("compose needs at least one source", bucket=dest_bucket, key=dest_key)
        if len(source_keys) > MAX_COMPOSE_PARTS:
            raise ComposeError(
                f"compose supports at most {MAX_COMPOSE_PARTS} sources",
                bucket=dest_bucket, key=dest_key,
            )

        # 1 bron: gewone server-side copy, geen minimum partgrootte
        if len(source_keys) == 1:
            try:
                self.s3_client.copy_object(
                    Bucket=dest_bucket,
                    Key=dest_key,
                    CopySource={"Bucket": source_bucket, "Key": source_keys[0]},
                )
            except (ClientError, BotoCoreError) as e:
                raise ComposeError(f"compose failed: {e}", bucket=dest_bucket, key=dest_key) from e
            return

        # n bronnen: multipart upload opgebouwd uit UploadPartCopy parts
        upload_id = None
        try:
            upload_id = self.s3_client.create_multipart_upload(Bucket=dest_bucket, Key=dest_key)["UploadId"]
            parts = []
            for number, src_key in enumerate(source_keys, start=1):
                r = self.s3_client.upload_part_copy(
                    Bucket=dest_bucket,
                    Key=dest_key,
                    UploadId=upload_id,
                    PartNumber=number,
                    CopySource={"Bucket": source_bucket, "Key": src_key},
                )
                parts.append({"ETag": r["CopyPartResult"]["ETag"], "PartNumber": number})
            self.s3_client.complete_multipart_upload(
                Bucket=dest_bucket,
                Key=dest_key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except (ClientError, BotoCoreError) as e:
            if upload_id:
                self._abort_quietly(dest_bucket, dest_key, upload_id)
            raise ComposeError(f"compose failed: {e}", bucket=dest_bucket, key=dest_key) from e

    def _abort_quietly(self, bucket: str, key: str, upload_id: str) -> None:
        try:
            self.s3_client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
        except (ClientError, BotoCoreError) as e:
            logger.warning("abort_multipart_upload failed bucket=%s key=%s: %s", bucket, key, e)

    def bucket_exists(self, bucket: str) -> bool:
        try:
            with self._call("head_bucket", bucket):
                self.s3_client.head_bucket(Bucket=bucket)
            return True
        except ObjectNotFound:
            return False

    def make_bucket(self, bucket: str) -> None:
        try:
            with self._call("create_bucket", bucket):
                self.s3_client.create_bucket(Bucket=bucket, **self._location_config())
        except ClientError as e:
            # race met een andere worker
            if error_code(e) != "BucketAlreadyOwnedByYou":
                raise

    def _location_config(self) -> dict:
        # us-east-1 is de default en weigert een expliciete LocationConstraint
        if not self.region or self.region == "us-east-1":
            return {}
        return {"CreateBucketConfiguration": {"LocationConstraint": self.region}}

    def list_buckets(self) -> List[str]:
        with self._call("list_buckets", ""):
            r = self.s3_client.list_buckets()
        return [b["Name"] for b in r.get("Buckets", [])]

    def delete_bucket(self, bucket: str) -> None:
        try:
            with self._call("delete_bucket", bucket):
                self.s3_client.delete_bucket(Bucket=bucket)
        except ClientError as e:
            if error_code(e) == "BucketNotEmpty":
                raise BucketNotEmpty(f"bucket not empty: {bucket}", bucket=bucket) from e
            raise

    def presigned_get_url(self, bucket: str, key: str, expires: int) -> str:
        with self._call("generate_presigned_url", bucket, key):
            return self.s3_client.generate_presigned_url(
                "get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=expires,
            )


# =========================
# Factory
# =========================
_storage: Optional[ObjectStore] = None


def build_storage(cfg: Optional[Settings] = None) -> ObjectStore:
    """
    Factory functie om de juiste storage backend te retourneren.
    """
    cfg = cfg or default_settings
    backend = (cfg.STORAGE_BACKEND or "local").lower()

    if backend == "s3":
        from bigfile.infra.s3_client import build_s3_client  # lazy: boto3 client pas bij gebruik

        logger.info("S3 storage region=%s endpoint=%s", cfg.S3_REGION, cfg.S3_ENDPOINT_URL or "aws")
        return S3Storage(build_s3_client(cfg), region=cfg.S3_REGION)
    elif backend == "local":
        return LocalStorage(base_path=cfg.LOCAL_STORAGE_ROOT)
    else:
        raise ValueError(f"Onbekende storage backend: {backend}")


def get_storage() -> ObjectStore:
    global _storage
    if _storage is None:
        _storage = build_storage()
    return _storage
