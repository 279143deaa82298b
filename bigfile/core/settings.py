# bigfile/core/settings.py
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # --- Storage ---
    STORAGE_BACKEND: str = "local"  # s3 | local
    LOCAL_STORAGE_ROOT: str = "./.local_storage"

    S3_ENDPOINT_URL: Optional[str] = None  # bv. http://minio:9000, leeg = AWS
    S3_REGION: str = "eu-west-1"
    S3_ACCESS_KEY: Optional[str] = None
    S3_SECRET_KEY: Optional[str] = None
    S3_BUCKET: str = "bigfile"
    STAGING_BUCKET: str = "temp"

    # --- Chunked upload ---
    FINGERPRINT_ALGORITHM: str = "md5"
    VERIFY_BLOCK_SIZE: int = 1024 * 1024
    MAX_CHUNK_MB: int = 64
    MERGE_WAIT_SECONDS: float = 30.0
    MERGE_POLL_INTERVAL: float = 0.25
    MERGE_CLAIM_TTL_SECONDS: int = 15 * 60
    CLEANUP_RETRY_ATTEMPTS: int = 3

    # --- HTTP ---
    ALLOWED_ORIGINS: list[str] = ["*"]
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json | console

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def max_chunk_bytes(self) -> int:
        return self.MAX_CHUNK_MB * 1024 * 1024


settings = Settings()  # leest .env
