# bigfile/infra/s3_client.py
from typing import Optional

import boto3
from botocore.config import Config

from bigfile.core.settings import Settings, settings as default_settings


def build_s3_client(cfg: Optional[Settings] = None):
    """S3 client voor AWS of een S3-compatible endpoint (MinIO)."""
    cfg = cfg or default_settings
    boto_cfg = Config(
        region_name=cfg.S3_REGION,
        signature_version="s3v4",
        retries={"max_attempts": 5, "mode": "standard"},
        connect_timeout=3,
        read_timeout=30,
        # MinIO kent geen virtual-hosted buckets
        s3={"addressing_style": "path" if cfg.S3_ENDPOINT_URL else "auto"},
    )
    kwargs = {}
    if cfg.S3_ENDPOINT_URL:
        kwargs["endpoint_url"] = cfg.S3_ENDPOINT_URL
    if cfg.S3_ACCESS_KEY and cfg.S3_SECRET_KEY:
        kwargs["aws_access_key_id"] = cfg.S3_ACCESS_KEY
        kwargs["aws_secret_access_key"] = cfg.S3_SECRET_KEY
    return boto3.client("s3", config=boto_cfg, **kwargs)
