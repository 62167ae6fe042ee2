"""
Object storage for rendered output.

Uploads bytes to an S3-compatible bucket (Cloudflare R2 by default) and
returns the public URL of the stored object.
"""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timezone
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "")
R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ENDPOINT = os.getenv("R2_ENDPOINT") or (
    f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com" if R2_ACCOUNT_ID else None
)

CONTENT_TYPES = {"png": "image/png", "mp4": "video/mp4"}


class StorageError(Exception): ...


_client = None
_client_lock = threading.Lock()


def get_client():
    global _client
    with _client_lock:
        if _client is None:
            _client = boto3.client(
                "s3",
                endpoint_url=R2_ENDPOINT,
                aws_access_key_id=R2_ACCESS_KEY_ID or None,
                aws_secret_access_key=R2_SECRET_ACCESS_KEY or None,
                region_name="auto",
            )
        return _client


def render_key(record_id: str, extension: str, now: Optional[datetime] = None) -> str:
    """renders/YYYY/MM/<record>_<epoch millis>.<ext>"""
    now = now or datetime.now(timezone.utc)
    millis = int(now.timestamp() * 1000)
    return f"renders/{now.year:04d}/{now.month:02d}/{record_id}_{millis}.{extension}"


def public_url(key: str) -> str:
    base = R2_PUBLIC_URL.rstrip("/")
    if base:
        return f"{base}/{key}"
    return f"{(R2_ENDPOINT or '').rstrip('/')}/{R2_BUCKET_NAME}/{key}"


def upload_render(data: bytes, key: str, content_type: str, client=None) -> str:
    if not R2_BUCKET_NAME:
        raise StorageError("R2_BUCKET_NAME is not configured")
    client = client or get_client()
    try:
        client.put_object(Bucket=R2_BUCKET_NAME, Key=key, Body=data, ContentType=content_type)
    except (BotoCoreError, ClientError) as exc:
        raise StorageError(f"upload of {key} failed: {exc}") from exc
    url = public_url(key)
    logger.info("Uploaded %s (%d bytes) -> %s", key, len(data), url)
    return url


__all__ = [
    "CONTENT_TYPES",
    "StorageError",
    "get_client",
    "public_url",
    "render_key",
    "upload_render",
]
