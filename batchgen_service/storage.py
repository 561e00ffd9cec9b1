"""
Cloudflare R2 (S3-compatible) storage for generated images and thumbnails.

All calls here are blocking (boto3, requests); async callers run them via
`asyncio.to_thread`.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional, Tuple
from urllib.parse import urljoin

import boto3
import requests
from botocore.client import Config as BotoConfig

from . import config
from .errors import PersistenceError, StorageNotConfigured

logger = logging.getLogger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


def download_image(url: str, timeout_seconds: int = 30) -> Tuple[bytes, str]:
    """Fetch an image and return `(bytes, content_type)`."""
    resp = requests.get(url, timeout=(5, timeout_seconds))
    resp.raise_for_status()
    content_type = resp.headers.get("Content-Type", "").split(";")[0].strip().lower()
    return resp.content, content_type


class R2Storage:
    def __init__(self, settings: Optional[config.Settings] = None, client=None) -> None:
        self.settings = settings or config.get_settings()
        self._client = client

    def _get_s3_client(self):
        if self._client is not None:
            return self._client
        if not self.settings.storage_configured:
            raise StorageNotConfigured("R2 configuration is incomplete; check env vars.")
        session = boto3.session.Session()
        self._client = session.client(
            service_name="s3",
            aws_access_key_id=self.settings.r2_access_key_id,
            aws_secret_access_key=self.settings.r2_secret_access_key,
            endpoint_url=self.settings.r2_endpoint,
            config=BotoConfig(signature_version="s3v4"),
        )
        return self._client

    def public_url(self, key: str) -> str:
        if self.settings.r2_public_base_url:
            return urljoin(self.settings.r2_public_base_url.rstrip("/") + "/", key)
        # Fallback: virtual-hosted-style may not be available; presigned URLs are safer
        client = self._get_s3_client()
        return client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.settings.r2_bucket_name, "Key": key},
            ExpiresIn=3600,
        )

    def put_bytes(self, key: str, data: bytes, content_type: str) -> str:
        client = self._get_s3_client()
        client.put_object(
            Bucket=self.settings.r2_bucket_name,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        return self.public_url(key)

    def copy_from_url(self, source_url: str, key_prefix: str) -> str:
        """
        Download `source_url` and store it under `key_prefix/<uuid>.<ext>`.

        Only PNG, JPEG and WebP payloads are accepted.
        """
        data, content_type = download_image(source_url, self.settings.request_timeout_seconds)
        extension = CONTENT_TYPE_EXTENSIONS.get(content_type)
        if extension is None:
            raise PersistenceError(f"Unsupported file type: {content_type or 'unknown'}")

        key = f"{key_prefix.strip('/')}/{uuid.uuid4()}.{extension}"
        url = self.put_bytes(key, data, content_type)
        logger.info("Stored %s (%d bytes) at %s", source_url, len(data), key)
        return url
