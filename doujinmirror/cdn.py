#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Object storage for re-hosted images.

Both backends expose the same capability, ``await put(data, path) -> url``:
``R2Storage`` talks to Cloudflare R2 through the S3 API, ``LocalStorage``
writes below a directory that is served statically (development, tests).
"""

from __future__ import annotations

import asyncio
import io
import logging
import mimetypes
import pathlib
from typing import Optional

import boto3
from botocore.config import Config
from PIL import Image, UnidentifiedImageError

from .config import Settings

LOG = logging.getLogger("doujinmirror.cdn")

_PIL_CONTENT_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "AVIF": "image/avif",
    "BMP": "image/bmp",
}


def sniff_content_type(data: bytes, path: str = "") -> str:
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "").upper()
    except (UnidentifiedImageError, OSError, ValueError):
        fmt = ""
    if fmt in _PIL_CONTENT_TYPES:
        return _PIL_CONTENT_TYPES[fmt]
    guessed, _ = mimetypes.guess_type(path)
    return guessed or "application/octet-stream"


def _join_key(prefix: str, path: str) -> str:
    path = path.lstrip("/")
    return f"{prefix}/{path}" if prefix else path


class R2Storage:
    def __init__(
        self,
        account_id: str,
        access_key: str,
        secret_key: str,
        bucket: str,
        public_url: str,
        prefix: str = "",
    ):
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")
        self.prefix = prefix.strip("/")
        self._client = boto3.client(
            "s3",
            endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=Config(signature_version="s3v4", retries={"max_attempts": 3}),
        )

    def _put_sync(self, data: bytes, key: str) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=sniff_content_type(data, key),
            CacheControl="public, max-age=31536000",
        )

    async def put(self, data: bytes, path: str) -> str:
        key = _join_key(self.prefix, path)
        await asyncio.to_thread(self._put_sync, data, key)
        LOG.debug("Uploaded %d bytes to r2://%s/%s", len(data), self.bucket, key)
        return f"{self.public_url}/{key}"


class LocalStorage:
    def __init__(self, root: pathlib.Path, public_url: str, prefix: str = ""):
        self.root = pathlib.Path(root)
        self.public_url = public_url.rstrip("/")
        self.prefix = prefix.strip("/")

    def _write_sync(self, data: bytes, key: str) -> None:
        target = (self.root / key).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"Refusing to write outside the CDN root: {key}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def put(self, data: bytes, path: str) -> str:
        key = _join_key(self.prefix, path)
        await asyncio.to_thread(self._write_sync, data, key)
        return f"{self.public_url}/{key}"


def build_storage(settings: Settings, storage: Optional[object] = None):
    if storage is not None:
        return storage
    if settings.r2_configured:
        LOG.info("Using R2 bucket %s for uploads", settings.r2_bucket_name)
        return R2Storage(
            account_id=settings.r2_account_id or "",
            access_key=settings.r2_access_key_id or "",
            secret_key=settings.r2_secret_access_key or "",
            bucket=settings.r2_bucket_name,
            public_url=settings.r2_public_url or "",
            prefix=settings.cdn_prefix,
        )
    LOG.warning("R2 is not configured; storing uploads under %s", settings.local_cdn_dir)
    return LocalStorage(settings.local_cdn_dir, settings.local_cdn_url, settings.cdn_prefix)
