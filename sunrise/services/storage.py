from __future__ import annotations

import datetime as dt
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlsplit

import boto3
from botocore.config import Config

from sunrise.services.image import process_image

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE_MB = 5
LOCAL_BASE_URL = "/uploads"


class StorageError(RuntimeError):
    pass


class StorageNotConfiguredError(StorageError):
    pass


class FileTooLargeError(StorageError):
    pass


def validate_storage_key(key: str) -> None:
    if not key:
        raise StorageError("Storage key must not be empty")
    if ".." in key:
        raise StorageError("Storage key must not contain '..'")
    if key.startswith("/") or key.startswith("\\"):
        raise StorageError("Storage key must be relative")
    if "\0" in key:
        raise StorageError("Storage key must not contain null bytes")
    if "\\" in key:
        raise StorageError("Storage key must not contain backslashes")


@dataclass(frozen=True)
class UploadResult:
    key: str
    url: str
    size: int


class StorageProvider:
    name = "base"

    def upload(self, key: str, data: bytes, *, content_type: str, metadata: Optional[Dict[str, str]] = None) -> UploadResult:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    def public_url(self, key: str) -> str:
        raise NotImplementedError


class LocalStorageProvider(StorageProvider):
    """Writes under ``<public_dir>/uploads`` and serves from ``/uploads``."""

    name = "local"

    def __init__(self, root: Path, *, base_url: str = LOCAL_BASE_URL) -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        validate_storage_key(key)
        return self.root / key

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def upload(self, key: str, data: bytes, *, content_type: str, metadata: Optional[Dict[str, str]] = None) -> UploadResult:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
        return UploadResult(key=key, url=self.public_url(key), size=len(data))

    def delete(self, key: str) -> bool:
        # Deleting a file that is already gone counts as success.
        self._path(key).unlink(missing_ok=True)
        return True

    def delete_prefix(self, prefix: str) -> int:
        base = self._path(prefix.rstrip("/"))
        if not base.exists():
            return 0
        count = 0
        for p in sorted(base.rglob("*"), reverse=True):
            if p.is_file():
                p.unlink()
                count += 1
            elif p.is_dir():
                p.rmdir()
        base.rmdir()
        return count


class S3StorageProvider(StorageProvider):
    """S3 or any S3-compatible endpoint (path-style addressing when an endpoint is set)."""

    name = "s3"

    def __init__(
        self,
        *,
        bucket: str,
        region: str = "us-east-1",
        access_key_id: str = "",
        secret_access_key: str = "",
        endpoint: str = "",
        public_url_base: str = "",
        use_acl: bool = False,
        client=None,
    ) -> None:
        self.bucket = bucket
        self.region = region or "us-east-1"
        self.endpoint = endpoint.rstrip("/")
        self.public_url_base = public_url_base.rstrip("/")
        self.use_acl = use_acl
        if client is None:
            kwargs = dict(region_name=self.region)
            if access_key_id and secret_access_key:
                kwargs["aws_access_key_id"] = access_key_id
                kwargs["aws_secret_access_key"] = secret_access_key
            if self.endpoint:
                kwargs["endpoint_url"] = self.endpoint
                kwargs["config"] = Config(s3={"addressing_style": "path"})
            client = boto3.client("s3", **kwargs)
        self._client = client

    def public_url(self, key: str) -> str:
        if self.public_url_base:
            return f"{self.public_url_base}/{key}"
        if self.endpoint:
            return f"{self.endpoint}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def upload(self, key: str, data: bytes, *, content_type: str, metadata: Optional[Dict[str, str]] = None) -> UploadResult:
        validate_storage_key(key)
        extra: Dict[str, object] = {"ContentType": content_type}
        if metadata:
            extra["Metadata"] = {k: str(v) for k, v in metadata.items()}
        if self.use_acl:
            extra["ACL"] = "public-read"
        self._client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        return UploadResult(key=key, url=self.public_url(key), size=len(data))

    def delete(self, key: str) -> bool:
        validate_storage_key(key)
        self._client.delete_object(Bucket=self.bucket, Key=key)
        return True

    def delete_prefix(self, prefix: str) -> int:
        validate_storage_key(prefix)
        count = 0
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys: List[Dict[str, str]] = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
            if not keys:
                continue
            self._client.delete_objects(Bucket=self.bucket, Delete={"Objects": keys, "Quiet": True})
            count += len(keys)
        return count

    def get_signed_url(self, key: str, expires_in: int = 3600) -> str:
        validate_storage_key(key)
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=int(expires_in),
        )


def _s3_configured(settings) -> bool:
    return bool(settings.s3_bucket and settings.s3_access_key_id and settings.s3_secret_access_key)


def _s3_from_settings(settings) -> S3StorageProvider:
    return S3StorageProvider(
        bucket=settings.s3_bucket,
        region=settings.s3_region,
        access_key_id=settings.s3_access_key_id,
        secret_access_key=settings.s3_secret_access_key,
        endpoint=settings.s3_endpoint,
        public_url_base=settings.s3_public_url_base,
        use_acl=settings.s3_use_acl,
    )


def create_storage_provider(settings, *, public_dir: Path) -> Optional[StorageProvider]:
    """Pick the storage backend.

    An explicit STORAGE_PROVIDER wins; otherwise S3 when credentials are set,
    local disk in development, and nothing elsewhere.
    """
    explicit = settings.storage_provider
    if explicit:
        if explicit == "s3":
            if not _s3_configured(settings):
                logger.error("STORAGE_PROVIDER=s3 but S3_BUCKET/S3 credentials are missing")
                return None
            return _s3_from_settings(settings)
        if explicit == "local":
            return LocalStorageProvider(public_dir / "uploads")
        logger.error("Unknown storage provider", extra={"meta": {"provider": explicit}})
        return None

    if _s3_configured(settings):
        return _s3_from_settings(settings)
    if settings.is_development:
        return LocalStorageProvider(public_dir / "uploads")
    return None


def get_max_file_size(settings) -> int:
    """Max upload size in bytes (MAX_FILE_SIZE_MB, default 5)."""
    raw = settings.max_file_size_mb
    try:
        mb = int(raw)
    except (TypeError, ValueError):
        mb = 0
    if mb <= 0:
        mb = DEFAULT_MAX_FILE_SIZE_MB
    return mb * 1024 * 1024


@dataclass(frozen=True)
class AvatarUpload:
    key: str
    url: str
    size: int
    width: int
    height: int


class UploadService:
    """Avatar upload pipeline on top of the configured provider."""

    def __init__(self, provider: Optional[StorageProvider], *, max_file_size: int) -> None:
        self.provider = provider
        self.max_file_size = int(max_file_size)
        self._warned = False
        if provider is None:
            self._warn_disabled()

    def _warn_disabled(self) -> None:
        if not self._warned:
            self._warned = True
            logger.warning("Storage not configured - file uploads disabled")

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    @property
    def max_file_size_mb(self) -> int:
        return round(self.max_file_size / (1024 * 1024))

    def _require_provider(self) -> StorageProvider:
        if self.provider is None:
            self._warn_disabled()
            raise StorageNotConfiguredError("Storage is not configured")
        return self.provider

    def upload_avatar(self, data: bytes, *, user_id: int) -> AvatarUpload:
        provider = self._require_provider()
        if len(data) > self.max_file_size:
            raise FileTooLargeError(f"File size exceeds maximum of {self.max_file_size_mb} MB")

        processed = process_image(data)
        key = f"avatars/{user_id}/{uuid.uuid4().hex[:8]}.{processed.extension}"
        result = provider.upload(
            key,
            processed.buffer,
            content_type=processed.mime_type,
            metadata={"userId": str(user_id), "uploadedAt": dt.datetime.now(dt.timezone.utc).isoformat()},
        )
        logger.info(
            "Avatar uploaded",
            extra={"meta": {"userId": user_id, "key": key, "size": result.size, "provider": provider.name}},
        )
        return AvatarUpload(
            key=result.key,
            url=result.url,
            size=result.size,
            width=processed.width,
            height=processed.height,
        )

    def delete_file(self, key_or_url: str) -> bool:
        provider = self._require_provider()
        key = key_or_url
        if key_or_url.startswith(("http://", "https://")):
            key = urlsplit(key_or_url).path.lstrip("/")
        elif key_or_url.startswith(LOCAL_BASE_URL + "/"):
            key = key_or_url[len(LOCAL_BASE_URL) + 1 :]
        key = key.split("?", 1)[0]
        return provider.delete(key)

    def delete_by_prefix(self, prefix: str) -> int:
        provider = self._require_provider()
        count = provider.delete_prefix(prefix)
        logger.info("Deleted files by prefix", extra={"meta": {"prefix": prefix, "count": count}})
        return count
