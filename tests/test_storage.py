from __future__ import annotations

import io
from pathlib import Path

import pytest
from PIL import Image

from sunrise.services.image import ImageError, detect_image_type, process_image, validate_image_magic_bytes
from sunrise.services.storage import (
    DEFAULT_MAX_FILE_SIZE_MB,
    FileTooLargeError,
    LocalStorageProvider,
    S3StorageProvider,
    StorageError,
    StorageNotConfiguredError,
    UploadService,
    create_storage_provider,
    get_max_file_size,
    validate_storage_key,
)

from conftest import make_settings, png_with_dimensions


def _image_bytes(fmt: str = "PNG", size=(800, 400), mode: str = "RGB") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, size, color=(200, 100, 50) if mode == "RGB" else 1).save(buf, format=fmt)
    return buf.getvalue()


# -----------------
# Images
# -----------------

def test_detects_formats_from_magic_bytes():
    assert detect_image_type(_image_bytes("PNG")) == "image/png"
    assert detect_image_type(_image_bytes("JPEG")) == "image/jpeg"
    assert detect_image_type(_image_bytes("GIF", mode="P")) == "image/gif"
    assert detect_image_type(_image_bytes("WEBP")) == "image/webp"
    assert detect_image_type(b"%PDF-1.4 not an image") is None


def test_validate_magic_bytes():
    assert validate_image_magic_bytes(b"tiny").error == "File too small to be a valid image"
    bad = validate_image_magic_bytes(b"<html><body>nope</body></html>")
    assert not bad.valid
    assert bad.error == "Invalid or unsupported image format"
    ok = validate_image_magic_bytes(_image_bytes("JPEG"))
    assert ok.valid
    assert ok.detected_type == "image/jpeg"


def test_process_image_shrinks_and_keeps_aspect():
    out = process_image(_image_bytes("PNG", size=(1000, 500)))
    assert out.mime_type == "image/png"
    assert (out.width, out.height) == (500, 250)
    with Image.open(io.BytesIO(out.buffer)) as img:
        assert img.size == (500, 250)


def test_process_image_never_enlarges():
    out = process_image(_image_bytes("JPEG", size=(120, 80)))
    assert out.mime_type == "image/jpeg"
    assert (out.width, out.height) == (120, 80)
    assert out.extension == "jpg"


def test_gif_becomes_png():
    out = process_image(_image_bytes("GIF", size=(50, 50), mode="P"))
    assert out.mime_type == "image/png"
    assert out.extension == "png"


def test_process_image_refuses_decompression_bombs():
    # Rejected from the header alone; no pixel data is decoded.
    with pytest.raises(ImageError):
        process_image(png_with_dimensions(30000, 30000))
    with pytest.raises(ImageError, match="too large"):
        process_image(png_with_dimensions(6000, 6000))


# -----------------
# Storage keys / providers
# -----------------

@pytest.mark.parametrize("key", ["", "../x", "/abs", "a\\b", "a\0b"])
def test_rejects_unsafe_keys(key):
    with pytest.raises(StorageError):
        validate_storage_key(key)


def test_local_provider_roundtrip(tmp_path: Path):
    provider = LocalStorageProvider(tmp_path / "uploads")
    result = provider.upload("avatars/1/a.png", b"data", content_type="image/png")
    assert result.url == "/uploads/avatars/1/a.png"
    assert (tmp_path / "uploads" / "avatars" / "1" / "a.png").read_bytes() == b"data"

    provider.upload("avatars/1/b.png", b"more", content_type="image/png")
    assert provider.delete("avatars/1/a.png")
    # already gone still counts as deleted
    assert provider.delete("avatars/1/a.png")
    assert provider.delete_prefix("avatars/1/") == 1
    assert not (tmp_path / "uploads" / "avatars" / "1").exists()
    assert provider.delete_prefix("avatars/2/") == 0


class _FakeS3:
    def __init__(self):
        self.objects = {}

    def put_object(self, Bucket, Key, Body, **extra):
        self.objects[Key] = (Body, extra)

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)

    def get_paginator(self, name):
        client = self

        class _Pager:
            def paginate(self, Bucket, Prefix):
                yield {"Contents": [{"Key": k} for k in list(client.objects) if k.startswith(Prefix)]}

        return _Pager()

    def delete_objects(self, Bucket, Delete):
        for obj in Delete["Objects"]:
            self.objects.pop(obj["Key"], None)

    def generate_presigned_url(self, op, Params, ExpiresIn):
        return f"https://signed.example.com/{Params['Bucket']}/{Params['Key']}?op={op}&expires={ExpiresIn}"


def test_s3_provider_urls_and_prefix_delete():
    fake = _FakeS3()
    s3 = S3StorageProvider(bucket="b", region="eu-west-1", client=fake)
    result = s3.upload("avatars/1/a.png", b"x", content_type="image/png", metadata={"userId": 1})
    assert result.url == "https://b.s3.eu-west-1.amazonaws.com/avatars/1/a.png"
    assert fake.objects["avatars/1/a.png"][1] == {"ContentType": "image/png", "Metadata": {"userId": "1"}}
    s3.upload("avatars/1/b.png", b"y", content_type="image/png")
    assert s3.delete_prefix("avatars/1/") == 2
    assert fake.objects == {}

    custom = S3StorageProvider(bucket="b", endpoint="https://minio.local/", client=fake)
    assert custom.public_url("k") == "https://minio.local/b/k"
    cdn = S3StorageProvider(bucket="b", public_url_base="https://cdn.example.com", use_acl=True, client=fake)
    assert cdn.upload("k", b"z", content_type="image/png").url == "https://cdn.example.com/k"
    assert fake.objects["k"][1]["ACL"] == "public-read"


def test_s3_signed_url():
    s3 = S3StorageProvider(bucket="b", client=_FakeS3())
    assert s3.get_signed_url("avatars/1/a.png") == "https://signed.example.com/b/avatars/1/a.png?op=get_object&expires=3600"
    with pytest.raises(StorageError):
        s3.get_signed_url("../etc/passwd", 60)


def test_provider_selection(tmp_path: Path):
    assert create_storage_provider(make_settings(tmp_path, env="production"), public_dir=tmp_path) is None
    local = create_storage_provider(make_settings(tmp_path, env="development"), public_dir=tmp_path)
    assert isinstance(local, LocalStorageProvider)
    forced = create_storage_provider(make_settings(tmp_path, storage_provider="local"), public_dir=tmp_path)
    assert isinstance(forced, LocalStorageProvider)
    missing = create_storage_provider(make_settings(tmp_path, storage_provider="s3"), public_dir=tmp_path)
    assert missing is None
    unknown = create_storage_provider(make_settings(tmp_path, storage_provider="ftp"), public_dir=tmp_path)
    assert unknown is None


def test_max_file_size(tmp_path: Path):
    assert get_max_file_size(make_settings(tmp_path, max_file_size_mb="")) == DEFAULT_MAX_FILE_SIZE_MB * 1024 * 1024
    assert get_max_file_size(make_settings(tmp_path, max_file_size_mb="2")) == 2 * 1024 * 1024
    assert get_max_file_size(make_settings(tmp_path, max_file_size_mb="-3")) == DEFAULT_MAX_FILE_SIZE_MB * 1024 * 1024


# -----------------
# Upload service
# -----------------

def test_upload_avatar_processes_and_stores(tmp_path: Path):
    svc = UploadService(LocalStorageProvider(tmp_path), max_file_size=1024 * 1024)
    out = svc.upload_avatar(_image_bytes("PNG", size=(900, 900)), user_id=5)
    assert out.key.startswith("avatars/5/")
    assert out.key.endswith(".png")
    assert (out.width, out.height) == (500, 500)
    assert (tmp_path / out.key).exists()

    assert svc.delete_file(out.url + "?v=123")
    assert not (tmp_path / out.key).exists()


def test_upload_avatar_rejects_oversized(tmp_path: Path):
    svc = UploadService(LocalStorageProvider(tmp_path), max_file_size=10)
    with pytest.raises(StorageError):
        svc.upload_avatar(_image_bytes(), user_id=1)


def test_disabled_service_refuses(tmp_path: Path):
    svc = UploadService(None, max_file_size=1024)
    assert not svc.enabled
    with pytest.raises(StorageError):
        svc.upload_avatar(b"x", user_id=1)
    with pytest.raises(StorageError):
        svc.delete_by_prefix("avatars/1/")


def test_upload_errors_are_typed(tmp_path: Path):
    svc = UploadService(LocalStorageProvider(tmp_path), max_file_size=10)
    with pytest.raises(FileTooLargeError):
        svc.upload_avatar(_image_bytes(), user_id=1)
    with pytest.raises(StorageNotConfiguredError):
        UploadService(None, max_file_size=1024).upload_avatar(b"x", user_id=1)
