"""Object storage for upload sources and screenshots.

An S3-compatible bucket is used when ``BROWSERQ_S3_BUCKET`` is set; otherwise
objects are kept in a directory under the queue home.
"""

from __future__ import annotations

import os
import secrets
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any

from browserq.storage import home_dir


class ConfigurationError(RuntimeError):
    """Incomplete or contradictory environment configuration."""


class ObjectNotFound(LookupError):
    pass


@dataclass(frozen=True)
class StoredObject:
    key: str
    bucket: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "bucket": self.bucket, "url": self.url}


def artifact_key(prefix: str, extension: str = "png") -> str:
    """Build a unique key such as ``screenshots/form-1700000000000-a1b2c3d4.png``."""
    return f"screenshots/{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4)}.{extension}"


def _check_key(key: str) -> str:
    parts = PurePosixPath(key).parts
    if not key or key.startswith("/") or any(part in {"..", "."} for part in parts):
        raise ValueError(f"Invalid object key: {key!r}")
    return key


def _check_bucket(bucket: str) -> str:
    if not bucket or bucket in {".", ".."} or "/" in bucket or "\\" in bucket:
        raise ValueError(f"Invalid bucket name: {bucket!r}")
    return bucket


class S3ObjectStorage:
    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: str | None = None,
        region: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self.endpoint_url = endpoint_url.rstrip("/") if endpoint_url else None
        if client is None:
            import boto3
            from botocore.config import Config

            session = boto3.Session(
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                region_name=region,
            )
            # Path-style addressing keeps MinIO and other compatible endpoints working.
            client = session.client(
                "s3",
                endpoint_url=self.endpoint_url,
                config=Config(s3={"addressing_style": "path"}),
            )
        self.client = client

    def url_for(self, key: str, bucket: str | None = None) -> str:
        target = bucket or self.bucket
        if self.endpoint_url:
            return f"{self.endpoint_url}/{target}/{key}"
        return f"s3://{target}/{key}"

    def upload(self, key: str, data: bytes, *, content_type: str = "application/octet-stream") -> StoredObject:
        _check_key(key)
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        return StoredObject(key=key, bucket=self.bucket, url=self.url_for(key))

    def download(self, key: str, *, bucket: str | None = None) -> bytes:
        _check_key(key)
        target = bucket or self.bucket
        try:
            response = self.client.get_object(Bucket=target, Key=key)
        except Exception as exc:
            code = getattr(exc, "response", {}).get("Error", {}).get("Code", "")
            if code in {"NoSuchKey", "404", "NotFound"}:
                raise ObjectNotFound(f"s3://{target}/{key}") from exc
            raise
        return response["Body"].read()

    def presigned_url(self, key: str, *, expires_in: int = 3600) -> str:
        _check_key(key)
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def delete(self, key: str) -> None:
        _check_key(key)
        self.client.delete_object(Bucket=self.bucket, Key=key)

    def list_keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(item["Key"] for item in page.get("Contents", []))
        return keys


class DirectoryObjectStorage:
    def __init__(self, root: Path, *, bucket: str = "local") -> None:
        self.root = root
        self.bucket = bucket

    def _path(self, key: str, bucket: str | None = None) -> Path:
        return self.root / _check_bucket(bucket or self.bucket) / _check_key(key)

    def url_for(self, key: str, bucket: str | None = None) -> str:
        return self._path(key, bucket).resolve().as_uri()

    def upload(self, key: str, data: bytes, *, content_type: str = "application/octet-stream") -> StoredObject:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return StoredObject(key=key, bucket=self.bucket, url=self.url_for(key))

    def download(self, key: str, *, bucket: str | None = None) -> bytes:
        path = self._path(key, bucket)
        if not path.is_file():
            raise ObjectNotFound(str(path))
        return path.read_bytes()

    def presigned_url(self, key: str, *, expires_in: int = 3600) -> str:
        return self.url_for(key)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def list_keys(self, prefix: str = "") -> list[str]:
        base = self.root / self.bucket
        if not base.exists():
            return []
        keys = [path.relative_to(base).as_posix() for path in base.rglob("*") if path.is_file()]
        return sorted(key for key in keys if key.startswith(prefix))


def object_storage_from_env(root: Path | None = None) -> S3ObjectStorage | DirectoryObjectStorage:
    bucket = os.getenv("BROWSERQ_S3_BUCKET", "").strip()
    if not bucket:
        base = root if root is not None else home_dir()
        return DirectoryObjectStorage(base / "objects")
    access_key = os.getenv("BROWSERQ_S3_ACCESS_KEY_ID", "").strip()
    secret_key = os.getenv("BROWSERQ_S3_SECRET_ACCESS_KEY", "").strip()
    if not access_key or not secret_key:
        raise ConfigurationError(
            f"BROWSERQ_S3_BUCKET={bucket} requires BROWSERQ_S3_ACCESS_KEY_ID and "
            "BROWSERQ_S3_SECRET_ACCESS_KEY"
        )
    return S3ObjectStorage(
        bucket,
        endpoint_url=os.getenv("BROWSERQ_S3_ENDPOINT", "").strip() or None,
        region=os.getenv("BROWSERQ_S3_REGION", "us-east-1"),
        access_key_id=access_key,
        secret_access_key=secret_key,
    )
