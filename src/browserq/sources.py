"""Resolve upload sources into local files a browser can attach."""

from __future__ import annotations

import os
import re
import urllib.error
import urllib.request
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import urlparse

from browserq.constants import DEFAULT_MAX_FILE_BYTES
from browserq.object_storage import ObjectNotFound

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class SourceResolutionError(RuntimeError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"source_unavailable: {detail}")


def max_file_bytes() -> int:
    return int(os.getenv("BROWSERQ_MAX_FILE_BYTES", str(DEFAULT_MAX_FILE_BYTES)))


def safe_filename(name: str, fallback: str = "upload.bin") -> str:
    base = PurePosixPath(name.replace("\\", "/")).name
    cleaned = _UNSAFE_CHARS.sub("_", base).lstrip(".")
    return cleaned or fallback


def file_specs(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Upload entries of a payload; a payload without ``files`` is a single entry."""
    files = payload.get("files")
    if files is None:
        return [payload]
    return list(files)


def resolve_files(
    payload: dict[str, Any],
    workdir: Path,
    storage: Any = None,
    *,
    limit: int | None = None,
    timeout_seconds: float = 30.0,
) -> list[Path]:
    workdir.mkdir(parents=True, exist_ok=True)
    cap = max_file_bytes() if limit is None else limit
    paths = []
    for index, spec in enumerate(file_specs(payload)):
        path = resolve_file(spec, workdir / str(index), storage, limit=cap, timeout_seconds=timeout_seconds)
        paths.append(path)
    return paths


def resolve_file(
    spec: dict[str, Any],
    workdir: Path,
    storage: Any = None,
    *,
    limit: int,
    timeout_seconds: float = 30.0,
) -> Path:
    source = spec.get("fileSource", "s3")
    if source == "local":
        return _resolve_local(str(spec.get("filePath") or ""), limit)
    workdir.mkdir(parents=True, exist_ok=True)
    if source == "s3":
        key = str(spec.get("s3Key") or "")
        data = _fetch_object(key, spec.get("s3Bucket"), storage)
        name = spec.get("fileName") or PurePosixPath(key).name
    elif source == "url":
        url = str(spec.get("fileUrl") or "")
        data = _fetch_url(url, limit, timeout_seconds)
        name = spec.get("fileName") or PurePosixPath(urlparse(url).path).name
    else:
        raise SourceResolutionError(f"unknown file source {source!r}")
    _check_size(len(data), limit, name or "download")
    target = workdir / safe_filename(str(name or ""))
    target.write_bytes(data)
    return target


def _resolve_local(file_path: str, limit: int) -> Path:
    path = Path(file_path)
    if not file_path or not path.is_file():
        raise SourceResolutionError(f"local file not found: {file_path}")
    _check_size(path.stat().st_size, limit, path.name)
    return path


def _fetch_object(key: str, bucket: Any, storage: Any) -> bytes:
    if storage is None:
        raise SourceResolutionError("object storage is not configured")
    try:
        return storage.download(key, bucket=bucket or None)
    except (ObjectNotFound, ValueError) as exc:
        raise SourceResolutionError(f"object not found: {key}") from exc
    except Exception as exc:
        raise SourceResolutionError(f"object download failed for {key}: {exc}") from exc


def _fetch_url(url: str, limit: int, timeout_seconds: float) -> bytes:
    if urlparse(url).scheme not in {"http", "https"}:
        raise SourceResolutionError(f"unsupported url: {url}")
    req = urllib.request.Request(url, method="GET")
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:
            if int(resp.status) < 200 or int(resp.status) >= 400:
                raise SourceResolutionError(f"{url} returned {resp.status}")
            data = resp.read(limit + 1)
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        raise SourceResolutionError(f"download failed for {url}: {exc}") from exc
    if len(data) > limit:
        raise SourceResolutionError(f"{url} exceeds {limit} bytes")
    return data


def _check_size(size: int, limit: int, name: str) -> None:
    if size <= 0:
        raise SourceResolutionError(f"{name} is empty")
    if size > limit:
        raise SourceResolutionError(f"{name} is {size} bytes, limit is {limit}")
