from __future__ import annotations

import asyncio
import re
from pathlib import Path, PurePosixPath
from typing import Protocol

_UNSAFE_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._-]+")


class BlobStore(Protocol):
    async def put(self, path: str, data: bytes) -> str:
        ...

    async def get(self, path: str) -> bytes:
        ...


def normalize_blob_path(path: str) -> str:
    """Turn a logical blob path into a safe relative key.

    Segments are restricted to ``[A-Za-z0-9._-]`` and ``.``/``..`` are rejected,
    so keys can never escape the store root.
    """
    segments: list[str] = []
    for raw in PurePosixPath(path.strip().lstrip("/")).parts:
        segment = _UNSAFE_SEGMENT_RE.sub("_", raw).strip("_")
        if not segment or segment in {".", ".."}:
            raise ValueError(f"invalid blob path segment in {path!r}")
        segments.append(segment)
    if not segments:
        raise ValueError("blob path must not be empty")
    return "/".join(segments)


class LocalBlobStore:
    """Filesystem blob store rooted at ``root``."""

    def __init__(self, root: str | Path, *, create_dirs: bool = True) -> None:
        self._root = Path(root).resolve()
        if create_dirs:
            self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        return self._root / normalize_blob_path(path)

    async def put(self, path: str, data: bytes) -> str:
        key = normalize_blob_path(path)
        target = self._root / key
        await asyncio.to_thread(_write_bytes, target, data)
        return key

    async def get(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise FileNotFoundError(path)
        return await asyncio.to_thread(target.read_bytes)


def _write_bytes(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_name(target.name + ".tmp")
    tmp.write_bytes(data)
    tmp.replace(target)
