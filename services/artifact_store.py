# services/artifact_store.py
"""
Artifact storage for rendered videos and generated backgrounds.

`ArtifactStore` is the narrow interface the core depends on.
`LocalArtifactStore` keeps objects on disk with a JSON sidecar per
object holding its metadata; file I/O runs in a thread so it does not
block the event loop.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Protocol

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"
UPLOAD_DATE_KEY = "x-upload-date"


@dataclass(frozen=True)
class UploadResult:
    url: str
    etag: str


@dataclass(frozen=True)
class StoredArtifact:
    name: str
    size: int
    modified_at: datetime
    url: str
    metadata: dict = field(default_factory=dict)

    @property
    def uploaded_at(self) -> datetime:
        """Upload date from metadata when present, otherwise mtime."""
        raw = self.metadata.get(UPLOAD_DATE_KEY)
        if raw:
            try:
                parsed = datetime.fromisoformat(raw)
            except ValueError:
                return self.modified_at
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        return self.modified_at


class ArtifactStore(Protocol):
    async def upload(self, path: Path, name: str, metadata: dict) -> UploadResult: ...

    async def put_bytes(self, name: str, data: bytes, metadata: dict) -> UploadResult: ...

    async def exists(self, name: str) -> bool: ...

    async def list(self, prefix: str = "") -> list[StoredArtifact]: ...

    async def delete(self, name: str) -> None: ...

    def public_url(self, name: str) -> str: ...


def _md5(path: Path) -> str:
    digest = hashlib.md5()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class LocalArtifactStore:
    def __init__(self, root: str | Path, base_url: str) -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    # ── naming ──
    def _resolve(self, name: str) -> Path:
        pure = PurePosixPath(name)
        if not name or pure.is_absolute() or ".." in pure.parts or name.endswith(META_SUFFIX):
            raise ValueError(f"Invalid artifact name: {name!r}")
        return self.root.joinpath(*pure.parts)

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + META_SUFFIX)

    def public_url(self, name: str) -> str:
        return f"{self.base_url}/{name}"

    # ── writes ──
    def _write_meta(self, target: Path, metadata: dict) -> None:
        meta = {k.lower(): str(v) for k, v in metadata.items()}
        meta.setdefault(UPLOAD_DATE_KEY, datetime.now(timezone.utc).isoformat())
        self._meta_path(target).write_text(json.dumps(meta, indent=2), encoding="utf-8")

    def _upload_sync(self, source: Path, name: str, metadata: dict) -> UploadResult:
        target = self._resolve(name)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        self._write_meta(target, metadata)
        return UploadResult(url=self.public_url(name), etag=_md5(target))

    def _put_sync(self, name: str, data: bytes, metadata: dict) -> UploadResult:
        target = self._resolve(name)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        self._write_meta(target, metadata)
        return UploadResult(url=self.public_url(name), etag=hashlib.md5(data).hexdigest())

    async def upload(self, path: Path, name: str, metadata: dict) -> UploadResult:
        result = await asyncio.to_thread(self._upload_sync, Path(path), name, metadata)
        logger.info("Uploaded %s -> %s", path, result.url)
        return result

    async def put_bytes(self, name: str, data: bytes, metadata: dict) -> UploadResult:
        result = await asyncio.to_thread(self._put_sync, name, data, metadata)
        logger.info("Stored %s (%d bytes)", name, len(data))
        return result

    # ── reads ──
    async def exists(self, name: str) -> bool:
        return await asyncio.to_thread(self._resolve(name).is_file)

    def _list_sync(self, prefix: str) -> list[StoredArtifact]:
        if not self.root.exists():
            return []
        artifacts: list[StoredArtifact] = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.endswith(META_SUFFIX):
                continue
            name = path.relative_to(self.root).as_posix()
            if not name.startswith(prefix):
                continue
            stat = path.stat()
            meta_path = self._meta_path(path)
            metadata = json.loads(meta_path.read_text(encoding="utf-8")) if meta_path.exists() else {}
            artifacts.append(
                StoredArtifact(
                    name=name,
                    size=stat.st_size,
                    modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    url=self.public_url(name),
                    metadata=metadata,
                )
            )
        artifacts.sort(key=lambda a: a.modified_at, reverse=True)
        return artifacts

    async def list(self, prefix: str = "") -> list[StoredArtifact]:
        return await asyncio.to_thread(self._list_sync, prefix)

    def _delete_sync(self, name: str) -> None:
        target = self._resolve(name)
        target.unlink()
        self._meta_path(target).unlink(missing_ok=True)

    async def delete(self, name: str) -> None:
        await asyncio.to_thread(self._delete_sync, name)
        logger.info("Deleted artifact %s", name)
