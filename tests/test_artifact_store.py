# tests/test_artifact_store.py
from __future__ import annotations

import hashlib
import json

import pytest

from services.artifact_store import LocalArtifactStore


@pytest.fixture
def store(tmp_path):
    return LocalArtifactStore(tmp_path / "artifacts", "http://cdn.local/artifacts/")


@pytest.mark.asyncio
async def test_put_list_and_delete(store):
    result = await store.put_bytes("videos/a.mp4", b"abc", {"City": "Lima"})

    assert result.url == "http://cdn.local/artifacts/videos/a.mp4"
    assert result.etag == hashlib.md5(b"abc").hexdigest()
    assert await store.exists("videos/a.mp4")

    [artifact] = await store.list("videos/")
    assert artifact.name == "videos/a.mp4"
    assert artifact.size == 3
    assert artifact.metadata["city"] == "Lima"
    assert "x-upload-date" in artifact.metadata

    await store.delete("videos/a.mp4")
    assert not await store.exists("videos/a.mp4")
    assert await store.list() == []


@pytest.mark.asyncio
async def test_upload_copies_file_and_writes_sidecar(store, tmp_path):
    source = tmp_path / "render.mp4"
    source.write_bytes(b"frames")

    result = await store.upload(source, "videos/render.mp4", {"temperature": 21})

    assert result.etag == hashlib.md5(b"frames").hexdigest()
    sidecar = store.root / "videos" / "render.mp4.meta.json"
    assert json.loads(sidecar.read_text())["temperature"] == "21"
    assert source.exists()


@pytest.mark.asyncio
async def test_sidecars_are_not_listed(store):
    await store.put_bytes("x.png", b"1", {})
    names = [a.name for a in await store.list()]
    assert names == ["x.png"]


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["", "../escape.mp4", "/etc/passwd", "a.mp4.meta.json"])
async def test_invalid_names_rejected(store, name):
    with pytest.raises(ValueError):
        await store.put_bytes(name, b"x", {})


def test_uploaded_at_falls_back_to_mtime(store):
    from datetime import datetime, timezone

    from services.artifact_store import StoredArtifact

    mtime = datetime(2026, 1, 1, tzinfo=timezone.utc)
    artifact = StoredArtifact(name="a", size=1, modified_at=mtime, url="u", metadata={"x-upload-date": "garbage"})
    assert artifact.uploaded_at == mtime
    assert StoredArtifact(name="a", size=1, modified_at=mtime, url="u").uploaded_at == mtime
