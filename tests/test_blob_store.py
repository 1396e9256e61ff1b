from __future__ import annotations

import pytest

from storyboard_video.blob_store import BlobStore, thumbnail_key, video_key
from storyboard_video.errors import StorageError


async def test_put_get_roundtrip(store: BlobStore) -> None:
    await store.put("video_0", b"abc")
    assert await store.get("video_0") == b"abc"

    entry = await store.get_entry("video_0")
    assert entry is not None
    assert entry.id == "video_0"
    assert entry.created_at > 0


async def test_put_overwrites(store: BlobStore) -> None:
    await store.put("video_0", b"old")
    await store.put("video_0", b"new")
    assert await store.get("video_0") == b"new"
    assert await store.keys() == ["video_0"]


async def test_get_missing_returns_none(store: BlobStore) -> None:
    assert await store.get("nope") is None
    assert await store.get_entry("nope") is None


async def test_get_after_delete_is_not_found(store: BlobStore) -> None:
    await store.put("video_1", b"x")
    await store.delete("video_1")
    assert await store.get("video_1") is None


async def test_delete_never_inserted_does_not_raise(store: BlobStore) -> None:
    await store.delete("never-inserted")
    await store.delete("never-inserted")


async def test_clear_removes_everything(store: BlobStore) -> None:
    await store.put(video_key(0), b"v")
    await store.put(thumbnail_key(0), b"t")
    await store.clear()
    assert await store.keys() == []
    assert await store.get(video_key(0)) is None


async def test_persists_across_instances(tmp_path) -> None:
    await BlobStore(tmp_path).put("video_2", b"durable")
    assert await BlobStore(tmp_path).get("video_2") == b"durable"


async def test_ids_with_path_characters(store: BlobStore) -> None:
    await store.put("../escape/attempt", b"ok")
    assert await store.get("../escape/attempt") == b"ok"
    assert not (store.root.parent / "escape").exists()


async def test_resolve_ephemeral(store: BlobStore, registry) -> None:
    await store.put("video_3", b"payload")
    ref = await store.resolve_ephemeral("video_3", registry)
    assert ref is not None
    assert ref.url.startswith("blob:")
    assert registry.read(ref) == b"payload"
    assert await store.resolve_ephemeral("missing", registry) is None


async def test_corrupt_index_is_storage_error(store: BlobStore) -> None:
    store.root.mkdir(parents=True)
    (store.root / "index.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(StorageError):
        await store.get("video_0")


async def test_unwritable_root_is_storage_error(tmp_path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    store = BlobStore(blocker / "store")
    with pytest.raises(StorageError):
        await store.put("video_0", b"x")


def test_keys_helpers() -> None:
    assert video_key(4) == "video_4"
    assert thumbnail_key(4) == "thumbnail_4"
