from __future__ import annotations

import asyncio
import copy

import pytest
from conftest import VIDEO_BYTES, StubClient, StubThumbnailer, done_payload

from storyboard_video.blob_store import BlobStore, thumbnail_key, video_key
from storyboard_video.codec import BackupCodec
from storyboard_video.errors import InvalidRequestError, OperationError, UnrestorableReferenceError
from storyboard_video.handles import HandleRegistry
from storyboard_video.models import EphemeralReference, PortableReference, encode_data_uri
from storyboard_video.workspace import DEFAULT_VIDEO_PROMPT, StoryboardWorkspace

PROJECT = {
    "project_meta": {"title": "Cat Adventure", "logline": "A cat goes to Mars"},
    "storyboard_sequence": [
        {"kf_id": 1, "shot_type": "WS", "prompts": {"video_gen": "rocket launch", "image_gen": "rocket"}},
        {"kf_id": 2, "shot_type": "CU", "prompts": {"image_gen": "cat face"}},
        {"kf_id": 3, "shot_type": "MS", "assets": {"video_url": "https://cdn/3.mp4"}},
        {"kf_id": 4, "shot_type": "LS", "prompts": {"video_gen": "landing"}},
    ],
}

IMAGE_URI = encode_data_uri(b"\x89PNG-start", "image/png")


def _workspace(client, store, registry, **kwargs) -> StoryboardWorkspace:
    kwargs.setdefault("poll_interval", 0.001)
    kwargs.setdefault("max_attempts", 5)
    ws = StoryboardWorkspace(client=client, store=store, registry=registry, **kwargs)
    ws.load_project(copy.deepcopy(PROJECT))
    return ws


def test_build_request_uses_image_and_default_prompt(stub_client, store, registry) -> None:
    ws = _workspace(stub_client, store, registry)
    ws.images[1] = IMAGE_URI

    request = ws.build_request(1)

    assert request.prompt == DEFAULT_VIDEO_PROMPT
    assert request.start_frame is not None
    assert request.start_frame.mime_type == "image/png"
    assert request.start_frame.data == b"\x89PNG-start"


def test_build_request_prompt_only(stub_client, store, registry) -> None:
    ws = _workspace(stub_client, store, registry, model="standard", negative_prompt="blur")
    request = ws.build_request(0)
    assert request.prompt == "rocket launch"
    assert request.start_frame is None
    assert request.model == "veo-3.1-generate-preview"
    assert request.negative_prompt == "blur"
    assert ws.build_request(0, model="legacy").model == "veo-2.0-generate-001"


def test_build_request_unknown_shot(stub_client, store, registry) -> None:
    ws = _workspace(stub_client, store, registry)
    with pytest.raises(InvalidRequestError):
        ws.build_request(99)


async def test_shot_without_prompt_or_image_fails_fast(stub_client, store, registry) -> None:
    ws = _workspace(stub_client, store, registry)
    with pytest.raises(InvalidRequestError):
        await ws.generate_shot(2)
    assert stub_client.submitted == []
    assert ws.status(2).status == "error"


async def test_generate_shot_stores_and_tracks(stub_client, store, registry) -> None:
    seen = []
    ws = _workspace(stub_client, store, registry, thumbnailer=StubThumbnailer(),
                    on_status=lambda index, status: seen.append((index, status.status)))

    ref = await ws.generate_shot(0)

    assert isinstance(ref, EphemeralReference)
    assert ws.videos[0] == ref
    assert ws.status(0).status == "completed"
    assert seen[0] == (0, "generating")
    assert seen[-1] == (0, "completed")
    assert await store.get(video_key(0)) == VIDEO_BYTES
    assert await store.get(thumbnail_key(0)) is not None


async def test_regeneration_releases_superseded_handle(store, registry) -> None:
    client = StubClient([done_payload()])
    ws = _workspace(client, store, registry)

    first = await ws.generate_shot(0)
    second = await ws.generate_shot(0)

    assert first not in registry
    assert second in registry
    assert ws.videos[0] == second


async def test_new_request_supersedes_in_flight_job(store, registry) -> None:
    client = StubClient([{"name": "op1", "done": False}])
    ws = _workspace(client, store, registry, poll_interval=10.0, max_attempts=100)

    first = asyncio.create_task(ws.generate_shot(0))
    while client.poll_calls < 1:
        await asyncio.sleep(0)

    client.polls = [done_payload()]
    client.binary = b"second-video"
    ws.poll_interval = 0.001
    second_ref = await ws.generate_shot(0)
    first_ref = await asyncio.wait_for(first, timeout=1.0)

    assert first_ref is None
    assert registry.read(second_ref) == b"second-video"
    assert await store.get(video_key(0)) == b"second-video"
    assert ws.status(0).status == "completed"


async def test_cancel(store, registry) -> None:
    client = StubClient([{"name": "op1", "done": False}])
    ws = _workspace(client, store, registry, poll_interval=10.0)

    task = asyncio.create_task(ws.generate_shot(3))
    while client.poll_calls < 1:
        await asyncio.sleep(0)

    assert ws.cancel(3) is True
    assert await asyncio.wait_for(task, timeout=1.0) is None
    assert ws.status(3).status == "idle"
    assert 3 not in ws.videos
    assert ws.cancel(3) is False


async def test_generate_all_runs_in_batches(store, registry) -> None:
    in_flight = 0
    peak = 0

    class CountingClient(StubClient):
        async def submit(self, request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return await super().submit(request)

    client = CountingClient([done_payload()])
    ws = _workspace(client, store, registry)
    ws.images[1] = IMAGE_URI
    ws.update_video_prompt(2, "orbit")

    failures = await ws.generate_all(batch_size=2)

    assert failures == {}
    assert sorted(ws.videos) == [0, 1, 2, 3]
    assert isinstance(ws.videos[2], EphemeralReference)
    assert peak <= 2


async def test_generate_all_skips_existing_and_reports_failures(store, registry) -> None:
    client = StubClient([{"name": "op1", "done": True, "error": {"message": "quota exceeded"}}])
    ws = _workspace(client, store, registry)
    ws.seed_videos_from_assets()

    failures = await ws.generate_all()

    assert set(failures) == {0, 1, 3}
    assert isinstance(failures[0], OperationError)
    assert isinstance(failures[1], InvalidRequestError)
    assert ws.videos == {2: PortableReference.parse("https://cdn/3.mp4")}


def test_seed_videos_from_assets_only_when_empty(stub_client, store, registry) -> None:
    ws = _workspace(stub_client, store, registry)
    assert ws.seed_videos_from_assets() == 1
    assert ws.videos[2].value == "https://cdn/3.mp4"
    assert ws.seed_videos_from_assets() == 0


def test_save_video_url(stub_client, store, registry) -> None:
    ws = _workspace(stub_client, store, registry)
    ref = ws.save_video_url(1, "https://cdn/manual.mp4")
    assert ws.videos[1] == ref
    with pytest.raises(UnrestorableReferenceError):
        ws.save_video_url(1, "blob:abc")


async def test_load_local_videos(stub_client, store, registry) -> None:
    await store.put(video_key(3), b"persisted")
    ws = _workspace(stub_client, store, registry)
    assert await ws.load_local_videos() == 1
    assert registry.read(ws.videos[3]) == b"persisted"


async def test_workspace_file_round_trip(tmp_path, stub_client, store, registry) -> None:
    ws = _workspace(stub_client, store, registry)
    ws.images[0] = IMAGE_URI
    ws.save_video_url(1, "https://cdn/manual.mp4")
    ws.videos[3] = registry.create(b"local", "video/mp4")
    path = ws.save(tmp_path / "workspace.json")

    other = _workspace(stub_client, store, HandleRegistry())
    other.load(path)

    assert other.images == {0: IMAGE_URI}
    assert other.videos == {1: PortableReference.parse("https://cdn/manual.mp4")}
    assert other.shots[0]["kf_id"] == 1


async def test_backup_and_restore_into_new_session(tmp_path, stub_client, store, registry) -> None:
    ws = _workspace(stub_client, store, registry)
    ws.images[0] = IMAGE_URI
    await ws.generate_shot(0)
    ws.save_video_url(3, "https://cdn/4.mp4")

    codec = BackupCodec(registry)
    document = await codec.serialize(ws.project_state, ws.images, ws.videos)
    text = codec.to_json(document)
    ws.close()
    assert len(registry) == 0

    new_store_registry = HandleRegistry()
    restored_ws = _workspace(stub_client, BlobStore(tmp_path / "restored"), new_store_registry)
    new_codec = BackupCodec(new_store_registry)
    restored_ws.apply_restore(await new_codec.deserialize(new_codec.from_json(text)))

    assert new_store_registry.read(restored_ws.videos[0]) == VIDEO_BYTES
    assert restored_ws.videos[3] == PortableReference.parse("https://cdn/4.mp4")
    assert restored_ws.images == {0: IMAGE_URI}

    assert await restored_ws.persist_videos() == 1
    assert await restored_ws.store.get(video_key(0)) == VIDEO_BYTES
