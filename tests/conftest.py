"""Shared fixtures: stub remote client, blob store and handle registry."""

from __future__ import annotations

from pathlib import Path

import pytest

from storyboard_video.blob_store import BlobStore
from storyboard_video.errors import DecodeError
from storyboard_video.handles import HandleRegistry
from storyboard_video.models import GenerationRequest, Operation

VIDEO_URI = "https://x/y.mp4"
VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42fake-video-payload"


def done_payload(uri: str = VIDEO_URI) -> dict:
    return {
        "name": "op1",
        "done": True,
        "response": {"generatedVideos": [{"video": {"uri": uri}}]},
    }


class StubClient:
    """In-memory stand-in for ``VeoClient``.

    ``polls`` is consumed in order; each item is a payload dict or an
    exception to raise. Once exhausted, the last item repeats.
    """

    def __init__(self, polls: list, name: str = "op1", binary: bytes = VIDEO_BYTES) -> None:
        self.polls = list(polls)
        self.name = name
        self.binary = binary
        self.submitted: list[GenerationRequest] = []
        self.poll_calls = 0
        self.fetched: list[str] = []
        self.fetch_error: Exception | None = None

    async def submit(self, request: GenerationRequest) -> str:
        self.submitted.append(request)
        return self.name

    async def poll(self, operation_name: str) -> Operation:
        self.poll_calls += 1
        item = self.polls.pop(0) if len(self.polls) > 1 else self.polls[0]
        if isinstance(item, Exception):
            raise item
        return Operation.from_payload(item, fallback_name=operation_name)

    async def fetch_binary(self, locator: str) -> bytes:
        self.fetched.append(locator)
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.binary


class StubThumbnailer:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    async def extract(self, video: bytes) -> bytes:
        self.calls += 1
        if self.fail:
            raise DecodeError("cannot decode")
        return b"jpeg:" + video[:4]


@pytest.fixture
def registry() -> HandleRegistry:
    return HandleRegistry()


@pytest.fixture
def store(tmp_path: Path) -> BlobStore:
    return BlobStore(tmp_path / "store")


@pytest.fixture
def stub_client() -> StubClient:
    return StubClient([{"name": "op1", "done": False}, done_payload()])


