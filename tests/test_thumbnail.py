from __future__ import annotations

import shutil
import subprocess

import pytest

from storyboard_video.errors import DecodeError
from storyboard_video.thumbnail import ThumbnailExtractor, _jpeg_qscale

needs_ffmpeg = pytest.mark.skipif(shutil.which("ffmpeg") is None, reason="ffmpeg not installed")


def test_qscale_mapping() -> None:
    assert _jpeg_qscale(1.0) == 2
    assert _jpeg_qscale(0.0) == 31
    assert _jpeg_qscale(0.8) == 8
    assert _jpeg_qscale(5.0) == 2


async def test_empty_payload() -> None:
    with pytest.raises(DecodeError):
        await ThumbnailExtractor().extract(b"")


async def test_missing_ffmpeg_binary() -> None:
    extractor = ThumbnailExtractor(ffmpeg="definitely-not-ffmpeg-binary")
    with pytest.raises(DecodeError):
        await extractor.extract(b"not a video")


@needs_ffmpeg
async def test_garbage_video_is_decode_error() -> None:
    with pytest.raises(DecodeError):
        await ThumbnailExtractor().extract(b"this is not a video at all")


@needs_ffmpeg
async def test_extracts_jpeg_from_real_clip(tmp_path) -> None:
    clip = tmp_path / "clip.mp4"
    subprocess.run(
        [
            "ffmpeg", "-y", "-f", "lavfi", "-i", "testsrc=duration=1:size=160x90:rate=10",
            "-pix_fmt", "yuv420p", str(clip),
        ],
        check=True,
        capture_output=True,
    )

    thumbnail = await ThumbnailExtractor().extract(clip.read_bytes())

    assert thumbnail[:2] == b"\xff\xd8"


@pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")
async def test_non_utf8_ffmpeg_stderr_is_decode_error(tmp_path) -> None:
    shim = tmp_path / "ffmpeg"
    shim.write_text("#!/bin/sh\nprintf '\\377\\376' >&2\nexit 1\n", encoding="utf-8")
    shim.chmod(0o755)

    with pytest.raises(DecodeError, match="Frame extraction failed"):
        await ThumbnailExtractor(ffmpeg=str(shim)).extract(b"not a video")


async def test_unwritable_temp_dir_is_decode_error(monkeypatch) -> None:
    def refuse(*args, **kwargs):
        raise OSError("No space left on device")

    monkeypatch.setattr("storyboard_video.thumbnail.tempfile.TemporaryDirectory", refuse)

    with pytest.raises(DecodeError, match="No space left"):
        await ThumbnailExtractor().extract(b"video")
