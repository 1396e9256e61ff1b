"""Still-frame thumbnails for generated clips, extracted with FFmpeg."""

from __future__ import annotations

import asyncio
import logging
import subprocess
import tempfile
from pathlib import Path

from storyboard_video.errors import DecodeError

logger = logging.getLogger(__name__)

_DEFAULT_OFFSET = 0.1
_DEFAULT_QUALITY = 0.8


def _jpeg_qscale(quality: float) -> int:
    """Map a 0..1 quality onto FFmpeg's MJPEG qscale (2 best .. 31 worst)."""
    quality = max(0.0, min(1.0, quality))
    return round(2 + (1.0 - quality) * 29)


class ThumbnailExtractor:
    """Derive a JPEG still from an early frame of a video payload.

    The frame is taken slightly after the start (``offset_seconds``) because
    the very first frame of generated clips is often black.
    """

    def __init__(
        self,
        ffmpeg: str = "ffmpeg",
        offset_seconds: float = _DEFAULT_OFFSET,
        quality: float = _DEFAULT_QUALITY,
    ) -> None:
        self.ffmpeg = ffmpeg
        self.offset_seconds = offset_seconds
        self.quality = quality

    def _extract_sync(self, video: bytes) -> bytes:
        try:
            with tempfile.TemporaryDirectory(prefix="thumb_") as tmpdir:
                return self._run_ffmpeg(Path(tmpdir), video)
        except OSError as exc:
            raise DecodeError(f"Frame extraction failed: {exc}") from exc

    def _run_ffmpeg(self, tmp: Path, video: bytes) -> bytes:
        video_path = tmp / "input.mp4"
        frame_path = tmp / "frame.jpg"
        video_path.write_bytes(video)

        cmd = [
            self.ffmpeg, "-y",
            "-ss", f"{self.offset_seconds:.3f}",
            "-i", str(video_path),
            "-frames:v", "1",
            "-q:v", str(_jpeg_qscale(self.quality)),
            str(frame_path),
        ]
        try:
            # ffmpeg stderr is not guaranteed to be UTF-8
            result = subprocess.run(cmd, capture_output=True, text=True, errors="replace")
        except OSError as exc:
            raise DecodeError(f"Could not run {self.ffmpeg}: {exc}") from exc

        if result.returncode != 0:
            raise DecodeError(f"Frame extraction failed: {result.stderr[-300:]}")
        if not frame_path.exists() or frame_path.stat().st_size == 0:
            raise DecodeError(
                f"No frame at {self.offset_seconds:.2f}s; the video may be too short"
            )
        return frame_path.read_bytes()

    async def extract(self, video: bytes) -> bytes:
        """Return JPEG bytes for an early frame of ``video``.

        Raises:
            DecodeError: If the video cannot be decoded or has no frame at the offset.
        """
        if not video:
            raise DecodeError("Empty video payload")
        thumbnail = await asyncio.to_thread(self._extract_sync, video)
        logger.debug("Extracted thumbnail (%.1f KB)", len(thumbnail) / 1024)
        return thumbnail
