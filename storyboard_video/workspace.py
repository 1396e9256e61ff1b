"""The storyboard working set: shots, generated images and videos.

Owns one ``GenerationOrchestrator`` per in-flight shot. Starting a new
generation for a shot supersedes (locally cancels) the previous job for that
shot, and commits to a shot's blob keys are serialised, so the newest
request always determines the stored video.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from pathlib import Path

from storyboard_video.blob_store import BlobStore, thumbnail_key, video_key
from storyboard_video.client import VeoClient
from storyboard_video.codec import RestoredWorkingSet
from storyboard_video.errors import (
    DecodeError,
    InvalidDocumentError,
    InvalidRequestError,
    StoryboardVideoError,
    UnrestorableReferenceError,
)
from storyboard_video.handles import HandleRegistry
from storyboard_video.models import (
    IDLE_STATUS,
    EphemeralReference,
    GenerationRequest,
    GenerationStatus,
    PortableReference,
    StartFrame,
    VideoReference,
    resolve_model,
)
from storyboard_video.orchestrator import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_POLL_INTERVAL,
    GenerationOrchestrator,
)
from storyboard_video.thumbnail import ThumbnailExtractor

logger = logging.getLogger(__name__)

DEFAULT_VIDEO_PROMPT = "Generate a cinematic video based on the provided image"
DEFAULT_BATCH_SIZE = 3

ShotStatusCallback = Callable[[int, GenerationStatus], None]


def empty_project() -> dict:
    return {"project_meta": {"title": "", "logline": ""}, "storyboard_sequence": []}


class StoryboardWorkspace:
    """Session state for one storyboard project.

    Args:
        client: Operation client shared by all jobs.
        store: Blob store for videos and thumbnails.
        registry: Session handle registry.
        thumbnailer: Optional thumbnail extractor.
        on_status: Called with ``(shot_index, status)`` on every change.
        poll_interval: Seconds between status checks.
        max_attempts: Status checks before a job times out.
        model: Default model id or alias.
        aspect_ratio: Aspect ratio for every request.
        negative_prompt: Optional negative prompt for every request.
    """

    def __init__(
        self,
        client: VeoClient,
        store: BlobStore,
        registry: HandleRegistry,
        thumbnailer: ThumbnailExtractor | None = None,
        on_status: ShotStatusCallback | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        model: str | None = None,
        aspect_ratio: str = "16:9",
        negative_prompt: str | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.registry = registry
        self.thumbnailer = thumbnailer
        self.on_status = on_status
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.model = resolve_model(model)
        self.aspect_ratio = aspect_ratio
        self.negative_prompt = negative_prompt or None

        self.project_state: dict = empty_project()
        self.images: dict[int, str] = {}
        self.videos: dict[int, VideoReference] = {}
        self._statuses: dict[int, GenerationStatus] = {}
        self._jobs: dict[int, GenerationOrchestrator] = {}

    # ------------------------------------------------------------------
    # Shots
    # ------------------------------------------------------------------

    @property
    def shots(self) -> list[dict]:
        return self.project_state.get("storyboard_sequence", [])

    def _shot(self, index: int) -> dict:
        if not 0 <= index < len(self.shots):
            raise InvalidRequestError(f"No shot #{index} in the storyboard ({len(self.shots)} shots)")
        return self.shots[index]

    def shot_label(self, index: int) -> str:
        return f"#{self._shot(index).get('kf_id', index)}"

    def load_project(self, project_state: dict) -> None:
        """Replace the storyboard, dropping everything derived from the old one."""
        if not isinstance(project_state.get("storyboard_sequence"), list):
            raise InvalidDocumentError("Storyboard has no storyboard_sequence list")
        self.cancel_all()
        self._release_videos()
        self.project_state = project_state
        self.images = {}
        self.videos = {}
        self._statuses = {}

    def update_video_prompt(self, index: int, prompt: str) -> None:
        shot = self._shot(index)
        shot.setdefault("prompts", {})["video_gen"] = prompt

    def update_description(self, index: int, description: str) -> None:
        self._shot(index)["visual_description"] = description

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self, index: int) -> GenerationStatus:
        return self._statuses.get(index, IDLE_STATUS)

    def _record_status(self, index: int, status: GenerationStatus) -> None:
        self._statuses[index] = status
        if self.on_status is not None:
            self.on_status(index, status)

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------

    def set_video(self, index: int, ref: VideoReference) -> None:
        """Point a shot at a new video, releasing a superseded handle."""
        previous = self.videos.get(index)
        if isinstance(previous, EphemeralReference) and previous != ref:
            self.registry.release(previous)
        self.videos[index] = ref

    def save_video_url(self, index: int, url: str) -> PortableReference:
        """Record a remote HTTP(S) video URL entered by hand."""
        self._shot(index)
        ref = PortableReference.parse(url)
        if not ref.is_remote:
            raise UnrestorableReferenceError("Only http(s) video URLs can be saved")
        self.set_video(index, ref)
        return ref

    def seed_videos_from_assets(self) -> int:
        """Use ``assets.video_url`` of each shot when no videos are set yet."""
        if self.videos:
            return 0
        seeded = 0
        for index, shot in enumerate(self.shots):
            url = (shot.get("assets") or {}).get("video_url")
            if not url:
                continue
            try:
                self.videos[index] = PortableReference.parse(url)
                seeded += 1
            except UnrestorableReferenceError as exc:
                logger.warning("Ignoring asset video for shot %d: %s", index, exc)
        return seeded

    async def load_local_videos(self) -> int:
        """Attach handles for videos persisted in the blob store."""
        loaded = 0
        for index in range(len(self.shots)):
            ref = await self.store.resolve_ephemeral(video_key(index), self.registry)
            if ref is not None:
                self.set_video(index, ref)
                loaded += 1
        return loaded

    def _release_videos(self) -> None:
        for ref in self.videos.values():
            if isinstance(ref, EphemeralReference):
                self.registry.release(ref)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def build_request(self, index: int, model: str | None = None) -> GenerationRequest:
        """Build the request for a shot from its video prompt and image."""
        shot = self._shot(index)
        prompt = (shot.get("prompts") or {}).get("video_gen") or None
        image = self.images.get(index)

        start_frame = None
        if image:
            try:
                start_frame = StartFrame.from_data_uri(image)
            except DecodeError:
                logger.warning("Shot %d: image is not a data URI; sending prompt only", index)

        if image and not prompt:
            prompt = DEFAULT_VIDEO_PROMPT

        return GenerationRequest(
            prompt=prompt,
            start_frame=start_frame,
            aspect_ratio=self.aspect_ratio,
            negative_prompt=self.negative_prompt,
            model=resolve_model(model) if model else self.model,
        )

    async def generate_shot(self, index: int, model: str | None = None) -> EphemeralReference | None:
        """Generate a video for one shot.

        Returns:
            The new handle, or ``None`` if the job was cancelled or superseded.
        """
        previous = self._jobs.get(index)
        if previous is not None:
            logger.info("Shot %d: superseding in-flight generation", index)
            previous.cancel()

        request = self.build_request(index, model)
        job = GenerationOrchestrator(
            client=self.client,
            store=self.store,
            registry=self.registry,
            shot_index=index,
            thumbnailer=self.thumbnailer,
            on_status=lambda status: self._record_status(index, status),
            poll_interval=self.poll_interval,
            max_attempts=self.max_attempts,
        )
        self._jobs[index] = job
        try:
            ref = await job.run(request)
        finally:
            if self._jobs.get(index) is job:
                del self._jobs[index]

        if ref is not None:
            self.set_video(index, ref)
        return ref

    async def generate_all(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        model: str | None = None,
    ) -> dict[int, BaseException]:
        """Generate videos for every shot that has none, a few at a time.

        Returns:
            Failures by shot index; successful shots are not included.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        pending = [i for i in range(len(self.shots)) if i not in self.videos]
        failures: dict[int, BaseException] = {}

        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]
            logger.info("Generating batch: shots %s", batch)
            results = await asyncio.gather(
                *(self.generate_shot(i, model) for i in batch),
                return_exceptions=True,
            )
            for index, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.error("Shot %d failed: %s", index, result)
                    failures[index] = result
        return failures

    def cancel(self, index: int) -> bool:
        """Locally cancel the in-flight job of a shot, if any."""
        job = self._jobs.pop(index, None)
        if job is None:
            return False
        job.cancel()
        return True

    def cancel_all(self) -> None:
        for index in list(self._jobs):
            self.cancel(index)

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def apply_restore(self, restored: RestoredWorkingSet) -> None:
        """Replace the working set with a restored one."""
        self.cancel_all()
        self._release_videos()
        self.project_state = restored.project_state
        self.images = dict(restored.images)
        self.videos = dict(restored.videos)
        self._statuses = {}

    async def persist_videos(self) -> int:
        """Write handle-backed videos to the blob store, dropping stale keys.

        Used after a restore so the restored videos survive the session.
        """
        stored = 0
        for index in range(len(self.shots)):
            ref = self.videos.get(index)
            if isinstance(ref, EphemeralReference):
                data = self.registry.read(ref)
                async with self.store.commit_lock(video_key(index)):
                    await self.store.put(video_key(index), data)
                    await self._persist_thumbnail(index, data)
                stored += 1
            else:
                await self.store.delete(video_key(index))
                await self.store.delete(thumbnail_key(index))
        return stored

    async def _persist_thumbnail(self, index: int, data: bytes) -> None:
        if self.thumbnailer is None:
            return
        try:
            await self.store.put(thumbnail_key(index), await self.thumbnailer.extract(data))
        except StoryboardVideoError as exc:
            logger.warning("Shot %d: thumbnail generation failed: %s", index, exc)

    # ------------------------------------------------------------------
    # Workspace file
    # ------------------------------------------------------------------

    def to_state_dict(self) -> dict:
        """Serialisable state; local videos stay in the blob store."""
        return {
            "data": self.project_state,
            "generatedImages": {str(k): v for k, v in sorted(self.images.items())},
            "videoUrls": {
                str(k): v.value
                for k, v in sorted(self.videos.items())
                if isinstance(v, PortableReference)
            },
        }

    def save(self, path: str | Path) -> Path:
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, "w", encoding="utf-8") as f:
            json.dump(self.to_state_dict(), f, indent=2, ensure_ascii=False)
        return out

    def load(self, path: str | Path) -> None:
        """Load the workspace file written by ``save``.

        Raises:
            FileNotFoundError: If the workspace has not been initialised.
            InvalidDocumentError: If the file is malformed.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Workspace not found: {path} (run 'init' first)")
        try:
            with open(path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except json.JSONDecodeError as exc:
            raise InvalidDocumentError(f"Workspace file is corrupt: {exc}") from exc
        if not isinstance(state, dict) or not isinstance(state.get("data"), dict):
            raise InvalidDocumentError(f"Workspace file is corrupt: {path}")

        self.load_project(state["data"])
        try:
            self.images = {int(k): v for k, v in (state.get("generatedImages") or {}).items()}
            for key, url in (state.get("videoUrls") or {}).items():
                self.videos[int(key)] = PortableReference.parse(url)
        except (ValueError, UnrestorableReferenceError) as exc:
            raise InvalidDocumentError(f"Workspace file is corrupt: {exc}") from exc

    def close(self) -> None:
        """Cancel in-flight jobs and release every session handle."""
        self.cancel_all()
        self._release_videos()
        self.videos = {}
