"""Drives one video generation job through submit, poll and download.

Each ``GenerationOrchestrator`` owns the state of exactly one job (status,
attempt counter, cancellation flag), so several shots can be generated
concurrently without sharing counters.

Status transitions::

    idle -> generating (5) -> polling (10 .. 80) -> downloading (90) -> completed (100)
                 \\               \\                    \\
                  +---------------+--------------------+--> error (0)

``cancel()`` only drops local interest in the job: the remote operation keeps
running and its result is never fetched.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from storyboard_video.blob_store import BlobStore, thumbnail_key, video_key
from storyboard_video.client import VeoClient
from storyboard_video.errors import (
    InvalidRequestError,
    OperationError,
    PollTimeoutError,
    StoryboardVideoError,
    SubmissionError,
)
from storyboard_video.handles import HandleRegistry
from storyboard_video.locators import extract_locator
from storyboard_video.models import (
    IDLE_STATUS,
    STATUS_COMPLETED,
    STATUS_DOWNLOADING,
    STATUS_ERROR,
    STATUS_GENERATING,
    STATUS_POLLING,
    EphemeralReference,
    GenerationRequest,
    GenerationStatus,
    Operation,
)
from storyboard_video.thumbnail import ThumbnailExtractor

logger = logging.getLogger(__name__)

StatusCallback = Callable[[GenerationStatus], None]

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_MAX_ATTEMPTS = 60

_POLL_PROGRESS_CEILING = 80


def polling_progress(attempts: int, max_attempts: int) -> int:
    """Approximate progress while polling, capped at 80."""
    return min(round(attempts / max_attempts * _POLL_PROGRESS_CEILING), _POLL_PROGRESS_CEILING)


class GenerationOrchestrator:
    """Runs a single generation job for one storyboard shot.

    Args:
        client: Operation client used for submit/poll/download.
        store: Blob store receiving the video and its thumbnail.
        registry: Session handle registry for the returned reference.
        shot_index: Shot the job belongs to; determines the blob keys.
        thumbnailer: Optional thumbnail extractor.
        on_status: Called with every status change.
        poll_interval: Seconds between status checks.
        max_attempts: Status checks before giving up.
    """

    def __init__(
        self,
        client: VeoClient,
        store: BlobStore,
        registry: HandleRegistry,
        shot_index: int,
        thumbnailer: ThumbnailExtractor | None = None,
        on_status: StatusCallback | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        mime_type: str = "video/mp4",
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.store = store
        self.registry = registry
        self.shot_index = shot_index
        self.thumbnailer = thumbnailer
        self.on_status = on_status
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.mime_type = mime_type

        self._status = IDLE_STATUS
        self._attempts = 0
        self._operation_name: str | None = None
        self._cancelled = asyncio.Event()
        self._started = False

    @property
    def status(self) -> GenerationStatus:
        return self._status

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def operation_name(self) -> str | None:
        return self._operation_name

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    # ------------------------------------------------------------------
    # Status plumbing
    # ------------------------------------------------------------------

    def _publish(self, status: GenerationStatus) -> None:
        self._status = status
        if self.on_status is not None:
            self.on_status(status)

    def _emit(self, status: str, progress: int, message: str) -> None:
        if self.cancelled:
            return
        self._publish(GenerationStatus(
            status=status,
            progress=progress,
            message=message,
            operation_name=self._operation_name,
        ))

    async def _wait(self) -> bool:
        """Sleep one poll interval; return True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Reset the local status to idle and stop consuming poll results.

        The remote job is not aborted; its result is simply never fetched.
        """
        if self.cancelled or self._status.is_terminal:
            return
        logger.info("Shot %d: generation cancelled locally", self.shot_index)
        self._cancelled.set()
        self._publish(IDLE_STATUS)

    async def run(self, request: GenerationRequest) -> EphemeralReference | None:
        """Generate, store and return a handle to the clip.

        Returns:
            A fresh handle to the stored video, or ``None`` if the job was
            cancelled before completing.

        Raises:
            InvalidRequestError: If the request has neither prompt nor start frame.
            SubmissionError, ProtocolError, OperationError, PollTimeoutError,
            DownloadError, StorageError: As reported by the failing stage.
        """
        if self._started:
            raise RuntimeError("A GenerationOrchestrator runs a single job")
        self._started = True

        if self.cancelled:
            logger.info("Shot %d: cancelled before submission", self.shot_index)
            return None

        if not request.is_actionable:
            exc = InvalidRequestError("A video prompt or a start image is required")
            self._emit(STATUS_ERROR, 0, str(exc))
            raise exc

        self._emit(STATUS_GENERATING, 5, "Submitting video generation request...")
        try:
            self._operation_name = await self.client.submit(request)
            if self.cancelled:
                return None
            self._emit(STATUS_POLLING, 10, "Generation started. Waiting...")

            operation = await self._poll_until_done(self._operation_name)
            if operation is None:
                return None

            locator = extract_locator(operation)
            self._emit(STATUS_DOWNLOADING, 90, "Downloading video...")
            data = await self.client.fetch_binary(locator)

            ref = await self._commit(data)
            if ref is None:
                return None
            self._emit(STATUS_COMPLETED, 100, "Done!")
            logger.info("Shot %d: video ready (%.1f KB)", self.shot_index, len(data) / 1024)
            return ref

        except Exception as exc:
            if self.cancelled:
                logger.info("Shot %d: ignoring failure after cancellation: %s", self.shot_index, exc)
                return None
            if isinstance(exc, StoryboardVideoError):
                message = str(exc)
            else:
                logger.exception("Shot %d: unexpected generation failure", self.shot_index)
                message = f"Unexpected error: {exc}" if str(exc) else "Unexpected error"
            self._emit(STATUS_ERROR, 0, message)
            raise

    async def _poll_until_done(self, operation_name: str) -> Operation | None:
        progress = 10
        while self._attempts < self.max_attempts:
            self._attempts += 1
            try:
                operation = await self.client.poll(operation_name)
            except SubmissionError as exc:
                # The status call failed, not the job: try again next tick.
                logger.warning(
                    "Shot %d: status check failed (attempt %d/%d): %s",
                    self.shot_index, self._attempts, self.max_attempts, exc,
                )
                operation = None

            if self.cancelled:
                return None

            if operation is not None and operation.done:
                if operation.error is not None:
                    raise OperationError(operation.error.message, code=operation.error.code)
                return operation

            if operation is not None:
                progress = max(progress, polling_progress(self._attempts, self.max_attempts))
                self._emit(
                    STATUS_POLLING,
                    progress,
                    f"Generating video... ({self._attempts}/{self.max_attempts})",
                )

            if self._attempts < self.max_attempts and await self._wait():
                return None

        raise PollTimeoutError(
            f"Video generation timed out after {self.max_attempts} status checks "
            f"({self.max_attempts * self.poll_interval:g}s)",
            attempts=self._attempts,
        )

    async def _commit(self, data: bytes) -> EphemeralReference | None:
        key = video_key(self.shot_index)
        async with self.store.commit_lock(key):
            if self.cancelled:
                logger.info("Shot %d: discarding result of cancelled job", self.shot_index)
                return None
            await self.store.put(key, data)
            await self._store_thumbnail(data)
        return self.registry.create(data, self.mime_type)

    async def _store_thumbnail(self, data: bytes) -> None:
        if self.thumbnailer is None:
            return
        try:
            thumbnail = await self.thumbnailer.extract(data)
            await self.store.put(thumbnail_key(self.shot_index), thumbnail)
        except StoryboardVideoError as exc:
            logger.warning("Shot %d: thumbnail generation failed: %s", self.shot_index, exc)
