"""Session-local handles to in-memory binaries.

A ``HandleRegistry`` plays the role of a browser's object-URL table: it mints
``blob:`` URLs for byte payloads, resolves them back while they are live,
and forgets them when released. Handles never survive the registry (the
session) that created them.
"""

from __future__ import annotations

import logging
import uuid

from storyboard_video.errors import DecodeError
from storyboard_video.models import EphemeralReference

logger = logging.getLogger(__name__)


class HandleRegistry:
    """Mints and resolves ``EphemeralReference`` handles for one session."""

    def __init__(self) -> None:
        self.session_id = uuid.uuid4().hex
        self._payloads: dict[str, bytes] = {}

    def __len__(self) -> int:
        return len(self._payloads)

    def __contains__(self, ref: object) -> bool:
        return isinstance(ref, EphemeralReference) and ref.url in self._payloads

    def create(self, data: bytes, mime_type: str = "application/octet-stream") -> EphemeralReference:
        """Register a payload and return a fresh handle to it."""
        url = f"blob:{self.session_id}/{uuid.uuid4()}"
        self._payloads[url] = bytes(data)
        logger.debug("Created handle %s (%d bytes)", url, len(data))
        return EphemeralReference(url=url, mime_type=mime_type)

    def read(self, ref: EphemeralReference) -> bytes:
        """Return the payload behind a live handle.

        Raises:
            DecodeError: If the handle was released or belongs to another session.
        """
        try:
            return self._payloads[ref.url]
        except KeyError:
            raise DecodeError(f"Handle {ref.url} is not live in this session") from None

    def release(self, ref: EphemeralReference | None) -> None:
        """Forget a handle. Releasing an unknown handle is a no-op."""
        if ref is None:
            return
        if self._payloads.pop(ref.url, None) is not None:
            logger.debug("Released handle %s", ref.url)

    def release_all(self) -> None:
        self._payloads.clear()
