"""Known result shapes of completed Veo operations.

The provider's success envelope differs by model tier, so the result
locator is probed through an ordered table of paths. Add new shapes to
``LOCATOR_SHAPES``; the first shape yielding a non-empty string wins.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from storyboard_video.errors import MissingResultError
from storyboard_video.models import Operation

_DUMP_LIMIT = 500


@dataclass(frozen=True)
class LocatorShape:
    """A path into the operation body (string keys and list indexes)."""
    name: str
    path: tuple[str | int, ...]

    def probe(self, payload: Any) -> str | None:
        node = payload
        for step in self.path:
            if isinstance(step, int):
                if not isinstance(node, list) or len(node) <= step:
                    return None
            elif not isinstance(node, dict):
                return None
            node = node[step] if isinstance(step, int) else node.get(step)
            if node is None:
                return None
        if isinstance(node, str) and node:
            return node
        return None


LOCATOR_SHAPES: tuple[LocatorShape, ...] = (
    LocatorShape("veo3-generated-samples", ("response", "generateVideoResponse", "generatedSamples", 0, "video", "uri")),
    LocatorShape("generated-videos", ("response", "generatedVideos", 0, "video", "uri")),
    LocatorShape("videos", ("response", "videos", 0, "uri")),
    LocatorShape("top-level-generated-videos", ("generatedVideos", 0, "video", "uri")),
)


def extract_locator(operation: Operation, shapes: tuple[LocatorShape, ...] = LOCATOR_SHAPES) -> str:
    """Return the result locator of a completed operation.

    Raises:
        MissingResultError: If no known shape matches; carries a truncated
            dump of the payload.
    """
    payload = operation.raw or {"response": operation.response}
    for shape in shapes:
        locator = shape.probe(payload)
        if locator:
            return locator

    dump = json.dumps(payload, ensure_ascii=False, default=str)[:_DUMP_LIMIT]
    raise MissingResultError(f"No video locator in the completed operation. Response: {dump}", body=payload)
