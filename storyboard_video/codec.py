"""Backup and restore of a storyboard working set.

A backup is a single JSON document::

    {
      "version": "2.0",
      "timestamp": "2026-01-01T00:00:00+00:00",
      "data": {...storyboard project...},
      "generatedImages": {"0": "data:image/png;base64,..."},
      "videoBase64": {"0": "data:video/mp4;base64,...", "1": "https://..."}
    }

Session handles are never written: local videos are re-encoded as data URIs
on the way out and turned back into fresh handles on the way in. Version 1.0
documents stored videos under ``videoUrls`` and are still readable.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from storyboard_video.errors import (
    DecodeError,
    InvalidDocumentError,
    StoryboardVideoError,
    UnrestorableReferenceError,
)
from storyboard_video.handles import HandleRegistry
from storyboard_video.models import (
    BACKUP_VERSION,
    BackupDocument,
    EphemeralReference,
    PortableReference,
    VideoReference,
    decode_data_uri,
    shot_title,
)

logger = logging.getLogger(__name__)

_VIDEO_FIELD = "videoBase64"
_LEGACY_VIDEO_FIELD = "videoUrls"
_IMAGES_FIELD = "generatedImages"

# Working-set images may also be session handles.
ImageReference = str | EphemeralReference


@dataclass
class RestoredWorkingSet:
    """Working set rebuilt from a backup document."""
    project_state: dict
    images: dict[int, str] = field(default_factory=dict)
    videos: dict[int, VideoReference] = field(default_factory=dict)


def backup_filename(title: str, when: date | None = None) -> str:
    """Build ``storyboard-backup-<slug>-<YYYY-MM-DD>.json``."""
    when = when or datetime.now(timezone.utc).date()
    slug = re.sub(r"\s+", "-", title.strip()).lower() or "storyboard"
    return f"storyboard-backup-{slug}-{when.isoformat()}.json"


def _check_project_state(data: Any) -> None:
    if not isinstance(data, dict) or not isinstance(data.get("storyboard_sequence"), list):
        raise InvalidDocumentError("Invalid backup file: no storyboard sequence")


def _shot_index(key: Any) -> int:
    try:
        return int(key)
    except (TypeError, ValueError):
        raise InvalidDocumentError(f"Invalid shot index in backup: {key!r}") from None


def _mapping(raw: dict, name: str) -> dict:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InvalidDocumentError(f"Backup field {name!r} must be an object")
    return value


class BackupCodec:
    """Converts between a live working set and a ``BackupDocument``.

    Args:
        registry: Handle registry of the current session; used to read
            handles on serialise and to mint handles on restore.
    """

    def __init__(self, registry: HandleRegistry) -> None:
        self.registry = registry

    # ------------------------------------------------------------------
    # Serialise
    # ------------------------------------------------------------------

    def _portable_video(self, ref: VideoReference | str) -> PortableReference:
        if isinstance(ref, PortableReference):
            return ref
        if isinstance(ref, EphemeralReference):
            data = self.registry.read(ref)
            return PortableReference.from_bytes(data, ref.mime_type)
        return PortableReference.parse(ref)

    def _portable_image(self, ref: ImageReference) -> PortableReference:
        if isinstance(ref, EphemeralReference):
            return PortableReference.from_bytes(self.registry.read(ref), ref.mime_type)
        return PortableReference.parse(ref)

    async def serialize(
        self,
        project_state: dict,
        images: dict[int, ImageReference],
        videos: dict[int, VideoReference | str],
    ) -> BackupDocument:
        """Snapshot a working set.

        Entries that cannot be made portable are logged and left out; they
        never abort the whole backup.
        """
        portable_videos: dict[int, PortableReference] = {}
        for index, ref in sorted(videos.items()):
            try:
                portable_videos[index] = self._portable_video(ref)
            except StoryboardVideoError as exc:
                logger.warning("Skipping video for shot %s in backup: %s", index, exc)

        portable_images: dict[int, PortableReference] = {}
        for index, ref in sorted(images.items()):
            try:
                portable_images[index] = self._portable_image(ref)
            except StoryboardVideoError as exc:
                logger.warning("Skipping image for shot %s in backup: %s", index, exc)

        logger.info(
            "Backup prepared: %d images, %d videos",
            len(portable_images), len(portable_videos),
        )
        return BackupDocument(
            version=BACKUP_VERSION,
            timestamp=datetime.now(timezone.utc).isoformat(),
            data=project_state,
            generated_images=portable_images,
            videos=portable_videos,
        )

    # ------------------------------------------------------------------
    # Deserialise
    # ------------------------------------------------------------------

    def parse(self, raw: Any) -> BackupDocument:
        """Validate a decoded JSON object and build a ``BackupDocument``.

        Raises:
            InvalidDocumentError: If the minimum shape is missing.
        """
        if isinstance(raw, BackupDocument):
            _check_project_state(raw.data)
            return raw
        if not isinstance(raw, dict):
            raise InvalidDocumentError("Backup must be a JSON object")
        data = raw.get("data")
        _check_project_state(data)

        if _VIDEO_FIELD in raw:
            raw_videos = _mapping(raw, _VIDEO_FIELD)
        else:
            raw_videos = _mapping(raw, _LEGACY_VIDEO_FIELD)
        raw_images = _mapping(raw, _IMAGES_FIELD)

        videos: dict[int, PortableReference] = {}
        for key, value in raw_videos.items():
            index = _shot_index(key)
            try:
                videos[index] = PortableReference.parse(value)
            except UnrestorableReferenceError as exc:
                logger.warning("Cannot restore video for shot %d: %s", index, exc)

        images: dict[int, PortableReference] = {}
        for key, value in raw_images.items():
            index = _shot_index(key)
            try:
                images[index] = PortableReference.parse(value)
            except UnrestorableReferenceError as exc:
                logger.warning("Cannot restore image for shot %d: %s", index, exc)

        return BackupDocument(
            version=str(raw.get("version", "1.0")),
            timestamp=str(raw.get("timestamp", "")),
            data=data,
            generated_images=images,
            videos=videos,
        )

    async def deserialize(self, document: BackupDocument | dict) -> RestoredWorkingSet:
        """Rebuild a working set from a backup.

        Data-URI videos become fresh session handles; HTTP(S) videos pass
        through. Nothing is returned unless the whole document restores.

        Raises:
            InvalidDocumentError: If the document is malformed.
        """
        doc = self.parse(document)

        minted: list[EphemeralReference] = []
        videos: dict[int, VideoReference] = {}
        try:
            for index, ref in sorted(doc.videos.items()):
                if ref.is_remote:
                    videos[index] = ref
                    continue
                try:
                    mime_type, data = decode_data_uri(ref.value)
                except DecodeError as exc:
                    raise InvalidDocumentError(f"Corrupt video for shot {index}: {exc}") from exc
                handle = self.registry.create(data, mime_type)
                minted.append(handle)
                videos[index] = handle
        except BaseException:
            for handle in minted:
                self.registry.release(handle)
            raise

        images = {index: ref.value for index, ref in sorted(doc.generated_images.items())}
        logger.info(
            "Restored backup v%s: %d shots, %d images, %d videos",
            doc.version, len(doc.data["storyboard_sequence"]), len(images), len(videos),
        )
        return RestoredWorkingSet(project_state=doc.data, images=images, videos=videos)

    # ------------------------------------------------------------------
    # JSON
    # ------------------------------------------------------------------

    @staticmethod
    def to_dict(document: BackupDocument) -> dict:
        return {
            "version": document.version,
            "timestamp": document.timestamp,
            "data": document.data,
            _IMAGES_FIELD: {str(k): v.value for k, v in sorted(document.generated_images.items())},
            _VIDEO_FIELD: {str(k): v.value for k, v in sorted(document.videos.items())},
        }

    def to_json(self, document: BackupDocument) -> str:
        return json.dumps(self.to_dict(document), indent=2, ensure_ascii=False)

    def from_json(self, text: str) -> BackupDocument:
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise InvalidDocumentError(f"Backup is not valid JSON: {exc}") from exc
        return self.parse(raw)

    def write_backup(self, path: str | Path, document: BackupDocument) -> Path:
        """Write a backup document to ``path``."""
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, "w", encoding="utf-8") as f:
            f.write(self.to_json(document))
        logger.info("Backup written to %s", out)
        return out

    def read_backup(self, path: str | Path) -> BackupDocument:
        """Read and validate a backup document from ``path``."""
        with open(path, "r", encoding="utf-8") as f:
            return self.from_json(f.read())

    def default_filename(self, document: BackupDocument) -> str:
        return backup_filename(shot_title(document.data))
