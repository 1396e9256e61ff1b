"""Storyboard to Veo video clips: generation, local storage and backups."""

from storyboard_video.blob_store import BlobStore
from storyboard_video.client import VeoClient
from storyboard_video.codec import BackupCodec, RestoredWorkingSet
from storyboard_video.handles import HandleRegistry
from storyboard_video.models import (
    BackupDocument,
    EphemeralReference,
    GenerationRequest,
    GenerationStatus,
    Operation,
    PortableReference,
    StartFrame,
)
from storyboard_video.orchestrator import GenerationOrchestrator
from storyboard_video.thumbnail import ThumbnailExtractor
from storyboard_video.workspace import StoryboardWorkspace

__all__ = [
    "BackupCodec",
    "BackupDocument",
    "BlobStore",
    "EphemeralReference",
    "GenerationOrchestrator",
    "GenerationRequest",
    "GenerationStatus",
    "HandleRegistry",
    "Operation",
    "PortableReference",
    "RestoredWorkingSet",
    "StartFrame",
    "StoryboardWorkspace",
    "ThumbnailExtractor",
    "VeoClient",
]
