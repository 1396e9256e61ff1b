"""Data models for the storyboard video pipeline."""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass, field
from typing import Any

from storyboard_video.errors import DecodeError, UnrestorableReferenceError

# ----------------------------------------------------------------------
# Models
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class VeoModel:
    """One entry of the fixed set of Veo models the client may target.

    Attributes:
        id: Model identifier sent to the API.
        name: Display name.
        description: Short description for listings.
        tier: Pricing/quality tier ("fast", "standard", "legacy").
        alias: Short name accepted on the command line and in config.
    """
    id: str
    name: str
    description: str
    tier: str
    alias: str


VEO_MODELS: tuple[VeoModel, ...] = (
    VeoModel("veo-3.1-fast-generate-preview", "Veo 3.1 Fast", "Fast and cheap (default)", "fast", "fast"),
    VeoModel("veo-3.1-generate-preview", "Veo 3.1", "High quality", "standard", "standard"),
    VeoModel("veo-3.0-generate-001", "Veo 3.0", "Stable high quality", "standard", "stable"),
    VeoModel("veo-2.0-generate-001", "Veo 2.0", "Legacy", "legacy", "legacy"),
)

DEFAULT_MODEL = VEO_MODELS[0].id

ASPECT_RATIOS = ("16:9", "9:16", "1:1")


def resolve_model(name: str | None) -> str:
    """Return the model id for an id or alias; ``None`` means the default."""
    if not name:
        return DEFAULT_MODEL
    for model in VEO_MODELS:
        if name in (model.id, model.alias):
            return model.id
    known = ", ".join(m.alias for m in VEO_MODELS)
    raise ValueError(f"Unknown model {name!r} (expected a model id or one of: {known})")


# ----------------------------------------------------------------------
# Requests and remote operations
# ----------------------------------------------------------------------

_DATA_URI_RE = re.compile(r"^data:([^;,]+)?(?:;[^;,]+)*;base64,(.*)$", re.DOTALL)


def decode_data_uri(uri: str) -> tuple[str, bytes]:
    """Split a base64 data URI into ``(mime_type, payload)``.

    Raises:
        DecodeError: If the URI is not a base64 data URI.
    """
    match = _DATA_URI_RE.match(uri)
    if not match:
        raise DecodeError("Not a base64 data URI")
    mime_type = match.group(1) or "application/octet-stream"
    try:
        data = base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"Invalid base64 payload in data URI: {exc}") from exc
    return mime_type, data


def encode_data_uri(data: bytes, mime_type: str) -> str:
    """Encode bytes as a base64 data URI."""
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


@dataclass(frozen=True)
class StartFrame:
    """Image used as the first frame of the generated clip."""
    data: bytes
    mime_type: str

    @classmethod
    def from_data_uri(cls, uri: str) -> StartFrame:
        mime_type, data = decode_data_uri(uri)
        return cls(data=data, mime_type=mime_type)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


@dataclass(frozen=True)
class GenerationRequest:
    """A single video generation request.

    Attributes:
        prompt: Free-text description of the clip.
        start_frame: Optional image for the first frame.
        aspect_ratio: One of ``ASPECT_RATIOS``.
        negative_prompt: Things to avoid.
        model: Model id (see ``resolve_model``).
    """
    prompt: str | None = None
    start_frame: StartFrame | None = None
    aspect_ratio: str = "16:9"
    negative_prompt: str | None = None
    model: str = DEFAULT_MODEL

    @property
    def is_actionable(self) -> bool:
        """Whether there is anything to generate from."""
        return bool(self.prompt) or self.start_frame is not None


@dataclass(frozen=True)
class OperationFailure:
    """Error reported by the remote service for a finished operation."""
    code: int | None
    message: str


@dataclass
class Operation:
    """Snapshot of a remote long-running operation.

    Attributes:
        name: Opaque operation name assigned by the service.
        done: Whether the operation reached a terminal state.
        error: Failure reported by the service, if any.
        response: Success payload, if any.
        raw: The full response body as received.
    """
    name: str
    done: bool = False
    error: OperationFailure | None = None
    response: dict | None = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict, fallback_name: str = "") -> Operation:
        error = None
        err = data.get("error")
        if isinstance(err, dict):
            error = OperationFailure(
                code=err.get("code"),
                message=err.get("message") or "Video generation failed",
            )
        elif isinstance(err, str) and err:
            error = OperationFailure(code=None, message=err)

        response = data.get("response")
        return cls(
            name=data.get("name") or fallback_name,
            done=bool(data.get("done", False)),
            error=error,
            response=response if isinstance(response, dict) else None,
            raw=data,
        )


# ----------------------------------------------------------------------
# Progress
# ----------------------------------------------------------------------

STATUS_IDLE = "idle"
STATUS_GENERATING = "generating"
STATUS_POLLING = "polling"
STATUS_DOWNLOADING = "downloading"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class GenerationStatus:
    """Progress of one generation job, pushed to status callbacks."""
    status: str = STATUS_IDLE
    progress: int = 0
    message: str = ""
    operation_name: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_ERROR)

    @property
    def is_active(self) -> bool:
        return self.status in (STATUS_GENERATING, STATUS_POLLING, STATUS_DOWNLOADING)


IDLE_STATUS = GenerationStatus()


# ----------------------------------------------------------------------
# Storage and references
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class BlobEntry:
    """A record persisted in the blob store."""
    id: str
    data: bytes
    created_at: float


@dataclass(frozen=True)
class EphemeralReference:
    """Session-local handle to a binary held by a ``HandleRegistry``.

    Meaningless outside the registry that minted it; never written to disk.
    """
    url: str
    mime_type: str = "application/octet-stream"

    def __str__(self) -> str:
        return self.url


PORTABLE_DATA_URI = "data-uri"
PORTABLE_HTTP = "http"


@dataclass(frozen=True)
class PortableReference:
    """Self-contained, serialisable reference: a data URI or an HTTP(S) URL."""
    kind: str
    value: str

    @classmethod
    def parse(cls, value: Any) -> PortableReference:
        """Classify a serialised reference.

        Raises:
            UnrestorableReferenceError: For anything that is neither a data
                URI nor an HTTP(S) URL (notably session ``blob:`` URLs).
        """
        if not isinstance(value, str) or not value:
            raise UnrestorableReferenceError(f"Not a reference: {value!r}")
        if value.startswith("data:"):
            return cls(kind=PORTABLE_DATA_URI, value=value)
        if value.startswith(("http://", "https://")):
            return cls(kind=PORTABLE_HTTP, value=value)
        raise UnrestorableReferenceError(
            f"Reference {value[:60]!r} is only valid in the session that created it"
        )

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str) -> PortableReference:
        return cls(kind=PORTABLE_DATA_URI, value=encode_data_uri(data, mime_type))

    @property
    def is_data_uri(self) -> bool:
        return self.kind == PORTABLE_DATA_URI

    @property
    def is_remote(self) -> bool:
        return self.kind == PORTABLE_HTTP

    def __str__(self) -> str:
        return self.value


VideoReference = EphemeralReference | PortableReference


# ----------------------------------------------------------------------
# Backups
# ----------------------------------------------------------------------

BACKUP_VERSION = "2.0"


@dataclass
class BackupDocument:
    """Versioned snapshot of a storyboard working set.

    Attributes:
        version: Format version tag.
        timestamp: ISO-8601 creation time.
        data: Full storyboard project state.
        generated_images: Shot index -> image reference.
        videos: Shot index -> video reference.
    """
    version: str
    timestamp: str
    data: dict
    generated_images: dict[int, PortableReference] = field(default_factory=dict)
    videos: dict[int, PortableReference] = field(default_factory=dict)


def shot_title(project_state: dict) -> str:
    """Return the project title, or a placeholder."""
    meta = project_state.get("project_meta") or {}
    return meta.get("title") or "storyboard"
