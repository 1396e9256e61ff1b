from __future__ import annotations

import pytest

from storyboard_video.errors import DecodeError, UnrestorableReferenceError
from storyboard_video.handles import HandleRegistry
from storyboard_video.models import (
    DEFAULT_MODEL,
    GenerationRequest,
    Operation,
    PortableReference,
    StartFrame,
    decode_data_uri,
    encode_data_uri,
    resolve_model,
)


def test_resolve_model_aliases_and_ids() -> None:
    assert resolve_model(None) == DEFAULT_MODEL == "veo-3.1-fast-generate-preview"
    assert resolve_model("fast") == "veo-3.1-fast-generate-preview"
    assert resolve_model("veo-3.0-generate-001") == "veo-3.0-generate-001"
    with pytest.raises(ValueError):
        resolve_model("veo-9")


def test_request_actionable() -> None:
    assert not GenerationRequest().is_actionable
    assert not GenerationRequest(prompt="").is_actionable
    assert GenerationRequest(prompt="a cat").is_actionable
    assert GenerationRequest(start_frame=StartFrame(b"x", "image/png")).is_actionable


def test_data_uri_round_trip() -> None:
    uri = encode_data_uri(b"\x00\x01binary", "video/mp4")
    assert decode_data_uri(uri) == ("video/mp4", b"\x00\x01binary")


def test_data_uri_with_extra_parameters() -> None:
    assert decode_data_uri("data:image/png;charset=binary;base64,aGk=") == ("image/png", b"hi")


def test_decode_rejects_non_data_uri() -> None:
    with pytest.raises(DecodeError):
        decode_data_uri("https://a/b.png")
    with pytest.raises(DecodeError):
        StartFrame.from_data_uri("data:image/png,plain-text")


def test_portable_reference_classification() -> None:
    assert PortableReference.parse("data:video/mp4;base64,AA==").is_data_uri
    assert PortableReference.parse("https://a/v.mp4").is_remote
    for bad in ("blob:http://localhost/abc", "", None, 42, "/local/file.mp4"):
        with pytest.raises(UnrestorableReferenceError):
            PortableReference.parse(bad)


def test_operation_from_payload() -> None:
    op = Operation.from_payload({"done": True, "error": {"code": 7, "message": "denied"}}, fallback_name="op9")
    assert op.name == "op9"
    assert op.error is not None and op.error.message == "denied"
    assert Operation.from_payload({"name": "op1"}).done is False


def test_handle_registry_lifecycle() -> None:
    registry = HandleRegistry()
    ref = registry.create(b"abc", "video/mp4")
    assert ref in registry
    assert registry.read(ref) == b"abc"
    registry.release(ref)
    registry.release(ref)
    assert ref not in registry
    with pytest.raises(DecodeError):
        registry.read(ref)


def test_handle_registry_release_all() -> None:
    registry = HandleRegistry()
    registry.create(b"a")
    registry.create(b"b")
    registry.release_all()
    assert len(registry) == 0


def test_handles_do_not_cross_sessions() -> None:
    ref = HandleRegistry().create(b"abc")
    with pytest.raises(DecodeError):
        HandleRegistry().read(ref)
