"""Unit tests for the data model and error taxonomy."""

from __future__ import annotations

import json

import pytest

from mmd.errors import (
    ErrorKind,
    IoError,
    PathTraversal,
    RenderFailed,
    RendererCrashed,
    RenderTimeout,
    SanitizeRejected,
    error_for_kind,
)
from mmd.models import (
    DiagramSource,
    DocumentSpan,
    RenderRequest,
    RenderResult,
    fingerprint,
    format_marker,
)


@pytest.mark.unit
@pytest.mark.core
class TestDocumentSpan:
    """Test half-open spans."""

    def test_length_and_slice(self) -> None:
        span = DocumentSpan(2, 5)
        assert len(span) == 3
        assert span.slice("abcdefg") == "cde"

    def test_invalid_span(self) -> None:
        with pytest.raises(ValueError):
            DocumentSpan(5, 2)

    def test_overlaps(self) -> None:
        """Touching spans do not overlap."""
        assert DocumentSpan(0, 5).overlaps(DocumentSpan(4, 6))
        assert not DocumentSpan(0, 5).overlaps(DocumentSpan(5, 6))


@pytest.mark.unit
@pytest.mark.core
class TestRenderRequest:
    """Test the wire encoding of requests."""

    def test_single_line_frame(self) -> None:
        """Embedded newlines are escaped so a request is one line."""
        source = DiagramSource(text="graph TD\n  A-->B\n", span=DocumentSpan(0, 1))
        frame = RenderRequest(id="r1", source=source).to_wire()

        assert frame.endswith("\n")
        assert frame.count("\n") == 1
        assert json.loads(frame) == {"id": "r1", "diagram": "graph TD\n  A-->B\n"}

    def test_config_included_when_set(self) -> None:
        source = DiagramSource(text="A", span=DocumentSpan(0, 1))
        frame = RenderRequest(id="r2", source=source, config={"theme": "dark"}).to_wire()
        assert json.loads(frame)["config"] == {"theme": "dark"}


@pytest.mark.unit
@pytest.mark.core
def test_render_result_constructors() -> None:
    """success and failure build tagged results."""
    ok = RenderResult.success("<svg/>", request_id="a")
    bad = RenderResult.failure(ErrorKind.RENDER_TIMEOUT, "slow", request_id="b")

    assert ok.ok and ok.svg == "<svg/>" and ok.error_kind is None
    assert not bad.ok and bad.svg is None and bad.error_kind is ErrorKind.RENDER_TIMEOUT


@pytest.mark.unit
@pytest.mark.core
def test_fingerprint_is_sha256() -> None:
    assert fingerprint("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


@pytest.mark.unit
@pytest.mark.core
def test_format_marker() -> None:
    assert format_marker(".mermaid/a.mmd") == "<!-- mermaid-source-file:.mermaid/a.mmd -->"


@pytest.mark.unit
@pytest.mark.core
class TestErrors:
    """Test the error taxonomy."""

    @pytest.mark.parametrize(
        ("kind", "cls"),
        [
            (ErrorKind.RENDER_TIMEOUT, RenderTimeout),
            (ErrorKind.RENDERER_CRASHED, RendererCrashed),
            (ErrorKind.SANITIZE_REJECTED, SanitizeRejected),
            ("path_traversal", PathTraversal),
            ("io_error", IoError),
        ],
    )
    def test_error_for_kind(self, kind: ErrorKind | str, cls: type) -> None:
        error = error_for_kind(kind, "boom")
        assert isinstance(error, cls)
        assert error.message == "boom"

    def test_unknown_kind_maps_to_render_failed(self) -> None:
        """Renderer-supplied categories cannot escape the taxonomy."""
        assert isinstance(error_for_kind("segfault", "x"), RenderFailed)

    def test_retryable_flags(self) -> None:
        assert RenderTimeout("x").retryable
        assert RendererCrashed("x").retryable
        assert not SanitizeRejected("x").retryable

    def test_to_dict(self) -> None:
        data = PathTraversal("escape", path="../x").to_dict()
        assert data == {
            "kind": "path_traversal",
            "message": "escape",
            "retryable": False,
            "path": "../x",
        }
