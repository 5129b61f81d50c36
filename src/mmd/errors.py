"""Error taxonomy for the diagram render pipeline.

Every failure that crosses the pipeline boundary is one of these kinds.
Components raise them internally; ``mmd.pipeline`` converts anything else
into one of them before returning to the caller.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

__all__ = [
    "ErrorKind",
    "IoError",
    "PathTraversal",
    "PipelineError",
    "RenderFailed",
    "RenderTimeout",
    "RendererCrashed",
    "RendererUnavailable",
    "SanitizeRejected",
    "StaleSpan",
    "error_for_kind",
]


class ErrorKind(str, Enum):
    """Discriminator carried by every pipeline error and failed render."""

    RENDERER_UNAVAILABLE = "renderer_unavailable"
    RENDER_TIMEOUT = "render_timeout"
    RENDER_FAILED = "render_failed"
    RENDERER_CRASHED = "renderer_crashed"
    SANITIZE_REJECTED = "sanitize_rejected"
    PATH_TRAVERSAL = "path_traversal"
    IO_ERROR = "io_error"
    STALE_SPAN = "stale_span"


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    kind: ErrorKind = ErrorKind.RENDER_FAILED
    retryable: bool = False

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.path is not None:
            data["path"] = self.path
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class RendererUnavailable(PipelineError):
    """Renderer binary missing, unlaunchable, or disabled by the restart cap."""

    kind = ErrorKind.RENDERER_UNAVAILABLE


class RenderTimeout(PipelineError):
    """No response within the per-request timeout."""

    kind = ErrorKind.RENDER_TIMEOUT
    retryable = True


class RenderFailed(PipelineError):
    """The renderer reported a syntax or internal error."""

    kind = ErrorKind.RENDER_FAILED


class RendererCrashed(PipelineError):
    """The renderer process exited while the request was outstanding."""

    kind = ErrorKind.RENDERER_CRASHED
    retryable = True


class SanitizeRejected(PipelineError):
    """Renderer output is unsafe or malformed."""

    kind = ErrorKind.SANITIZE_REJECTED


class PathTraversal(PipelineError):
    """A marker or target path resolves outside the permitted root."""

    kind = ErrorKind.PATH_TRAVERSAL


class IoError(PipelineError):
    """File read or write failure."""

    kind = ErrorKind.IO_ERROR
    retryable = True


class StaleSpan(PipelineError):
    """The text under a computed span no longer matches what was scanned."""

    kind = ErrorKind.STALE_SPAN


_KIND_TO_CLASS: dict[ErrorKind, type[PipelineError]] = {
    cls.kind: cls
    for cls in (
        RendererUnavailable,
        RenderTimeout,
        RenderFailed,
        RendererCrashed,
        SanitizeRejected,
        PathTraversal,
        IoError,
        StaleSpan,
    )
}


def error_for_kind(kind: ErrorKind | str, message: str) -> PipelineError:
    """Build the exception matching an error kind.

    Unknown kinds map to RenderFailed so renderer-supplied categories can
    never escape the taxonomy.
    """
    try:
        kind = ErrorKind(kind)
    except ValueError:
        return RenderFailed(message)
    return _KIND_TO_CLASS[kind](message)
