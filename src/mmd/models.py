"""Data model shared by the scanner, renderers, store and pipeline."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from mmd.errors import ErrorKind

MERMAID_EXTENSIONS = frozenset({".mmd", ".mermaid"})


class DocumentKind(str, Enum):
    """How diagram source is embedded in a document."""

    MARKDOWN = "markdown"  # fenced ```mermaid blocks
    MERMAID = "mermaid"  # the whole document is diagram source


def fingerprint(text: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoded text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class DocumentSpan:
    """Half-open character range ``[start, end)`` in a document's text."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < self.start:
            raise ValueError(f"Invalid span [{self.start}, {self.end})")

    def __len__(self) -> int:
        return self.end - self.start

    def overlaps(self, other: DocumentSpan) -> bool:
        """Check whether two spans share at least one character."""
        return self.start < other.end and other.start < self.end

    def slice(self, text: str) -> str:
        """Return the covered text."""
        return text[self.start : self.end]


@dataclass(frozen=True)
class DiagramSource:
    """Verbatim diagram text found in a document.

    ``span`` covers the whole block (fences included) so a rewrite can
    replace it; ``text`` is only what lies between the fences.
    """

    text: str
    span: DocumentSpan
    ordinal: int = 0
    kind: str = "mermaid"
    start_line: int = 0
    end_line: int = 0

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.text)


@dataclass
class RenderRequest:
    """One render attempt, correlated with its response by ``id``."""

    id: str
    source: DiagramSource
    config: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> str:
        """Serialize to a single protocol line (newline included)."""
        payload: dict[str, Any] = {"id": self.id, "diagram": self.source.text}
        if self.config:
            payload["config"] = self.config
        # json.dumps escapes embedded newlines, so the frame stays one line
        return json.dumps(payload, ensure_ascii=False) + "\n"


@dataclass(frozen=True)
class RenderResult:
    """Tagged result of a render: raw markup on success, error otherwise."""

    ok: bool
    svg: str | None = None
    error_kind: ErrorKind | None = None
    message: str = ""
    request_id: str | None = None

    @classmethod
    def success(cls, svg: str, *, request_id: str | None = None) -> RenderResult:
        return cls(ok=True, svg=svg, request_id=request_id)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        request_id: str | None = None,
    ) -> RenderResult:
        return cls(ok=False, error_kind=kind, message=message, request_id=request_id)


@dataclass(frozen=True)
class Artifact:
    """Persisted representation of one rendered diagram block.

    Paths are absolute; ``svg_ref`` and ``source_ref`` are the same files
    relative to the owning document's directory, as written in the document.
    """

    svg_path: Path
    source_path: Path
    svg_ref: str
    source_ref: str
    fingerprint: str
    stale: bool = False

    @property
    def marker(self) -> str:
        return format_marker(self.source_ref)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "svg_path": str(self.svg_path),
            "source_path": str(self.source_path),
            "svg_ref": self.svg_ref,
            "source_ref": self.source_ref,
            "fingerprint": self.fingerprint,
            "stale": self.stale,
        }


@dataclass(frozen=True)
class MarkerRef:
    """A back-reference marker found in a document.

    ``span`` covers the marker line through the end of the adjacent image
    line (or just the marker line when no image follows).
    """

    line_index: int
    end_line: int
    span: DocumentSpan
    source_ref: str
    image_ref: str | None = None


@dataclass(frozen=True)
class TextEdit:
    """Replace ``span`` with ``replacement`` if it still reads ``expected``."""

    span: DocumentSpan
    expected: str
    replacement: str


MARKER_PREFIX = "<!-- mermaid-source-file:"
MARKER_SUFFIX = "-->"


def format_marker(source_ref: str) -> str:
    """Build the single-line back-reference comment for a sidecar path."""
    return f"{MARKER_PREFIX}{source_ref} {MARKER_SUFFIX}"
