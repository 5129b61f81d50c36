"""Document scanning and rewriting.

Pure functions from document text to spans and edits. Nothing here touches
the filesystem: reference paths are checked lexically, and the store does
the canonical check again before any I/O.

Render direction: fenced ```mermaid blocks become a marker comment plus an
image reference. Edit direction: a marker (and its image line) becomes a
fenced block again, rebuilt from the sidecar source.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import NamedTuple

from mmd.errors import StaleSpan
from mmd.models import (
    MARKER_PREFIX,
    MARKER_SUFFIX,
    MERMAID_EXTENSIONS,
    Artifact,
    DiagramSource,
    DocumentKind,
    DocumentSpan,
    MarkerRef,
    TextEdit,
)
from mmd.paths import lexical_join

__all__ = [
    "apply_edits",
    "block_at_line",
    "document_kind_for",
    "edit_replacement",
    "marker_at_line",
    "render_replacement",
    "resolve_reference",
    "scan_blocks",
    "scan_markers",
]

DIAGRAM_TAG = "mermaid"

# Single-line patterns only; each is applied to one line at a time
_FENCE_OPEN = re.compile(r"^(?P<indent> {0,3})(?P<fence>`{3,}|~{3,})(?P<info>.*)$")
_FENCE_CLOSE = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})[ \t]*$")
_IMAGE_LINE = re.compile(r"^!\[[^\]]*\]\((?P<path>[^)\s]+)\)$")
_BACKTICK_RUN = re.compile(r"^ {0,3}(`{3,})", re.MULTILINE)


class _Line(NamedTuple):
    start: int
    end: int  # past the line terminator
    body: str  # without the line terminator


def _split_lines(text: str) -> list[_Line]:
    """Split on "\\n" only; str.splitlines() also breaks on form feeds etc."""
    lines: list[_Line] = []
    pos = 0
    length = len(text)
    while pos < length:
        nl = text.find("\n", pos)
        end = length if nl == -1 else nl + 1
        body = text[pos:end]
        if body.endswith("\n"):
            body = body[:-1]
            if body.endswith("\r"):
                body = body[:-1]
        lines.append(_Line(pos, end, body))
        pos = end
    return lines


def document_kind_for(path: Path | str) -> DocumentKind:
    """Standalone .mmd/.mermaid files are diagram source in their entirety."""
    if Path(path).suffix.lower() in MERMAID_EXTENSIONS:
        return DocumentKind.MERMAID
    return DocumentKind.MARKDOWN


def _is_diagram_info(info: str) -> bool:
    words = info.split(maxsplit=1)
    return bool(words) and words[0].lower() == DIAGRAM_TAG


def _fences(lines: list[_Line]) -> Iterator[tuple[int, int | None, str]]:
    """Yield (opening line, closing line, info string) for each code fence.

    The closing line is None for an unterminated fence, which runs to the
    end of the document and ends the scan.
    """
    i = 0
    while i < len(lines):
        opened = _FENCE_OPEN.match(lines[i].body)
        if opened is None:
            i += 1
            continue
        fence = opened.group("fence")
        info = opened.group("info")
        if fence[0] == "`" and "`" in info:
            # Inline code such as ```foo``` is not a fence
            i += 1
            continue

        close = None
        for j in range(i + 1, len(lines)):
            closed = _FENCE_CLOSE.match(lines[j].body)
            if closed is not None:
                run = closed.group("fence")
                if run[0] == fence[0] and len(run) >= len(fence):
                    close = j
                    break
        yield i, close, info
        if close is None:
            return
        i = close + 1


def scan_blocks(
    text: str, kind: DocumentKind = DocumentKind.MARKDOWN
) -> list[DiagramSource]:
    """Find diagram blocks in document order.

    Fences follow CommonMark: an opening run of at least three backticks or
    tildes indented by at most three spaces, closed by a run of the same
    character that is at least as long. Anything between an opening and its
    close is content, so a ```mermaid line inside a ````markdown fence is
    not a block. An unterminated fence runs to the end of the document and
    never yields a block.

    Args:
        text: Full document text
        kind: MARKDOWN for fenced blocks, MERMAID when the whole text is source

    Returns:
        Blocks with non-overlapping spans, ordinals numbered from 0
    """
    if kind is DocumentKind.MERMAID:
        if not text.strip():
            return []
        lines = _split_lines(text)
        return [
            DiagramSource(
                text=text,
                span=DocumentSpan(0, len(text)),
                ordinal=0,
                start_line=0,
                end_line=max(len(lines) - 1, 0),
            )
        ]

    lines = _split_lines(text)
    blocks: list[DiagramSource] = []
    for i, close, info in _fences(lines):
        if close is not None and _is_diagram_info(info):
            blocks.append(
                DiagramSource(
                    text=text[lines[i].end : lines[close].start],
                    span=DocumentSpan(lines[i].start, lines[close].end),
                    ordinal=len(blocks),
                    start_line=i,
                    end_line=close,
                )
            )
    return blocks


def block_at_line(
    text: str, line: int, kind: DocumentKind = DocumentKind.MARKDOWN
) -> DiagramSource | None:
    """Return the diagram block whose fences enclose a cursor line."""
    for block in scan_blocks(text, kind):
        if block.start_line <= line <= block.end_line:
            return block
    return None


def scan_markers(text: str) -> list[MarkerRef]:
    """Find back-reference markers in document order.

    A marker must sit alone on its line, outside any code fence. The first
    non-blank line after it, if it is a Markdown image, is the rendered-image
    reference and belongs to the marker's span.
    """
    lines = _split_lines(text)
    fenced: set[int] = set()
    for start, close, _ in _fences(lines):
        fenced.update(range(start, len(lines) if close is None else close + 1))

    markers: list[MarkerRef] = []
    i = 0
    while i < len(lines):
        stripped = lines[i].body.strip()
        if i in fenced or not (
            stripped.startswith(MARKER_PREFIX)
            and stripped.endswith(MARKER_SUFFIX)
            and len(stripped) >= len(MARKER_PREFIX) + len(MARKER_SUFFIX)
        ):
            i += 1
            continue

        source_ref = stripped[len(MARKER_PREFIX) : -len(MARKER_SUFFIX)].strip()
        end_line = i
        image_ref = None

        j = i + 1
        while j < len(lines) and not lines[j].body.strip():
            j += 1
        if j < len(lines):
            image = _IMAGE_LINE.match(lines[j].body.strip())
            if image is not None:
                image_ref = image.group("path")
                end_line = j

        markers.append(
            MarkerRef(
                line_index=i,
                end_line=end_line,
                span=DocumentSpan(lines[i].start, lines[end_line].end),
                source_ref=source_ref,
                image_ref=image_ref,
            )
        )
        i = end_line + 1
    return markers


def marker_at_line(text: str, line: int) -> MarkerRef | None:
    """Return the marker whose marker-to-image range contains a cursor line."""
    for marker in scan_markers(text):
        if marker.line_index <= line <= marker.end_line:
            return marker
    return None


def resolve_reference(document_dir: Path, ref: str) -> Path:
    """Resolve a marker or image reference against the document directory.

    Raises:
        PathTraversal: If the reference would leave the document directory
    """
    return lexical_join(document_dir, ref)


def render_replacement(artifact: Artifact, alt_text: str = "Mermaid Diagram") -> str:
    """Marker line, blank line, image line."""
    return f"{artifact.marker}\n\n![{alt_text}]({artifact.svg_ref})\n"


def edit_replacement(source: str, kind: DocumentKind = DocumentKind.MARKDOWN) -> str:
    """Rebuild the editable representation of a diagram source.

    The fence is made longer than any backtick fence inside the source so
    re-scanning yields exactly ``source`` again. Markdown sources always end
    with a line terminator (or are empty); one is added otherwise because
    the closing fence needs its own line.
    """
    if kind is DocumentKind.MERMAID:
        return source

    longest = max((len(m.group(1)) for m in _BACKTICK_RUN.finditer(source)), default=0)
    fence = "`" * max(3, longest + 1)
    newline = "\r\n" if "\r\n" in source else "\n"
    body = source
    if body and not body.endswith("\n"):
        body += newline
    return f"{fence}{DIAGRAM_TAG}{newline}{body}{fence}{newline}"


def apply_edits(text: str, edits: Iterable[TextEdit]) -> str:
    """Apply non-overlapping edits, re-verifying each span before mutating.

    Edits run from the end of the document backwards so every pending span
    still addresses the text it was computed against.

    Raises:
        StaleSpan: If spans overlap or a span no longer reads as expected
    """
    ordered = sorted(edits, key=lambda e: (e.span.start, e.span.end), reverse=True)
    for later, earlier in zip(ordered, ordered[1:]):
        if earlier.span.overlaps(later.span):
            raise StaleSpan(
                f"Overlapping edits at [{earlier.span.start}, {earlier.span.end}) "
                f"and [{later.span.start}, {later.span.end})"
            )

    result = text
    for edit in ordered:
        span = edit.span
        if span.end > len(result) or span.slice(result) != edit.expected:
            raise StaleSpan(
                f"Document changed under span [{span.start}, {span.end})"
            )
        result = result[: span.start] + edit.replacement + result[span.end :]
    return result
