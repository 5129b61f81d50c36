"""Render and edit operations over whole documents.

This is the boundary a host (editor integration, CLI) talks to. Every
operation takes the current document text and returns an outcome holding
the new text; on failure the text is returned unmodified and the error is
one of the ``mmd.errors`` kinds.

Render direction:

    scan blocks -> render -> sanitize -> store (svg + sidecar) -> rewrite

Edit direction:

    scan marker -> store read (sidecar) -> rewrite to fenced block
"""

from __future__ import annotations

import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from mmd.config import MmdConfig, get_config
from mmd.errors import (
    IoError,
    PathTraversal,
    PipelineError,
    RenderFailed,
    SanitizeRejected,
    StaleSpan,
    error_for_kind,
)
from mmd.logging import LogSpan, security_event
from mmd.models import Artifact, DiagramSource, TextEdit
from mmd.renderer.base import Renderer
from mmd.sanitize import sanitize
from mmd.scanner import (
    apply_edits,
    document_kind_for,
    edit_replacement,
    marker_at_line,
    render_replacement,
    resolve_reference,
    scan_blocks,
    scan_markers,
)
from mmd.store import ArtifactStore, PathLocks

__all__ = [
    "BlockOutcome",
    "DiagramPipeline",
    "EditOutcome",
    "RenderAllOutcome",
    "RenderOutcome",
]


@dataclass
class RenderOutcome:
    """Result of rendering one block."""

    ok: bool
    document_text: str
    artifact_paths: list[Path] = field(default_factory=list)
    error: PipelineError | None = None
    reused: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output (document text excluded)."""
        return {
            "ok": self.ok,
            "artifact_paths": [str(p) for p in self.artifact_paths],
            "reused": self.reused,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class BlockOutcome:
    """Per-block entry of a render-all run."""

    ordinal: int
    start_line: int
    artifact: Artifact | None = None
    error: PipelineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ordinal": self.ordinal,
            "line": self.start_line,
            "ok": self.ok,
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class RenderAllOutcome:
    """Result of rendering every block of a document.

    Successful blocks are rewritten in ``document_text``; failed blocks are
    left as source and listed with their error.
    """

    document_text: str
    blocks: list[BlockOutcome] = field(default_factory=list)
    error: PipelineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(b.ok for b in self.blocks)

    @property
    def errors(self) -> list[BlockOutcome]:
        return [b for b in self.blocks if not b.ok]

    @property
    def artifact_paths(self) -> list[Path]:
        paths: list[Path] = []
        for block in self.blocks:
            if block.artifact is not None:
                paths.extend([block.artifact.svg_path, block.artifact.source_path])
        return paths

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "rendered": sum(1 for b in self.blocks if b.ok),
            "failed": len(self.errors),
            "blocks": [b.to_dict() for b in self.blocks],
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class EditOutcome:
    """Result of turning a rendered marker back into a fenced block."""

    ok: bool
    document_text: str
    error: PipelineError | None = None
    removed: list[Path] = field(default_factory=list)
    stale: bool = False
    # Unreferenced artifact left on disk until the new text is saved
    pending_removal: Artifact | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "removed": [str(p) for p in self.removed],
            "stale": self.stale,
            "pending_removal": (
                str(self.pending_removal.source_path) if self.pending_removal else None
            ),
            "error": self.error.to_dict() if self.error else None,
        }


def _as_pipeline_error(exc: BaseException) -> PipelineError:
    """Map any exception onto the error taxonomy."""
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, OSError):
        return IoError(str(exc), path=getattr(exc, "filename", None))
    logger.opt(exception=exc).error(f"Unexpected pipeline error: {exc}")
    return RenderFailed(f"Unexpected error: {type(exc).__name__}: {exc}")


class DiagramPipeline:
    """Ties a renderer and the artifact store to document rewrites.

    One pipeline may serve several documents and be called from several
    threads; the renderer bounds concurrency and ``PathLocks`` serializes
    writes to the same artifact.
    """

    def __init__(
        self,
        renderer: Renderer,
        config: MmdConfig | None = None,
        locks: PathLocks | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            renderer: Renderer used for every block
            config: Configuration (default: process-wide config)
            locks: Path lock registry shared by the stores
        """
        self.renderer = renderer
        self.config = config if config is not None else get_config()
        self.locks = locks

    def _store_for(self, document_path: Path) -> ArtifactStore:
        output = self.config.output
        if output.root:
            root = Path(output.root).expanduser()
            if not root.is_absolute():
                root = document_path.parent / root
        else:
            root = document_path.parent
        return ArtifactStore(root, output_dir=output.dir, locks=self.locks)

    def _render_block(
        self,
        block: DiagramSource,
        document_path: Path,
        store: ArtifactStore,
    ) -> tuple[Artifact, bool]:
        """Render, sanitize and persist one block.

        Returns:
            Tuple of (artifact, reused)

        Raises:
            PipelineError: Any failure along the way; nothing is written
                unless the sanitized markup is ready
        """
        if self.config.output.reuse_existing:
            existing = store.find_reusable(document_path, block.text)
            if existing is not None:
                logger.debug(f"Reusing artifact {existing.svg_ref} for block {block.ordinal}")
                return existing, True

        # Path checks happen here, before the renderer is involved
        artifact = store.plan(document_path, block.text)

        request_id = f"b{block.ordinal}-{uuid.uuid4().hex[:8]}"
        result = self.renderer.render(block, request_id=request_id)
        if result.request_id not in (None, request_id):
            raise RenderFailed(
                f"Response {result.request_id} does not belong to request {request_id}"
            )
        if not result.ok:
            raise error_for_kind(result.error_kind or "render_failed", result.message)

        try:
            safe = sanitize(result.svg or "")
        except SanitizeRejected as e:
            security_event("renderer output rejected", reason=e.message, block=block.ordinal)
            raise

        return store.write(artifact, safe, block.text), False

    # ------------------------------------------------------------- render

    def render_document_block(
        self,
        document_text: str,
        block_index: int,
        *,
        document_path: Path | str,
    ) -> RenderOutcome:
        """Render one diagram block and rewrite it to a marker plus image.

        Args:
            document_text: Current document text
            block_index: Ordinal of the block in document order
            document_path: Location of the document on disk

        Returns:
            RenderOutcome; on failure ``document_text`` is the input unchanged
        """
        path = Path(document_path).resolve()
        kind = document_kind_for(path)
        with LogSpan(span="pipeline.render", document=path.name, block=block_index) as s:
            try:
                blocks = scan_blocks(document_text, kind)
                if not 0 <= block_index < len(blocks):
                    raise StaleSpan(
                        f"No diagram block {block_index} (document has {len(blocks)})"
                    )
                block = blocks[block_index]
                artifact, reused = self._render_block(block, path, self._store_for(path))
                new_text = self._rewrite_blocks(document_text, [(block, artifact)])
            except Exception as e:
                error = _as_pipeline_error(e)
                s.add(error=error.kind.value)
                return RenderOutcome(ok=False, document_text=document_text, error=error)

            s.add(svg=artifact.svg_ref, reused=reused)
            return RenderOutcome(
                ok=True,
                document_text=new_text,
                artifact_paths=[artifact.svg_path, artifact.source_path],
                reused=reused,
            )

    def render_block_at_line(
        self,
        document_text: str,
        line: int,
        *,
        document_path: Path | str,
    ) -> RenderOutcome:
        """Render the block whose fences enclose a cursor line."""
        kind = document_kind_for(document_path)
        for block in scan_blocks(document_text, kind):
            if block.start_line <= line <= block.end_line:
                return self.render_document_block(
                    document_text, block.ordinal, document_path=document_path
                )
        return RenderOutcome(
            ok=False,
            document_text=document_text,
            error=StaleSpan(f"No diagram block at line {line}"),
        )

    def render_all(self, document_text: str, *, document_path: Path | str) -> RenderAllOutcome:
        """Render every block of a document concurrently.

        Requests are dispatched together and bounded by the renderer's
        in-flight cap; each result is matched back to its block. Blocks that
        fail stay as source.
        """
        path = Path(document_path).resolve()
        kind = document_kind_for(path)
        with LogSpan(span="pipeline.render_all", document=path.name) as s:
            try:
                blocks = scan_blocks(document_text, kind)
            except Exception as e:
                error = _as_pipeline_error(e)
                s.add(error=error.kind.value)
                return RenderAllOutcome(document_text=document_text, error=error)

            s.add(blocks=len(blocks))
            if not blocks:
                return RenderAllOutcome(document_text=document_text)

            store = self._store_for(path)
            outcomes: dict[int, BlockOutcome] = {}
            workers = max(1, min(len(blocks), self.renderer.max_in_flight))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mmd-render") as pool:
                futures = {
                    pool.submit(self._render_block, block, path, store): block
                    for block in blocks
                }
                for future in as_completed(futures):
                    block = futures[future]
                    outcome = BlockOutcome(ordinal=block.ordinal, start_line=block.start_line)
                    try:
                        outcome.artifact, _ = future.result()
                    except Exception as e:
                        outcome.error = _as_pipeline_error(e)
                        logger.warning(
                            f"Block {block.ordinal} (line {block.start_line + 1}) failed: "
                            f"{outcome.error.kind.value}: {outcome.error.message}"
                        )
                    outcomes[block.ordinal] = outcome

            ordered = [outcomes[block.ordinal] for block in blocks]
            rendered = [
                (block, outcome.artifact)
                for block, outcome in zip(blocks, ordered)
                if outcome.artifact is not None
            ]
            try:
                new_text = self._rewrite_blocks(document_text, rendered)
            except Exception as e:
                error = _as_pipeline_error(e)
                s.add(error=error.kind.value)
                return RenderAllOutcome(document_text=document_text, blocks=ordered, error=error)

            s.add(rendered=len(rendered), failed=len(blocks) - len(rendered))
            return RenderAllOutcome(document_text=new_text, blocks=ordered)

    def _rewrite_blocks(
        self, document_text: str, rendered: list[tuple[DiagramSource, Artifact]]
    ) -> str:
        alt_text = self.config.output.alt_text
        edits = [
            TextEdit(
                span=block.span,
                expected=block.span.slice(document_text),
                replacement=render_replacement(artifact, alt_text),
            )
            for block, artifact in rendered
        ]
        return apply_edits(document_text, edits)

    # --------------------------------------------------------------- edit

    def edit_document_artifact(
        self,
        document_text: str,
        marker_line_index: int,
        *,
        document_path: Path | str,
        remove_artifacts: bool = True,
    ) -> EditOutcome:
        """Turn a rendered marker back into an editable diagram block.

        The block is rebuilt from the sidecar. Artifact files are removed
        afterwards unless another marker in the new text still points at
        them. Callers that save the document themselves pass
        ``remove_artifacts=False`` and call ``release_artifacts()`` once the
        new text is on disk.

        Args:
            document_text: Current document text
            marker_line_index: Any line from the marker to its image line
            document_path: Location of the document on disk
            remove_artifacts: Delete unreferenced artifact files now

        Returns:
            EditOutcome; on failure ``document_text`` is the input unchanged
        """
        path = Path(document_path).resolve()
        kind = document_kind_for(path)
        with LogSpan(span="pipeline.edit", document=path.name, line=marker_line_index) as s:
            try:
                marker = marker_at_line(document_text, marker_line_index)
                if marker is None:
                    raise StaleSpan(f"No diagram marker at line {marker_line_index}")
                store = self._store_for(path)
                artifact, source = store.read(path, marker.source_ref, marker.image_ref)
                if artifact.stale:
                    logger.warning(
                        f"Artifact {marker.source_ref} is stale; restoring from the sidecar"
                    )
                new_text = apply_edits(
                    document_text,
                    [
                        TextEdit(
                            span=marker.span,
                            expected=marker.span.slice(document_text),
                            replacement=edit_replacement(source, kind),
                        )
                    ],
                )
                removed: list[Path] = []
                pending: Artifact | None = None
                if not self._still_referenced(artifact, path, new_text):
                    if remove_artifacts:
                        removed = self._remove(store, artifact)
                    else:
                        pending = artifact
            except Exception as e:
                error = _as_pipeline_error(e)
                s.add(error=error.kind.value)
                return EditOutcome(ok=False, document_text=document_text, error=error)

            s.add(source=marker.source_ref, removed=len(removed))
            return EditOutcome(
                ok=True,
                document_text=new_text,
                removed=removed,
                stale=artifact.stale,
                pending_removal=pending,
            )

    def release_artifacts(self, outcome: EditOutcome, *, document_path: Path | str) -> list[Path]:
        """Delete the artifact an edit left pending, after the document is saved.

        Raises:
            PathTraversal: Artifact outside the output root
            IoError: A file could not be deleted
        """
        artifact = outcome.pending_removal
        if artifact is None:
            return []
        removed = self._remove(self._store_for(Path(document_path).resolve()), artifact)
        outcome.pending_removal = None
        outcome.removed.extend(removed)
        return removed

    @staticmethod
    def _still_referenced(artifact: Artifact, document_path: Path, new_text: str) -> bool:
        document_dir = document_path.parent
        target = artifact.source_path.resolve()
        for other in scan_markers(new_text):
            try:
                if resolve_reference(document_dir, other.source_ref).resolve() == target:
                    logger.debug(f"Keeping {artifact.source_ref}, still referenced")
                    return True
            except PathTraversal:
                continue
        return False

    @staticmethod
    def _remove(store: ArtifactStore, artifact: Artifact) -> list[Path]:
        store.remove(artifact)
        return [artifact.svg_path, artifact.source_path]
