"""Artifact store for rendered diagrams.

An artifact is a pair of files plus the marker that points at them:

    <document dir>/
    └── .mermaid/
        ├── notes_3f2a9c0d1b7e.svg   # sanitized rendering
        └── notes_3f2a9c0d1b7e.mmd   # sidecar, byte-identical diagram source

File names embed the first 12 hex digits of the source's SHA-256, so an
unchanged block always maps to the same pair and distinct blocks never
collide. Every path is canonicalised and checked against the store root
before any I/O.
"""

from __future__ import annotations

import os
import re
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from loguru import logger

from mmd.errors import IoError
from mmd.logging import LogSpan
from mmd.models import Artifact, fingerprint
from mmd.paths import ensure_within, lexical_join, to_document_ref

__all__ = ["ArtifactStore", "PathLocks", "get_path_locks"]

SVG_SUFFIX = ".svg"
SOURCE_SUFFIX = ".mmd"
FINGERPRINT_LENGTH = 12

_UNSAFE_STEM_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_NAME_FINGERPRINT = re.compile(r"_([0-9a-f]{12})$")


class PathLocks:
    """Per-path mutual exclusion.

    Two renders that target the same artifact are serialized; renders of
    different artifacts proceed in parallel.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Path, threading.Lock] = {}

    @contextmanager
    def hold(self, path: Path) -> Iterator[None]:
        """Hold the lock for ``path`` for the duration of the block."""
        with self._guard:
            lock = self._locks.setdefault(path, threading.Lock())
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Shared by every store in the process (lazy initialized)
_path_locks: PathLocks | None = None
_path_locks_guard = threading.Lock()


def get_path_locks() -> PathLocks:
    """Get or create the process-wide path lock registry."""
    global _path_locks
    with _path_locks_guard:
        if _path_locks is None:
            _path_locks = PathLocks()
        return _path_locks


def _safe_stem(document_path: Path) -> str:
    stem = _UNSAFE_STEM_CHARS.sub("_", document_path.stem).strip("._")
    return stem or "diagram"


def _write_temp(directory: Path, target: Path, content: str) -> Path:
    """Write content to a temp file next to ``target``."""
    fd, temp_path = tempfile.mkstemp(dir=str(directory), prefix=".tmp_", suffix=target.suffix)
    try:
        # newline="" keeps \r\n in the source byte-identical
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
    except BaseException:
        Path(temp_path).unlink(missing_ok=True)
        raise
    return Path(temp_path)


class ArtifactStore:
    """Reads, writes and removes artifacts under a root directory."""

    def __init__(
        self,
        root: Path,
        output_dir: str = ".mermaid",
        locks: PathLocks | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            root: Directory that every artifact must stay inside
            output_dir: Artifact directory relative to the document directory
            locks: Path lock registry (default: process-wide registry)
        """
        self.root = root.resolve()
        self.output_dir = output_dir
        self.locks = locks if locks is not None else get_path_locks()

    # ---------------------------------------------------------------- naming

    def plan(self, document_path: Path, source: str) -> Artifact:
        """Compute where the artifact for ``source`` lives.

        Raises:
            PathTraversal: If the output directory escapes the document
                directory or the root
        """
        document_dir = document_path.parent
        digest = fingerprint(source)
        base = lexical_join(document_dir, self.output_dir) if self.output_dir else document_dir
        name = f"{_safe_stem(document_path)}_{digest[:FINGERPRINT_LENGTH]}"
        svg_path = ensure_within(base / f"{name}{SVG_SUFFIX}", self.root)
        source_path = ensure_within(base / f"{name}{SOURCE_SUFFIX}", self.root)
        real_dir = document_dir.resolve()
        return Artifact(
            svg_path=svg_path,
            source_path=source_path,
            svg_ref=to_document_ref(svg_path, real_dir),
            source_ref=to_document_ref(source_path, real_dir),
            fingerprint=digest,
        )

    # --------------------------------------------------------------- writing

    def write(self, artifact: Artifact, safe_markup: str, source_text: str) -> Artifact:
        """Persist the rendered file and the sidecar as one unit.

        Both files are written to temp names first, existing targets are
        moved aside, then both temp files are renamed into place. Any failure
        restores the previous state, so an observer never sees a rendered
        file paired with a sidecar from another source.

        Returns:
            The artifact that was written

        Raises:
            PathTraversal: If either path is outside the root (nothing written)
            IoError: If writing fails (previous state restored)
        """
        svg_path = ensure_within(artifact.svg_path, self.root)
        source_path = ensure_within(artifact.source_path, self.root)
        if fingerprint(source_text) != artifact.fingerprint:
            raise IoError(
                "Sidecar content does not match the artifact fingerprint",
                path=str(source_path),
            )

        with self.locks.hold(source_path), LogSpan(
            span="store.write", svg=artifact.svg_ref, source=artifact.source_ref
        ) as s:
            try:
                self._write_pair(
                    [(svg_path, safe_markup), (source_path, source_text)]
                )
            except OSError as e:
                s.add(error=str(e))
                raise IoError(f"Failed to write artifact: {e}", path=str(svg_path)) from e
            s.add(svgBytes=len(safe_markup.encode("utf-8")))
        return artifact

    def _write_pair(self, targets: list[tuple[Path, str]]) -> None:
        temps: list[Path] = []
        backups: list[tuple[Path, Path]] = []
        placed: list[Path] = []
        try:
            for target, content in targets:
                target.parent.mkdir(parents=True, exist_ok=True)
                temps.append(_write_temp(target.parent, target, content))

            for target, _ in targets:
                if target.exists():
                    backup = target.with_name(f".bak_{target.name}")
                    target.replace(backup)
                    backups.append((backup, target))

            for temp, (target, _) in zip(temps, targets):
                temp.replace(target)
                placed.append(target)
        except BaseException:
            for target in placed:
                target.unlink(missing_ok=True)
            for backup, target in backups:
                try:
                    backup.replace(target)
                except OSError as e:
                    logger.error(f"Could not restore {target} from {backup}: {e}")
            for temp in temps:
                temp.unlink(missing_ok=True)
            raise

        for backup, _ in backups:
            backup.unlink(missing_ok=True)

    # --------------------------------------------------------------- reading

    def read(
        self,
        document_path: Path,
        source_ref: str,
        image_ref: str | None = None,
    ) -> tuple[Artifact, str]:
        """Load an artifact from its document-relative references.

        Args:
            document_path: Document owning the marker
            source_ref: Sidecar path from the marker
            image_ref: Rendered-file path from the image line, if present

        Returns:
            Tuple of (artifact, sidecar text). ``artifact.stale`` is set when
            the rendered file is missing or the sidecar no longer matches the
            fingerprint in its name.

        Raises:
            PathTraversal: If a reference leaves the document directory or root
            IoError: If the sidecar cannot be read
        """
        document_dir = document_path.parent
        source_path = ensure_within(lexical_join(document_dir, source_ref), self.root)
        if image_ref:
            svg_path = ensure_within(lexical_join(document_dir, image_ref), self.root)
        else:
            svg_path = source_path.with_suffix(SVG_SUFFIX)

        try:
            with source_path.open(encoding="utf-8", newline="") as f:
                source_text = f.read()
        except OSError as e:
            raise IoError(f"Failed to read sidecar {source_ref}: {e}", path=str(source_path)) from e

        digest = fingerprint(source_text)
        named = _NAME_FINGERPRINT.search(source_path.stem)
        stale = not svg_path.exists() or (
            named is not None and not digest.startswith(named.group(1))
        )
        if stale:
            logger.debug(f"Artifact {source_ref} is stale")

        artifact = Artifact(
            svg_path=svg_path,
            source_path=source_path,
            svg_ref=image_ref or to_document_ref(svg_path, document_dir.resolve()),
            source_ref=source_ref,
            fingerprint=digest,
            stale=stale,
        )
        return artifact, source_text

    def find_reusable(self, document_path: Path, source: str) -> Artifact | None:
        """Return the existing artifact for ``source`` if it is consistent.

        Consistent means the sidecar is byte-identical to ``source`` and the
        rendered file exists and is non-empty. Anything else is stale and
        must be re-rendered.
        """
        artifact = self.plan(document_path, source)
        try:
            if not artifact.svg_path.is_file() or artifact.svg_path.stat().st_size == 0:
                return None
            with artifact.source_path.open(encoding="utf-8", newline="") as f:
                if f.read() != source:
                    logger.debug(f"Sidecar {artifact.source_ref} differs, re-rendering")
                    return None
        except OSError:
            return None
        return artifact

    # -------------------------------------------------------------- removing

    def remove(self, artifact: Artifact) -> None:
        """Delete both files of an artifact.

        Raises:
            PathTraversal: If either path is outside the root
            IoError: If a file exists but cannot be deleted
        """
        svg_path = ensure_within(artifact.svg_path, self.root)
        source_path = ensure_within(artifact.source_path, self.root)
        with self.locks.hold(source_path), LogSpan(span="store.remove", source=artifact.source_ref) as s:
            for path in (svg_path, source_path):
                try:
                    path.unlink(missing_ok=True)
                except OSError as e:
                    s.add(error=str(e))
                    raise IoError(f"Failed to remove {path.name}: {e}", path=str(path)) from e
