"""Path resolution and containment checks.

Two kinds of check are used:

- ``lexical_join`` normalises ``..`` without touching the filesystem. The
  scanner uses it so a hostile marker is rejected before any read.
- ``ensure_within`` canonicalises (following symlinks) and verifies the
  result is under a canonical root. The store runs it before every read,
  write and delete.
"""

from __future__ import annotations

import os
import posixpath
from pathlib import Path, PurePosixPath

from mmd.errors import PathTraversal
from mmd.logging import security_event

# Config file looked up in the project directory
PROJECT_CONFIG_NAME = ".mermaid-preview.yaml"


def get_effective_cwd() -> Path:
    """Get the effective working directory.

    Returns MMD_CWD if set, else Path.cwd().

    Returns:
        Resolved Path for working directory
    """
    env_cwd = os.getenv("MMD_CWD")
    if env_cwd:
        return Path(env_cwd).resolve()
    return Path.cwd()


def get_project_config_path(start: Path | None = None) -> Path:
    """Path of the project config file (not necessarily existing)."""
    return (start or get_effective_cwd()) / PROJECT_CONFIG_NAME


def to_document_ref(path: Path, document_dir: Path) -> str:
    """Express ``path`` relative to the document directory, POSIX style.

    Markdown image links and markers always use forward slashes.

    Raises:
        PathTraversal: If ``path`` is not under ``document_dir``
    """
    try:
        relative = path.relative_to(document_dir)
    except ValueError:
        security_event("artifact path outside document directory", path=str(path))
        raise PathTraversal(
            f"{path} is outside the document directory {document_dir}", path=str(path)
        ) from None
    return PurePosixPath(*relative.parts).as_posix()


def lexical_join(base: Path, ref: str) -> Path:
    """Join a document-relative reference onto ``base`` without I/O.

    Raises:
        PathTraversal: If ``ref`` is absolute or its normalised form
            climbs out of ``base``
    """
    cleaned = ref.strip().replace("\\", "/")
    if not cleaned:
        raise PathTraversal("Empty path reference", path=ref)
    # Reject "/etc/passwd" and "C:/..." before normalising
    if cleaned.startswith("/") or (len(cleaned) > 1 and cleaned[1] == ":"):
        security_event("absolute path reference rejected", ref=ref)
        raise PathTraversal(f"Absolute path not allowed: {ref}", path=ref)

    normalized = posixpath.normpath(cleaned)
    if normalized == ".." or normalized.startswith("../"):
        security_event("path reference escapes document directory", ref=ref)
        raise PathTraversal(f"Path escapes document directory: {ref}", path=ref)
    return base / normalized


def ensure_within(path: Path, root: Path) -> Path:
    """Canonicalise ``path`` and verify it lies under ``root``.

    resolve() works on non-existent paths too, so this runs before the
    file is created.

    Returns:
        Canonical path

    Raises:
        PathTraversal: If the canonical path is outside the canonical root
    """
    real_root = root.resolve()
    try:
        real_path = path.resolve()
    except (OSError, RuntimeError) as e:
        raise PathTraversal(f"Cannot resolve path {path}: {e}", path=str(path)) from e

    try:
        real_path.relative_to(real_root)
    except ValueError:
        security_event("path outside permitted root", path=str(path), root=str(real_root))
        raise PathTraversal(
            f"Access denied: {path} is outside {real_root}", path=str(path)
        ) from None
    return real_path
