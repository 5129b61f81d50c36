"""Unit tests for mmd.paths module.

Tests path resolution logic including:
- get_effective_cwd() with and without MMD_CWD
- lexical reference joining
- canonical containment checks
"""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from mmd.errors import PathTraversal


@pytest.mark.unit
@pytest.mark.core
def test_get_effective_cwd_returns_cwd_by_default() -> None:
    """Verify get_effective_cwd() returns Path.cwd() when MMD_CWD not set."""
    from mmd.paths import get_effective_cwd

    with patch.dict(os.environ, {}, clear=False):
        os.environ.pop("MMD_CWD", None)
        result = get_effective_cwd()

    assert result == Path.cwd()


@pytest.mark.unit
@pytest.mark.core
def test_get_effective_cwd_uses_env_var() -> None:
    """Verify get_effective_cwd() uses MMD_CWD when set."""
    from mmd.paths import get_effective_cwd

    with patch.dict(os.environ, {"MMD_CWD": "/tmp/test-project"}):
        result = get_effective_cwd()

    # Path is resolved, so compare resolved paths (handles symlinks like /tmp -> /private/tmp)
    assert result == Path("/tmp/test-project").resolve()


@pytest.mark.unit
@pytest.mark.core
def test_project_config_path(tmp_path: Path) -> None:
    """Project config lives in the working directory."""
    from mmd.paths import get_project_config_path

    assert get_project_config_path(tmp_path) == tmp_path / ".mermaid-preview.yaml"


@pytest.mark.unit
@pytest.mark.core
def test_to_document_ref_uses_forward_slashes(tmp_path: Path) -> None:
    """References are POSIX style relative paths."""
    from mmd.paths import to_document_ref

    ref = to_document_ref(tmp_path / ".mermaid" / "a.svg", tmp_path)
    assert ref == ".mermaid/a.svg"


@pytest.mark.unit
@pytest.mark.core
def test_to_document_ref_outside_rejected(tmp_path: Path) -> None:
    """Paths outside the document directory have no reference."""
    from mmd.paths import to_document_ref

    with pytest.raises(PathTraversal):
        to_document_ref(tmp_path.parent / "a.svg", tmp_path)


@pytest.mark.unit
@pytest.mark.core
def test_lexical_join_logs_security_event(tmp_path: Path, log_messages: list[str]) -> None:
    """Rejected references are logged as security events."""
    from mmd.paths import lexical_join

    with pytest.raises(PathTraversal) as exc_info:
        lexical_join(tmp_path, "../../etc/passwd")

    assert exc_info.value.path == "../../etc/passwd"
    assert any(m.startswith("SECURITY:") for m in log_messages)


@pytest.mark.unit
@pytest.mark.core
def test_ensure_within_accepts_nested(tmp_path: Path) -> None:
    """Paths under the root come back canonical, even if they do not exist."""
    from mmd.paths import ensure_within

    target = tmp_path / "a" / "b.svg"
    assert ensure_within(target, tmp_path) == target.resolve()


@pytest.mark.unit
@pytest.mark.core
def test_ensure_within_rejects_escape(tmp_path: Path) -> None:
    """A path that normalises outside the root is rejected."""
    from mmd.paths import ensure_within

    with pytest.raises(PathTraversal):
        ensure_within(tmp_path / ".." / "x.svg", tmp_path)


@pytest.mark.unit
@pytest.mark.core
@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_ensure_within_follows_symlinks(tmp_path: Path) -> None:
    """A symlink pointing out of the root is caught."""
    from mmd.paths import ensure_within

    root = tmp_path / "root"
    root.mkdir()
    (root / "link").symlink_to(tmp_path)

    with pytest.raises(PathTraversal):
        ensure_within(root / "link" / "x.svg", root)
