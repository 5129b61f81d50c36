"""Shared fixtures for mermaid-preview tests."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from loguru import logger

from mmd.config import MmdConfig

if TYPE_CHECKING:
    from collections.abc import Generator

FIXTURES_DIR = Path(__file__).parent / "fixtures"
FAKE_RENDERER = FIXTURES_DIR / "fake_renderer.py"


@pytest.fixture
def fake_renderer_command() -> list[str]:
    """argv for the scriptable line-JSON renderer."""
    return [sys.executable, str(FAKE_RENDERER)]


@pytest.fixture
def log_messages() -> Generator[list[str], None, None]:
    """Capture loguru messages emitted during the test."""
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)


@pytest.fixture
def config() -> MmdConfig:
    """Default configuration, independent of any config file on disk."""
    return MmdConfig()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host environment overrides out of the tests."""
    for name in ("MMD_CONFIG", "MERMAID_CLI_PATH", "MMD_RENDER_TIMEOUT", "MERMAID_CONFIG", "MMD_CWD"):
        monkeypatch.delenv(name, raising=False)
