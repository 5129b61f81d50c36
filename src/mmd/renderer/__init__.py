"""Render orchestration.

Two shapes implement the same ``Renderer`` contract:

- ``OneShotRenderer``: a fresh mmdc process per request.
- ``PersistentRenderer``: one long-lived worker speaking line-JSON.

Usage:
    from mmd.renderer import create_renderer

    with create_renderer(config.renderer) as renderer:
        result = renderer.render(block)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from mmd.renderer.base import FifoGate, Renderer
from mmd.renderer.oneshot import OneShotRenderer
from mmd.renderer.persistent import (
    PersistentRenderer,
    RendererState,
    default_worker_command,
)

if TYPE_CHECKING:
    from mmd.config import RendererConfig

__all__ = [
    "FifoGate",
    "OneShotRenderer",
    "PersistentRenderer",
    "Renderer",
    "RendererState",
    "create_renderer",
]


def create_renderer(config: RendererConfig) -> Renderer:
    """Build the renderer shape selected by ``config.mode``."""
    if config.mode == "persistent":
        command = config.command or default_worker_command(config.cli_path)
        return PersistentRenderer(
            command=command,
            timeout=config.timeout,
            max_in_flight=config.max_in_flight,
            max_restarts=config.max_restarts,
            restart_window=config.restart_window,
            mermaid_config=config.mermaid_config,
        )
    return OneShotRenderer(
        cli_path=config.cli_path,
        timeout=config.timeout,
        max_in_flight=config.max_in_flight,
        mermaid_config=config.mermaid_config,
    )
