"""Centralized configuration for mermaid-preview.

Usage:
    from mmd.config import get_config, load_config

    config = get_config()
    print(config.renderer.timeout)
"""

from mmd.config.loader import (
    MmdConfig,
    OutputConfig,
    RendererConfig,
    get_config,
    load_config,
)

__all__ = [
    "MmdConfig",
    "OutputConfig",
    "RendererConfig",
    "get_config",
    "load_config",
]
