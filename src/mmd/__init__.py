"""mermaid-preview - render Mermaid diagrams embedded in documents.

Features:
- Fenced ```mermaid blocks become an SVG image plus a back-reference marker
- The exact diagram source is kept in a sidecar file for re-editing
- Renderer output is sanitized before it is written
- One-shot (mmdc per request) or persistent (line-JSON worker) rendering

Usage:
    # Render every diagram in a document in place
    mmd render-all README.md --in-place

    # Turn the diagram marker at line 12 back into a fenced block
    mmd edit README.md --line 12 --in-place
"""

from importlib.metadata import version
from typing import Any

__version__ = version("mermaid-preview")

__all__ = ["DiagramPipeline", "__version__", "sanitize"]


def __getattr__(name: str) -> Any:
    """Lazy imports to avoid loading config at import time."""
    if name == "DiagramPipeline":
        from mmd.pipeline import DiagramPipeline

        return DiagramPipeline
    if name == "sanitize":
        from mmd.sanitize import sanitize

        return sanitize
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
