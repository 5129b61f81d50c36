"""Spawn-one-process-per-request renderer.

Each render runs its own mmdc process, so a crash only ever affects the
request that caused it. Higher latency than the persistent shape.
"""

from __future__ import annotations

import uuid
from typing import Any

from mmd.errors import ErrorKind, PipelineError
from mmd.logging import LogSpan
from mmd.models import DiagramSource, RenderResult
from mmd.renderer.base import Renderer
from mmd.renderer.mmdc import build_mermaid_config, run_mmdc


class OneShotRenderer(Renderer):
    """Renders through a fresh mmdc process per request."""

    def __init__(
        self,
        cli_path: str | None = None,
        timeout: float = 10.0,
        max_in_flight: int = 4,
        mermaid_config: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the renderer.

        Args:
            cli_path: mmdc executable (default: MERMAID_CLI_PATH, then PATH)
            timeout: Per-render timeout in seconds
            max_in_flight: Maximum concurrent mmdc processes
            mermaid_config: Mermaid config merged over the defaults
        """
        super().__init__(timeout=timeout, max_in_flight=max_in_flight)
        self.cli_path = cli_path
        self.mermaid_config = mermaid_config or {}
        self._closed = False

    def render(
        self,
        source: DiagramSource,
        config: dict[str, Any] | None = None,
        timeout: float | None = None,
        request_id: str | None = None,
    ) -> RenderResult:
        request_id = request_id or uuid.uuid4().hex[:12]
        if self._closed:
            return RenderResult.failure(
                ErrorKind.RENDERER_UNAVAILABLE,
                "Renderer has been shut down",
                request_id=request_id,
            )

        effective_timeout = timeout or self.timeout
        merged = None
        if self.mermaid_config or config:
            merged = build_mermaid_config(self.mermaid_config, config)
        with self._gate, LogSpan(
            span="renderer.oneshot", id=request_id, ordinal=source.ordinal
        ) as s:
            try:
                svg = run_mmdc(
                    source.text,
                    config=merged,
                    cli_path=self.cli_path,
                    timeout=effective_timeout,
                )
            except PipelineError as e:
                s.add(error=e.kind.value)
                return RenderResult.failure(e.kind, e.message, request_id=request_id)
            s.add(svgLen=len(svg))
            return RenderResult.success(svg, request_id=request_id)

    def shutdown(self) -> None:
        self._closed = True
