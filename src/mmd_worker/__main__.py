"""Entry point: ``python -m mmd_worker``."""

from __future__ import annotations

from typing import Any

import typer

from mmd._cli import create_cli
from mmd.renderer.mmdc import run_mmdc
from mmd_worker.worker import worker_main

app = create_cli("mmd-worker", "Render Mermaid diagrams from line-JSON requests on stdin.")


@app.command()
def serve(
    cli_path: str | None = typer.Option(None, "--cli-path", help="Path to the mmdc executable."),
    timeout: float = typer.Option(60.0, "--timeout", help="Seconds allowed per mmdc run."),
    jobs: int = typer.Option(2, "--jobs", "-j", min=1, help="Concurrent renders."),
) -> None:
    """Serve render requests until stdin closes."""

    def render(diagram: str, config: dict[str, Any]) -> str:
        return run_mmdc(diagram, config=config, cli_path=cli_path, timeout=timeout)

    worker_main(render, jobs=jobs)


def main() -> None:
    """Run the worker."""
    app()


if __name__ == "__main__":
    main()
