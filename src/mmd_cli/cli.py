"""CLI entry point for mermaid-preview.

Documents are read from disk and the rewritten text goes to stdout, or back
into the file with ``--in-place``. Diagnostics and errors go to stderr.
"""

from __future__ import annotations

import json
import os
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

import mmd
from mmd._cli import create_cli, version_callback
from mmd.config import MmdConfig, load_config
from mmd.errors import PipelineError, SanitizeRejected
from mmd.logging import configure_logging
from mmd.pipeline import DiagramPipeline
from mmd.renderer import create_renderer
from mmd.sanitize import sanitize_with_report
from mmd.scanner import document_kind_for, scan_blocks, scan_markers

app = create_cli(
    "mmd",
    "Render Mermaid diagrams in Markdown documents to SVG, and back.",
    no_args_is_help=True,
)

# Console for stderr output (stdout carries document text)
_stderr_console = Console(stderr=True)


@dataclass
class _Options:
    config_path: Path | None = None
    error_format: str = "text"
    log_level: str | None = None

    def load(self) -> MmdConfig:
        try:
            config = load_config(self.config_path)
        except (FileNotFoundError, ValueError) as e:
            _stderr_console.print(f"[red]Configuration error:[/red] {e}")
            raise typer.Exit(2) from e
        configure_logging(self.log_level or config.log_level)
        return config


def _options(ctx: typer.Context) -> _Options:
    return ctx.obj if isinstance(ctx.obj, _Options) else _Options()


def _read_document(path: Path) -> str:
    try:
        with path.open(encoding="utf-8", newline="") as f:
            return f.read()
    except OSError as e:
        _stderr_console.print(f"[red]Cannot read {path}:[/red] {e}")
        raise typer.Exit(2) from e


def _write_document(path: Path, text: str) -> None:
    """Replace the document atomically."""
    fd, temp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp_", suffix=path.suffix)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        os.replace(temp_path, path)
    except BaseException:
        Path(temp_path).unlink(missing_ok=True)
        raise


def _emit_document(path: Path, text: str, in_place: bool) -> None:
    if in_place:
        _write_document(path, text)
    else:
        sys.stdout.write(text)
        sys.stdout.flush()


def _report_error(error: PipelineError | None, error_format: str, context: str = "") -> None:
    if error is None:
        return
    if error_format == "json":
        payload: dict[str, Any] = {"error": error.to_dict()}
        if context:
            payload["context"] = context
        sys.stderr.write(json.dumps(payload) + "\n")
        return
    prefix = f"{context}: " if context else ""
    _stderr_console.print(f"[red]{prefix}{error.kind.value}:[/red] {error.message}")


@app.callback()
def main(
    ctx: typer.Context,
    _version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback("mmd", mmd.__version__),
        is_eager=True,
        help="Show version and exit.",
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .mermaid-preview.yaml configuration file.",
        exists=True,
        readable=True,
    ),
    error_format: str = typer.Option(
        "text",
        "--error-format",
        help="Error output format: text or json.",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        help="Override the configured log level.",
    ),
) -> None:
    """Render Mermaid diagrams in Markdown documents to SVG, and back.

    Examples:
        mmd scan README.md
        mmd render-all README.md --in-place
        mmd edit README.md --line 12 --in-place
    """
    if error_format not in ("text", "json"):
        _stderr_console.print(f"[red]Unknown error format:[/red] {error_format}")
        raise typer.Exit(2)
    ctx.obj = _Options(config_path=config, error_format=error_format, log_level=log_level)


@app.command()
def scan(
    ctx: typer.Context,
    document: Path = typer.Argument(..., help="Document to scan.", exists=True, dir_okay=False),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table."),
) -> None:
    """List diagram blocks and rendered-diagram markers."""
    _options(ctx).load()
    text = _read_document(document)
    blocks = scan_blocks(text, document_kind_for(document))
    markers = scan_markers(text)

    if as_json:
        payload = {
            "blocks": [
                {
                    "ordinal": b.ordinal,
                    "start_line": b.start_line,
                    "end_line": b.end_line,
                    "fingerprint": b.fingerprint,
                }
                for b in blocks
            ],
            "markers": [
                {
                    "line": m.line_index,
                    "end_line": m.end_line,
                    "source": m.source_ref,
                    "image": m.image_ref,
                }
                for m in markers
            ],
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    console = Console()
    table = Table(title=str(document))
    table.add_column("Kind")
    table.add_column("#", justify="right")
    table.add_column("Lines")
    table.add_column("Detail")
    for b in blocks:
        first = b.text.strip().splitlines()[0] if b.text.strip() else ""
        table.add_row("block", str(b.ordinal), f"{b.start_line + 1}-{b.end_line + 1}", first)
    for i, m in enumerate(markers):
        table.add_row("marker", str(i), f"{m.line_index + 1}-{m.end_line + 1}", m.source_ref)
    console.print(table)


@app.command()
def render(
    ctx: typer.Context,
    document: Path = typer.Argument(..., help="Document to render.", exists=True, dir_okay=False),
    block: int | None = typer.Option(None, "--block", "-b", help="Block ordinal (0-based)."),
    line: int | None = typer.Option(None, "--line", "-l", help="Any line of the block (1-based)."),
    in_place: bool = typer.Option(False, "--in-place", "-i", help="Rewrite the document."),
) -> None:
    """Render one diagram block."""
    options = _options(ctx)
    config = options.load()
    text = _read_document(document)

    with create_renderer(config.renderer) as renderer:
        pipeline = DiagramPipeline(renderer, config)
        if line is not None:
            outcome = pipeline.render_block_at_line(text, line - 1, document_path=document)
        else:
            outcome = pipeline.render_document_block(
                text, block if block is not None else 0, document_path=document
            )

    if not outcome.ok:
        _report_error(outcome.error, options.error_format, str(document))
        raise typer.Exit(1)

    _emit_document(document, outcome.document_text, in_place)
    if outcome.reused:
        _stderr_console.print("[dim]Reused existing artifact[/dim]")


@app.command("render-all")
def render_all(
    ctx: typer.Context,
    document: Path = typer.Argument(..., help="Document to render.", exists=True, dir_okay=False),
    in_place: bool = typer.Option(False, "--in-place", "-i", help="Rewrite the document."),
) -> None:
    """Render every diagram block; failed blocks stay as source."""
    options = _options(ctx)
    config = options.load()
    text = _read_document(document)

    with create_renderer(config.renderer) as renderer:
        outcome = DiagramPipeline(renderer, config).render_all(text, document_path=document)

    if outcome.error is not None:
        _report_error(outcome.error, options.error_format, str(document))
        raise typer.Exit(1)

    _emit_document(document, outcome.document_text, in_place)
    for failed in outcome.errors:
        _report_error(
            failed.error,
            options.error_format,
            f"{document}:{failed.start_line + 1}",
        )
    rendered = len(outcome.blocks) - len(outcome.errors)
    _stderr_console.print(f"[green]Rendered {rendered}/{len(outcome.blocks)} diagrams[/green]")
    if outcome.errors:
        raise typer.Exit(1)


@app.command()
def edit(
    ctx: typer.Context,
    document: Path = typer.Argument(..., help="Document to edit.", exists=True, dir_okay=False),
    line: int = typer.Option(..., "--line", "-l", help="Marker or image line (1-based)."),
    in_place: bool = typer.Option(False, "--in-place", "-i", help="Rewrite the document."),
) -> None:
    """Turn a rendered diagram back into an editable block."""
    options = _options(ctx)
    config = options.load()
    text = _read_document(document)

    # The renderer is never started by an edit
    with create_renderer(config.renderer) as renderer:
        pipeline = DiagramPipeline(renderer, config)
        outcome = pipeline.edit_document_artifact(
            text, line - 1, document_path=document, remove_artifacts=False
        )

    if not outcome.ok:
        _report_error(outcome.error, options.error_format, str(document))
        raise typer.Exit(1)

    _emit_document(document, outcome.document_text, in_place)
    if outcome.stale:
        _stderr_console.print("[yellow]Rendered image was stale; restored from source[/yellow]")
    # Artifacts go only once the rewritten document is on disk
    if in_place:
        try:
            pipeline.release_artifacts(outcome, document_path=document)
        except PipelineError as e:
            _report_error(e, options.error_format, str(document))
            raise typer.Exit(1) from e


@app.command("sanitize")
def sanitize_cmd(
    ctx: typer.Context,
    source: Path | None = typer.Argument(
        None, help="SVG file (default: stdin).", exists=True, dir_okay=False
    ),
) -> None:
    """Sanitize SVG markup and print the result."""
    options = _options(ctx)
    options.load()
    raw = _read_document(source) if source is not None else sys.stdin.read()
    try:
        safe, report = sanitize_with_report(raw)
    except SanitizeRejected as e:
        _report_error(e, options.error_format, str(source) if source else "stdin")
        raise typer.Exit(1) from e
    sys.stdout.write(safe)
    sys.stdout.flush()
    if report.labels_converted or report.attributes_removed:
        _stderr_console.print(
            f"[dim]{report.labels_converted} label(s) converted, "
            f"{report.attributes_removed} attribute(s) removed[/dim]"
        )


def cli() -> None:
    """Run the CLI application."""
    app()


if __name__ == "__main__":
    cli()
