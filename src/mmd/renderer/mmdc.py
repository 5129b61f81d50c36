"""Mermaid CLI (mmdc) invocation.

Used directly by the one-shot renderer and by the worker process. The CLI is
always run from an argv list; diagram text only ever travels through a temp
file, never through a command line.
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Any

from loguru import logger

from mmd.errors import RenderFailed, RendererUnavailable, RenderTimeout

__all__ = ["DEFAULT_MERMAID_CONFIG", "build_mermaid_config", "deep_merge", "find_mermaid_cli", "run_mmdc"]

# HTML labels become <foreignObject>, which most Markdown previews cannot show
DEFAULT_MERMAID_CONFIG: dict[str, Any] = {
    "flowchart": {"htmlLabels": False},
    "sequence": {"htmlLabels": False},
    "class": {"htmlLabels": False},
    "state": {"htmlLabels": False},
    "er": {"htmlLabels": False},
}

ENV_CLI_PATH = "MERMAID_CLI_PATH"
ENV_MERMAID_CONFIG = "MERMAID_CONFIG"


def find_mermaid_cli(cli_path: str | None = None) -> Path:
    """Locate the mmdc executable.

    Resolution order:
        1. Explicit ``cli_path`` (from config)
        2. MERMAID_CLI_PATH environment variable
        3. ``mmdc`` on PATH

    Raises:
        RendererUnavailable: If no usable executable is found
    """
    candidate = cli_path or os.getenv(ENV_CLI_PATH)
    if candidate:
        path = Path(candidate).expanduser()
        if path.is_file():
            return path
        raise RendererUnavailable(f"Mermaid CLI path '{path}' is not a file")

    found = shutil.which("mmdc")
    if found is None:
        raise RendererUnavailable(
            "Mermaid CLI (mmdc) not found in PATH. "
            "Install with: npm install -g @mermaid-js/mermaid-cli"
        )
    return Path(found)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def build_mermaid_config(*overrides: dict[str, Any] | None) -> dict[str, Any]:
    """Deep-merge config overrides over the defaults, later ones winning."""
    config = dict(DEFAULT_MERMAID_CONFIG)
    for override in overrides:
        if override:
            config = deep_merge(config, override)
    return config


def run_mmdc(
    source: str,
    *,
    config: dict[str, Any] | None = None,
    cli_path: str | None = None,
    timeout: float = 10.0,
) -> str:
    """Render diagram source to raw SVG with one mmdc process.

    Args:
        source: Diagram source (opaque)
        config: Mermaid config overrides
        cli_path: mmdc executable override
        timeout: Seconds before the process is killed

    Returns:
        Raw, unsanitized SVG markup

    Raises:
        RendererUnavailable: mmdc missing or not executable
        RenderTimeout: mmdc did not finish in time
        RenderFailed: mmdc exited non-zero or produced no output
    """
    if not source.strip():
        raise RenderFailed("Mermaid code is empty")

    cli = find_mermaid_cli(cli_path)

    with tempfile.TemporaryDirectory(prefix="mmd-") as tmp:
        tmp_dir = Path(tmp)
        input_path = tmp_dir / "diagram.mmd"
        output_path = tmp_dir / "diagram.svg"
        input_path.write_text(source, encoding="utf-8")

        env_config = os.getenv(ENV_MERMAID_CONFIG)
        if env_config and not config:
            config_path = Path(env_config)
        else:
            config_path = tmp_dir / "config.json"
            config_path.write_text(json.dumps(build_mermaid_config(config)), encoding="utf-8")

        cmd = [
            str(cli),
            "-i",
            str(input_path),
            "-o",
            str(output_path),
            "-b",
            "transparent",
            "-c",
            str(config_path),
        ]
        logger.debug(f"Running mermaid CLI: {cli.name}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise RenderTimeout(f"Mermaid CLI timed out after {timeout}s") from e
        except OSError as e:
            raise RendererUnavailable(f"Failed to execute mmdc: {e}") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise RenderFailed(f"Mermaid CLI error: {stderr or f'exit code {result.returncode}'}")

        if not output_path.exists():
            raise RenderFailed("Mermaid CLI did not produce an SVG output")

        return output_path.read_text(encoding="utf-8")
