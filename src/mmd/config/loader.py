"""YAML configuration loading for mermaid-preview.

Loads .mermaid-preview.yaml with renderer and output settings.

Example .mermaid-preview.yaml:

    version: 1
    log_level: INFO

    renderer:
      mode: persistent          # oneshot | persistent
      timeout: 10.0
      max_in_flight: 4
      mermaid_config:
        theme: neutral

    output:
      dir: .mermaid
      alt_text: Mermaid Diagram

Environment variables override the file:

    MERMAID_CLI_PATH     path to the mmdc executable
    MMD_RENDER_TIMEOUT   per-render timeout in seconds
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from mmd.paths import get_project_config_path

# Current config schema version
CURRENT_CONFIG_VERSION = 1

# Environment overrides consumed (not owned) by the core
ENV_CONFIG_PATH = "MMD_CONFIG"
ENV_CLI_PATH = "MERMAID_CLI_PATH"
ENV_RENDER_TIMEOUT = "MMD_RENDER_TIMEOUT"


class RendererConfig(BaseModel):
    """External renderer process configuration."""

    mode: Literal["oneshot", "persistent"] = Field(
        default="oneshot",
        description="Spawn one mmdc per request, or reuse one worker process",
    )
    cli_path: str | None = Field(
        default=None,
        description="Path to the mmdc executable (default: search PATH)",
    )
    command: list[str] = Field(
        default_factory=list,
        description="argv for the persistent worker (default: python -m mmd_worker)",
    )
    timeout: float = Field(
        default=10.0,
        ge=0.1,
        le=600.0,
        description="Per-render timeout in seconds",
    )
    max_in_flight: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum simultaneously outstanding requests",
    )
    max_restarts: int = Field(
        default=3,
        ge=0,
        le=100,
        description="Consecutive restarts allowed inside restart_window",
    )
    restart_window: float = Field(
        default=60.0,
        ge=1.0,
        le=3600.0,
        description="Rolling window in seconds for counting restarts",
    )
    mermaid_config: dict[str, Any] = Field(
        default_factory=dict,
        description="Mermaid config overrides merged over the defaults",
    )


class OutputConfig(BaseModel):
    """Where and how artifacts are written."""

    dir: str = Field(
        default=".mermaid",
        description="Artifact directory, relative to the document directory",
    )
    alt_text: str = Field(
        default="Mermaid Diagram",
        description="Alt text of the inserted image reference",
    )
    reuse_existing: bool = Field(
        default=True,
        description="Skip the renderer when a consistent artifact already exists",
    )
    root: str | None = Field(
        default=None,
        description="Write root (default: the document directory)",
    )


class MmdConfig(BaseModel):
    """Root configuration."""

    model_config = ConfigDict(extra="ignore")

    # Private attribute to track config file location (not serialized)
    _config_path: Path | None = PrivateAttr(default=None)

    version: int = Field(
        default=1,
        description="Config schema version for migration support",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )
    renderer: RendererConfig = Field(default_factory=RendererConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)

    @property
    def config_path(self) -> Path | None:
        return self._config_path


def _resolve_config_path(config_path: Path | str | None) -> Path | None:
    """Resolve config path from explicit path, env var, or project default.

    Resolution order:
    1. Explicit config_path if provided
    2. MMD_CONFIG env var
    3. cwd/.mermaid-preview.yaml
    4. None (use defaults)
    """
    if config_path is not None:
        return Path(config_path)

    env_config = os.getenv(ENV_CONFIG_PATH)
    if env_config:
        return Path(env_config)

    project_config = get_project_config_path()
    if project_config.exists():
        return project_config

    return None


def _load_yaml_file(config_path: Path) -> dict[str, Any]:
    """Load and parse YAML file with error handling.

    Raises:
        FileNotFoundError: If file doesn't exist.
        ValueError: If YAML is invalid or file can't be read.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    try:
        with config_path.open() as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_path}: {e}") from e
    except OSError as e:
        raise ValueError(f"Error reading {config_path}: {e}") from e

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise ValueError(f"Config root must be a mapping in {config_path}")
    return raw_data


def _validate_version(data: dict[str, Any], config_path: Path) -> None:
    """Validate config version and set default if missing.

    Raises:
        ValueError: If version is unsupported.
    """
    config_version = data.get("version")
    if config_version is None:
        logger.warning(
            f"Config file missing 'version' field, assuming version 1. "
            f"Add 'version: {CURRENT_CONFIG_VERSION}' to {config_path}"
        )
        data["version"] = 1
    elif not isinstance(config_version, int) or config_version > CURRENT_CONFIG_VERSION:
        raise ValueError(
            f"Config version {config_version} is not supported. "
            f"Maximum supported version is {CURRENT_CONFIG_VERSION}."
        )


def _apply_env_overrides(config: MmdConfig) -> None:
    """Apply environment-level overrides on top of the loaded file."""
    cli_path = os.getenv(ENV_CLI_PATH)
    if cli_path:
        config.renderer.cli_path = cli_path

    timeout = os.getenv(ENV_RENDER_TIMEOUT)
    if timeout:
        try:
            value = float(timeout)
        except ValueError:
            logger.warning(f"Ignoring non-numeric {ENV_RENDER_TIMEOUT}={timeout!r}")
        else:
            if value > 0:
                config.renderer.timeout = value
            else:
                logger.warning(f"Ignoring non-positive {ENV_RENDER_TIMEOUT}={timeout!r}")


def load_config(config_path: Path | str | None = None) -> MmdConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file (overrides resolution)

    Returns:
        Validated MmdConfig

    Raises:
        FileNotFoundError: If explicit config path doesn't exist
        ValueError: If YAML is invalid or validation fails
    """
    resolved_path = _resolve_config_path(config_path)

    if resolved_path is None:
        logger.debug("No config file found, using defaults")
        config = MmdConfig()
        _apply_env_overrides(config)
        return config

    logger.debug(f"Loading config from {resolved_path}")

    raw_data = _load_yaml_file(resolved_path)
    _validate_version(raw_data, resolved_path)

    try:
        config = MmdConfig.model_validate(raw_data)
    except Exception as e:
        raise ValueError(f"Invalid configuration in {resolved_path}: {e}") from e

    config._config_path = resolved_path.resolve()
    _apply_env_overrides(config)

    logger.debug(f"Config loaded: version {config.version}")

    return config


# Global config instance
_config: MmdConfig | None = None


def get_config(config_path: Path | str | None = None, reload: bool = False) -> MmdConfig:
    """Get or load the global configuration.

    Args:
        config_path: Path to config file (only used on first load)
        reload: Force reload configuration
    """
    global _config

    if _config is None or reload:
        _config = load_config(config_path)

    return _config
