"""Structured logging for the render pipeline.

All modules log through loguru. ``LogSpan`` wraps an operation, records its
attributes and elapsed time, and emits one entry when the block exits.
"""

from __future__ import annotations

import sys
import time
from types import TracebackType
from typing import Any

from loguru import logger

__all__ = ["LogSpan", "configure_logging", "security_event"]

_DEFAULT_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", *, serialize: bool = False) -> None:
    """Replace loguru's default handler with a stderr sink.

    stdout is left alone: the CLI writes documents there and the worker
    uses it for protocol frames.

    Args:
        level: Minimum log level
        serialize: Emit JSON lines instead of formatted text
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=_DEFAULT_FORMAT,
        serialize=serialize,
        backtrace=False,
        diagnose=False,
    )


def security_event(message: str, **attrs: Any) -> None:
    """Log a security-relevant rejection (path traversal, unsafe markup)."""
    logger.bind(security=True, **attrs).warning(f"SECURITY: {message}")


class LogSpan:
    """A structured logging span with timing and attributes.

    Example:
        >>> with LogSpan(span="store.write", path="a.svg") as s:
        ...     s.add(bytes=120)
    """

    def __init__(self, span: str, level: str = "DEBUG", **attrs: Any) -> None:
        """Initialize a log span.

        Args:
            span: Span name (e.g., "renderer.render")
            level: Level used when the span completes without error
            **attrs: Initial attributes to log
        """
        self.name = span
        self.level = level
        self.attrs: dict[str, Any] = dict(attrs)
        self.start_time = time.monotonic()
        self.error: str | None = None

    def add(self, key: str | None = None, value: Any = None, **attrs: Any) -> LogSpan:
        """Add attributes to the span.

        Returns:
            Self for method chaining
        """
        if key is not None:
            self.attrs[key] = value
        self.attrs.update(attrs)
        return self

    @property
    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self.start_time) * 1000, 2)

    def _emit(self) -> None:
        """Emit the log entry."""
        entry = {"span": self.name, "elapsed_ms": self.elapsed_ms, **self.attrs}
        if self.error:
            entry["error"] = self.error
        bound = logger.bind(**entry)
        details = " ".join(f"{k}={v}" for k, v in entry.items() if k != "span")
        if self.error or "error" in self.attrs:
            bound.warning(f"{self.name} {details}")
        else:
            bound.log(self.level, f"{self.name} {details}")

    def __enter__(self) -> LogSpan:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is not None:
            self.error = f"{type(exc).__name__}: {exc}"
        self._emit()
