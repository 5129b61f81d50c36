"""Renderer contract and the FIFO admission gate shared by both shapes."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import deque
from types import TracebackType
from typing import Any

from mmd.models import DiagramSource, RenderResult


class FifoGate:
    """Bounded admission in strict arrival order.

    At most ``limit`` holders at once. Callers beyond the limit wait and are
    admitted first-come, first-served; nobody is rejected.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self._cond = threading.Condition()
        self._waiters: deque[object] = deque()
        self._active = 0

    def acquire(self) -> None:
        with self._cond:
            if self._active < self.limit and not self._waiters:
                self._active += 1
                return
            ticket = object()
            self._waiters.append(ticket)
            while not (self._waiters[0] is ticket and self._active < self.limit):
                self._cond.wait()
            self._waiters.popleft()
            self._active += 1
            # The next waiter may also fit if several slots freed at once
            self._cond.notify_all()

    def release(self) -> None:
        with self._cond:
            if self._active == 0:
                raise RuntimeError("release() without acquire()")
            self._active -= 1
            self._cond.notify_all()

    @property
    def active(self) -> int:
        with self._cond:
            return self._active

    @property
    def waiting(self) -> int:
        with self._cond:
            return len(self._waiters)

    def __enter__(self) -> FifoGate:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class Renderer(ABC):
    """Turns diagram source into raw SVG markup.

    ``render`` never raises for render-level failures: timeouts, crashes and
    renderer errors come back as a failed ``RenderResult``.
    """

    def __init__(self, timeout: float = 10.0, max_in_flight: int = 4) -> None:
        self.timeout = timeout
        self.max_in_flight = max_in_flight
        self._gate = FifoGate(max_in_flight)

    @abstractmethod
    def render(
        self,
        source: DiagramSource,
        config: dict[str, Any] | None = None,
        timeout: float | None = None,
        request_id: str | None = None,
    ) -> RenderResult:
        """Render one diagram."""

    @abstractmethod
    def shutdown(self) -> None:
        """Release processes and threads. Further renders are refused."""

    def get_stats(self) -> dict[str, Any]:
        return {
            "max_in_flight": self.max_in_flight,
            "active": self._gate.active,
            "waiting": self._gate.waiting,
            "timeout": self.timeout,
        }

    def __enter__(self) -> Renderer:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.shutdown()
