"""Long-lived renderer process reused across requests.

Requests and responses are newline-delimited JSON over the process's
stdin/stdout:

    -> {"id": "3f2a9c0d1b7e", "diagram": "graph TD; A-->B", "config": {...}}
    <- {"id": "3f2a9c0d1b7e", "ok": true, "svg": "<svg ...>"}
    <- {"id": "3f2a9c0d1b7e", "ok": false, "error": "Parse error on line 1", "kind": "render_failed"}

One writer thread per process drains a frame queue into stdin, and one
reader thread matches responses to waiting callers by id, so responses may
arrive in any order. A response whose id is unknown is logged and dropped.
A response for a request that already timed out is drained and dropped the
same way. The ``kind`` of a failure is optional; a missing or unknown kind
reads as render_failed.

A request that times out before its frame left the writer means the
renderer stopped reading stdin. The process is killed so the writer and
everything queued behind it are released.

Process lifecycle is an explicit state machine:

    IDLE -> RUNNING -> CRASHED -> RESTARTING -> RUNNING
                                      \\-> FAILED  (restart cap hit, until reset())
    any  -> STOPPED (shutdown)
"""

from __future__ import annotations

import json
import os
import queue
import subprocess
import sys
import threading
import time
import uuid
from collections import OrderedDict, deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from mmd.errors import ErrorKind, RendererUnavailable
from mmd.logging import LogSpan
from mmd.models import DiagramSource, RenderRequest, RenderResult
from mmd.renderer.base import Renderer
from mmd.renderer.mmdc import deep_merge

# Environment passed through to the renderer process (not full os.environ)
_PASSTHROUGH_ENV = (
    "PATH",
    "HOME",
    "LANG",
    "PYTHONPATH",
    "SYSTEMROOT",
    "MERMAID_CLI_PATH",
    "MERMAID_CONFIG",
    "PUPPETEER_EXECUTABLE_PATH",
)

# Failure kinds a renderer may report; anything else is treated as render_failed
_WIRE_KINDS = frozenset(
    {ErrorKind.RENDERER_UNAVAILABLE, ErrorKind.RENDER_TIMEOUT, ErrorKind.RENDER_FAILED}
)


class RendererState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    CRASHED = "crashed"
    RESTARTING = "restarting"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class RendererProcess:
    """One spawned renderer process.

    Frames reach stdin only through ``outbox`` and the writer thread, so a
    renderer that stops reading never blocks a caller past its timeout.
    """

    process: subprocess.Popen[str]
    generation: int
    outbox: queue.Queue[str | None] = field(default_factory=queue.Queue)
    frames_queued: int = 0
    frames_written: int = 0
    writing: bool = False
    started_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)
    request_count: int = 0

    def is_alive(self) -> bool:
        """Check if the renderer process is still running."""
        return self.process.poll() is None

    def refresh(self) -> None:
        """Update last_used timestamp."""
        self.last_used = time.time()
        self.request_count += 1


def default_worker_command(cli_path: str | None = None) -> list[str]:
    """argv for the bundled line-JSON worker."""
    cmd = [sys.executable, "-m", "mmd_worker"]
    if cli_path:
        cmd.extend(["--cli-path", cli_path])
    return cmd


def _truncate(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _stop_process(process: subprocess.Popen[str], grace: float = 2.0) -> None:
    """Wait for exit after stdin closes, then terminate, then kill."""
    try:
        process.wait(timeout=grace)
        return
    except subprocess.TimeoutExpired:
        pass
    process.terminate()
    try:
        process.wait(timeout=5.0)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


class PersistentRenderer(Renderer):
    """Multiplexes render requests over one long-lived renderer process.

    The process is spawned on first use and restarted transparently after a
    crash, up to ``max_restarts`` restarts within ``restart_window`` seconds
    with no successful render in between. Past that the renderer refuses
    work until ``reset()`` is called.
    """

    # Timed-out request ids remembered so their late responses drop quietly
    ABANDONED_LIMIT = 1024

    def __init__(
        self,
        command: list[str] | None = None,
        timeout: float = 10.0,
        max_in_flight: int = 4,
        max_restarts: int = 3,
        restart_window: float = 60.0,
        mermaid_config: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the renderer.

        Args:
            command: argv of the renderer process (default: python -m mmd_worker)
            timeout: Per-request timeout in seconds
            max_in_flight: Maximum outstanding requests; later ones wait in order
            max_restarts: Restarts allowed inside the window before giving up
            restart_window: Rolling window for counting restarts, in seconds
            mermaid_config: Mermaid config sent with every request
        """
        super().__init__(timeout=timeout, max_in_flight=max_in_flight)
        self.command = list(command) if command else default_worker_command()
        self.max_restarts = max_restarts
        self.restart_window = restart_window
        self.mermaid_config = mermaid_config or {}

        self._lock = threading.Lock()
        self._proc: RendererProcess | None = None
        self._state = RendererState.IDLE
        self._generation = 0
        # request id -> (process generation, waiting caller)
        self._pending: dict[str, tuple[int, Future[RenderResult]]] = {}
        # request id -> process generation, oldest first
        self._abandoned: OrderedDict[str, int] = OrderedDict()
        self._restarts: deque[float] = deque()

    # ------------------------------------------------------------ lifecycle

    @property
    def state(self) -> RendererState:
        with self._lock:
            return self._state

    def _env(self) -> dict[str, str]:
        return {key: value for key in _PASSTHROUGH_ENV if (value := os.environ.get(key))}

    def _spawn(self) -> RendererProcess:
        """Start a renderer process and its reader threads. Caller holds _lock."""
        logger.debug(f"Spawning renderer: {' '.join(self.command)}")
        try:
            process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,  # Line buffered
                env=self._env(),
            )
        except OSError as e:
            raise RendererUnavailable(f"Failed to launch renderer {self.command[0]}: {e}") from e

        self._generation += 1
        handle = RendererProcess(process=process, generation=self._generation)
        threading.Thread(
            target=self._read_loop,
            args=(handle,),
            daemon=True,
            name=f"renderer-reader-{handle.generation}",
        ).start()
        threading.Thread(
            target=self._drain_stderr,
            args=(handle,),
            daemon=True,
            name=f"renderer-stderr-{handle.generation}",
        ).start()
        threading.Thread(
            target=self._write_loop,
            args=(handle,),
            daemon=True,
            name=f"renderer-writer-{handle.generation}",
        ).start()
        return handle

    def _ensure_running(self) -> RendererProcess:
        """Return a live process, starting or restarting one if needed.

        Raises:
            RendererUnavailable: Shut down, restart cap reached, or launch failed
        """
        with self._lock:
            if self._state is RendererState.STOPPED:
                raise RendererUnavailable("Renderer has been shut down")
            if self._state is RendererState.FAILED:
                raise RendererUnavailable(
                    f"Renderer disabled after {self.max_restarts} restarts in "
                    f"{self.restart_window:.0f}s; reset() required"
                )

            handle = self._proc
            if handle is not None and handle.is_alive() and self._state is RendererState.RUNNING:
                handle.refresh()
                return handle

            if self._state is not RendererState.IDLE:
                now = time.monotonic()
                while self._restarts and now - self._restarts[0] > self.restart_window:
                    self._restarts.popleft()
                if len(self._restarts) >= self.max_restarts:
                    self._state = RendererState.FAILED
                    logger.error(
                        f"Renderer crashed {len(self._restarts)} times within "
                        f"{self.restart_window:.0f}s, refusing further renders"
                    )
                    raise RendererUnavailable(
                        f"Renderer disabled after {self.max_restarts} restarts in "
                        f"{self.restart_window:.0f}s; reset() required"
                    )
                self._restarts.append(now)
                self._state = RendererState.RESTARTING
                logger.warning(f"Restarting renderer (attempt {len(self._restarts)})")
                if handle is not None:
                    handle.outbox.put(None)
                    if handle.is_alive():
                        handle.process.kill()

            try:
                handle = self._spawn()
            except RendererUnavailable:
                self._state = RendererState.CRASHED
                self._proc = None
                raise
            self._proc = handle
            self._state = RendererState.RUNNING
            handle.refresh()
            return handle

    def reset(self) -> None:
        """Clear a FAILED state so the next render may start a process."""
        with self._lock:
            if self._state in (RendererState.FAILED, RendererState.CRASHED):
                self._state = RendererState.IDLE if self._proc is None else RendererState.CRASHED
            self._restarts.clear()
        logger.info("Renderer restart counter reset")

    def shutdown(self) -> None:
        """Stop the renderer process and fail anything still outstanding."""
        with self._lock:
            self._state = RendererState.STOPPED
            handle = self._proc
            self._proc = None
            orphaned = [future for _, future in self._pending.values()]
            self._pending.clear()
            self._abandoned.clear()

        for future in orphaned:
            self._resolve(
                future,
                RenderResult.failure(ErrorKind.RENDERER_UNAVAILABLE, "Renderer shut down"),
            )

        if handle is None:
            return
        # Writer closes stdin once the queue is drained
        handle.outbox.put(None)
        if handle.is_alive():
            logger.info(f"Shutting down renderer (pid {handle.process.pid})")
            if handle.writing:
                # Stuck on a full pipe; the queue will never drain
                handle.process.kill()
            _stop_process(handle.process)

    # -------------------------------------------------------------- writing

    def _write_loop(self, handle: RendererProcess) -> None:
        """Write queued frames to one process until told to stop."""
        stdin = handle.process.stdin
        try:
            while (frame := handle.outbox.get()) is not None:
                if stdin is None:
                    raise OSError("renderer stdin is not a pipe")
                handle.writing = True
                stdin.write(frame)
                stdin.flush()
                handle.writing = False
                handle.frames_written += 1
        except (OSError, ValueError) as e:
            logger.warning(f"Renderer[{handle.generation}] write failed: {e}")
            if handle.is_alive():
                handle.process.kill()
        finally:
            handle.writing = False
            if stdin is not None:
                try:
                    stdin.close()
                except (OSError, ValueError):
                    logger.debug(f"Renderer[{handle.generation}] stdin already broken")

    # -------------------------------------------------------------- reading

    @staticmethod
    def _resolve(future: Future[RenderResult], result: RenderResult) -> None:
        if not future.done():
            future.set_result(result)

    def _read_loop(self, handle: RendererProcess) -> None:
        """Dispatch every stdout line of one process until EOF."""
        stdout = handle.process.stdout
        try:
            if stdout is not None:
                for line in stdout:
                    self._dispatch_line(line)
        except (OSError, ValueError) as e:
            logger.debug(f"Renderer stdout closed: {e}")
        finally:
            self._on_exit(handle)

    def _drain_stderr(self, handle: RendererProcess) -> None:
        stderr = handle.process.stderr
        try:
            if stderr is not None:
                for line in stderr:
                    if line.strip():
                        logger.debug(f"renderer[{handle.generation}]: {line.rstrip()}")
        except (OSError, ValueError):
            pass

    def _dispatch_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Discarding non-JSON renderer output: {_truncate(line)}")
            return
        if not isinstance(message, dict) or not isinstance(message.get("id"), str):
            logger.warning(f"Discarding renderer message without id: {_truncate(line)}")
            return

        request_id = message["id"]
        with self._lock:
            entry = self._pending.pop(request_id, None)
            if entry is None:
                if self._abandoned.pop(request_id, None) is not None:
                    logger.debug(f"Discarding late response for timed-out request {request_id}")
                else:
                    logger.warning(f"Discarding response with unknown id {request_id!r}")
                return
            if message.get("ok") is True:
                # Restart cap counts consecutive failures only
                self._restarts.clear()

        _, future = entry
        self._resolve(future, self._to_result(message, request_id))

    @staticmethod
    def _to_result(message: dict[str, Any], request_id: str) -> RenderResult:
        if message.get("ok") is True:
            svg = message.get("svg")
            if isinstance(svg, str):
                return RenderResult.success(svg, request_id=request_id)
            return RenderResult.failure(
                ErrorKind.RENDER_FAILED,
                "Renderer response has no svg",
                request_id=request_id,
            )
        error = message.get("error")
        try:
            kind = ErrorKind(message.get("kind"))
        except (ValueError, TypeError):
            kind = ErrorKind.RENDER_FAILED
        if kind not in _WIRE_KINDS:
            kind = ErrorKind.RENDER_FAILED
        return RenderResult.failure(
            kind,
            str(error) if error else "Renderer reported a failure",
            request_id=request_id,
        )

    def _on_exit(self, handle: RendererProcess) -> None:
        """Fail the requests written to a process that went away."""
        process = handle.process
        handle.outbox.put(None)
        try:
            returncode = process.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            # stdout closed but the process lingers
            process.kill()
            returncode = process.wait()

        with self._lock:
            orphaned = [
                (request_id, future)
                for request_id, (generation, future) in self._pending.items()
                if generation == handle.generation
            ]
            for request_id, _ in orphaned:
                del self._pending[request_id]
            # No response can arrive for ids written to a dead process
            for request_id in [
                rid for rid, generation in self._abandoned.items() if generation == handle.generation
            ]:
                del self._abandoned[request_id]
            is_current = self._proc is handle
            if is_current:
                if self._state is RendererState.RUNNING:
                    self._state = RendererState.CRASHED

        if is_current and self.state is RendererState.CRASHED:
            logger.warning(
                f"Renderer exited with code {returncode}, "
                f"{len(orphaned)} request(s) outstanding"
            )
        for request_id, future in orphaned:
            self._resolve(
                future,
                RenderResult.failure(
                    ErrorKind.RENDERER_CRASHED,
                    f"Renderer crashed (exit code {returncode})",
                    request_id=request_id,
                ),
            )

    # ------------------------------------------------------------- requests

    def _remember_abandoned(self, request_id: str, generation: int) -> None:
        """Record a request whose response will be dropped. Caller holds _lock."""
        self._abandoned[request_id] = generation
        while len(self._abandoned) > self.ABANDONED_LIMIT:
            self._abandoned.popitem(last=False)

    def cancel(self, request_id: str) -> bool:
        """Abandon an outstanding request; its eventual response is dropped.

        Returns:
            True if the request was outstanding
        """
        with self._lock:
            entry = self._pending.pop(request_id, None)
            if entry is None:
                return False
            self._remember_abandoned(request_id, entry[0])
        self._resolve(
            entry[1],
            RenderResult.failure(ErrorKind.RENDER_FAILED, "Render cancelled", request_id=request_id),
        )
        return True

    def render(
        self,
        source: DiagramSource,
        config: dict[str, Any] | None = None,
        timeout: float | None = None,
        request_id: str | None = None,
    ) -> RenderResult:
        """Send one request and wait for its response or the timeout.

        Args:
            source: Diagram to render
            config: Per-request Mermaid config, merged over the renderer's
            timeout: Override of the default timeout
            request_id: Correlation id (default: random)
        """
        request_id = request_id or uuid.uuid4().hex[:12]
        effective_timeout = timeout or self.timeout
        merged = deep_merge(self.mermaid_config, config or {})

        with self._gate, LogSpan(
            span="renderer.persistent", id=request_id, ordinal=source.ordinal
        ) as s:
            try:
                handle = self._ensure_running()
            except RendererUnavailable as e:
                s.add(error=e.kind.value)
                return RenderResult.failure(e.kind, e.message, request_id=request_id)

            frame = RenderRequest(id=request_id, source=source, config=merged).to_wire()
            future: Future[RenderResult] = Future()
            with self._lock:
                if self._proc is not handle or self._state is not RendererState.RUNNING:
                    s.add(error="crashed")
                    return RenderResult.failure(
                        ErrorKind.RENDERER_CRASHED,
                        "Renderer exited before the request was sent",
                        request_id=request_id,
                    )
                self._pending[request_id] = (handle.generation, future)
                handle.frames_queued += 1
                sequence = handle.frames_queued
                handle.outbox.put(frame)

            try:
                result = future.result(timeout=effective_timeout)
            except TimeoutError:
                with self._lock:
                    still_pending = self._pending.pop(request_id, None) is not None
                    if still_pending:
                        self._remember_abandoned(request_id, handle.generation)
                if not still_pending and future.done():
                    # Answered between the timeout and the lock
                    result = future.result()
                else:
                    if handle.frames_written < sequence and handle.is_alive():
                        logger.warning(
                            f"Renderer[{handle.generation}] stopped reading stdin, "
                            f"killing pid {handle.process.pid}"
                        )
                        handle.process.kill()
                    s.add(error="timeout")
                    return RenderResult.failure(
                        ErrorKind.RENDER_TIMEOUT,
                        f"Renderer did not respond within {effective_timeout}s",
                        request_id=request_id,
                    )

            s.add(ok=result.ok)
            return result

    def get_stats(self) -> dict[str, Any]:
        """Get renderer statistics."""
        stats = super().get_stats()
        with self._lock:
            handle = self._proc
            stats.update(
                {
                    "state": self._state.value,
                    "generation": self._generation,
                    "pending": len(self._pending),
                    "abandoned": len(self._abandoned),
                    "recent_restarts": len(self._restarts),
                    "pid": handle.process.pid if handle else None,
                    "calls": handle.request_count if handle else 0,
                }
            )
        return stats
