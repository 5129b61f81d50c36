"""Worker main loop for line-JSON render requests over stdin/stdout.

Request format:
    {"id": "...", "diagram": "graph TD; A-->B", "config": {...}}

Response format:
    {"id": "...", "ok": true, "svg": "<svg ...>"}
    {"id": "...", "ok": false, "error": "message", "kind": "render_timeout"}

``kind`` is present when the failure maps to a pipeline error kind
(renderer_unavailable, render_timeout, render_failed).

Unknown request fields are ignored. Diagnostics go to stderr only; stdout
carries nothing but response lines.
"""

from __future__ import annotations

import json
import sys
import threading
import traceback
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import IO, Any

from mmd.errors import PipelineError

RenderFn = Callable[[str, dict[str, Any]], str]


def handle_request(line: str, render_fn: RenderFn) -> dict[str, Any] | None:
    """Turn one request line into a response dict.

    Returns:
        Response to send, or None for a blank line
    """
    line = line.strip()
    if not line:
        return None

    try:
        request = json.loads(line)
    except json.JSONDecodeError as e:
        return {"id": None, "ok": False, "error": f"Invalid JSON: {e}"}

    if not isinstance(request, dict):
        return {"id": None, "ok": False, "error": "Request must be a JSON object"}

    request_id = request.get("id")
    diagram = request.get("diagram")
    if not isinstance(diagram, str):
        return {"id": request_id, "ok": False, "error": "Missing 'diagram' field"}

    config = request.get("config") or {}
    if not isinstance(config, dict):
        return {"id": request_id, "ok": False, "error": "'config' must be an object"}

    try:
        svg = render_fn(diagram, config)
    except PipelineError as e:
        traceback.print_exc(file=sys.stderr)
        return {"id": request_id, "ok": False, "error": e.message, "kind": e.kind.value}
    except Exception as e:
        # Log full traceback to stderr
        traceback.print_exc(file=sys.stderr)
        return {"id": request_id, "ok": False, "error": f"{type(e).__name__}: {e}"}
    return {"id": request_id, "ok": True, "svg": svg}


def worker_main(
    render_fn: RenderFn,
    *,
    jobs: int = 1,
    stdin: IO[str] | None = None,
    stdout: IO[str] | None = None,
) -> None:
    """Standard worker message loop.

    Reads requests until EOF. With ``jobs`` > 1 requests are rendered
    concurrently and responses are written as they complete, so they may
    arrive in a different order than the requests.

    Args:
        render_fn: Callable taking (diagram, config) and returning SVG
        jobs: Number of requests rendered at once
        stdin: Request stream (default: sys.stdin)
        stdout: Response stream (default: sys.stdout)
    """
    source = stdin if stdin is not None else sys.stdin
    sink = stdout if stdout is not None else sys.stdout
    write_lock = threading.Lock()

    def respond(line: str) -> None:
        response = handle_request(line, render_fn)
        if response is None:
            return
        frame = json.dumps(response, ensure_ascii=False)
        with write_lock:
            sink.write(frame + "\n")
            sink.flush()

    if jobs <= 1:
        for line in source:
            respond(line)
        return

    with ThreadPoolExecutor(max_workers=jobs, thread_name_prefix="mmd-worker") as pool:
        for line in source:
            pool.submit(respond, line)
