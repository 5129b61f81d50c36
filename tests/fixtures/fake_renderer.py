"""Scriptable stand-in for the line-JSON renderer worker.

Behaviour is driven by directives at the start of the diagram text:

    CRASH          exit immediately without answering
    FAIL           answer with ok=false
    KIND:<kind>    answer with ok=false and the given failure kind
    CONFIG         answer with an SVG whose text is the request config as JSON
    HANG           never answer
    SLEEP:<secs>   answer after a delay (responses may overtake each other)
    JUNK           emit a response with an unknown id and noise first
    SCRIPT         answer with markup containing a script element

Anything else is answered with a small SVG that echoes the diagram text.
Passing ``--exit-on-start`` makes the process exit before reading anything.
"""

from __future__ import annotations

import html
import json
import os
import sys
import threading
import time

_write_lock = threading.Lock()


def _send(payload: dict) -> None:
    with _write_lock:
        sys.stdout.write(json.dumps(payload) + "\n")
        sys.stdout.flush()


def _svg_for(diagram: str) -> str:
    return (
        '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 100 20">'
        f"<text>{html.escape(diagram.strip(), quote=False)}</text></svg>"
    )


def _answer(request_id: str, diagram: str, config: dict) -> None:
    head = diagram.strip()
    if head.startswith("SLEEP:"):
        delay = float(head.split()[0].split(":", 1)[1])
        time.sleep(delay)
    elif head.startswith("HANG"):
        return
    elif head.startswith("FAIL"):
        _send({"id": request_id, "ok": False, "error": "Parse error on line 1"})
        return
    elif head.startswith("KIND:"):
        kind = head.split()[0].split(":", 1)[1]
        _send({"id": request_id, "ok": False, "error": f"failed with {kind}", "kind": kind})
        return
    elif head.startswith("CONFIG"):
        _send({"id": request_id, "ok": True, "svg": _svg_for(json.dumps(config, sort_keys=True))})
        return
    elif head.startswith("JUNK"):
        with _write_lock:
            sys.stdout.write("this is not json\n")
            sys.stdout.flush()
        _send({"id": "no-such-request", "ok": True, "svg": "<svg/>"})
        _send({"id": request_id, "ok": True, "svg": _svg_for(diagram), "elapsed_ms": 3})
        return
    elif head.startswith("SCRIPT"):
        _send({"id": request_id, "ok": True, "svg": "<svg><script>alert(1)</script></svg>"})
        return
    _send({"id": request_id, "ok": True, "svg": _svg_for(diagram)})


def main() -> None:
    if "--exit-on-start" in sys.argv:
        sys.exit(3)

    for line in sys.stdin:
        if not line.strip():
            continue
        request = json.loads(line)
        diagram = request["diagram"]
        if diagram.strip().startswith("CRASH"):
            print("fake renderer crashing", file=sys.stderr, flush=True)
            os._exit(4)
        threading.Thread(
            target=_answer, args=(request["id"], diagram, request.get("config", {})), daemon=True
        ).start()


if __name__ == "__main__":
    main()
