"""Line-JSON renderer worker.

A long-lived process that reads render requests from stdin and writes one
response line per request to stdout. Used by ``mmd.renderer.PersistentRenderer``.
"""

from mmd_worker.worker import handle_request, worker_main

__all__ = ["handle_request", "worker_main"]
