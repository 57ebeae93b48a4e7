"""
webhook.py — HTTP webhook server for on-demand runs.

  POST /trigger               wake the scheduler loop (re-check crons now)
  POST /trigger/<task_id>     run one task now (?mode=full|incremental)
  POST /cancel/<task_id>      stop a running task between files
  GET  /health
"""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlsplit

from scheduler import Scheduler

log = logging.getLogger("strmsync")

_MODES = {"full": False, "incremental": True}


class _WebhookHandler(BaseHTTPRequestHandler):
    """Minimal HTTP handler routing to the scheduler."""

    # Injected via the class attribute by start_server()
    scheduler: Scheduler

    def _reply(self, status: int, body: dict | None = None) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        if body is not None:
            self.wfile.write(json.dumps(body).encode("utf-8") + b"\n")

    def do_POST(self):
        url = urlsplit(self.path)
        parts = [p for p in url.path.split("/") if p]

        if parts == ["trigger"]:
            self.scheduler.wake.set()
            log.info("Webhook trigger received, waking scheduler")
            self._reply(200, {"status": "triggered"})
        elif len(parts) == 2 and parts[0] == "trigger":
            mode = parse_qs(url.query).get("mode", [""])[0]
            if mode and mode not in _MODES:
                self._reply(400, {"error": f"unknown mode {mode!r}"})
                return
            future = self.scheduler.trigger_by_id(parts[1], is_increment=_MODES.get(mode))
            if future is None:
                self._reply(409, {"status": "dropped"})
            else:
                self._reply(202, {"status": "started"})
        elif len(parts) == 2 and parts[0] == "cancel":
            if self.scheduler.cancel(parts[1]):
                self._reply(202, {"status": "cancelling"})
            else:
                self._reply(404, {"status": "not running"})
        else:
            self._reply(404)

    def do_GET(self):
        if self.path.rstrip("/") == "/health":
            self._reply(200, {"status": "ok"})
        else:
            self._reply(404)

    def log_message(self, format, *args):  # noqa: A002
        """Silence the default stderr access log."""
        pass


def start_server(scheduler: Scheduler, port: int) -> ThreadingHTTPServer:
    """Start the webhook HTTP server in a daemon thread.

    Args:
        scheduler: The scheduler that receives triggers.
        port:      The port to listen on (0 picks a free one).
    """
    _WebhookHandler.scheduler = scheduler
    server = ThreadingHTTPServer(("", port), _WebhookHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    log.info(f"Webhook server listening on port {server.server_address[1]}")
    return server
