# luggage_cache/webui/server.py

# JSON management endpoints for the AI cache: statistics, performance report,
# warnings and the clear operations.

import http.server
import json
import logging
import socketserver
import urllib.parse
from typing import Any, Optional

from luggage_cache.cache.models import CacheCategory
from luggage_cache.cache.store import CacheStore
from luggage_cache.monitor import PerformanceMonitor

logger = logging.getLogger(__name__)


class CacheManagementHandler(http.server.BaseHTTPRequestHandler):
    """HTTP handler exposing cache statistics and maintenance commands."""

    def __init__(self, *args, store: Optional[CacheStore] = None, monitor: Optional[PerformanceMonitor] = None, **kwargs):
        self.store = store
        self.monitor = monitor
        super().__init__(*args, **kwargs)

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    def do_GET(self):
        path = urllib.parse.urlparse(self.path).path.rstrip("/")

        if path == "/favicon.ico":
            self.send_response(204)
            self.end_headers()
            return
        if path == "/statistics":
            return self.send_json_response(self.store.statistics().model_dump(mode="json"))
        if path == "/report":
            return self.send_json_response(self.monitor.report().model_dump(mode="json"))
        if path == "/warnings":
            return self.send_json_response([warning.model_dump(mode="json") for warning in self.monitor.warnings()])
        if path == "/trends":
            return self.send_json_response(self.monitor.trends().model_dump(mode="json"))
        self.send_json_error(404, f"Unknown endpoint: {path or '/'}")

    def do_POST(self):
        path = urllib.parse.urlparse(self.path).path.rstrip("/")

        if path == "/clear/expired":
            return self.send_json_response({"removed": self.store.clear_expired()})
        if path == "/clear/all":
            return self.send_json_response({"removed": self.store.clear_all()})
        if path.startswith("/clear/category/"):
            name = urllib.parse.unquote(path[len("/clear/category/"):])
            try:
                category = CacheCategory.parse(name)
            except ValueError as exc:
                return self.send_json_error(400, str(exc))
            return self.send_json_response({"category": category.value, "removed": self.store.clear_category(category)})
        if path == "/monitor/reset":
            self.monitor.reset()
            return self.send_json_response({"reset": True})
        self.send_json_error(404, f"Unknown endpoint: {path or '/'}")

    def send_json_response(self, data: Any, status: int = 200):
        payload = json.dumps(data, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        self.wfile.write(payload)

    def send_json_error(self, status: int, message: str):
        self.send_json_response({"error": message}, status=status)


# Factory that injects the cache and monitor into each handler instance.
def create_handler_factory(store: CacheStore, monitor: PerformanceMonitor):
    def handler_factory(*args, **kwargs):
        return CacheManagementHandler(*args, store=store, monitor=monitor, **kwargs)

    return handler_factory


class ReusableTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True


def create_server(host: str, port: int, store: CacheStore, monitor: PerformanceMonitor) -> ReusableTCPServer:
    return ReusableTCPServer((host, port), create_handler_factory(store, monitor))


def start_server(port: int, store: CacheStore, monitor: PerformanceMonitor, host: str = "") -> None:
    with create_server(host, port, store, monitor) as httpd:
        print(f"[*] Cache management server running at http://{host or '0.0.0.0'}:{port}")
        httpd.serve_forever()
