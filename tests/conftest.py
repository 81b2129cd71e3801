from __future__ import annotations

from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import io
import json
import socket
import threading

import pytest
from rich.console import Console

from mytunnel_ctl.core.console import Reporter


class RecordingReporter(Reporter):
    def __init__(self) -> None:
        self.buffer = io.StringIO()
        super().__init__(Console(file=self.buffer, width=200, highlight=False, color_system=None))

    @property
    def text(self) -> str:
        return self.buffer.getvalue()


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


class StatusServer:
    """Tiny local HTTP server standing in for the tunnel's status API."""

    def __init__(self) -> None:
        self.routes: dict[str, tuple[int, str]] = {"/": (200, "ok")}
        self.requests: list[str] = []
        routes, requests = self.routes, self.requests

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                requests.append(self.path)
                status, body = routes.get(self.path, (404, ""))
                payload = body.encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)

            def log_message(self, format, *args) -> None:  # noqa: A002, ANN001
                pass

        self._server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    @property
    def address(self) -> str:
        host, port = self._server.server_address[:2]
        return f"{host}:{port}"

    @property
    def base_url(self) -> str:
        return f"http://{self.address}"

    def set_json(self, path: str, payload: object, status: int = 200) -> None:
        self.routes[path] = (status, json.dumps(payload))

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._server.shutdown()
        self._server.server_close()


@pytest.fixture
def status_server():
    server = StatusServer()
    server.start()
    yield server
    server.stop()


@pytest.fixture
def closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
