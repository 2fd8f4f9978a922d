"""Shared pytest fixtures for headgate tests."""

import socket
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


class RecordingBackend(BaseHTTPRequestHandler):
    """Stand-in coordination server that records what it receives.

    GET /key answers with the query string it saw; /redirect answers 302
    with a Location on the backend's own origin; /chunked streams a body
    of unknown length; everything else echoes method, path and body.
    """

    protocol_version = "HTTP/1.1"
    received: list = []

    def log_message(self, format, *args):
        pass

    def _record(self, body=b""):
        self.received.append({
            "method": self.command,
            "path": self.path,
            "headers": list(self.headers.items()),
            "body": body,
        })

    def _send(self, status, body, headers=()):
        self.send_response(status)
        for name, value in headers:
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def do_GET(self):
        self._record()
        if self.path.startswith("/redirect"):
            origin = f"http://127.0.0.1:{self.server.server_address[1]}"
            self._send(302, b"", [("Location", f"{origin}/login?next=1")])
        elif self.path == "/chunked":
            self.send_response(200)
            self.send_header("Transfer-Encoding", "chunked")
            self.end_headers()
            for part in (b"first,", b"second,", b"third"):
                self.wfile.write(b"%x\r\n%s\r\n" % (len(part), part))
            self.wfile.write(b"0\r\n\r\n")
        elif self.path == "/no-content":
            self.send_response(204)
            self.end_headers()
        elif self.path == "/cookies":
            self.send_response(200)
            self.send_header("Set-Cookie", "a=1")
            self.send_header("Set-Cookie", "b=2")
            self.send_header("Content-Length", "0")
            self.end_headers()
        else:
            self._send(200, f"{self.command} {self.path}".encode(),
                       [("Content-Type", "text/plain")])

    do_HEAD = do_GET

    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        if "chunked" in self.headers.get("Transfer-Encoding", ""):
            body = b""
            while True:
                size = int(self.rfile.readline().strip(), 16)
                if size == 0:
                    self.rfile.readline()
                    break
                body += self.rfile.read(size)
                self.rfile.readline()
        else:
            body = self.rfile.read(length)
        self._record(body)
        self._send(201, b"got:" + body, [("Content-Type", "application/octet-stream")])


@pytest.fixture
def backend():
    """Start a recording backend on a free loopback port."""
    RecordingBackend.received = []
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), RecordingBackend)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()

    yield {
        "url": f"http://127.0.0.1:{httpd.server_address[1]}",
        "port": httpd.server_address[1],
        "received": RecordingBackend.received,
    }

    httpd.shutdown()
    httpd.server_close()


@pytest.fixture
def closed_port():
    """A loopback port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
