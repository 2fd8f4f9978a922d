"""Ingress HTTP server.

Every inbound connection gets its own thread. Requests are classified by
the rule engine, then either forwarded (standard responses) or relayed as
a raw byte stream after a protocol upgrade.
"""

import json
import logging
import signal
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional

from config import GatewayConfig
from ingress.engine import RuleEngine
from ingress.request import Request
from ingress.rules import default_rules, rules_from_config
from server.dispatcher import Dispatcher, GatewayError, ProxyTarget
from server.relay import DEFAULT_CLOSE_GRACE, pipe, relay_plain_response

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_PORT = 80
DEFAULT_BIND = "127.0.0.1"

PROXY_METHODS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")


class BadRequestBody(Exception):
    """Client sent a body the handler cannot frame."""


class GatewayHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the ingress."""

    protocol_version = "HTTP/1.1"
    server_version = "headgate"

    # Set once by Server.start(); read-only afterwards
    engine: Optional[RuleEngine] = None
    dispatcher: Optional[Dispatcher] = None
    request_timeout: Optional[float] = None
    close_grace: float = DEFAULT_CLOSE_GRACE

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.info("%s - %s", self.address_string(), format % args)

    def send_json(self, data: dict, status: int = 200):
        """Send JSON response and close the connection."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def send_gateway_error(self, error: GatewayError):
        self.send_json({"error": {"code": error.code, "message": error.message}}, error.http_status)

    def _read_chunked(self):
        """Yield a chunked request body with the framing removed."""
        while True:
            line = self.rfile.readline(65537)
            if not line:
                raise BadRequestBody("Connection closed inside chunked body")
            size_text = line.split(b";", 1)[0].strip()
            try:
                size = int(size_text, 16)
            except ValueError:
                raise BadRequestBody(f"Invalid chunk size: {size_text[:20]!r}")
            if size == 0:
                # Trailers end with a blank line
                while self.rfile.readline(65537) not in (b"\r\n", b"\n", b""):
                    pass
                return
            data = self.rfile.read(size)
            if len(data) < size:
                raise BadRequestBody("Connection closed inside chunk")
            self.rfile.readline(65537)
            yield data

    def _read_body(self):
        """Request body as bytes, a chunk iterator, or None."""
        transfer_encoding = self.headers.get("Transfer-Encoding", "")
        if "chunked" in transfer_encoding.lower():
            return self._read_chunked()
        length = self.headers.get("Content-Length")
        if length is None:
            return None
        if not length.strip().isdigit():
            raise BadRequestBody(f"Invalid Content-Length: {length!r}")
        return self.rfile.read(int(length))

    def _proxy(self):
        """Handle any request method."""
        if not self.engine or not self.dispatcher:
            self.send_json({"error": {"code": "E500", "message": "Gateway not initialized"}}, 500)
            return

        request = self.engine.classify(
            Request.from_target(self.command, self.path, self.headers.items())
        )

        if request.upgrade:
            self._relay_upgrade(request)
            return

        try:
            body = self._read_body()
        except BadRequestBody as e:
            self.send_json({"error": {"code": "E400", "message": str(e)}}, 400)
            return

        try:
            upstream = self.dispatcher.forward(
                request,
                body=body,
                client_ip=self.client_address[0],
                timeout=self.request_timeout,
            )
        except GatewayError as e:
            self.send_gateway_error(e)
            return
        except BadRequestBody as e:
            logger.warning("Aborted request body from %s: %s", self.address_string(), e)
            self.close_connection = True
            return

        try:
            self._relay_response(upstream)
        finally:
            upstream.close()

    def _relay_response(self, upstream):
        """Write the backend's response to the client unchanged."""
        self.send_response_only(upstream.status, upstream.reason)
        self.log_request(upstream.status)
        for name, value in upstream.headers:
            self.send_header(name, value)
        chunked = upstream.has_body and upstream.length is None
        if chunked:
            self.send_header("Transfer-Encoding", "chunked")
        self.end_headers()

        if not upstream.has_body:
            return

        written = 0
        try:
            for chunk in upstream.iter_body():
                if chunked:
                    self.wfile.write(b"%x\r\n%s\r\n" % (len(chunk), chunk))
                else:
                    self.wfile.write(chunk)
                written += len(chunk)
            if chunked:
                self.wfile.write(b"0\r\n\r\n")
        except GatewayError as e:
            logger.error("Response from backend cut short after %d bytes: %s", written, e.message)
            self.close_connection = True
            return
        except OSError as e:
            logger.info("Client %s went away: %s", self.address_string(), e)
            self.close_connection = True
            return

        if upstream.length is not None and written != upstream.length:
            logger.warning("Backend sent %d of %d body bytes", written, upstream.length)
            self.close_connection = True

    def _relay_upgrade(self, request: Request):
        """Negotiate the upgrade with the backend and relay the channel."""
        try:
            channel = self.dispatcher.open_upgrade(request, client_ip=self.client_address[0])
        except GatewayError as e:
            self.send_gateway_error(e)
            return

        # The connection is no longer HTTP after this point
        self.close_connection = True
        self.log_request(channel.status)

        if not channel.upgraded:
            try:
                relay_plain_response(
                    channel, self.connection,
                    timeout=self.request_timeout or 30.0,
                    rewrite_headers=self.dispatcher.response_headers,
                )
            except OSError as e:
                logger.info("Upgrade refusal relay for %s ended: %s", self.address_string(), e)
            return

        try:
            self.wfile.flush()
            self.connection.sendall(channel.head + b"\r\n\r\n" + channel.surplus)
        except OSError as e:
            logger.info("Client %s went away during upgrade: %s", self.address_string(), e)
            channel.sock.close()
            return

        logger.info(
            "Channel open: %s %s (Upgrade: %s)",
            self.address_string(), request.path, request.header("Upgrade"),
        )
        stats = pipe(self.connection, self.rfile.read1, channel.sock, close_grace=self.close_grace)
        logger.info(
            "Channel closed: %s up=%d down=%d%s",
            self.address_string(), stats.upstream_bytes, stats.downstream_bytes,
            f" ({'; '.join(stats.errors)})" if stats.errors else "",
        )


for _method in PROXY_METHODS:
    setattr(GatewayHandler, f"do_{_method}", GatewayHandler._proxy)


def build_engine(config: GatewayConfig) -> RuleEngine:
    """Rule engine from config (built-in table when none is configured)."""
    if config.rules is None:
        rules = default_rules(config.capability_version)
    else:
        rules = rules_from_config(config.rules, config.capability_version)
    return RuleEngine(rules, upgrade_paths=config.upgrade_paths)


def build_dispatcher(config: GatewayConfig) -> Dispatcher:
    return Dispatcher(
        ProxyTarget(config.backend, supports_upgrade=bool(config.upgrade_paths)),
        public_url=config.public_url,
        timeout=config.timeout,
        connect_timeout=config.connect_timeout,
    )


class Server:
    """Threaded HTTP ingress in front of the coordination server."""

    def __init__(
        self,
        bind: str = DEFAULT_BIND,
        port: int = DEFAULT_PORT,
        engine: Optional[RuleEngine] = None,
        dispatcher: Optional[Dispatcher] = None,
        request_timeout: Optional[float] = None,
        close_grace: float = DEFAULT_CLOSE_GRACE,
    ):
        """Initialize server.

        Args:
            bind: Address to bind to
            port: Port to listen on (0 picks a free port)
            engine: RuleEngine for request classification
            dispatcher: Dispatcher for the backend
            request_timeout: Read timeout for standard responses
            close_grace: Relay close propagation grace period
        """
        self.bind = bind
        self.port = port
        self.engine = engine
        self.dispatcher = dispatcher
        self.request_timeout = request_timeout
        self.close_grace = close_grace
        self.server: Optional[ThreadingHTTPServer] = None
        self._serving = False
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "Server":
        return cls(
            bind=config.bind,
            port=config.port,
            engine=build_engine(config),
            dispatcher=build_dispatcher(config),
            request_timeout=config.timeout,
            close_grace=config.close_grace,
        )

    def start(self, install_signal_handlers: bool = True):
        """Bind the listener.

        Raises:
            RuntimeError: If the server cannot be started
        """
        if self.engine is None or self.dispatcher is None:
            raise RuntimeError("Server requires an engine and a dispatcher")

        handler = type("BoundGatewayHandler", (GatewayHandler,), {
            "engine": self.engine,
            "dispatcher": self.dispatcher,
            "request_timeout": self.request_timeout,
            "close_grace": self.close_grace,
        })

        try:
            self.server = ThreadingHTTPServer((self.bind, self.port), handler)
        except OSError as e:
            logger.error("Cannot bind %s:%d: %s", self.bind, self.port, e)
            raise RuntimeError(f"Bind failed: {e}") from e
        self.server.daemon_threads = True
        self.port = self.server.server_address[1]

        logger.info("Ingress listening on http://%s:%d", self.bind, self.port)
        logger.info("Backend: %s", self.dispatcher.target.address)
        logger.info("Rules: %s", ", ".join(r.name for r in self.engine.rules) or "(none)")
        if self.engine.upgrade_paths:
            logger.info("Upgrade paths: %s", ", ".join(sorted(self.engine.upgrade_paths)))

        if install_signal_handlers:
            self._setup_signal_handlers()

    def serve_forever(self):
        """Start serving requests."""
        if not self.server:
            raise RuntimeError("Server not started")

        self._serving = True
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutdown requested")
        finally:
            self._serving = False
            self.shutdown()

    def shutdown(self):
        """Stop accepting connections and close the listener.

        Established channels are daemon threads and end with the process.
        """
        with self._lock:
            server, self.server = self.server, None
        if server is None:
            return
        logger.info("Shutting down server")
        if self._serving:
            server.shutdown()
        server.server_close()

    def _setup_signal_handlers(self):
        """Setup signal handler for graceful shutdown."""

        def handle_sigterm(signum, frame):
            """Handle SIGTERM by leaving serve_forever."""
            logger.info("Received SIGTERM")
            sys.exit(0)

        signal.signal(signal.SIGTERM, handle_sigterm)


def create_server(config: Optional[GatewayConfig] = None, **overrides) -> Server:
    """Create a server instance from config.

    Args:
        config: Gateway config (defaults when None)
        **overrides: Server constructor arguments that take precedence

    Returns:
        Server instance (not yet started)
    """
    server = Server.from_config(config or GatewayConfig())
    for key, value in overrides.items():
        if not hasattr(server, key):
            raise TypeError(f"Unknown server option: {key}")
        setattr(server, key, value)
    return server
