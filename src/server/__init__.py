"""Server package for the ingress daemon.

The ingress classifies every inbound request, forwards standard requests
to the coordination server, and relays upgraded control channels.
"""

from server.httpd import (
    GatewayHandler,
    Server,
    build_dispatcher,
    build_engine,
    create_server,
    DEFAULT_PORT,
    DEFAULT_BIND,
)
from server.dispatcher import (
    Dispatcher,
    GatewayError,
    ProxyTarget,
    UpstreamResponse,
    UpstreamTimeout,
    UpstreamUnreachable,
)
from server.relay import (
    RelayError,
    UpstreamChannel,
    pipe,
)
from server.daemon import (
    daemonize,
    stop_daemon,
    check_status,
    get_pid_file,
)

__all__ = [
    # Server
    "GatewayHandler",
    "Server",
    "build_dispatcher",
    "build_engine",
    "create_server",
    "DEFAULT_PORT",
    "DEFAULT_BIND",
    # Dispatcher
    "Dispatcher",
    "GatewayError",
    "ProxyTarget",
    "UpstreamResponse",
    "UpstreamTimeout",
    "UpstreamUnreachable",
    # Relay
    "RelayError",
    "UpstreamChannel",
    "pipe",
    # Daemon
    "daemonize",
    "stop_daemon",
    "check_status",
    "get_pid_file",
]
