"""Upgraded channel relay.

Once the backend accepts a protocol upgrade (101 Switching Protocols) the
HTTP framing ends and both connections carry an opaque byte stream. The
relay copies each direction on its own thread until a peer closes or
fails, then propagates the close to the other side.

An established relay has no timeout: control channels stay open for the
life of the client's tunnel.
"""

import logging
import queue
import socket
import ssl
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)

BUFFER_SIZE = 64 * 1024
MAX_HEAD_SIZE = 64 * 1024
DEFAULT_CLOSE_GRACE = 5.0


class RelayError(Exception):
    """Backend answered the upgrade with something that is not HTTP."""


@dataclass
class UpstreamChannel:
    """Backend connection after the upgrade handshake."""

    sock: socket.socket
    status: int
    head: bytes
    surplus: bytes = b""

    @property
    def upgraded(self) -> bool:
        return self.status == 101

    def content_length(self) -> Optional[int]:
        for line in self.head.split(b"\r\n")[1:]:
            name, sep, value = line.partition(b":")
            if sep and name.strip().lower() == b"content-length":
                value = value.strip()
                if value.isdigit():
                    return int(value)
        return None


@dataclass
class RelayStats:
    upstream_bytes: int = 0
    downstream_bytes: int = 0
    errors: list = field(default_factory=list)


def build_request_head(method: str, target: str, headers) -> bytes:
    lines = [f"{method} {target} HTTP/1.1"]
    lines.extend(f"{name}: {value}" for name, value in headers)
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


def read_response_head(sock: socket.socket, limit: int = MAX_HEAD_SIZE) -> tuple[bytes, bytes, int]:
    """Read an HTTP response head.

    Returns:
        (head, surplus, status): head without the blank line, any bytes
        received after it, and the status code

    Raises:
        RelayError: If the peer closes early or sends a malformed head
    """
    buf = b""
    while b"\r\n\r\n" not in buf:
        if len(buf) > limit:
            raise RelayError(f"Response head exceeds {limit} bytes")
        data = sock.recv(BUFFER_SIZE)
        if not data:
            raise RelayError("Backend closed connection during handshake")
        buf += data

    head, _, surplus = buf.partition(b"\r\n\r\n")
    status_line = head.split(b"\r\n", 1)[0]
    parts = status_line.split(None, 2)
    if len(parts) < 2 or not parts[0].startswith(b"HTTP/") or not parts[1].isdigit():
        raise RelayError(f"Malformed status line: {status_line[:100]!r}")
    return head, surplus, int(parts[1])


def open_channel(
    host: str,
    port: int,
    head: bytes,
    connect_timeout: float = 10.0,
    use_tls: bool = False,
) -> UpstreamChannel:
    """Connect to the backend, send the upgrade request, read its answer.

    Raises:
        OSError: If the backend cannot be reached
        RelayError: If the answer is not an HTTP response
    """
    sock = socket.create_connection((host, port), timeout=connect_timeout)
    try:
        if use_tls:
            context = ssl.create_default_context()
            sock = context.wrap_socket(sock, server_hostname=host)
        sock.sendall(head)
        response_head, surplus, status = read_response_head(sock)
    except BaseException:
        sock.close()
        raise
    return UpstreamChannel(sock=sock, status=status, head=response_head, surplus=surplus)


def force_close(sock: socket.socket):
    """Shut down and close; wakes any thread blocked reading the socket."""
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


def _pump(read: Callable[[int], bytes], dst: socket.socket) -> tuple[int, Optional[BaseException]]:
    """Copy until EOF or error; on EOF half-close the destination."""
    total = 0
    while True:
        try:
            data = read(BUFFER_SIZE)
        except (OSError, ValueError) as e:
            return total, e
        if not data:
            break
        try:
            dst.sendall(data)
        except OSError as e:
            return total, e
        total += len(data)
    try:
        dst.shutdown(socket.SHUT_WR)
    except OSError:
        pass
    return total, None


def pipe(
    client: socket.socket,
    client_read: Callable[[int], bytes],
    backend: socket.socket,
    close_grace: float = DEFAULT_CLOSE_GRACE,
) -> RelayStats:
    """Relay bytes both ways until both directions finish.

    Args:
        client: Inbound socket (written to)
        client_read: Reader for the inbound side; must drain any bytes the
            HTTP parser already buffered before reading the socket
        backend: Upstream socket
        close_grace: Seconds the surviving direction may keep running after
            the other one ended cleanly

    Returns:
        RelayStats with byte counts per direction
    """
    client.settimeout(None)
    backend.settimeout(None)
    stats = RelayStats()
    finished: queue.Queue = queue.Queue()

    def run(direction, read, dst):
        total, error = _pump(read, dst)
        finished.put((direction, total, error))

    threads = [
        threading.Thread(target=run, args=("upstream", client_read, backend),
                         name="relay-upstream", daemon=True),
        threading.Thread(target=run, args=("downstream", backend.recv, client),
                         name="relay-downstream", daemon=True),
    ]
    for t in threads:
        t.start()

    def record(result):
        direction, total, error = result
        if direction == "upstream":
            stats.upstream_bytes = total
        else:
            stats.downstream_bytes = total
        if error is not None:
            stats.errors.append(f"{direction}: {error}")
        return error

    # First direction to end: no deadline while the channel is healthy
    error = record(finished.get())
    if error is not None:
        force_close(client)
        force_close(backend)
        record(finished.get())
    else:
        try:
            record(finished.get(timeout=close_grace))
        except queue.Empty:
            logger.debug("Peer did not close within %.1fs, closing relay", close_grace)
            force_close(client)
            force_close(backend)
            record(finished.get())

    for t in threads:
        t.join()
    backend.close()
    return stats


def split_head(head: bytes) -> tuple[bytes, list[tuple[str, str]]]:
    """Split a response head into its status line and header pairs."""
    status_line, *lines = head.split(b"\r\n")
    headers = []
    for line in lines:
        name, sep, value = line.decode("latin-1").partition(":")
        if sep:
            headers.append((name.strip(), value.strip()))
    return status_line, headers


def join_head(status_line: bytes, headers) -> bytes:
    lines = [status_line]
    lines.extend(f"{name}: {value}".encode("latin-1") for name, value in headers)
    return b"\r\n".join(lines)


def relay_plain_response(
    channel: UpstreamChannel,
    client: socket.socket,
    timeout: float = 30.0,
    rewrite_headers: Optional[Callable[[list], list]] = None,
) -> int:
    """Relay a non-101 answer to an upgrade request, then stop.

    The body is bounded by Content-Length when present, otherwise by the
    backend closing the connection.

    Args:
        channel: Backend connection holding the answer
        client: Inbound socket
        timeout: Read timeout for the body
        rewrite_headers: Maps the backend headers before they are sent;
            body framing is kept and the connection is marked close

    Returns:
        Number of body bytes relayed
    """
    head = channel.head
    if rewrite_headers is not None:
        status_line, headers = split_head(head)
        framing = [(n, v) for n, v in headers if n.lower() == "transfer-encoding"]
        head = join_head(status_line, rewrite_headers(headers) + framing + [("Connection", "close")])
    client.sendall(head + b"\r\n\r\n")
    remaining = channel.content_length()
    sent = 0
    body = channel.surplus
    if remaining is not None:
        body = body[:remaining]
    if body:
        client.sendall(body)
        sent += len(body)
    channel.sock.settimeout(timeout)
    try:
        while remaining is None or sent < remaining:
            want = BUFFER_SIZE if remaining is None else min(BUFFER_SIZE, remaining - sent)
            data = channel.sock.recv(want)
            if not data:
                break
            client.sendall(data)
            sent += len(data)
    finally:
        channel.sock.close()
    return sent
