"""Upstream dispatcher.

Forwards classified requests to the single coordination backend and hands
back the response for verbatim relay. Upgraded channels are opened here
and relayed by server.relay.

Nothing is retried: a forwarded request may be a key-exchange handshake
with side effects on the backend, so a failure is reported to the caller
as a gateway error and the caller decides.
"""

import http.cookiejar
import logging
import socket
from dataclasses import dataclass, field
from typing import Iterator, Optional
from urllib.parse import urlparse

import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util import SKIP_HEADER

from ingress.request import Request
from server.relay import RelayError, UpstreamChannel, build_request_head, open_channel

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

# RFC 7230 section 6.1; never forwarded by an intermediary
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Response headers that may carry the backend's own address
ADDRESS_HEADERS = frozenset({"location", "content-location", "uri"})

# Statuses that never carry a body
NO_BODY_STATUSES = frozenset({204, 304})

# Headers http.client and urllib3 add when the client sent none
INJECTED_DEFAULTS = ("Accept-Encoding", "User-Agent")


class GatewayError(Exception):
    """Upstream failure reported to the caller as a gateway error."""

    http_status = 502
    code = "E502"

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"{self.code}: {message}")


class UpstreamUnreachable(GatewayError):
    """Backend refused, reset, or could not be resolved."""


class UpstreamTimeout(GatewayError):
    """Backend did not answer within the caller's timeout."""

    http_status = 504
    code = "E504"


@dataclass(frozen=True)
class ProxyTarget:
    """The fixed backend for this deployment."""

    address: str
    supports_upgrade: bool = True

    @property
    def scheme(self) -> str:
        return urlparse(self.address).scheme or "http"

    @property
    def host(self) -> str:
        return urlparse(self.address).hostname or "127.0.0.1"

    @property
    def port(self) -> int:
        parsed = urlparse(self.address)
        if parsed.port:
            return parsed.port
        return 443 if parsed.scheme == "https" else 80

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{urlparse(self.address).netloc}"

    def url_for(self, request: Request) -> str:
        base = self.address.rstrip("/")
        return f"{base}{request.target}"


def connection_tokens(headers) -> set[str]:
    """Header names listed in Connection (also hop-by-hop)."""
    tokens = set()
    for name, value in headers:
        if name.lower() == "connection":
            tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


def strip_hop_by_hop(headers, keep: frozenset = frozenset()) -> list[tuple[str, str]]:
    """Drop hop-by-hop headers, including any named by Connection."""
    headers = list(headers)
    drop = (HOP_BY_HOP_HEADERS | connection_tokens(headers)) - keep
    return [(name, value) for name, value in headers if name.lower() not in drop]


class AddressMapper:
    """Rewrite backend-internal URLs to the externally visible address."""

    def __init__(self, internal: str, external: str):
        self.internal = internal.rstrip("/")
        self.external = external.rstrip("/")

    def map(self, value: str) -> str:
        if not self.external or not value.startswith(self.internal):
            return value
        rest = value[len(self.internal):]
        if rest and rest[0] not in "/?#":
            # Different host that merely shares a prefix (e.g. :8080 vs :80801)
            return value
        return self.external + rest


@dataclass
class UpstreamResponse:
    """Response from the backend, body not yet consumed."""

    status: int
    reason: str
    headers: list
    length: Optional[int]
    has_body: bool
    _response: Optional[requests.Response] = field(default=None, repr=False)

    def iter_body(self) -> Iterator[bytes]:
        """Yield the body exactly as sent (no content decoding)."""
        if not self.has_body or self._response is None:
            return
        try:
            for chunk in self._response.raw.stream(CHUNK_SIZE, decode_content=False):
                if chunk:
                    yield chunk
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise UpstreamUnreachable(f"Backend aborted response: {e}") from e

    def close(self):
        if self._response is not None:
            self._response.close()


def _merge_for_requests(headers) -> dict:
    """Collapse duplicate request headers for requests' dict interface."""
    merged: dict[str, str] = {}
    index: dict[str, str] = {}
    for name, value in headers:
        key = name.lower()
        if key in index:
            sep = "; " if key == "cookie" else ", "
            merged[index[key]] = f"{merged[index[key]]}{sep}{value}"
        else:
            index[key] = name
            merged[name] = value
    return merged


class Dispatcher:
    """Forward requests to the backend and describe the response."""

    def __init__(
        self,
        target: ProxyTarget,
        public_url: str = "",
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.target = target
        self.public_url = public_url
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.mapper = AddressMapper(target.origin, public_url)
        self.session = session or self._create_session()

    @staticmethod
    def _create_session() -> requests.Session:
        session = requests.Session()
        # No default User-Agent/Accept injected on the client's behalf
        session.headers.clear()
        # Never follow env proxies for the loopback backend
        session.trust_env = False
        # Client cookies travel as headers; the session stores none
        session.cookies.set_policy(http.cookiejar.DefaultCookiePolicy(allowed_domains=[]))
        adapter = HTTPAdapter(max_retries=0)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def forwarded_headers(
        self,
        request: Request,
        client_ip: str = "",
        scheme: str = "http",
        keep: frozenset = frozenset(),
    ) -> list[tuple[str, str]]:
        """Request headers as sent upstream.

        Host is preserved; X-Forwarded-* records the original client.
        """
        headers = strip_hop_by_hop(request.headers, keep=keep)
        if client_ip:
            prior = request.header("X-Forwarded-For")
            headers = [(n, v) for n, v in headers if n.lower() != "x-forwarded-for"]
            headers.append(("X-Forwarded-For", f"{prior}, {client_ip}" if prior else client_ip))
        host = request.header("Host")
        if host and request.header("X-Forwarded-Host") is None:
            headers.append(("X-Forwarded-Host", host))
        if request.header("X-Forwarded-Proto") is None:
            headers.append(("X-Forwarded-Proto", scheme))
        return headers

    def response_headers(self, headers) -> list[tuple[str, str]]:
        """Backend response headers as relayed to the client."""
        relayed = []
        for name, value in strip_hop_by_hop(headers):
            if name.lower() in ADDRESS_HEADERS:
                value = self.mapper.map(value)
            relayed.append((name, value))
        return relayed

    def forward(
        self,
        request: Request,
        body=None,
        client_ip: str = "",
        timeout: Optional[float] = None,
    ) -> UpstreamResponse:
        """Send a request to the backend.

        Args:
            request: Classified request
            body: Request body (bytes, iterator of bytes, or None)
            client_ip: Address of the inbound client for X-Forwarded-For
            timeout: Per-request read timeout; defaults to the configured one

        Returns:
            UpstreamResponse with the body left unread

        Raises:
            UpstreamUnreachable: Backend refused, reset or unresolvable
            UpstreamTimeout: Backend did not answer in time
        """
        url = self.target.url_for(request)
        # requests frames the body itself; 100-continue was answered inbound
        headers = _merge_for_requests(
            (n, v) for n, v in self.forwarded_headers(request, client_ip)
            if n.lower() not in ("content-length", "expect")
        )
        present = {name.lower() for name in headers}
        for name in INJECTED_DEFAULTS:
            if name.lower() not in present:
                headers[name] = SKIP_HEADER
        read_timeout = self.timeout if timeout is None else timeout

        try:
            response = self.session.request(
                method=request.method,
                url=url,
                headers=headers,
                data=body,
                allow_redirects=False,
                stream=True,
                timeout=(self.connect_timeout, read_timeout),
            )
        except requests.exceptions.Timeout as e:
            logger.warning("Backend timeout: %s %s: %s", request.method, request.path, e)
            raise UpstreamTimeout(f"Backend did not respond within {read_timeout}s") from e
        except requests.exceptions.RequestException as e:
            logger.error("Backend unreachable: %s %s: %s", request.method, request.path, e)
            raise UpstreamUnreachable(f"Backend unreachable: {self.target.origin}") from e

        raw_headers = []
        for name in response.raw.headers:
            for value in response.raw.headers.getlist(name):
                raw_headers.append((name, value))

        has_body = (
            request.method != "HEAD"
            and response.status_code >= 200
            and response.status_code not in NO_BODY_STATUSES
        )
        length = None
        if "transfer-encoding" not in {n.lower() for n, _ in raw_headers}:
            content_length = response.headers.get("Content-Length")
            if content_length is not None and content_length.strip().isdigit():
                length = int(content_length)

        return UpstreamResponse(
            status=response.status_code,
            reason=response.reason or "",
            headers=self.response_headers(raw_headers),
            length=length,
            has_body=has_body,
            _response=response,
        )

    def open_upgrade(self, request: Request, client_ip: str = "") -> UpstreamChannel:
        """Open a raw connection to the backend and request the upgrade.

        The Upgrade token is passed through untouched.

        Raises:
            UpstreamUnreachable: Backend refused or answered garbage
            UpstreamTimeout: Connect or handshake timed out
        """
        if not self.target.supports_upgrade:
            raise UpstreamUnreachable("Backend does not accept protocol upgrades")

        headers = self.forwarded_headers(request, client_ip)
        headers.append(("Connection", "Upgrade"))
        headers.append(("Upgrade", request.header("Upgrade") or ""))
        head = build_request_head(request.method, request.target, headers)

        try:
            return open_channel(
                self.target.host,
                self.target.port,
                head,
                connect_timeout=self.connect_timeout,
                use_tls=self.target.scheme == "https",
            )
        except socket.timeout as e:
            logger.warning("Upgrade handshake timed out: %s", request.path)
            raise UpstreamTimeout("Backend upgrade handshake timed out") from e
        except (OSError, RelayError) as e:
            logger.error("Upgrade to backend failed: %s: %s", request.path, e)
            raise UpstreamUnreachable(f"Backend unreachable: {self.target.origin}") from e
