"""Immutable inbound request value classified by the rule engine."""

from dataclasses import dataclass, replace
from typing import Optional
from urllib.parse import parse_qsl, quote

CLIENT_ID_HEADER = "User-Agent"


@dataclass(frozen=True)
class Request:
    """An inbound HTTP request as seen by the ingress.

    The query string is kept raw so that a request nobody rewrites is
    forwarded byte-for-byte. Headers keep their original order, case and
    duplicates.
    """

    method: str
    path: str
    query_string: str = ""
    headers: tuple = ()
    upgrade: bool = False

    @classmethod
    def from_target(cls, method: str, target: str, headers=()) -> "Request":
        """Build a Request from a request-line target such as /key?key=ABC."""
        path, _, query = target.partition("?")
        return cls(
            method=method,
            path=path or "/",
            query_string=query,
            headers=tuple((str(k), str(v)) for k, v in headers),
        )

    @property
    def target(self) -> str:
        """Request-line target (path plus query)."""
        if self.query_string:
            return f"{self.path}?{self.query_string}"
        return self.path

    @property
    def query_params(self) -> list[tuple[str, str]]:
        """Ordered query parameters, blank values included."""
        return parse_qsl(self.query_string, keep_blank_values=True)

    def has_query_param(self, name: str) -> bool:
        return any(key == name for key, _ in self.query_params)

    def header(self, name: str) -> Optional[str]:
        """First value of a header (case-insensitive), or None."""
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

    def header_values(self, name: str) -> list[str]:
        lowered = name.lower()
        return [value for key, value in self.headers if key.lower() == lowered]

    @property
    def client_id(self) -> Optional[str]:
        """Client-identifying header value."""
        return self.header(CLIENT_ID_HEADER)

    def with_query_param(self, name: str, value: str) -> "Request":
        """Return a copy with name=value appended to the raw query string."""
        pair = f"{quote(name, safe='')}={quote(str(value), safe='')}"
        query = f"{self.query_string}&{pair}" if self.query_string else pair
        return replace(self, query_string=query)

    def with_upgrade(self) -> "Request":
        return replace(self, upgrade=True)
