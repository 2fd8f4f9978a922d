"""Headscale admin CLI backend.

Drives ``headscale users ...`` and ``headscale preauthkeys ...`` with
``-o json``. The command prefix is configurable so the same code works
against a local binary or a containerised server, e.g.::

    sudo -u headscale docker compose -f /opt/headscale/docker-compose.yml \\
        exec -T headscale headscale
"""

import dataclasses
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from common import format_duration, run_command
from credentials.backend import (
    Credential,
    DuplicatePrincipal,
    Principal,
    UpstreamError,
)

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = ("headscale",)

# Messages Headscale (and its SQL layer) emit for a taken user name
_DUPLICATE_MARKERS = ("already exists", "unique constraint")

_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a protobuf JSON timestamp or an RFC 3339 string (UTC)."""
    if value in (None, "", {}):
        return None
    if isinstance(value, dict):
        seconds = int(value.get("seconds", 0))
        nanos = int(value.get("nanos", 0))
        return datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(microseconds=nanos // 1000)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip().replace("Z", "+00:00")
    # Go prints up to nanoseconds; datetime takes microseconds
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise UpstreamError(f"Unparseable timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_id(value) -> str:
    if value is None or value == "":
        raise UpstreamError("Backend record has no id")
    return str(value)


class HeadscaleCLI:
    """AdminBackend implemented over the headscale command line."""

    def __init__(self, command=DEFAULT_COMMAND, timeout: int = 60):
        self.command = list(command)
        self.timeout = timeout

    def _run(self, *args: str):
        """Run an admin subcommand and decode its JSON output.

        Raises:
            UpstreamError: On non-zero exit or non-JSON output
        """
        cmd = self.command + list(args) + ["-o", "json"]
        rc, out, err = run_command(cmd, timeout=self.timeout)
        if rc != 0:
            message = (err or out).strip() or f"exit status {rc}"
            raise UpstreamError(f"{' '.join(args[:2])} failed: {message}")
        out = out.strip()
        if not out:
            return None
        try:
            return json.loads(out)
        except json.JSONDecodeError as e:
            raise UpstreamError(f"{' '.join(args[:2])}: invalid JSON output: {e}") from e

    @staticmethod
    def _principal(data: dict) -> Principal:
        if not isinstance(data, dict):
            raise UpstreamError(f"Unexpected user record: {data!r}")
        return Principal(
            id=_as_id(data.get("id")),
            name=str(data.get("name", "")),
            created_at=parse_timestamp(data.get("created_at")),
        )

    @staticmethod
    def _credential(data: dict, owner: Optional[str]) -> Credential:
        if not isinstance(data, dict):
            raise UpstreamError(f"Unexpected key record: {data!r}")
        if owner is None:
            user = data.get("user")
            # Newer servers nest the user; older ones give its name only
            owner = _as_id(user.get("id")) if isinstance(user, dict) else str(user or "")
        return Credential(
            id=_as_id(data.get("id")),
            owner_principal_id=owner,
            expires_at=parse_timestamp(data.get("expiration")),
            reusable=bool(data.get("reusable", False)),
            secret=str(data.get("key", "")),
            used=bool(data.get("used", False)),
            created_at=parse_timestamp(data.get("created_at")),
        )

    def list_principals(self) -> list[Principal]:
        data = self._run("users", "list") or []
        return [self._principal(item) for item in data]

    def create_principal(self, name: str) -> Principal:
        try:
            data = self._run("users", "create", name)
        except UpstreamError as e:
            if any(marker in e.message.lower() for marker in _DUPLICATE_MARKERS):
                raise DuplicatePrincipal(name) from e
            raise
        principal = self._principal(data)
        logger.debug("users create %s -> id %s", principal.name, principal.id)
        return principal

    def create_credential(
        self, principal_id: str, expiration: timedelta, reusable: bool
    ) -> Credential:
        args = [
            "preauthkeys", "create",
            "--user", str(principal_id),
            "--expiration", format_duration(expiration),
        ]
        if reusable:
            args.append("--reusable")
        data = self._run(*args)
        credential = self._credential(data, owner=str(principal_id))
        if not credential.secret:
            raise UpstreamError("preauthkeys create returned no key")
        return credential

    def list_credentials(self, principal_id: Optional[str] = None) -> list[Credential]:
        if principal_id is None:
            data = self._run("preauthkeys", "list") or []
            credentials = [self._credential(item, owner=None) for item in data]
            # Older servers report owners by name
            by_name = None
            resolved = []
            for credential in credentials:
                if credential.owner_principal_id and not credential.owner_principal_id.isdigit():
                    if by_name is None:
                        by_name = {p.name: p.id for p in self.list_principals()}
                    owner = by_name.get(credential.owner_principal_id, credential.owner_principal_id)
                    credential = dataclasses.replace(credential, owner_principal_id=owner)
                resolved.append(credential)
            return resolved
        data = self._run("preauthkeys", "list", "--user", str(principal_id)) or []
        return [self._credential(item, owner=str(principal_id)) for item in data]
