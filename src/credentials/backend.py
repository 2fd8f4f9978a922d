"""Credential domain types and the admin backend interface.

A Principal is a named identity on the coordination server (a Headscale
user). A Credential is a pre-authentication key bound to exactly one
Principal. Consumption and expiry are enforced by the backend; this side
only observes them through listings.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Protocol


class CredentialError(Exception):
    """Base exception for credential lifecycle errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class PrincipalNotFound(CredentialError):
    """Referenced principal does not exist on the backend."""

    def __init__(self, principal: str):
        self.principal = principal
        super().__init__("E301", f"Principal not found: {principal}")


class DuplicatePrincipal(CredentialError):
    """Backend refused to create a principal whose name is taken."""

    def __init__(self, name: str):
        self.name = name
        super().__init__("E302", f"Principal already exists: {name}")


class UpstreamError(CredentialError):
    """Admin command failed or returned something unparseable."""

    def __init__(self, message: str):
        super().__init__("E303", message)


class CredentialState(enum.Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Principal:
    id: str
    name: str
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Credential:
    """Pre-authentication key as reported by the backend."""

    id: str
    owner_principal_id: str
    expires_at: Optional[datetime]
    reusable: bool = False
    secret: str = field(default="", repr=False)
    used: bool = False
    created_at: Optional[datetime] = None

    def state(self, now: datetime) -> CredentialState:
        """Lifecycle state at `now`. Expiry wins over consumption."""
        if self.expires_at is not None and self.expires_at <= now:
            return CredentialState.EXPIRED
        if self.used and not self.reusable:
            return CredentialState.CONSUMED
        return CredentialState.ACTIVE


class AdminBackend(Protocol):
    """Administrative surface of the coordination server."""

    def list_principals(self) -> list[Principal]: ...

    def create_principal(self, name: str) -> Principal:
        """Create a principal.

        Raises:
            DuplicatePrincipal: If the name is already taken
            UpstreamError: On any other failure
        """
        ...

    def create_credential(
        self, principal_id: str, expiration: timedelta, reusable: bool
    ) -> Credential: ...

    def list_credentials(self, principal_id: Optional[str] = None) -> list[Credential]: ...
