"""Credential lifecycle manager.

Issues short-lived pre-authentication keys against the coordination
server. The backend is the only source of truth: nothing is cached
between calls and no state is persisted here.
"""

import dataclasses
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from credentials.backend import (
    AdminBackend,
    Credential,
    DuplicatePrincipal,
    Principal,
    PrincipalNotFound,
    UpstreamError,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CredentialManager:
    """Create-or-get principals and issue credentials bound to them."""

    def __init__(self, backend: AdminBackend, clock: Callable[[], datetime] = utc_now):
        self.backend = backend
        self.clock = clock

    def list_principals(self) -> list[Principal]:
        return self.backend.list_principals()

    def find_principal(self, name: str) -> Optional[Principal]:
        """Look up a principal by exact name."""
        for principal in self.list_principals():
            if principal.name == name:
                return principal
        return None

    def ensure_principal(self, name: str) -> str:
        """Return the id of the principal named `name`, creating it if needed.

        Concurrent callers may race on creation; the loser's duplicate
        error is absorbed and the winner's principal is returned, so every
        caller observes the same id.

        Raises:
            ValueError: If name is empty
            UpstreamError: If the backend fails
        """
        name = name.strip() if name else ""
        if not name:
            raise ValueError("Principal name must not be empty")

        existing = self.find_principal(name)
        if existing is not None:
            logger.debug("Principal %s exists (id %s)", name, existing.id)
            return existing.id

        try:
            created = self.backend.create_principal(name)
        except DuplicatePrincipal:
            logger.warning("Principal %s was created concurrently, using existing", name)
            existing = self.find_principal(name)
            if existing is None:
                raise UpstreamError(
                    f"Backend reported {name} as existing but does not list it"
                )
            return existing.id

        logger.info("Created principal %s (id %s)", name, created.id)
        return created.id

    def issue_credential(
        self, principal_id: str, ttl: timedelta, reusable: bool = False
    ) -> Credential:
        """Issue a credential bound to an existing principal.

        The principal is re-checked against the backend on every call.

        Raises:
            ValueError: If ttl is not positive
            PrincipalNotFound: If the principal does not exist
            UpstreamError: If the backend fails
        """
        if ttl <= timedelta(0):
            raise ValueError(f"Credential lifetime must be positive, got {ttl}")

        principal_id = str(principal_id)
        principals = self.list_principals()
        if not any(p.id == principal_id for p in principals):
            raise PrincipalNotFound(principal_id)

        credential = self.backend.create_credential(principal_id, ttl, reusable)
        if credential.expires_at is None:
            credential = dataclasses.replace(credential, expires_at=self.clock() + ttl)
        logger.info(
            "Issued %s credential %s for principal %s, expires %s",
            "reusable" if reusable else "single-use",
            credential.id, principal_id, credential.expires_at.isoformat(),
        )
        return credential

    def list_credentials(self, principal_id: Optional[str] = None) -> list[Credential]:
        """Credentials as currently listed by the backend."""
        return self.backend.list_credentials(principal_id)

    def credential_state(self, credential: Credential):
        """State of a credential at the manager's current time."""
        return credential.state(self.clock())
