"""Credential lifecycle: principals and pre-authentication keys."""

from credentials.backend import (
    AdminBackend,
    Credential,
    CredentialError,
    CredentialState,
    DuplicatePrincipal,
    Principal,
    PrincipalNotFound,
    UpstreamError,
)
from credentials.headscale import HeadscaleCLI
from credentials.manager import CredentialManager

__all__ = [
    "AdminBackend",
    "Credential",
    "CredentialError",
    "CredentialState",
    "DuplicatePrincipal",
    "Principal",
    "PrincipalNotFound",
    "UpstreamError",
    "HeadscaleCLI",
    "CredentialManager",
]
