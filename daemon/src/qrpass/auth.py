"""Owner identification for the pairing API.

The long-lived user session is issued by the login subsystem; this
module only turns the bearer token on a request into an owner ref.
The scan side is deliberately unauthenticated: the session ID is the
capability.
"""

import hmac
from typing import Optional, Protocol

from qrpass.errors import AuthError

__all__ = [
    "AuthError",
    "OwnerResolver",
    "StaticTokenResolver",
    "parse_bearer",
    "require_owner",
]


def parse_bearer(header: Optional[str]) -> Optional[str]:
    """Extract the token from an `Authorization: Bearer <token>` header."""
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class OwnerResolver(Protocol):
    """Protocol for resolving a bearer token to an owner ref."""

    async def resolve(self, token: str) -> Optional[str]:
        """Return the owner ref for a token, or None if unknown."""
        ...


class StaticTokenResolver:
    """Resolves tokens from a fixed token -> owner table.

    Comparison is constant-time per entry.
    """

    def __init__(self, tokens: dict[str, str]):
        self._tokens = dict(tokens)

    async def resolve(self, token: str) -> Optional[str]:
        owner = None
        for known, owner_ref in self._tokens.items():
            if hmac.compare_digest(known.encode(), token.encode()):
                owner = owner_ref
        return owner


async def require_owner(resolver: OwnerResolver, header: Optional[str]) -> str:
    """Resolve an Authorization header or raise AuthError."""
    token = parse_bearer(header)
    if token is None:
        raise AuthError("Missing bearer token")
    owner = await resolver.resolve(token)
    if owner is None:
        raise AuthError("Unknown token")
    return owner
