"""Caller identity resolution.

Session handling belongs to the host application; vidsum only needs an
IdentityResolver that turns a request into a Principal (or None).
"""

import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from starlette.requests import HTTPConnection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller."""

    user_id: str


class IdentityResolver(ABC):
    """Resolves the caller of an HTTP request."""

    @abstractmethod
    async def resolve(self, connection: HTTPConnection) -> Optional[Principal]:
        """Return the caller, or None when no valid identity is present."""
        ...


class BearerTokenIdentityResolver(IdentityResolver):
    """Maps ``Authorization: Bearer <token>`` to a user id from settings."""

    def __init__(self, tokens: dict[str, str]):
        self._tokens = dict(tokens)

    async def resolve(self, connection: HTTPConnection) -> Optional[Principal]:
        header = connection.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None

        presented = token.strip().encode()
        for known, user_id in self._tokens.items():
            if hmac.compare_digest(known.encode(), presented):
                return Principal(user_id=user_id)

        logger.debug("Rejected unknown bearer token")
        return None
