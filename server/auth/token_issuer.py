"""
Token issuer module.

Mints opaque bearer tokens and maps them back to the identity they were
issued for.
"""

import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from common.constants import TOKEN_BYTES, TOKEN_ISSUE_ATTEMPTS
from server.errors import TokenCollision, TokenNotFound


@dataclass(frozen=True)
class Token:
    value: str
    owner: str
    issued_at: float
    guest: bool = False


def _default_token_factory() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


class TokenIssuer:
    """
    Issue and resolve session tokens.

    Tokens never expire unless ``ttl`` (seconds) is given.
    """

    def __init__(self, ttl: Optional[float] = None,
                 token_factory: Callable[[], str] = _default_token_factory,
                 clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._token_factory = token_factory
        self._clock = clock
        self._tokens: Dict[str, Token] = {}

    def __len__(self) -> int:
        return len(self._tokens)

    def issue(self, username: str, guest: bool = False) -> Token:
        for _ in range(TOKEN_ISSUE_ATTEMPTS):
            value = self._token_factory()
            if value in self._tokens:
                continue
            token = Token(value=value, owner=username, issued_at=self._clock(), guest=guest)
            self._tokens[value] = token
            return token
        raise TokenCollision(f"Could not mint a unique token for {username!r}")

    def resolve(self, value: str) -> Token:
        token = self._tokens.get(value) if isinstance(value, str) else None
        if token is None:
            raise TokenNotFound("Unknown token")
        if self._is_expired(token, self._clock()):
            del self._tokens[value]
            raise TokenNotFound("Token expired")
        return token

    def revoke(self, value: str) -> bool:
        return self._tokens.pop(value, None) is not None

    def sweep_expired(self) -> int:
        """Drop expired tokens. Returns how many were removed."""
        if self.ttl is None:
            return 0
        now = self._clock()
        expired = [v for v, t in self._tokens.items() if self._is_expired(t, now)]
        for value in expired:
            del self._tokens[value]
        return len(expired)

    def _is_expired(self, token: Token, now: float) -> bool:
        return self.ttl is not None and now - token.issued_at >= self.ttl
