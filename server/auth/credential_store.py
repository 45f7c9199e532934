"""
Credential store module.

Holds account records keyed by username and validates or creates them on login.
Secrets are kept as salted bcrypt hashes, never in plain text.
"""

import base64
import hashlib
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

import bcrypt

from common.constants import (
    USERNAME_PATTERN, DEFAULT_EXPERIENCE, DEFAULT_LEVEL, BCRYPT_ROUNDS
)
from server.errors import InvalidUsername, WrongCredential


USERNAME_RE = re.compile(USERNAME_PATTERN)

CREATED = 'created'
MATCHED = 'matched'


@dataclass
class Account:
    """Registered account."""
    username: str
    secret_hash: bytes = field(repr=False)
    experience: int = DEFAULT_EXPERIENCE
    level: int = DEFAULT_LEVEL
    created_at: float = field(default_factory=time.time)


@dataclass
class AuthResult:
    account: Account
    outcome: str

    @property
    def created(self) -> bool:
        return self.outcome == CREATED


def is_valid_username(username) -> bool:
    return isinstance(username, str) and USERNAME_RE.fullmatch(username) is not None


def xp_needed(level: int) -> int:
    """XP required to advance from ``level`` to the next level."""
    return 75 + level * 35


def _prehash(secret: str) -> bytes:
    # bcrypt only reads the first 72 bytes of its input
    digest = hashlib.sha256(secret.encode('utf-8')).digest()
    return base64.b64encode(digest)


class CredentialStore:
    """In-memory account store."""

    def __init__(self, rounds: int = BCRYPT_ROUNDS):
        self.rounds = rounds
        self._accounts: Dict[str, Account] = {}  # lowercased username -> account
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._accounts)

    def __contains__(self, username) -> bool:
        return self.get(username) is not None

    def get(self, username) -> Optional[Account]:
        if not isinstance(username, str):
            return None
        with self._lock:
            return self._accounts.get(username.lower())

    def authenticate(self, username: str, secret: str) -> AuthResult:
        """
        Validate ``secret`` for ``username``, creating the account on first login.

        Raises InvalidUsername or WrongCredential. Hashing happens outside the
        lock; callers on an event loop should run this in a worker thread.
        """
        if not is_valid_username(username):
            raise InvalidUsername(username)

        key = username.lower()
        prehashed = _prehash(secret)

        with self._lock:
            account = self._accounts.get(key)

        if account is None:
            secret_hash = bcrypt.hashpw(prehashed, bcrypt.gensalt(rounds=self.rounds))
            with self._lock:
                account = self._accounts.get(key)
                if account is None:
                    account = Account(username=username, secret_hash=secret_hash)
                    self._accounts[key] = account
                    return AuthResult(account, CREATED)
            # lost a race against a concurrent first login, verify against it

        if not bcrypt.checkpw(prehashed, account.secret_hash):
            raise WrongCredential(username)
        return AuthResult(account, MATCHED)

    def grant_experience(self, username: str, amount: int) -> Optional[Account]:
        """Add XP to an account and level it up. Unknown usernames are ignored."""
        if amount <= 0:
            return self.get(username)
        with self._lock:
            account = self._accounts.get(username.lower())
            if account is None:
                return None
            account.experience += amount
            while account.experience >= xp_needed(account.level):
                account.experience -= xp_needed(account.level)
                account.level += 1
            return account
