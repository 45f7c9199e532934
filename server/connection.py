"""
Connection state module.

Each TCP connection moves through unauthenticated -> authenticated -> closed.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ConnectionState(Enum):
    UNAUTHENTICATED = 'unauthenticated'
    AUTHENTICATED = 'authenticated'
    CLOSED = 'closed'


@dataclass
class Connection:
    """One client connection and its authentication state."""
    connection_id: int
    writer: asyncio.StreamWriter
    addr: Optional[tuple] = None
    state: ConnectionState = ConnectionState.UNAUTHENTICATED
    identity: Optional[str] = None
    guest: bool = False

    @property
    def authenticated(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    def authenticate(self, identity: str, guest: bool):
        if self.state is not ConnectionState.UNAUTHENTICATED:
            raise RuntimeError(f"Connection {self.connection_id} cannot authenticate from {self.state.value}")
        self.state = ConnectionState.AUTHENTICATED
        self.identity = identity
        self.guest = guest

    def close(self):
        self.state = ConnectionState.CLOSED
