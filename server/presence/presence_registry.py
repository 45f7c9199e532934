"""
Presence registry module.

Tracks the live sessions of authenticated connections, their online/idle
status, and produces the roster snapshot sent to clients.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from common.constants import Status, IDLE_TIMEOUT, DEFAULT_LEVEL
from common.protocol_definitions import RosterEntry


@dataclass
class Session:
    """Per-connection authenticated state."""
    connection_id: int
    identity: str
    status: str
    last_activity_at: float
    level: int = DEFAULT_LEVEL
    guest: bool = False


class PresenceRegistry:
    """
    Registry of live sessions.

    Mutating methods return True when the visible roster changed, so the
    caller knows when to push a fresh snapshot.
    """

    def __init__(self, idle_timeout: float = IDLE_TIMEOUT,
                 clock: Callable[[], float] = time.monotonic):
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._sessions: Dict[int, Session] = {}  # connection_id -> session

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id) -> bool:
        return connection_id in self._sessions

    def get(self, connection_id: int) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def identities(self) -> List[str]:
        return [entry.user for entry in self.snapshot()]

    def guest_holds(self, identity) -> bool:
        """Whether a connected guest goes by ``identity``, ignoring case."""
        if not isinstance(identity, str):
            return False
        key = identity.lower()
        return any(s.guest and s.identity.lower() == key for s in self._sessions.values())

    def register(self, connection_id: int, identity: str,
                 level: int = DEFAULT_LEVEL, guest: bool = False) -> bool:
        if connection_id in self._sessions:
            raise ValueError(f"Connection {connection_id} already has a session")
        self._sessions[connection_id] = Session(
            connection_id=connection_id,
            identity=identity,
            status=Status.ONLINE,
            last_activity_at=self._clock(),
            level=level,
            guest=guest,
        )
        return True

    def deregister(self, connection_id: int) -> Optional[Session]:
        return self._sessions.pop(connection_id, None)

    def set_status(self, connection_id: int, status: str) -> bool:
        if status not in Status.ALL:
            raise ValueError(f"Unknown status: {status!r}")
        session = self._sessions.get(connection_id)
        if session is None:
            return False
        if status == Status.ONLINE:
            session.last_activity_at = self._clock()
        return self._change_status(session, status)

    def touch(self, connection_id: int) -> bool:
        """Record activity; an idle session goes back online."""
        session = self._sessions.get(connection_id)
        if session is None:
            return False
        session.last_activity_at = self._clock()
        return self._change_status(session, Status.ONLINE)

    def update_level(self, identity: str, level: int) -> bool:
        changed = False
        for session in self._sessions.values():
            if session.identity == identity and session.level != level:
                session.level = level
                changed = True
        return changed

    def sweep_idle(self) -> bool:
        """Mark sessions idle once their last activity is older than the idle timeout."""
        now = self._clock()
        changed = False
        for session in self._sessions.values():
            if session.status == Status.ONLINE and now - session.last_activity_at >= self.idle_timeout:
                changed = self._change_status(session, Status.IDLE) or changed
        return changed

    def snapshot(self) -> List[RosterEntry]:
        """One entry per connected identity, sorted by name ignoring case."""
        roster: Dict[str, RosterEntry] = {}
        for session in self._sessions.values():
            entry = roster.get(session.identity)
            if entry is None:
                roster[session.identity] = RosterEntry(
                    user=session.identity, status=session.status, level=session.level
                )
            elif session.status == Status.ONLINE:
                entry.status = Status.ONLINE
        return sorted(roster.values(), key=lambda entry: entry.user.lower())

    def _change_status(self, session: Session, status: str) -> bool:
        if session.status == status:
            return False
        before = self._status_of(session.identity)
        session.status = status
        return before != self._status_of(session.identity)

    def _status_of(self, identity: str) -> str:
        statuses = [s.status for s in self._sessions.values() if s.identity == identity]
        return Status.ONLINE if Status.ONLINE in statuses else Status.IDLE
