"""
Broadcast channel module.

Accepts outbound text from authenticated senders, enforces the per-sender
cooldown and keeps the ordered message history. Delivery to sockets is done
by the chat server.
"""

import itertools
import secrets
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional

from common.constants import (
    COOLDOWN_MS, MAX_MESSAGE_LENGTH, MAX_CHAT_HISTORY, CLIENT_ID_MEMORY
)
from common.protocol_definitions import GlobalMessage
from server.errors import RateLimited


@dataclass(frozen=True)
class ChatMessage:
    """Accepted chat message. ``seq`` is the server acceptance order."""
    id: str
    seq: int
    sender: str
    text: str
    sent_at: int  # epoch milliseconds

    def to_global_message(self) -> GlobalMessage:
        return GlobalMessage(id=self.id, user=self.sender, text=self.text, timestamp=self.sent_at)


class BroadcastChannel:
    """Global message channel with per-sender cooldown."""

    def __init__(self, cooldown_ms: int = COOLDOWN_MS,
                 max_message_length: int = MAX_MESSAGE_LENGTH,
                 max_history: Optional[int] = MAX_CHAT_HISTORY,
                 clock: Callable[[], float] = time.monotonic,
                 wall_clock: Callable[[], float] = time.time):
        self.cooldown = cooldown_ms / 1000.0
        self.max_message_length = max_message_length
        self._clock = clock
        self._wall_clock = wall_clock
        self._history: Deque[ChatMessage] = deque(maxlen=max_history)
        self._last_accepted: Dict[str, float] = {}  # sender -> monotonic time of last accepted publish
        self._client_ids: Dict[str, Deque[str]] = {}  # sender -> recent client ids
        self._seq = itertools.count(1)

    def publish(self, sender: str, text, client_id: Optional[str] = None) -> Optional[ChatMessage]:
        """
        Accept ``text`` from ``sender``.

        Returns the new ChatMessage, or None when there is nothing to send
        (blank text or an already accepted client id). Raises RateLimited when
        the sender's cooldown has not elapsed.
        """
        if not isinstance(text, str):
            return None
        text = text[:self.max_message_length].strip()
        if not text:
            return None

        if client_id is not None and client_id in self._client_ids.get(sender, ()):
            return None

        now = self._clock()
        remaining = self.cooldown_remaining(sender, now)
        if remaining > 0:
            raise RateLimited(sender, remaining)

        self._last_accepted[sender] = now
        if client_id is not None:
            self._client_ids.setdefault(sender, deque(maxlen=CLIENT_ID_MEMORY)).append(client_id)

        message = ChatMessage(
            id=secrets.token_hex(6),
            seq=next(self._seq),
            sender=sender,
            text=text,
            sent_at=int(self._wall_clock() * 1000),
        )
        self._history.append(message)
        return message

    def cooldown_remaining(self, sender: str, now: Optional[float] = None) -> float:
        last = self._last_accepted.get(sender)
        if last is None:
            return 0.0
        if now is None:
            now = self._clock()
        return max(0.0, self.cooldown - (now - last))

    def history(self) -> List[ChatMessage]:
        return list(self._history)

    def prune(self) -> int:
        """Drop cooldown entries that have already elapsed."""
        now = self._clock()
        elapsed = [s for s in self._last_accepted if self.cooldown_remaining(s, now) == 0]
        for sender in elapsed:
            del self._last_accepted[sender]
        return len(elapsed)
