"""
Error taxonomy for the chat server.

All of these are recoverable: the gateway reports them to the originating
connection and keeps the connection open.
"""


class ChatError(Exception):
    """Base class for chat server errors."""


class InvalidUsername(ChatError):
    """Username does not match the 4-20 alphanumeric pattern."""

    def __init__(self, username: str):
        super().__init__(f"Invalid username: {username!r}")
        self.username = username


class WrongCredential(ChatError):
    """Secret does not match the stored credential."""

    def __init__(self, username: str):
        super().__init__(f"Wrong credential for {username!r}")
        self.username = username


class RateLimited(ChatError):
    """Publish attempted before the sender's cooldown elapsed."""

    def __init__(self, sender: str, retry_after: float):
        super().__init__(f"{sender!r} is rate limited for {retry_after:.3f}s")
        self.sender = sender
        self.retry_after = retry_after

    @property
    def retry_after_ms(self) -> int:
        return int(round(self.retry_after * 1000))


class TokenNotFound(ChatError):
    """Token value is unknown, revoked or expired."""


class TokenCollision(ChatError):
    """Token generation kept producing values that are already issued."""
