"""
Server configuration module.

This module handles server-side configuration settings.
"""

from typing import Optional

from common.constants import (
    DEFAULT_SERVER_HOST, DEFAULT_PORT, LOG_DIR, MAX_LINE_BYTES, DRAIN_TIMEOUT, BCRYPT_ROUNDS,
    COOLDOWN_MS, MAX_MESSAGE_LENGTH, MAX_CHAT_HISTORY, IDLE_TIMEOUT, IDLE_CHECK_INTERVAL
)


class ServerConfig:
    """Server configuration class."""

    def __init__(self, host: str = DEFAULT_SERVER_HOST, port: int = DEFAULT_PORT, logs_dir: str = LOG_DIR):
        self.host = host
        self.port = port

        # Logging configuration
        self.logs_dir = logs_dir

        # Connection settings
        self.max_line_bytes = MAX_LINE_BYTES
        self.drain_timeout = DRAIN_TIMEOUT  # seconds, slower peers are dropped

        # Account settings
        self.bcrypt_rounds = BCRYPT_ROUNDS
        self.token_ttl: Optional[float] = None  # seconds, None = valid for the process lifetime

        # Chat settings
        self.cooldown_ms = COOLDOWN_MS
        self.max_message_length = MAX_MESSAGE_LENGTH
        self.max_chat_history: Optional[int] = MAX_CHAT_HISTORY
        self.notify_rate_limit = False

        # Presence settings
        self.idle_timeout = IDLE_TIMEOUT  # seconds
        self.idle_check_interval = IDLE_CHECK_INTERVAL  # seconds

    def get_chat_settings(self):
        """Get chat channel settings."""
        return {
            'cooldown_ms': self.cooldown_ms,
            'max_message_length': self.max_message_length,
            'max_history': self.max_chat_history
        }
