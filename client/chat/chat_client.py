"""
Chat client module.

This module handles the client side of the chat event protocol: connecting,
logging in, sending messages and tracking what the server pushes back.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

from common.constants import DEFAULT_HOST, DEFAULT_PORT, MAX_LINE_BYTES, MessageTypes
from common.protocol_definitions import (
    create_login_message, create_guest_login_message, create_resume_message,
    create_send_global_message, create_status_set_message, create_typing_message,
    create_get_history_message, create_heartbeat_message, create_logout_message
)

logger = logging.getLogger(__name__)


class ChatClient:
    """Client-side chat functionality."""

    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT):
        self.host = host
        self.port = port
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.message_handler: Optional[Callable] = None

        # State pushed by the server
        self.username: Optional[str] = None
        self.token: Optional[str] = None
        self.guest = False
        self.online_users: List[Dict[str, Any]] = []
        self.messages: List[Dict[str, Any]] = []
        self.received: List[Dict[str, Any]] = []

    async def connect(self):
        self.reader, self.writer = await asyncio.open_connection(self.host, self.port, limit=MAX_LINE_BYTES)

    async def close(self):
        if self.writer is None:
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError:
            pass
        self.writer = None

    def set_message_handler(self, handler: Callable):
        """Set the message handler for incoming messages."""
        self.message_handler = handler

    async def send_message(self, message: dict) -> bool:
        """Send a JSON message to the server."""
        if not self.writer:
            logger.error("Not connected to server")
            return False

        try:
            msg_data = json.dumps(message).encode('utf-8') + b'\n'
            self.writer.write(msg_data)
            await self.writer.drain()
            return True
        except OSError as e:
            logger.error(f"Failed to send message: {e}")
            return False

    async def login(self, username: str, password: str) -> bool:
        return await self.send_message(create_login_message(username, password))

    async def login_guest(self) -> bool:
        return await self.send_message(create_guest_login_message())

    async def resume(self, token: str) -> bool:
        return await self.send_message(create_resume_message(token))

    async def send_global(self, text: str, client_id: Optional[str] = None) -> bool:
        """Send a message to the global channel."""
        return await self.send_message(create_send_global_message(text, client_id))

    async def set_status(self, status: str) -> bool:
        return await self.send_message(create_status_set_message(status))

    async def set_typing(self, typing: bool) -> bool:
        return await self.send_message(create_typing_message(typing))

    async def request_history(self) -> bool:
        """Request chat history from server."""
        return await self.send_message(create_get_history_message())

    async def heartbeat(self) -> bool:
        return await self.send_message(create_heartbeat_message())

    async def logout(self) -> bool:
        return await self.send_message(create_logout_message())

    async def receive(self, timeout: Optional[float] = None) -> Optional[dict]:
        """Read one message from the server. Returns None once the server closes."""
        line = await asyncio.wait_for(self.reader.readline(), timeout)
        if not line:
            return None
        message = json.loads(line.decode('utf-8'))
        await self.handle_message(message)
        return message

    async def wait_for(self, msg_type: str, timeout: float = 5.0) -> dict:
        """Read until a message of ``msg_type`` arrives, keeping everything else in ``received``."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError(f"No '{msg_type}' within {timeout}s")
            message = await self.receive(remaining)
            if message is None:
                raise ConnectionError(f"Server closed the connection while waiting for '{msg_type}'")
            if message.get('type') == msg_type:
                return message
            self.received.append(message)

    async def listen(self):
        """Read messages until the server closes the connection."""
        while await self.receive() is not None:
            pass

    async def handle_message(self, message: dict):
        """Update local state from a server message, then pass it to the handler."""
        msg_type = message.get('type', '')

        if msg_type == MessageTypes.LOGIN_SUCCESS:
            self.username = message.get('username')
            self.token = message.get('token')
            self.guest = bool(message.get('guest'))
        elif msg_type == MessageTypes.ONLINE_USERS:
            self.online_users = message.get('users', [])
        elif msg_type == MessageTypes.GLOBAL_MESSAGE:
            self.messages.append(message)

        if self.message_handler is not None:
            result = self.message_handler(message)
            if asyncio.iscoroutine(result):
                await result
