"""
Chat server module.

This module drives the per-connection session lifecycle: login and resume,
presence registration, global message fan-out and disconnect handling.
"""

import asyncio
import json
import secrets
from typing import Dict, List, Optional

from common.constants import (
    Status, LoginErrors, GUEST_PREFIX, GUEST_NAME_ATTEMPTS, XP_PER_GLOBAL_MESSAGE
)
from common.protocol_definitions import (
    create_login_success_message, create_login_error_message, create_online_users_message,
    create_global_message, create_rate_limited_message, create_typing_update_message,
    create_history_message, create_heartbeat_ack_message, create_error_message
)
from server.auth.credential_store import CredentialStore, is_valid_username
from server.auth.token_issuer import TokenIssuer
from server.chat.broadcast_channel import BroadcastChannel
from server.connection import Connection
from server.errors import InvalidUsername, WrongCredential, RateLimited, TokenNotFound, TokenCollision
from server.presence.presence_registry import PresenceRegistry
from server.utils.config import ServerConfig
from server.utils.logger import logger


class ChatServer:
    """Server-side session, presence and broadcast handling."""

    def __init__(self, config: Optional[ServerConfig] = None,
                 credential_store: Optional[CredentialStore] = None,
                 token_issuer: Optional[TokenIssuer] = None,
                 presence: Optional[PresenceRegistry] = None,
                 channel: Optional[BroadcastChannel] = None):
        self.config = config or ServerConfig()
        self.credential_store = credential_store or CredentialStore(rounds=self.config.bcrypt_rounds)
        self.token_issuer = token_issuer or TokenIssuer(ttl=self.config.token_ttl)
        self.presence = presence or PresenceRegistry(idle_timeout=self.config.idle_timeout)
        self.channel = channel or BroadcastChannel(**self.config.get_chat_settings())
        self.connections: Dict[int, Connection] = {}  # connection_id -> connection
        self.next_connection_id = 1
        self.lock = asyncio.Lock()  # Serialises fan-out

    def add_connection(self, writer: asyncio.StreamWriter, addr: Optional[tuple] = None) -> Connection:
        connection = Connection(self.get_next_connection_id(), writer, addr)
        self.connections[connection.connection_id] = connection
        return connection

    def get_next_connection_id(self) -> int:
        """Get the next available connection id."""
        connection_id = self.next_connection_id
        self.next_connection_id += 1
        return connection_id

    # -- delivery --

    @staticmethod
    def encode(message: dict) -> bytes:
        return json.dumps(message).encode('utf-8') + b'\n'

    async def send_message(self, connection: Connection, message: dict) -> bool:
        """Send a JSON message to a specific client."""
        if connection.closed or connection.writer.is_closing():
            return False
        try:
            connection.writer.write(self.encode(message))
            await asyncio.wait_for(connection.writer.drain(), self.config.drain_timeout)
            return True
        except (OSError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to send to connection_id={connection.connection_id}: {e!r}")
            return False

    def _fan_out(self, message: dict, exclude: Optional[Connection] = None) -> List[Connection]:
        """Queue ``message`` on every authenticated writer without yielding."""
        data = self.encode(message)
        targets = []
        for connection in list(self.connections.values()):
            if not connection.authenticated or connection is exclude:
                continue
            if connection.writer.is_closing():
                continue
            connection.writer.write(data)
            targets.append(connection)
        return targets

    async def _drain(self, targets: List[Connection]) -> List[Connection]:
        """Wait for every target to accept its queued bytes, each within ``drain_timeout``."""
        results = await asyncio.gather(
            *(asyncio.wait_for(c.writer.drain(), self.config.drain_timeout) for c in targets),
            return_exceptions=True
        )
        failed = []
        for connection, result in zip(targets, results):
            if isinstance(result, (OSError, asyncio.TimeoutError)):
                logger.error(f"Failed to broadcast to connection_id={connection.connection_id}: {result!r}")
                failed.append(connection)
            elif isinstance(result, BaseException):
                raise result
        return failed

    async def _deliver(self, targets: List[Connection]):
        # Drained outside the fan-out lock
        for connection in await self._drain(targets):
            await self.disconnect_client(connection, abort=True)

    async def broadcast(self, message: dict, exclude: Optional[Connection] = None):
        """Send a JSON message to all authenticated clients, optionally excluding one."""
        async with self.lock:
            targets = self._fan_out(message, exclude)
        await self._deliver(targets)

    async def broadcast_roster(self):
        await self.broadcast(create_online_users_message(self.presence.snapshot()))

    # -- unauthenticated --

    async def handle_login(self, connection: Connection, data: dict):
        """Process login message, credentialed or guest."""
        if data.get('guest') is True:
            identity = self.generate_guest_name()
            await self._complete_login(connection, identity, guest=True, outcome='guest')
            return

        username = data.get('username')
        password = data.get('password')
        if not is_valid_username(username):
            logger.log_login_failed(username, connection.connection_id, 'invalid username')
            await self.send_message(connection, create_login_error_message(LoginErrors.INVALID_USERNAME))
            return
        if not isinstance(password, str) or not password:
            logger.log_login_failed(username, connection.connection_id, 'missing password')
            await self.send_message(connection, create_login_error_message(LoginErrors.MISSING_CREDENTIALS))
            return
        if self.presence.guest_holds(username):
            logger.log_login_failed(username, connection.connection_id, 'name held by a guest')
            await self.send_message(connection, create_login_error_message(LoginErrors.NAME_IN_USE))
            return

        try:
            result = await asyncio.to_thread(self.credential_store.authenticate, username, password)
        except InvalidUsername:
            logger.log_login_failed(username, connection.connection_id, 'invalid username')
            await self.send_message(connection, create_login_error_message(LoginErrors.INVALID_USERNAME))
            return
        except WrongCredential:
            logger.log_login_failed(username, connection.connection_id, 'wrong password')
            await self.send_message(connection, create_login_error_message(LoginErrors.WRONG_CREDENTIAL))
            return

        account = result.account
        await self._complete_login(
            connection, account.username, guest=False, outcome=result.outcome,
            level=account.level, experience=account.experience
        )

    async def handle_resume(self, connection: Connection, data: dict):
        """Authenticate with a previously issued token."""
        try:
            token = self.token_issuer.resolve(data.get('token'))
        except TokenNotFound:
            logger.log_login_failed(None, connection.connection_id, 'unknown token')
            await self.send_message(connection, create_login_error_message(LoginErrors.SESSION_EXPIRED))
            return

        if token.guest:
            if token.owner in self.credential_store:
                self.token_issuer.revoke(token.value)
                logger.log_login_failed(token.owner, connection.connection_id, 'guest name now registered')
                await self.send_message(connection, create_login_error_message(LoginErrors.SESSION_EXPIRED))
                return
            await self._complete_login(connection, token.owner, guest=True, outcome='resumed', token=token)
            return

        account = self.credential_store.get(token.owner)
        if account is None:
            self.token_issuer.revoke(token.value)
            await self.send_message(connection, create_login_error_message(LoginErrors.SESSION_EXPIRED))
            return
        await self._complete_login(
            connection, account.username, guest=False, outcome='resumed', token=token,
            level=account.level, experience=account.experience
        )

    async def _complete_login(self, connection: Connection, identity: str, guest: bool, outcome: str,
                              token=None, level: int = 1, experience: int = 0):
        # The connection may have gone away while credentials were checked
        if connection.closed:
            return
        if not guest and self.presence.guest_holds(identity):
            logger.log_login_failed(identity, connection.connection_id, 'name held by a guest')
            await self.send_message(connection, create_login_error_message(LoginErrors.NAME_IN_USE))
            return
        if token is None:
            try:
                token = self.token_issuer.issue(identity, guest=guest)
            except TokenCollision as e:
                logger.log_error("token issue", e)
                await self.send_message(connection, create_error_message("Could not start session, try again."))
                return

        connection.authenticate(identity, guest)
        self.presence.register(connection.connection_id, identity, level=level, guest=guest)
        logger.log_login(identity, connection.connection_id, outcome)

        await self.send_message(
            connection, create_login_success_message(identity, token.value, guest, experience, level)
        )
        await self.broadcast_roster()

    def generate_guest_name(self) -> str:
        """Guest<4 digits>, avoiding known accounts and connected identities when possible."""
        taken = set(self.presence.identities())
        name = None
        for _ in range(GUEST_NAME_ATTEMPTS):
            name = f"{GUEST_PREFIX}{secrets.randbelow(9000) + 1000}"
            if name not in taken and name not in self.credential_store:
                break
        return name

    # -- authenticated --

    async def record_activity(self, connection: Connection):
        """Any inbound event counts as activity and ends idle status."""
        if self.presence.touch(connection.connection_id):
            logger.log_status(connection.identity, Status.ONLINE)
            await self.broadcast_roster()

    async def handle_send_global(self, connection: Connection, data: dict):
        """Accept a global chat message and fan it out in acceptance order."""
        client_id = data.get('clientId')
        if client_id is not None:
            client_id = str(client_id)

        # Publish and queue in one step so every writer sees acceptance order
        try:
            async with self.lock:
                message = self.channel.publish(connection.identity, data.get('text'), client_id=client_id)
                if message is None:
                    return
                targets = self._fan_out(create_global_message(message.to_global_message()))
        except RateLimited as e:
            logger.log_rate_limited(connection.identity, e.retry_after_ms)
            if self.config.notify_rate_limit:
                await self.send_message(connection, create_rate_limited_message(e.retry_after_ms))
            return

        await self._deliver(targets)

        logger.log_chat(connection.identity, connection.connection_id, message.text)

        if not connection.guest:
            account = self.credential_store.grant_experience(connection.identity, XP_PER_GLOBAL_MESSAGE)
            if account is not None and self.presence.update_level(connection.identity, account.level):
                await self.broadcast_roster()

    async def handle_status(self, connection: Connection, data: dict):
        status = data.get('status')
        if status not in Status.ALL:
            await self.send_message(connection, create_error_message(f"Unknown status: {status}"))
            return
        if self.presence.set_status(connection.connection_id, status):
            logger.log_status(connection.identity, status)
            await self.broadcast_roster()

    async def handle_typing(self, connection: Connection, data: dict):
        """Relay typing state to everyone else."""
        typing = bool(data.get('typing'))
        await self.broadcast(create_typing_update_message(connection.identity, typing), exclude=connection)

    async def handle_get_history(self, connection: Connection, data: dict):
        """Send chat history to requesting client."""
        logger.info(f"Chat history requested by connection_id={connection.connection_id}")
        history = [m.to_global_message() for m in self.channel.history()]
        await self.send_message(connection, create_history_message(history))

    async def handle_heartbeat(self, connection: Connection, data: dict):
        """Process heartbeat message."""
        logger.debug(f"Heartbeat from connection_id={connection.connection_id}")
        await self.send_message(connection, create_heartbeat_ack_message())

    async def handle_logout(self, connection: Connection, data: dict):
        """Process logout message."""
        logger.info(f"Logout request from connection_id={connection.connection_id}")
        await self.disconnect_client(connection)

    # -- lifecycle --

    async def sweep(self):
        """Periodic housekeeping: idle detection and stale rate-limit/token state."""
        changed = self.presence.sweep_idle()
        self.channel.prune()
        self.token_issuer.sweep_expired()
        if changed:
            await self.broadcast_roster()

    async def disconnect_client(self, connection: Connection, abort: bool = False):
        """
        Close the connection, release its session and notify others.

        With ``abort`` the transport is dropped without flushing, for peers
        that stopped reading.
        """
        if connection.closed:
            return
        connection.close()
        self.connections.pop(connection.connection_id, None)
        session = self.presence.deregister(connection.connection_id)

        try:
            if abort:
                connection.writer.transport.abort()
            else:
                connection.writer.close()
                await asyncio.wait_for(connection.writer.wait_closed(), self.config.drain_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Error closing connection_id={connection.connection_id}: {e!r}")

        if session is not None:
            logger.log_disconnect(session.identity, connection.connection_id)
            await self.broadcast_roster()
