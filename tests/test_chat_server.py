#!/usr/bin/env python3
"""
Unit tests for the chat server session lifecycle.

Drives the gateway with in-memory writers:
- Registered, guest and token logins
- Roster pushes on login, status change and disconnect
- Global message fan-out, cooldown drops and ordering
- State machine guards
"""

import asyncio
import json
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from common.constants import MessageTypes, Status, LoginErrors, DEFAULT_SERVER_HOST, DEFAULT_PORT, LOG_DIR
from server.auth.credential_store import CredentialStore
from server.chat.broadcast_channel import BroadcastChannel
from server.chat.chat_server import ChatServer
from server.main_server import ChatGatewayServer, build_arg_parser, config_from_args
from server.presence.presence_registry import PresenceRegistry
from server.utils.config import ServerConfig
from server.utils.logger import logger


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeTransport:
    def __init__(self, writer):
        self.writer = writer
        self.aborted = False

    def abort(self):
        self.aborted = True
        self.writer.closed = True


class FakeWriter:
    """Stands in for asyncio.StreamWriter and records what was written."""

    def __init__(self, fail_on_drain: bool = False):
        self.buffer = b''
        self.closed = False
        self.fail_on_drain = fail_on_drain
        self.stalled = False
        self.transport = FakeTransport(self)

    def write(self, data: bytes):
        self.buffer += data

    async def drain(self):
        if self.fail_on_drain:
            raise ConnectionResetError("peer went away")
        if self.stalled:
            # A peer that stopped reading never frees buffer space
            await asyncio.Event().wait()

    def is_closing(self) -> bool:
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass

    def get_extra_info(self, name, default=None):
        return ('127.0.0.1', 50000)

    def messages(self, msg_type=None):
        lines = [json.loads(line) for line in self.buffer.decode('utf-8').splitlines() if line]
        if msg_type is None:
            return lines
        return [m for m in lines if m['type'] == msg_type]

    def clear(self):
        self.buffer = b''


class ChatServerTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        logs = tempfile.TemporaryDirectory()
        self.addCleanup(logs.cleanup)
        logger.set_logs_dir(logs.name)
        self.clock = FakeClock()
        self.config = ServerConfig(host='127.0.0.1', port=0)
        self.config.bcrypt_rounds = 4
        self.chat = ChatServer(
            self.config,
            credential_store=CredentialStore(rounds=4),
            presence=PresenceRegistry(idle_timeout=60, clock=self.clock),
            channel=BroadcastChannel(cooldown_ms=3000, clock=self.clock),
        )
        self.gateway = ChatGatewayServer(self.config, self.chat)

    def connect(self, writer=None):
        writer = writer or FakeWriter()
        return self.chat.add_connection(writer, writer.get_extra_info('peername')), writer

    async def send(self, connection, message: dict):
        await self.gateway.dispatch(connection, message)

    async def login(self, username="alice123", password="pass1234"):
        connection, writer = self.connect()
        await self.send(connection, {"type": "login", "username": username, "password": password})
        return connection, writer


class TestLogin(ChatServerTestCase):
    """Test cases for the login flow."""

    async def test_first_login_creates_account_and_token(self):
        connection, writer = await self.login()

        success = writer.messages(MessageTypes.LOGIN_SUCCESS)
        self.assertEqual(len(success), 1)
        self.assertEqual(success[0]['username'], "alice123")
        self.assertFalse(success[0]['guest'])
        self.assertEqual(self.chat.token_issuer.resolve(success[0]['token']).owner, "alice123")
        self.assertTrue(connection.authenticated)
        self.assertEqual(len(self.chat.credential_store), 1)

    async def test_login_pushes_roster_to_everyone(self):
        _, first = await self.login("bobby456")
        first.clear()
        _, second = await self.login("alice123")

        for writer in (first, second):
            rosters = writer.messages(MessageTypes.ONLINE_USERS)
            self.assertEqual([u['user'] for u in rosters[-1]['users']], ["alice123", "bobby456"])
            self.assertEqual(rosters[-1]['users'][0]['status'], Status.ONLINE)

    async def test_success_sent_before_roster(self):
        _, writer = await self.login()

        types = [m['type'] for m in writer.messages()]
        self.assertEqual(types, [MessageTypes.LOGIN_SUCCESS, MessageTypes.ONLINE_USERS])

    async def test_concrete_login_scenario(self):
        await self.login("alice123", "pass1234")
        second, second_writer = await self.login("alice123", "pass1234")
        third, third_writer = await self.login("alice123", "wrong1")

        self.assertTrue(second.authenticated)
        self.assertEqual(len(self.chat.credential_store), 1)
        self.assertFalse(third.authenticated)
        self.assertEqual(third_writer.messages(MessageTypes.LOGIN_ERROR), [
            {"type": MessageTypes.LOGIN_ERROR, "reason": LoginErrors.WRONG_CREDENTIAL}
        ])

    async def test_failed_login_is_retryable_and_private(self):
        _, observer = await self.login("bobby456")
        await self.login("alice123", "pass1234")
        observer.clear()

        connection, writer = await self.login("alice123", "nope1")
        await self.send(connection, {"type": "login", "username": "alice123", "password": "pass1234"})

        self.assertTrue(connection.authenticated)
        self.assertEqual(len(writer.messages(MessageTypes.LOGIN_ERROR)), 1)
        self.assertEqual(observer.messages(MessageTypes.LOGIN_ERROR), [])

    async def test_invalid_username(self):
        for username in ["", "abc", "x" * 21, "bad$name", "alice123\n"]:
            with self.subTest(username=username):
                connection, writer = await self.login(username, "pass1234")
                self.assertEqual(writer.messages(MessageTypes.LOGIN_ERROR)[0]['reason'], LoginErrors.INVALID_USERNAME)
                self.assertFalse(connection.authenticated)
        self.assertEqual(len(self.chat.credential_store), 0)

    async def test_missing_password(self):
        connection, writer = await self.login("alice123", "")

        self.assertEqual(writer.messages(MessageTypes.LOGIN_ERROR)[0]['reason'], LoginErrors.MISSING_CREDENTIALS)
        self.assertEqual(len(self.chat.credential_store), 0)

    async def test_guest_login(self):
        connection, writer = self.connect()
        await self.send(connection, {"type": "login", "guest": True})

        success = writer.messages(MessageTypes.LOGIN_SUCCESS)[0]
        self.assertRegex(success['username'], r'^Guest\d{4}$')
        self.assertTrue(success['guest'])
        self.assertTrue(success['token'])
        self.assertEqual(len(self.chat.credential_store), 0)
        self.assertEqual(self.chat.presence.identities(), [success['username']])

    async def test_resume_with_token(self):
        _, writer = await self.login()
        token = writer.messages(MessageTypes.LOGIN_SUCCESS)[0]['token']

        connection, resumed = self.connect()
        await self.send(connection, {"type": "resume", "token": token})

        success = resumed.messages(MessageTypes.LOGIN_SUCCESS)[0]
        self.assertEqual(success['username'], "alice123")
        self.assertEqual(success['token'], token)
        self.assertTrue(connection.authenticated)

    async def test_resume_guest_keeps_identity(self):
        connection, writer = self.connect()
        await self.send(connection, {"type": "login", "guest": True})
        success = writer.messages(MessageTypes.LOGIN_SUCCESS)[0]

        other, other_writer = self.connect()
        await self.send(other, {"type": "resume", "token": success['token']})

        resumed = other_writer.messages(MessageTypes.LOGIN_SUCCESS)[0]
        self.assertEqual(resumed['username'], success['username'])
        self.assertTrue(resumed['guest'])

    async def test_resume_unknown_token(self):
        connection, writer = self.connect()
        await self.send(connection, {"type": "resume", "token": "bogus"})

        self.assertEqual(writer.messages(MessageTypes.LOGIN_ERROR)[0]['reason'], LoginErrors.SESSION_EXPIRED)
        self.assertFalse(connection.authenticated)

    async def test_second_login_on_same_connection_rejected(self):
        connection, writer = await self.login()
        await self.send(connection, {"type": "login", "username": "bobby456", "password": "pass1234"})

        self.assertEqual(writer.messages(MessageTypes.ERROR)[0]['message'], "Already logged in.")
        self.assertEqual(connection.identity, "alice123")
        self.assertNotIn("bobby456", self.chat.credential_store)

    async def test_guest_name_avoids_taken_names(self):
        self.chat.credential_store.authenticate("Guest1000", "pass1234")

        names = set()
        for _ in range(20):
            name = self.chat.generate_guest_name()
            self.assertRegex(name, r'^Guest[1-9]\d{3}$')
            names.add(name)
        self.assertGreater(len(names), 1)

    async def test_guest_flag_must_be_true(self):
        connection, writer = self.connect()
        await self.send(connection, {"type": "login", "guest": "false"})

        self.assertEqual(writer.messages(MessageTypes.LOGIN_ERROR)[0]['reason'], LoginErrors.INVALID_USERNAME)
        self.assertFalse(connection.authenticated)
        self.assertEqual(self.chat.presence.identities(), [])

    async def test_registered_login_cannot_take_online_guest_name(self):
        guest, guest_writer = self.connect()
        await self.send(guest, {"type": "login", "guest": True})
        name = guest_writer.messages(MessageTypes.LOGIN_SUCCESS)[0]['username']
        guest_writer.clear()

        connection, writer = await self.login(name, "pass1234")
        other, other_writer = await self.login(name.lower(), "pass1234")

        for conn, out in ((connection, writer), (other, other_writer)):
            self.assertFalse(conn.authenticated)
            self.assertEqual(out.messages(MessageTypes.LOGIN_SUCCESS), [])
            self.assertEqual(out.messages(MessageTypes.LOGIN_ERROR)[0]['reason'], LoginErrors.NAME_IN_USE)
        self.assertNotIn(name, self.chat.credential_store)
        self.assertEqual(guest_writer.messages(), [])

        # Once the guest leaves the name can be registered
        await self.chat.disconnect_client(guest)
        connection, writer = await self.login(name, "pass1234")

        success = writer.messages(MessageTypes.LOGIN_SUCCESS)[0]
        self.assertEqual(success['username'], name)
        self.assertFalse(success['guest'])
        roster = writer.messages(MessageTypes.ONLINE_USERS)[-1]
        self.assertEqual(roster['users'], [{"user": name, "status": Status.ONLINE, "level": 1}])

    async def test_guest_token_rejected_once_name_registered(self):
        guest, guest_writer = self.connect()
        await self.send(guest, {"type": "login", "guest": True})
        success = guest_writer.messages(MessageTypes.LOGIN_SUCCESS)[0]
        await self.chat.disconnect_client(guest)
        await self.login(success['username'], "pass1234")

        connection, writer = self.connect()
        await self.send(connection, {"type": "resume", "token": success['token']})

        self.assertEqual(writer.messages(MessageTypes.LOGIN_ERROR)[0]['reason'], LoginErrors.SESSION_EXPIRED)
        self.assertFalse(connection.authenticated)
        self.assertEqual(self.chat.presence.identities(), [success['username']])
        self.assertEqual(len(self.chat.token_issuer), 1)


class TestUnauthenticated(ChatServerTestCase):
    """An unauthenticated connection cannot chat or appear in presence."""

    async def test_send_global_requires_login(self):
        _, observer = await self.login()
        observer.clear()
        connection, writer = self.connect()

        await self.send(connection, {"type": "sendGlobal", "text": "sneaky"})

        self.assertEqual(writer.messages(MessageTypes.ERROR)[0]['message'], "Not logged in.")
        self.assertEqual(observer.messages(MessageTypes.GLOBAL_MESSAGE), [])
        self.assertEqual(self.chat.channel.history(), [])

    async def test_unauthenticated_not_in_roster_and_no_fanout(self):
        _, pending = self.connect()
        await self.login()

        self.assertEqual(self.chat.presence.identities(), ["alice123"])
        self.assertEqual(pending.messages(), [])


class TestGlobalMessages(ChatServerTestCase):
    """Test cases for fan-out, cooldown and ordering."""

    async def test_cooldown_scenario(self):
        alice, alice_writer = await self.login("alice123")
        _, bob_writer = await self.login("bobby456")

        await self.send(alice, {"type": "sendGlobal", "text": "hello"})
        self.clock.now = 1.0
        await self.send(alice, {"type": "sendGlobal", "text": "world"})
        self.clock.now = 3.1
        await self.send(alice, {"type": "sendGlobal", "text": "again"})

        for writer in (alice_writer, bob_writer):
            texts = [m['text'] for m in writer.messages(MessageTypes.GLOBAL_MESSAGE)]
            self.assertEqual(texts, ["hello", "again"])
        # Dropped silently by default
        self.assertEqual(alice_writer.messages(MessageTypes.RATE_LIMITED), [])
        self.assertEqual(alice_writer.messages(MessageTypes.ERROR), [])

    async def test_rate_limit_notification_when_enabled(self):
        self.config.notify_rate_limit = True
        alice, writer = await self.login()

        await self.send(alice, {"type": "sendGlobal", "text": "hello"})
        self.clock.now = 1.0
        await self.send(alice, {"type": "sendGlobal", "text": "world"})

        self.assertEqual(writer.messages(MessageTypes.RATE_LIMITED), [
            {"type": MessageTypes.RATE_LIMITED, "retryAfterMs": 2000}
        ])

    async def test_sender_identity_is_server_assigned(self):
        alice, writer = await self.login()

        await self.send(alice, {"type": "sendGlobal", "text": "hi", "user": "mallory"})

        message = writer.messages(MessageTypes.GLOBAL_MESSAGE)[0]
        self.assertEqual(message['user'], "alice123")
        self.assertIsInstance(message['timestamp'], int)
        self.assertTrue(message['id'])

    async def test_blank_text_ignored(self):
        alice, writer = await self.login()

        await self.send(alice, {"type": "sendGlobal", "text": "   "})
        await self.send(alice, {"type": "sendGlobal"})

        self.assertEqual(writer.messages(MessageTypes.GLOBAL_MESSAGE), [])
        self.assertEqual(writer.messages(MessageTypes.ERROR), [])

    async def test_all_observers_see_same_order(self):
        alice, alice_writer = await self.login("alice123")
        bob, bob_writer = await self.login("bobby456")
        _, carol_writer = await self.login("carol789")

        await self.send(alice, {"type": "sendGlobal", "text": "a"})
        await self.send(bob, {"type": "sendGlobal", "text": "b"})

        accepted = [m.text for m in self.chat.channel.history()]
        for writer in (alice_writer, bob_writer, carol_writer):
            observed = [m['text'] for m in writer.messages(MessageTypes.GLOBAL_MESSAGE)]
            self.assertEqual(observed, accepted)

    async def test_accepted_messages_grant_experience(self):
        alice, _ = await self.login()

        for i in range(22):
            self.clock.now = i * 3.0
            await self.send(alice, {"type": "sendGlobal", "text": f"msg {i}"})

        account = self.chat.credential_store.get("alice123")
        self.assertEqual(account.level, 2)
        self.assertEqual(account.experience, 0)
        self.assertEqual(self.chat.presence.snapshot()[0].level, 2)

    async def test_guests_earn_no_experience(self):
        guest, _ = self.connect()
        await self.send(guest, {"type": "login", "guest": True})

        await self.send(guest, {"type": "sendGlobal", "text": "hello"})

        self.assertEqual(len(self.chat.channel.history()), 1)
        self.assertEqual(len(self.chat.credential_store), 0)

    async def test_history_request(self):
        alice, writer = await self.login()
        await self.send(alice, {"type": "sendGlobal", "text": "hello"})

        await self.send(alice, {"type": "getHistory"})

        history = writer.messages(MessageTypes.HISTORY)[0]
        self.assertEqual(history['count'], 1)
        self.assertEqual(history['messages'][0]['text'], "hello")

    async def test_typing_relayed_to_others_only(self):
        alice, alice_writer = await self.login("alice123")
        _, bob_writer = await self.login("bobby456")

        await self.send(alice, {"type": "typing", "typing": True})

        self.assertEqual(bob_writer.messages(MessageTypes.TYPING_UPDATE), [
            {"type": MessageTypes.TYPING_UPDATE, "user": "alice123", "typing": True}
        ])
        self.assertEqual(alice_writer.messages(MessageTypes.TYPING_UPDATE), [])

    async def test_failed_writer_is_disconnected(self):
        alice, _ = await self.login("alice123")
        broken = FakeWriter()
        bob, _ = self.connect(broken)
        await self.send(bob, {"type": "login", "username": "bobby456", "password": "pass1234"})
        broken.fail_on_drain = True

        await self.send(alice, {"type": "sendGlobal", "text": "hello"})

        self.assertTrue(bob.closed)
        self.assertTrue(broken.transport.aborted)
        self.assertEqual(self.chat.presence.identities(), ["alice123"])

    async def test_stalled_reader_does_not_block_others(self):
        self.config.drain_timeout = 0.5
        alice, alice_writer = await self.login("alice123")
        bob, bob_writer = await self.login("bobby456")
        carol, carol_writer = await self.login("carol789")
        carol_writer.stalled = True

        first = asyncio.create_task(self.send(alice, {"type": "sendGlobal", "text": "a"}))
        await asyncio.sleep(0.05)
        second = asyncio.create_task(self.send(bob, {"type": "sendGlobal", "text": "b"}))
        await asyncio.sleep(0.05)

        # Both messages reach the live readers while carol's drain is still pending
        self.assertFalse(first.done())
        for writer in (alice_writer, bob_writer):
            self.assertEqual([m['text'] for m in writer.messages(MessageTypes.GLOBAL_MESSAGE)], ["a", "b"])

        await asyncio.wait_for(asyncio.gather(first, second), 2.0)

        self.assertTrue(carol.closed)
        self.assertTrue(carol_writer.transport.aborted)
        self.assertEqual(self.chat.presence.identities(), ["alice123", "bobby456"])
        roster = alice_writer.messages(MessageTypes.ONLINE_USERS)[-1]
        self.assertEqual([u['user'] for u in roster['users']], ["alice123", "bobby456"])

    async def test_stalled_reader_does_not_block_sweep(self):
        self.config.drain_timeout = 0.5
        alice, alice_writer = await self.login("alice123")
        _, bob_writer = await self.login("bobby456")
        bob_writer.stalled = True

        pending = asyncio.create_task(self.send(alice, {"type": "sendGlobal", "text": "a"}))
        await asyncio.sleep(0.05)
        alice_writer.clear()

        self.clock.now = 120
        sweep = asyncio.create_task(self.chat.sweep())
        await asyncio.sleep(0.05)

        self.assertFalse(pending.done())
        roster = alice_writer.messages(MessageTypes.ONLINE_USERS)[-1]
        self.assertEqual([u['status'] for u in roster['users']], [Status.IDLE, Status.IDLE])

        await asyncio.wait_for(asyncio.gather(pending, sweep), 2.0)
        self.assertEqual(self.chat.presence.identities(), ["alice123"])


class TestPresence(ChatServerTestCase):
    """Test cases for status changes and disconnects."""

    async def test_disconnect_removes_from_roster(self):
        alice, _ = await self.login("alice123")
        _, bob_writer = await self.login("bobby456")
        bob_writer.clear()

        await self.chat.disconnect_client(alice)

        self.assertTrue(alice.closed)
        self.assertEqual(self.chat.presence.identities(), ["bobby456"])
        roster = bob_writer.messages(MessageTypes.ONLINE_USERS)[-1]
        self.assertEqual([u['user'] for u in roster['users']], ["bobby456"])

    async def test_logout_closes_connection(self):
        alice, writer = await self.login()

        await self.send(alice, {"type": "logout"})

        self.assertTrue(alice.closed)
        self.assertTrue(writer.closed)
        self.assertNotIn(alice.connection_id, self.chat.connections)

    async def test_closed_connection_ignores_events(self):
        alice, writer = await self.login()
        await self.chat.disconnect_client(alice)
        writer.clear()

        await self.chat.disconnect_client(alice)

        self.assertEqual(writer.messages(), [])

    async def test_status_set_idle_and_back(self):
        alice, _ = await self.login("alice123")
        _, bob_writer = await self.login("bobby456")
        bob_writer.clear()

        await self.send(alice, {"type": "status:set", "status": "idle"})
        roster = bob_writer.messages(MessageTypes.ONLINE_USERS)[-1]
        self.assertEqual(roster['users'][0], {"user": "alice123", "status": "idle", "level": 1})

        await self.send(alice, {"type": "status:set", "status": "online"})
        roster = bob_writer.messages(MessageTypes.ONLINE_USERS)[-1]
        self.assertEqual(roster['users'][0]['status'], "online")

    async def test_unknown_status_rejected(self):
        alice, writer = await self.login()

        await self.send(alice, {"type": "status:set", "status": "dnd"})

        self.assertEqual(len(writer.messages(MessageTypes.ERROR)), 1)
        self.assertEqual(self.chat.presence.get(alice.connection_id).status, Status.ONLINE)

    async def test_sweep_marks_idle_and_activity_restores(self):
        alice, _ = await self.login("alice123")
        _, bob_writer = await self.login("bobby456")

        self.clock.now = 30
        await self.send(alice, {"type": "heartbeat"})
        bob_writer.clear()

        self.clock.now = 70
        await self.chat.sweep()
        roster = bob_writer.messages(MessageTypes.ONLINE_USERS)[-1]
        self.assertEqual({u['user']: u['status'] for u in roster['users']},
                         {"alice123": "online", "bobby456": "idle"})

        self.clock.now = 95
        await self.chat.sweep()
        roster = bob_writer.messages(MessageTypes.ONLINE_USERS)[-1]
        self.assertEqual(roster['users'][0]['status'], "idle")

        alice_session = self.chat.presence.get(alice.connection_id)
        self.assertEqual(alice_session.status, Status.IDLE)
        await self.send(alice, {"type": "sendGlobal", "text": "back"})
        self.assertEqual(alice_session.status, Status.ONLINE)

    async def test_sweep_without_changes_sends_nothing(self):
        _, writer = await self.login()
        writer.clear()

        await self.chat.sweep()

        self.assertEqual(writer.messages(), [])

    async def test_heartbeat_acknowledged(self):
        alice, writer = await self.login()

        await self.send(alice, {"type": "heartbeat"})

        self.assertEqual(len(writer.messages(MessageTypes.HEARTBEAT_ACK)), 1)


class TestCommandLine(unittest.TestCase):
    """Test cases for the server command line."""

    def test_defaults_follow_constants(self):
        config = config_from_args(build_arg_parser().parse_args([]))

        self.assertEqual((config.host, config.port, config.logs_dir), (DEFAULT_SERVER_HOST, DEFAULT_PORT, LOG_DIR))
        self.assertIsNone(config.token_ttl)
        self.assertFalse(config.notify_rate_limit)

    def test_overrides(self):
        args = build_arg_parser().parse_args([
            '--host', '127.0.0.1', '--port', '9100', '--idle-timeout', '30',
            '--token-ttl', '3600', '--notify-rate-limit'
        ])
        config = config_from_args(args)

        self.assertEqual((config.host, config.port), ('127.0.0.1', 9100))
        self.assertEqual(config.idle_timeout, 30)
        self.assertEqual(config.token_ttl, 3600)
        self.assertTrue(config.notify_rate_limit)


if __name__ == '__main__':
    unittest.main()
