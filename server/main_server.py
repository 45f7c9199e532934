#!/usr/bin/env python3
"""
LAN Chat Presence Server - Main Entry Point

This is the main entry point for the server application.
It accepts TCP connections carrying line-delimited JSON events, runs each
connection through its login state machine and hands events to the chat server.
"""

import argparse
import asyncio
import json
import logging
from typing import Optional

from common.constants import MessageTypes, Status, DEFAULT_SERVER_HOST, DEFAULT_PORT, LOG_DIR
from common.protocol_definitions import create_error_message
from server.chat.chat_server import ChatServer
from server.connection import Connection
from server.utils.config import ServerConfig
from server.utils.logger import logger


class ChatGatewayServer:
    """Main server class: transport loop, event dispatch and periodic sweeps."""

    def __init__(self, config: Optional[ServerConfig] = None, chat_server: Optional[ChatServer] = None):
        self.config = config or ServerConfig()
        self.chat_server = chat_server or ChatServer(self.config)
        self.server: Optional[asyncio.AbstractServer] = None
        self.sweep_task: Optional[asyncio.Task] = None

        chat = self.chat_server
        self.unauthenticated_handlers = {
            MessageTypes.LOGIN: chat.handle_login,
            MessageTypes.RESUME: chat.handle_resume,
            MessageTypes.LOGOUT: chat.handle_logout,
        }
        self.authenticated_handlers = {
            MessageTypes.SEND_GLOBAL: chat.handle_send_global,
            MessageTypes.STATUS_SET: chat.handle_status,
            MessageTypes.TYPING: chat.handle_typing,
            MessageTypes.GET_HISTORY: chat.handle_get_history,
            MessageTypes.HEARTBEAT: chat.handle_heartbeat,
            MessageTypes.LOGOUT: chat.handle_logout,
        }

    @property
    def port(self) -> Optional[int]:
        if self.server is None or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    async def dispatch(self, connection: Connection, message: dict):
        """Route one inbound event according to the connection's state."""
        msg_type = message.get('type', '')
        chat = self.chat_server

        if connection.authenticated:
            handler = self.authenticated_handlers.get(msg_type)
            if handler is None:
                if msg_type in self.unauthenticated_handlers:
                    await chat.send_message(connection, create_error_message("Already logged in."))
                else:
                    logger.warning(f"Unknown message type '{msg_type}' from connection_id={connection.connection_id}")
                return
            # status:set idle is the only event that is not activity
            if not (msg_type == MessageTypes.STATUS_SET and message.get('status') != Status.ONLINE):
                await chat.record_activity(connection)
            await handler(connection, message)
            return

        handler = self.unauthenticated_handlers.get(msg_type)
        if handler is not None:
            await handler(connection, message)
        elif msg_type in self.authenticated_handlers:
            await chat.send_message(connection, create_error_message("Not logged in."))
        else:
            logger.warning(f"Unknown message type '{msg_type}' from connection_id={connection.connection_id}")

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handle individual client connection."""
        addr = writer.get_extra_info('peername')
        connection = self.chat_server.add_connection(writer, addr)
        connection_id = connection.connection_id

        logger.log_connection(addr, connection_id)

        try:
            while not connection.closed:
                # Read line-delimited JSON
                try:
                    data = await reader.readline()
                except ValueError:
                    # Line exceeded the stream limit, the buffer has been discarded
                    logger.warning(f"Message too large from connection_id={connection_id}")
                    await self.chat_server.send_message(connection, create_error_message("Message too large"))
                    continue
                if not data:
                    break

                # Parse JSON message
                try:
                    message = json.loads(data.decode('utf-8').strip())
                except (json.JSONDecodeError, UnicodeDecodeError) as e:
                    logger.error(f"Malformed JSON from connection_id={connection_id}: {e}")
                    await self.chat_server.send_message(connection, create_error_message("Malformed JSON"))
                    continue

                if not isinstance(message, dict) or not isinstance(message.get('type'), str) or not message['type']:
                    logger.warning(f"Received message with invalid type from connection_id={connection_id}")
                    continue

                logger.debug(f"Received from connection_id={connection_id}: {message['type']}")

                try:
                    await self.dispatch(connection, message)
                except Exception as e:
                    logger.log_error(f"handling '{message['type']}' from connection_id={connection_id}", e)

        except asyncio.CancelledError:
            logger.info(f"Connection cancelled for connection_id={connection_id}")
            raise
        except OSError as e:
            logger.error(f"Socket error for connection_id={connection_id}: {e}")
        finally:
            await self.chat_server.disconnect_client(connection)

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.config.idle_check_interval)
            try:
                await self.chat_server.sweep()
            except Exception as e:
                logger.log_error("presence sweep", e)

    async def start_serving(self) -> asyncio.AbstractServer:
        """Bind the listening socket and start the sweep task."""
        self.server = await asyncio.start_server(
            self.handle_client,
            self.config.host,
            self.config.port,
            limit=self.config.max_line_bytes
        )
        self.sweep_task = asyncio.create_task(self._sweep_loop())

        addr = ', '.join(str(sock.getsockname()) for sock in self.server.sockets)
        logger.info(f"Server listening on {addr}")
        return self.server

    async def start(self):
        """Start the server and serve until cancelled."""
        server = await self.start_serving()
        try:
            async with server:
                await server.serve_forever()
        finally:
            await self.stop()

    async def stop(self):
        """Stop accepting connections and drop every client."""
        if self.sweep_task is not None:
            self.sweep_task.cancel()
            try:
                await self.sweep_task
            except asyncio.CancelledError:
                pass
            self.sweep_task = None

        if self.server is not None:
            self.server.close()

        for connection in list(self.chat_server.connections.values()):
            await self.chat_server.disconnect_client(connection)

        if self.server is not None:
            await self.server.wait_closed()
            self.server = None


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='LAN Chat Presence Server')
    parser.add_argument('--host', type=str, default=DEFAULT_SERVER_HOST,
                        help=f'Host to bind to (default: {DEFAULT_SERVER_HOST})')
    parser.add_argument('--port', type=int, default=DEFAULT_PORT,
                        help=f'TCP port for the chat server (default: {DEFAULT_PORT})')
    parser.add_argument('--logs-dir', type=str, default=LOG_DIR,
                        help=f'Directory for chat transcripts (default: {LOG_DIR})')
    parser.add_argument('--idle-timeout', type=float, default=None,
                        help='Seconds without activity before a user shows as idle')
    parser.add_argument('--token-ttl', type=float, default=None,
                        help='Session token lifetime in seconds (default: no expiry)')
    parser.add_argument('--notify-rate-limit', action='store_true',
                        help='Tell senders when a message was dropped by the cooldown')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug logging')
    return parser


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    config = ServerConfig(host=args.host, port=args.port, logs_dir=args.logs_dir)
    if args.idle_timeout is not None:
        config.idle_timeout = args.idle_timeout
    config.token_ttl = args.token_ttl
    config.notify_rate_limit = args.notify_rate_limit
    return config


def main(argv=None):
    args = build_arg_parser().parse_args(argv)
    config = config_from_args(args)

    logger.set_logs_dir(config.logs_dir)
    if args.debug:
        logger.set_level(logging.DEBUG)

    server = ChatGatewayServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Server shutting down...")


if __name__ == "__main__":
    main()
