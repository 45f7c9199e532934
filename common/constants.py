"""
Shared constants for the LAN chat presence server.

This module contains all constants used across client and server components.
"""

# Network Configuration
DEFAULT_HOST = 'localhost'
DEFAULT_SERVER_HOST = '0.0.0.0'
DEFAULT_PORT = 9000
MAX_LINE_BYTES = 1024 * 1024  # 1MB per JSON line
DRAIN_TIMEOUT = 10  # seconds a peer may take to accept queued writes

# Accounts
USERNAME_PATTERN = r'[A-Za-z0-9]{4,20}'
DEFAULT_EXPERIENCE = 0
DEFAULT_LEVEL = 1
XP_PER_GLOBAL_MESSAGE = 5
BCRYPT_ROUNDS = 12

# Guests
GUEST_PREFIX = 'Guest'
GUEST_NAME_ATTEMPTS = 10

# Tokens
TOKEN_BYTES = 32
TOKEN_ISSUE_ATTEMPTS = 5

# Chat
COOLDOWN_MS = 3000
MAX_MESSAGE_LENGTH = 2000
MAX_CHAT_HISTORY = 500
CLIENT_ID_MEMORY = 50

# Presence
IDLE_TIMEOUT = 300  # seconds without activity before a session goes idle
IDLE_CHECK_INTERVAL = 15  # seconds between idle sweeps

# Logging
LOG_DIR = 'logs'
CHAT_LOG_FILE = 'chat_history.log'


class Status:
    ONLINE = 'online'
    IDLE = 'idle'

    ALL = (ONLINE, IDLE)


# Message Types
class MessageTypes:
    # Client to Server
    LOGIN = 'login'
    RESUME = 'resume'
    SEND_GLOBAL = 'sendGlobal'
    STATUS_SET = 'status:set'
    TYPING = 'typing'
    GET_HISTORY = 'getHistory'
    HEARTBEAT = 'heartbeat'
    LOGOUT = 'logout'

    # Server to Client
    LOGIN_SUCCESS = 'loginSuccess'
    LOGIN_ERROR = 'loginError'
    ONLINE_USERS = 'onlineUsers'
    GLOBAL_MESSAGE = 'globalMessage'
    RATE_LIMITED = 'rateLimited'
    TYPING_UPDATE = 'typingUpdate'
    HISTORY = 'history'
    HEARTBEAT_ACK = 'heartbeatAck'
    ERROR = 'error'


# Login error reasons
class LoginErrors:
    INVALID_USERNAME = 'Username must be 4-20 letters or numbers.'
    WRONG_CREDENTIAL = 'Wrong password.'
    MISSING_CREDENTIALS = 'Missing credentials.'
    SESSION_EXPIRED = 'Session expired.'
    NAME_IN_USE = 'That name is in use by a guest.'
