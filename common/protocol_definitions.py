"""
Protocol definitions for the LAN chat presence server.

This module defines the message structures and data formats used in communication
between client and server components. Every message is a JSON object with a
``type`` field, sent as one line.
"""

from typing import Dict, Any, Optional, List
from dataclasses import dataclass
from datetime import datetime

from common.constants import MessageTypes


@dataclass
class RosterEntry:
    """One identity in the online-user snapshot."""
    user: str
    status: str
    level: int


@dataclass
class GlobalMessage:
    """Chat message as delivered to clients."""
    id: str
    user: str
    text: str
    timestamp: int


# Client to Server

def create_login_message(username: str, password: str) -> Dict[str, Any]:
    """Create a credentialed login message."""
    return {
        "type": MessageTypes.LOGIN,
        "username": username,
        "password": password
    }


def create_guest_login_message() -> Dict[str, Any]:
    """Create a guest login message."""
    return {
        "type": MessageTypes.LOGIN,
        "guest": True
    }


def create_resume_message(token: str) -> Dict[str, Any]:
    """Create a token resume message."""
    return {
        "type": MessageTypes.RESUME,
        "token": token
    }


def create_send_global_message(text: str, client_id: Optional[str] = None) -> Dict[str, Any]:
    """Create a global chat message."""
    message = {
        "type": MessageTypes.SEND_GLOBAL,
        "text": text
    }
    if client_id is not None:
        message["clientId"] = client_id
    return message


def create_status_set_message(status: str) -> Dict[str, Any]:
    return {
        "type": MessageTypes.STATUS_SET,
        "status": status
    }


def create_typing_message(typing: bool) -> Dict[str, Any]:
    return {
        "type": MessageTypes.TYPING,
        "typing": bool(typing)
    }


def create_get_history_message() -> Dict[str, Any]:
    """Create a get history message."""
    return {
        "type": MessageTypes.GET_HISTORY
    }


def create_heartbeat_message() -> Dict[str, Any]:
    """Create a heartbeat message."""
    return {
        "type": MessageTypes.HEARTBEAT,
        "timestamp": datetime.now().isoformat()
    }


def create_logout_message() -> Dict[str, Any]:
    """Create a logout message."""
    return {
        "type": MessageTypes.LOGOUT
    }


# Server to Client

def create_login_success_message(username: str, token: str, guest: bool,
                                 experience: int, level: int) -> Dict[str, Any]:
    """Create a login success message."""
    return {
        "type": MessageTypes.LOGIN_SUCCESS,
        "username": username,
        "token": token,
        "guest": guest,
        "experience": experience,
        "level": level
    }


def create_login_error_message(reason: str) -> Dict[str, Any]:
    """Create a login error message."""
    return {
        "type": MessageTypes.LOGIN_ERROR,
        "reason": reason
    }


def create_online_users_message(users: List[RosterEntry]) -> Dict[str, Any]:
    """Create the presence snapshot message."""
    return {
        "type": MessageTypes.ONLINE_USERS,
        "users": [
            {"user": entry.user, "status": entry.status, "level": entry.level}
            for entry in users
        ]
    }


def create_global_message(message: GlobalMessage) -> Dict[str, Any]:
    """Create a fan-out chat message."""
    return {
        "type": MessageTypes.GLOBAL_MESSAGE,
        "id": message.id,
        "user": message.user,
        "text": message.text,
        "timestamp": message.timestamp
    }


def create_rate_limited_message(retry_after_ms: int) -> Dict[str, Any]:
    return {
        "type": MessageTypes.RATE_LIMITED,
        "retryAfterMs": retry_after_ms
    }


def create_typing_update_message(user: str, typing: bool) -> Dict[str, Any]:
    return {
        "type": MessageTypes.TYPING_UPDATE,
        "user": user,
        "typing": typing
    }


def create_history_message(messages: List[GlobalMessage]) -> Dict[str, Any]:
    """Create a history message."""
    return {
        "type": MessageTypes.HISTORY,
        "messages": [create_global_message(m) for m in messages],
        "count": len(messages)
    }


def create_heartbeat_ack_message() -> Dict[str, Any]:
    """Create a heartbeat acknowledgment message."""
    return {
        "type": MessageTypes.HEARTBEAT_ACK,
        "timestamp": datetime.now().isoformat()
    }


def create_error_message(message: str) -> Dict[str, Any]:
    """Create an error message."""
    return {
        "type": MessageTypes.ERROR,
        "message": message
    }
