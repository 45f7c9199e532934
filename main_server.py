#!/usr/bin/env python3
"""
LAN Chat Presence Server - Main Entry Point

Unified entry point for the chat server:
- Registered and guest login
- Online-user presence with idle tracking
- Global chat with per-sender cooldown

Usage:
    python main_server.py

Optional arguments:
    --host HOST             Bind address (default: 0.0.0.0)
    --port PORT             TCP port (default: 9000)
    --logs-dir DIR          Chat transcript directory (default: logs)
    --idle-timeout SECONDS  Inactivity before a user shows as idle (default: 300)
    --token-ttl SECONDS     Session token lifetime (default: no expiry)
    --notify-rate-limit     Tell senders when the cooldown dropped a message
    --debug                 Enable debug logging
"""

if __name__ == "__main__":
    from server.main_server import main

    main()
