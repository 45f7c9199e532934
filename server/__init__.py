"""
Server package for the LAN chat presence server.

This package contains all server-side functionality including:
- Account validation and session tokens
- Per-connection login state machine
- Online-user presence and idle tracking
- Global chat with per-sender cooldown
- Configuration and utilities
"""
