"""
Chat module for server-side messaging functionality.

Handles:
- Global message broadcasting
- Per-sender cooldown
- Message history management
- Login, presence and disconnect handling
"""
