"""
Client package for the LAN chat presence server.

This package contains a thin asyncio client for the chat event protocol:
- Login (registered, guest, token resume)
- Global chat messaging
- Presence and typing signals
"""
