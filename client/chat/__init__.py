"""
Chat module for client-side messaging functionality.

Handles:
- Sending login, chat, status and typing events
- Receiving roster and chat messages
- Chat history requests
"""
