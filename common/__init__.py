"""
Shared constants and protocol definitions for client and server.
"""
