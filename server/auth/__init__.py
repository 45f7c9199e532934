"""
Authentication module for server-side identity handling.

Handles:
- Account validation and creation
- Credential hashing
- Session token issuance and resolution
"""
