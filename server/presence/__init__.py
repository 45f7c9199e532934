"""
Presence module for server-side online-user tracking.

Handles:
- Session registration per connection
- Online/idle status
- Roster snapshots
"""
