"""
Server-side modules for RelayChat.

This package contains server-side functionality including:
- The client registry (membership, broadcast, direct routing)
- Per-connection sessions (username handshake, message dispatch)
- The TCP listener and its lifecycle
"""
