"""
Code shared by the RelayChat server and client.

This package contains:
- The wire codec (Message, MessageType, encode/decode)
- Handshake constants and username validation
"""
