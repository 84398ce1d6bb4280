"""
Client-side modules for RelayChat.

ChatClient handles the connection and handshake; ChatListener is the
callback surface a user interface implements.
"""
