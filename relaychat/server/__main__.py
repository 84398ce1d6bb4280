"""
Server entry point: delegates to relaychat.server.server.

Run with:
    python -m relaychat.server [port]
"""

from relaychat.server.server import main

if __name__ == "__main__":
    main()
