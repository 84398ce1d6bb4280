"""
Client entry point: delegates to relaychat.client.client.

Run with:
    python -m relaychat.client [username]
"""

from relaychat.client.client import main

if __name__ == "__main__":
    main()
