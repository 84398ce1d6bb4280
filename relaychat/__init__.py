"""RelayChat: a line-oriented TCP chat relay."""

__version__ = "1.0.0"
