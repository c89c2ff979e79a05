"""Local-first end-to-end encrypted chat client core."""

__version__ = "0.1.0"
