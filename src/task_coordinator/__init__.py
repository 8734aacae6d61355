"""Persistent dependency-aware task coordination core."""

__version__ = "0.1.0"
