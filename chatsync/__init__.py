"""Conversation synchronization over a live document store."""

__version__ = "0.1.0"
