"""Offline-durable transaction sync for multi-branch point of sale."""

__version__ = "1.0.0"
