"""Resumable supervisor for the artist download backlog."""

__version__ = "0.1.0"
