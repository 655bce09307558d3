"""Chatforge chat, lead and notification services."""

__version__ = "1.0.0"
