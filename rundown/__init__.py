"""Rundown accountability backend."""

__version__ = "1.0.0"
