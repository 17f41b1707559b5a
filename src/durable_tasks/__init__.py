"""Durable background task execution core."""

__version__ = "0.1.0"
