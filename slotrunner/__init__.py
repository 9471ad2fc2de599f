"""Slotrunner: sliding-window scheduler for AI coding engines."""

__version__ = "0.1.0"
