"""Scheduling and execution engine for social media posts."""

__version__ = "1.0.0"
