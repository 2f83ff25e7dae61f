"""Structured event logging for the post scheduler."""
from postscheduler.logging.models import LogLevel, LogComponent, LogEntry
from postscheduler.logging.event_logger import EventLogger

__all__ = [
    "LogLevel", "LogComponent", "LogEntry",
    "EventLogger",
]
