"""Observability module for playback progress and structured logging."""

from .logging import bind_run_context, clear_run_context, get_run_logger, setup_structured_logging
from .models import PlaybackOutcome, PlaybackSession, ProgressEvent, ProgressEventType
from .progress import ProgressChannel

__all__ = [
    "PlaybackOutcome",
    "PlaybackSession",
    "ProgressChannel",
    "ProgressEvent",
    "ProgressEventType",
    "bind_run_context",
    "clear_run_context",
    "get_run_logger",
    "setup_structured_logging",
]
