"""Live progress: channel registry, per-execution reporter and SSE stream."""
from .registry import ConnectionRegistry, Subscription
from .reporter import ProgressReporter
from .sse import HEARTBEAT, StreamTimings, format_sse, progress_event_stream

__all__ = [
    "ConnectionRegistry",
    "Subscription",
    "ProgressReporter",
    "HEARTBEAT",
    "StreamTimings",
    "format_sse",
    "progress_event_stream",
]
