"""Shared utilities and helpers."""
from shared.diagnostics import ResourceMonitor, log_memory_usage
from shared.progress import (
    CancelToken,
    ConsoleProgress,
    EventCancelToken,
    NullSink,
    ProgressSink,
)

__all__ = [
    'CancelToken',
    'ConsoleProgress',
    'EventCancelToken',
    'NullSink',
    'ProgressSink',
    'ResourceMonitor',
    'log_memory_usage',
]
