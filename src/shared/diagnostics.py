"""
Process and cache diagnostics for long render runs.

Nothing here may fail a run: every check reports errors in its result dict
instead of raising.
"""

import logging
import threading
import time
import types
from pathlib import Path
from typing import Any

import psutil

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


def process_snapshot() -> dict[str, Any]:
    """RSS of this process, free system memory and thread counts."""
    try:
        proc = psutil.Process()
        rss = proc.memory_info().rss
        available = psutil.virtual_memory().available
        snapshot = {
            'rss_mb': round(rss / _MB, 1),
            'available_mb': round(available / _MB, 1),
            'py_threads': threading.active_count(),
            'os_threads': proc.num_threads(),
        }
    except (psutil.Error, OSError) as e:
        return {'error': f'process snapshot failed: {e}'}
    return snapshot


def get_cache_info(cache_dir: Path) -> dict[str, Any]:
    """Sizes of the per-zoom tile databases (WAL files included)."""
    try:
        files = {
            db.name: round(db.stat().st_size / _MB, 2)
            for db in sorted(cache_dir.glob('zoom_*.db*'))
        }
    except OSError as e:
        return {'error': f'cache info failed: {e}'}
    return {
        'cache_dir': str(cache_dir),
        'files': files,
        'total_mb': round(sum(files.values()), 2),
    }


def log_memory_usage(context: str = '') -> dict[str, Any]:
    """Log a one-line process snapshot and return it."""
    snap = process_snapshot()
    suffix = f' ({context})' if context else ''
    if 'error' in snap:
        logger.warning('Resources%s: %s', suffix, snap['error'])
    else:
        logger.info(
            'Resources%s: RSS=%.1fMB, available=%.1fMB, threads=%d/%d',
            suffix,
            snap['rss_mb'],
            snap['available_mb'],
            snap['py_threads'],
            snap['os_threads'],
        )
    return snap


class ResourceMonitor:
    """Logs duration and RSS growth of a render run.

    with ResourceMonitor('render_full'):
        ...
    """

    def __init__(self, operation_name: str) -> None:
        self.operation_name = operation_name
        self.started: float | None = None
        self.rss_before: float | None = None
        self.elapsed_s: float | None = None

    def __enter__(self) -> 'ResourceMonitor':
        self.started = time.monotonic()
        self.rss_before = log_memory_usage(f'{self.operation_name} start').get('rss_mb')
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        _ = exc_tb
        if self.started is None:
            msg = 'ResourceMonitor exited without being entered'
            raise RuntimeError(msg)
        self.elapsed_s = time.monotonic() - self.started
        rss_after = log_memory_usage(f'{self.operation_name} end').get('rss_mb')
        if self.rss_before is not None and rss_after is not None:
            logger.info(
                '%s took %.2fs, RSS %+.1fMB',
                self.operation_name,
                self.elapsed_s,
                rss_after - self.rss_before,
            )
        else:
            logger.info('%s took %.2fs', self.operation_name, self.elapsed_s)
        if exc_type is not None:
            logger.error('%s aborted by %s: %s', self.operation_name, exc_type.__name__, exc_val)
