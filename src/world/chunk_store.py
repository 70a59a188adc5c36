"""Hashing, retrying and rate-limited access to a ChunkDataSource.

ChunkStore holds no chunk cache of its own: every load goes to the source.
A bounded semaphore caps the number of loads in flight, so scheduling many
tiles at once makes workers wait instead of materialising unbounded data.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from shared.constants import (
    DEFAULT_LOAD_RETRIES,
    DEFAULT_MAX_INFLIGHT_LOADS,
    DEFAULT_RETRY_BACKOFF_S,
)
from shared.errors import ChunkLoadError, WorldUnavailableError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from world.coords import ChunkCoord
    from world.source import BlockColumn, ChunkDataSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadedChunk:
    """A decoded chunk together with the hash of its content."""

    coord: ChunkCoord
    column: BlockColumn
    hash: str


class ChunkStore:
    """Thread-safe adapter over the external world data source.

    Usage:
        store = ChunkStore(source, max_inflight_loads=32)
        chunk = store.load(ChunkCoord(0, 0))  # LoadedChunk or None
    """

    def __init__(
        self,
        source: ChunkDataSource,
        *,
        max_inflight_loads: int = DEFAULT_MAX_INFLIGHT_LOADS,
        load_retries: int = DEFAULT_LOAD_RETRIES,
        retry_backoff_s: float = DEFAULT_RETRY_BACKOFF_S,
    ) -> None:
        if max_inflight_loads < 1:
            msg = 'max_inflight_loads must be at least 1'
            raise ValueError(msg)
        self.source = source
        self.max_inflight_loads = max_inflight_loads
        self.load_retries = max(0, load_retries)
        self.retry_backoff_s = max(0.0, retry_backoff_s)
        self._slots = threading.BoundedSemaphore(max_inflight_loads)
        self._stats_lock = threading.Lock()
        self._stats_loads = 0
        self._stats_retries = 0
        self._stats_failures = 0

    def enumerate(self) -> Iterator[ChunkCoord]:
        """Iterate chunk coordinates of the world.

        Raises:
            WorldUnavailableError: the source cannot be enumerated.
        """
        try:
            coords = iter(self.source.enumerate())
        except OSError as e:
            raise WorldUnavailableError(f'world is unreachable: {e}') from e
        while True:
            try:
                coord = next(coords)
            except StopIteration:
                return
            except OSError as e:
                raise WorldUnavailableError(f'world enumeration failed: {e}') from e
            yield coord

    def load(self, coord: ChunkCoord) -> LoadedChunk | None:
        """Load one chunk, retrying transient failures.

        Returns:
            LoadedChunk, or None if the chunk does not exist.

        Raises:
            ChunkLoadError: every attempt failed with an I/O error.
        """
        column = self._call_with_retries(coord, self.source.load)
        if column is None:
            return None
        return LoadedChunk(coord=coord, column=column, hash=column.content_hash())

    def content_hash(self, coord: ChunkCoord) -> str | None:
        """Hash of the live chunk content, None if the chunk is absent.

        Uses the source's own ``content_hash`` when it offers one, otherwise
        loads and hashes the chunk.
        """
        fast = getattr(self.source, 'content_hash', None)
        if callable(fast):
            return self._call_with_retries(coord, fast)
        chunk = self.load(coord)
        return None if chunk is None else chunk.hash

    @property
    def stats(self) -> dict:
        """Get loader statistics."""
        with self._stats_lock:
            return {
                'loads': self._stats_loads,
                'retries': self._stats_retries,
                'failures': self._stats_failures,
            }

    def _call_with_retries(self, coord, func):
        attempts = self.load_retries + 1
        last_error: OSError | None = None
        for i in range(attempts):
            with self._slots:
                try:
                    result = func(coord)
                except OSError as e:
                    last_error = e
                else:
                    with self._stats_lock:
                        self._stats_loads += 1
                    return result
            if i < attempts - 1:
                backoff = self.retry_backoff_s * (2**i)
                with self._stats_lock:
                    self._stats_retries += 1
                logger.warning(
                    'Chunk (%d, %d) read failed (attempt %d/%d): %s; retry in %.1fs',
                    coord.x,
                    coord.z,
                    i + 1,
                    attempts,
                    last_error,
                    backoff,
                )
                if backoff > 0:
                    time.sleep(backoff)
        with self._stats_lock:
            self._stats_failures += 1
        logger.error('Chunk (%d, %d) unreadable after %d attempts', coord.x, coord.z, attempts)
        raise ChunkLoadError(coord, attempts, last_error)
