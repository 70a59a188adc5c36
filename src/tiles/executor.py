from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from tiles.geometry import TileKey

logger = logging.getLogger(__name__)

T = TypeVar('T')


class TileOwnership:
    """Tracks which tile keys have a job in flight.

    A key may be owned by at most one job at a time; a second claim is a
    scheduling bug and raises.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owned: set[TileKey] = set()

    def claim(self, key: TileKey) -> None:
        with self._lock:
            if key in self._owned:
                msg = f'tile {key} already has a job in flight'
                raise RuntimeError(msg)
            self._owned.add(key)

    def release(self, key: TileKey) -> None:
        with self._lock:
            self._owned.discard(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._owned)


async def run_tiles(
    tiles: Iterable[TileKey],
    *,
    process_tile: Callable[[TileKey], Awaitable[T]],
    concurrency: int,
    progress_step: Callable[[int], Awaitable[None]] | None = None,
    ownership: TileOwnership | None = None,
) -> dict[TileKey, T | BaseException]:
    """
    Run one job per tile with at most ``concurrency`` jobs in flight.

    Returns when every job has finished: callers use this as the barrier
    between zoom levels. A failing job does not cancel its siblings; its
    exception is returned in place of a result.
    """
    sem = asyncio.Semaphore(max(1, concurrency))
    owners = ownership or TileOwnership()
    keys = list(tiles)

    async def worker(key: TileKey) -> T:
        async with sem:
            owners.claim(key)
            try:
                return await process_tile(key)
            finally:
                owners.release(key)
                if progress_step:
                    await progress_step(1)

    results = await asyncio.gather(
        *(worker(key) for key in keys),
        return_exceptions=True,
    )
    return dict(zip(keys, results))


async def run_in_worker(func: Callable[..., T], *args) -> T:
    """Run blocking work (chunk reads, numpy, SQLite) off the event loop."""
    return await asyncio.to_thread(func, *args)
