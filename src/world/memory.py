"""In-memory world, used for previews and tests."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from world.coords import ChunkCoord

if TYPE_CHECKING:
    from collections.abc import Iterable

    from world.source import BlockColumn


class InMemoryWorld:
    """ChunkDataSource over a dict of block columns.

    ``fail_loads`` maps a coordinate to the number of upcoming loads that
    should raise OSError, which lets callers exercise the retry path.
    Setting ``unreachable`` makes enumeration fail as a dead world would.
    """

    def __init__(self, chunks: dict[tuple[int, int], BlockColumn] | None = None) -> None:
        self._chunks: dict[ChunkCoord, BlockColumn] = {ChunkCoord(*c): col for c, col in (chunks or {}).items()}
        self._lock = threading.Lock()
        self.fail_loads: dict[ChunkCoord, int] = {}
        self.unreachable = False
        self.load_calls = 0

    def put(self, coord: tuple[int, int], column: BlockColumn) -> None:
        with self._lock:
            self._chunks[ChunkCoord(*coord)] = column

    def remove(self, coord: tuple[int, int]) -> None:
        with self._lock:
            self._chunks.pop(ChunkCoord(*coord), None)

    def enumerate(self) -> Iterable[ChunkCoord]:
        if self.unreachable:
            msg = 'world storage is offline'
            raise OSError(msg)
        with self._lock:
            return sorted(self._chunks)

    def load(self, coord: ChunkCoord) -> BlockColumn | None:
        with self._lock:
            self.load_calls += 1
            remaining = self.fail_loads.get(coord, 0)
            if remaining > 0:
                self.fail_loads[coord] = remaining - 1
                msg = f'simulated read error at {coord}'
                raise OSError(msg)
            return self._chunks.get(ChunkCoord(*coord))

    def content_hash(self, coord: ChunkCoord) -> str | None:
        column = self.load(coord)
        return None if column is None else column.content_hash()
