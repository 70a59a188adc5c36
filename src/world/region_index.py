"""Change detection between the live world and the tile cache.

The previous state is not stored separately: it is read back from the chunk
hashes recorded in the zoom-0 tile dependency metadata. This scan is the only
place where chunk dirtiness is decided.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from shared.errors import ChunkLoadError

if TYPE_CHECKING:
    from tiles.cache import TileCache
    from tiles.geometry import TileKey
    from world.chunk_store import ChunkStore
    from world.coords import ChunkCoord, RegionCoord

logger = logging.getLogger(__name__)


@dataclass
class ChunkDiff:
    """Result of one world scan."""

    added: set[ChunkCoord] = field(default_factory=set)
    changed: set[ChunkCoord] = field(default_factory=set)
    removed: set[ChunkCoord] = field(default_factory=set)
    unchanged: set[ChunkCoord] = field(default_factory=set)
    # Chunks whose hash could not be read even after retries
    failed: set[ChunkCoord] = field(default_factory=set)
    # Zoom-0 tiles whose stored dependency record is unreadable
    corrupt_tiles: set[TileKey] = field(default_factory=set)
    live_hashes: dict[ChunkCoord, str] = field(default_factory=dict)

    @property
    def dirty(self) -> set[ChunkCoord]:
        return self.added | self.changed | self.removed | self.failed

    @property
    def is_empty(self) -> bool:
        return not self.dirty and not self.corrupt_tiles

    def summary(self) -> dict[str, int]:
        return {
            'added': len(self.added),
            'changed': len(self.changed),
            'removed': len(self.removed),
            'unchanged': len(self.unchanged),
            'failed': len(self.failed),
            'corrupt_tiles': len(self.corrupt_tiles),
        }


class RegionIndex:
    """Enumerates the world and diffs it against the cache's recorded hashes."""

    def __init__(self, store: ChunkStore, cache: TileCache) -> None:
        self.store = store
        self.cache = cache

    def live_coords(self) -> list[ChunkCoord]:
        """All chunk coordinates currently in the world (deduplicated, sorted).

        Raises:
            WorldUnavailableError: the world cannot be enumerated.
        """
        return sorted(set(self.store.enumerate()))

    def regions(self, coords: list[ChunkCoord] | None = None) -> dict[RegionCoord, int]:
        """Number of present chunks per region."""
        out: dict[RegionCoord, int] = {}
        for coord in coords if coords is not None else self.live_coords():
            out[coord.region] = out.get(coord.region, 0) + 1
        return out

    def scan(self) -> ChunkDiff:
        """Classify every live and previously recorded chunk."""
        t0 = time.monotonic()
        coords = self.live_coords()
        recorded, corrupt = self.cache.scan_dependencies(0)
        diff = ChunkDiff(corrupt_tiles=set(corrupt))

        for coord in coords:
            try:
                live = self.store.content_hash(coord)
            except ChunkLoadError as e:
                logger.warning('Hash of chunk (%d, %d) unavailable: %s', coord.x, coord.z, e)
                diff.failed.add(coord)
                continue
            if live is None:
                # enumerated but gone by the time we read it
                if coord in recorded:
                    diff.removed.add(coord)
                continue
            diff.live_hashes[coord] = live
            prior = recorded.get(coord)
            if prior is None:
                diff.added.add(coord)
            elif prior == {live}:
                diff.unchanged.add(coord)
            else:
                diff.changed.add(coord)

        live_set = set(coords)
        diff.removed.update(c for c in recorded if c not in live_set)

        logger.info(
            'World scan: %d chunk(s) in %d region(s) in %.2fs; %s',
            len(coords),
            len(self.regions(coords)),
            time.monotonic() - t0,
            diff.summary(),
        )
        return diff
