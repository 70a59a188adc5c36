"""Error taxonomy of the render pipeline.

Per-tile errors (ChunkLoadError, CacheCommitError, CacheCorruption) are
isolated by the scheduler and end up in the run summary. WorldUnavailableError
is fatal and stops a run before any tile is scheduled.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tiles.geometry import TileKey
    from world.coords import ChunkCoord


class MapperError(Exception):
    """Base class for all pipeline errors."""


class WorldUnavailableError(MapperError):
    """The chunk data source cannot be enumerated at all."""


class ChunkLoadError(MapperError):
    """Transient I/O failure reading a chunk, after all retries."""

    def __init__(self, coord: ChunkCoord, attempts: int, cause: BaseException | None = None) -> None:
        self.coord = coord
        self.attempts = attempts
        self.cause = cause
        super().__init__(f'chunk ({coord.x}, {coord.z}) failed to load after {attempts} attempt(s): {cause}')


class CacheCommitError(MapperError):
    """Writing a tile (image or metadata) failed after all retries."""

    def __init__(self, key: TileKey, attempts: int, cause: BaseException | None = None) -> None:
        self.key = key
        self.attempts = attempts
        self.cause = cause
        super().__init__(f'commit of tile {key} failed after {attempts} attempt(s): {cause}')


class CacheCorruption(MapperError):
    """Stored metadata of a tile is unreadable or inconsistent."""

    def __init__(self, key: TileKey, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f'tile {key} is corrupt: {reason}')


class RunCancelled(MapperError):
    """The run was cancelled between zoom levels."""
