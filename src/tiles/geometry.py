"""Pure geometry between chunks and tiles.

A zoom-0 tile (0, tx, ty) covers chunks x in [tx*n, tx*n + n) and
z in [ty*n, ty*n + n), where n is ``chunks_per_tile``. Its neighbourhood adds
``margin`` chunks on every side. A tile at zoom z+1 covers fan_in x fan_in
tiles of zoom z. Nothing here reads the cache: footprints are computed from
keys alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, NamedTuple

from shared.constants import (
    BLOCKS_PER_CHUNK,
    DEFAULT_CHUNKS_PER_TILE,
    DEFAULT_FAN_IN,
    DEFAULT_NEIGHBORHOOD_MARGIN,
)
from world.coords import ChunkCoord

if TYPE_CHECKING:
    from collections.abc import Iterable

    from domain.models import RenderConfig


class TileKey(NamedTuple):
    zoom: int
    x: int
    y: int

    def __str__(self) -> str:
        return f'z{self.zoom}/{self.x}/{self.y}'


@dataclass(frozen=True)
class TileGrid:
    """Tile layout parameters shared by the scheduler and the renderer."""

    chunks_per_tile: int = DEFAULT_CHUNKS_PER_TILE
    margin: int = DEFAULT_NEIGHBORHOOD_MARGIN
    fan_in: int = DEFAULT_FAN_IN

    def __post_init__(self) -> None:
        if self.chunks_per_tile < 1:
            raise ValueError('chunks_per_tile must be >= 1')
        if self.margin < 1:
            # the neighbourhood must be strictly larger than the footprint
            raise ValueError('margin must be >= 1')
        if self.fan_in < 2:
            raise ValueError('fan_in must be >= 2')

    @classmethod
    def from_config(cls, config: RenderConfig) -> TileGrid:
        return cls(
            chunks_per_tile=config.chunks_per_tile,
            margin=config.neighborhood_margin,
            fan_in=config.fan_in,
        )

    @property
    def blocks_per_tile(self) -> int:
        return self.chunks_per_tile * BLOCKS_PER_CHUNK

    def tile_of_chunk(self, coord: ChunkCoord) -> TileKey:
        """The zoom-0 tile whose footprint contains the chunk."""
        n = self.chunks_per_tile
        return TileKey(0, coord.x // n, coord.z // n)

    def footprint(self, key: TileKey) -> list[ChunkCoord]:
        """Chunks under a zoom-0 tile, ordered by z then x."""
        self._require_base(key)
        n = self.chunks_per_tile
        return [
            ChunkCoord(key.x * n + dx, key.y * n + dz)
            for dz in range(n)
            for dx in range(n)
        ]

    def neighborhood(self, key: TileKey) -> list[ChunkCoord]:
        """Footprint plus ``margin`` chunks around it, ordered by z then x."""
        self._require_base(key)
        n, m = self.chunks_per_tile, self.margin
        x0, z0 = key.x * n - m, key.y * n - m
        side = n + 2 * m
        return [ChunkCoord(x0 + dx, z0 + dz) for dz in range(side) for dx in range(side)]

    def neighborhood_origin(self, key: TileKey) -> ChunkCoord:
        """Top-left chunk of the neighbourhood."""
        self._require_base(key)
        return ChunkCoord(key.x * self.chunks_per_tile - self.margin, key.y * self.chunks_per_tile - self.margin)

    def tiles_touching_chunk(self, coord: ChunkCoord) -> list[TileKey]:
        """Every zoom-0 tile whose neighbourhood includes the chunk."""
        n, m = self.chunks_per_tile, self.margin
        tx_lo, tx_hi = (coord.x - m) // n, (coord.x + m) // n
        ty_lo, ty_hi = (coord.z - m) // n, (coord.z + m) // n
        return [
            TileKey(0, tx, ty)
            for ty in range(ty_lo, ty_hi + 1)
            for tx in range(tx_lo, tx_hi + 1)
        ]

    def dirty_tiles_for_chunks(self, coords: Iterable[ChunkCoord]) -> set[TileKey]:
        out: set[TileKey] = set()
        for coord in coords:
            out.update(self.tiles_touching_chunk(coord))
        return out

    def parent(self, key: TileKey) -> TileKey:
        f = self.fan_in
        return TileKey(key.zoom + 1, key.x // f, key.y // f)

    def children(self, key: TileKey) -> list[TileKey]:
        """Child tiles in row-major order (top row first)."""
        if key.zoom < 1:
            msg = f'zoom-0 tile {key} has no children'
            raise ValueError(msg)
        f = self.fan_in
        return [
            TileKey(key.zoom - 1, key.x * f + dx, key.y * f + dy)
            for dy in range(f)
            for dx in range(f)
        ]

    def ancestors(self, key: TileKey, top_zoom: int) -> list[TileKey]:
        out = []
        current = key
        while current.zoom < top_zoom:
            current = self.parent(current)
            out.append(current)
        return out

    @staticmethod
    def _require_base(key: TileKey) -> None:
        if key.zoom != 0:
            msg = f'footprints are defined for zoom-0 tiles only, got {key}'
            raise ValueError(msg)
