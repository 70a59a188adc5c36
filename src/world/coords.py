"""World coordinate systems: blocks, chunks and regions.

Block coordinates are global integers. A chunk is a BLOCKS_PER_CHUNK wide
column of blocks, a region is a CHUNKS_PER_REGION wide square of chunks.
Floor division keeps negative coordinates in the right cell.
"""

from __future__ import annotations

from typing import NamedTuple

from shared.constants import BLOCKS_PER_CHUNK, CHUNKS_PER_REGION


class RegionCoord(NamedTuple):
    x: int
    z: int


class ChunkCoord(NamedTuple):
    x: int
    z: int

    @property
    def region(self) -> RegionCoord:
        """Region containing this chunk."""
        return RegionCoord(self.x // CHUNKS_PER_REGION, self.z // CHUNKS_PER_REGION)

    @property
    def in_region(self) -> tuple[int, int]:
        """Slot of the chunk inside its region, both in [0, CHUNKS_PER_REGION)."""
        return self.x % CHUNKS_PER_REGION, self.z % CHUNKS_PER_REGION

    def to_key(self) -> str:
        return f'{self.x},{self.z}'

    @classmethod
    def from_key(cls, key: str) -> ChunkCoord:
        x, z = key.split(',')
        return cls(int(x), int(z))


class BlockCoord(NamedTuple):
    x: int
    y: int
    z: int

    def to_chunk_coord(self) -> ChunkCoord:
        return ChunkCoord(self.x // BLOCKS_PER_CHUNK, self.z // BLOCKS_PER_CHUNK)

    def to_inchunk_coord(self) -> tuple[int, int, int]:
        """Position inside the chunk column, x and z bounded by [0, 15]."""
        return self.x % BLOCKS_PER_CHUNK, self.y, self.z % BLOCKS_PER_CHUNK
