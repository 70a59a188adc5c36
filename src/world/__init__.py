"""World access layer: coordinates, chunk sources, change detection."""
from world.chunk_store import ChunkStore, LoadedChunk
from world.coords import BlockCoord, ChunkCoord, RegionCoord
from world.memory import InMemoryWorld
from world.npz_source import DirectoryWorld
from world.region_index import ChunkDiff, RegionIndex
from world.source import BlockColumn, ChunkDataSource

__all__ = [
    'BlockColumn',
    'BlockCoord',
    'ChunkCoord',
    'ChunkDataSource',
    'ChunkDiff',
    'ChunkStore',
    'DirectoryWorld',
    'InMemoryWorld',
    'LoadedChunk',
    'RegionCoord',
    'RegionIndex',
]
