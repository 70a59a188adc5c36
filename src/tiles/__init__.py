"""Tile addressing and storage.

This module provides:
- TileKey / TileGrid: tile addressing and chunk-to-tile mapping
- TileCache: SQLite-based per-zoom storage with crash-atomic commits
- run_tiles / TileOwnership: bounded per-level job execution

The scheduler (tiles.scheduler) and the static export (tiles.export) depend
on the renderer and are imported from their modules directly.
"""

from tiles.cache import CacheStats, TileCache, TileCacheEntry
from tiles.executor import TileOwnership, run_tiles
from tiles.geometry import TileGrid, TileKey

__all__ = [
    'CacheStats',
    'TileCache',
    'TileCacheEntry',
    'TileGrid',
    'TileKey',
    'TileOwnership',
    'run_tiles',
]
