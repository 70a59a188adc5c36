# Рендер тайлов нулевого уровня
from render.appearance import AppearanceCache, pack_keys
from render.projection import (
    FAILED_CHUNK_HASH,
    RenderedTile,
    TileRenderer,
    load_neighborhood,
)

__all__ = [
    'FAILED_CHUNK_HASH',
    'AppearanceCache',
    'RenderedTile',
    'TileRenderer',
    'load_neighborhood',
    'pack_keys',
]
