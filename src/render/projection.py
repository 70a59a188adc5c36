"""Top-down projection of a chunk neighbourhood into one zoom-0 tile.

Algorithm:
1. Pack every loaded chunk of the neighbourhood into one [y, z, x] key volume.
2. Walk the volume from the top layer down, compositing colour front to back
   (colour * opacity * remaining transmittance). A column stops contributing
   once its transmittance drops below TRANSMITTANCE_EPSILON, so the first
   opaque block from the top wins.
3. Shade by the difference of surface heights to the north and west
   neighbours (margin chunks make tile borders seamless).
4. Fill absent columns with the background colour and columns of chunks that
   failed to load with the error colour.
5. Crop the tile footprint and scale each block to pixels_per_block pixels.

The result depends only on the neighbourhood content and the configuration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

import numpy as np
from PIL import Image

from imaging.tile_io import encode_tile, tile_digest
from render.appearance import META_BITS, SURFACE_CODES, AppearanceCache, pack_keys
from shared.constants import (
    AIR_BLOCK_ID,
    BLOCKS_PER_CHUNK,
    SHADING_MAX_DELTA,
    TRANSMITTANCE_EPSILON,
)
from shared.errors import ChunkLoadError
from tiles.geometry import TileGrid, TileKey
from world.chunk_store import LoadedChunk

if TYPE_CHECKING:
    from domain.models import RenderConfig
    from world.chunk_store import ChunkStore
    from world.coords import ChunkCoord

logger = logging.getLogger(__name__)

# Хэш, которым помечается чанк, не прочитавшийся из-за ошибки ввода-вывода
FAILED_CHUNK_HASH = ''

NeighborhoodItem = Union[LoadedChunk, ChunkLoadError, None]


@dataclass
class RenderedTile:
    """Output of one zoom-0 render job."""

    key: TileKey
    image: Image.Image
    data: bytes
    digest: str
    dependencies: dict[ChunkCoord, str]
    error_chunks: list[ChunkCoord] = field(default_factory=list)
    has_content: bool = True


def load_neighborhood(store: ChunkStore, grid: TileGrid, key: TileKey) -> dict[ChunkCoord, NeighborhoodItem]:
    """Load every chunk a tile needs; failed chunks are kept as their error."""
    out: dict[ChunkCoord, NeighborhoodItem] = {}
    for coord in grid.neighborhood(key):
        try:
            out[coord] = store.load(coord)
        except ChunkLoadError as e:
            out[coord] = e
    return out


class TileRenderer:
    """Renders zoom-0 tiles for one configuration.

    The AppearanceCache is either passed in (shared, owned by the caller) or
    created here and released by ``close``.
    """

    def __init__(self, config: RenderConfig, appearance: AppearanceCache | None = None) -> None:
        self.config = config
        self.grid = TileGrid.from_config(config)
        self._owns_appearance = appearance is None
        self.appearance = appearance or AppearanceCache.from_config(config)

    def close(self) -> None:
        if self._owns_appearance:
            self.appearance.close()

    def __enter__(self) -> TileRenderer:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def render(self, key: TileKey, neighborhood: dict[ChunkCoord, NeighborhoodItem]) -> RenderedTile:
        grid = self.grid
        b = BLOCKS_PER_CHUNK
        origin = grid.neighborhood_origin(key)
        coords = grid.neighborhood(key)
        footprint = set(grid.footprint(key))
        width = (grid.chunks_per_tile + 2 * grid.margin) * b

        loaded = [v for v in neighborhood.values() if isinstance(v, LoadedChunk)]
        height = max((v.column.height for v in loaded), default=0)
        keys = np.zeros((height, width, width), dtype=np.uint32)
        absent = np.ones((width, width), dtype=bool)
        failed = np.zeros((width, width), dtype=bool)

        dependencies: dict[ChunkCoord, str] = {}
        error_chunks: list[ChunkCoord] = []
        has_content = False
        for coord in coords:
            item = neighborhood.get(coord)
            zs = (coord.z - origin.z) * b
            xs = (coord.x - origin.x) * b
            if isinstance(item, LoadedChunk):
                col = item.column
                keys[: col.height, zs:zs + b, xs:xs + b] = pack_keys(col.blocks, col.data)
                absent[zs:zs + b, xs:xs + b] = False
                dependencies[coord] = item.hash
                has_content = has_content or coord in footprint
            elif isinstance(item, ChunkLoadError):
                failed[zs:zs + b, xs:xs + b] = True
                absent[zs:zs + b, xs:xs + b] = False
                dependencies[coord] = FAILED_CHUNK_HASH
                if coord in footprint:
                    error_chunks.append(coord)
                    has_content = True

        color, trans, surface = self._project(keys)
        rgba = self._finish(color, trans, surface, absent, failed)

        off = grid.margin * b
        size = grid.chunks_per_tile * b
        tile = rgba[off:off + size, off:off + size]
        ppb = self.config.pixels_per_block
        if ppb > 1:
            tile = np.repeat(np.repeat(tile, ppb, axis=0), ppb, axis=1)
        image = Image.fromarray(np.ascontiguousarray(tile))
        data = encode_tile(image)
        if error_chunks:
            logger.warning('Tile %s rendered with %d unreadable chunk(s)', key, len(error_chunks))
        return RenderedTile(
            key=key,
            image=image,
            data=data,
            digest=tile_digest(data),
            dependencies=dependencies,
            error_chunks=error_chunks,
            has_content=has_content,
        )

    def _project(self, keys: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Front-to-back compositing over the key volume, top layer first."""
        _, h, w = keys.shape
        color = np.zeros((h, w, 3), dtype=np.float32)
        trans = np.ones((h, w), dtype=np.float32)
        surface = np.full((h, w), -1, dtype=np.int32)
        for y in range(keys.shape[0] - 1, -1, -1):
            layer = keys[y]
            active = ((layer >> META_BITS) != AIR_BLOCK_ID) & (trans > TRANSMITTANCE_EPSILON)
            if not active.any():
                if not (trans > TRANSMITTANCE_EPSILON).any():
                    break
                continue
            rgb, alpha, category = self.appearance.resolve(layer[active])
            t = trans[active]
            color[active] += (t * alpha)[:, None] * rgb
            trans[active] = t * (1.0 - alpha)
            s = surface[active]
            hit = np.isin(category, SURFACE_CODES) & (s < 0)
            s[hit] = y
            surface[active] = s
        return color, trans, surface

    def _finish(
        self,
        color: np.ndarray,
        trans: np.ndarray,
        surface: np.ndarray,
        absent: np.ndarray,
        failed: np.ndarray,
    ) -> np.ndarray:
        cfg = self.config
        if cfg.shading and cfg.shading_strength > 0:
            color = color * self._shade(surface)[:, :, None]

        bg = np.asarray(cfg.background_color, dtype=np.float32) / 255.0
        premul = color + (trans * bg[3])[:, :, None] * bg[:3]
        alpha = (1.0 - trans) + trans * bg[3]
        rgb = np.zeros_like(premul)
        np.divide(premul, alpha[:, :, None], out=rgb, where=alpha[:, :, None] > 0)

        out = np.empty(trans.shape + (4,), dtype=np.uint8)
        out[:, :, :3] = np.clip(np.rint(rgb * 255.0), 0, 255).astype(np.uint8)
        out[:, :, 3] = np.clip(np.rint(alpha * 255.0), 0, 255).astype(np.uint8)
        out[absent] = cfg.background_color
        out[failed] = cfg.error_color
        return out

    def _shade(self, surface: np.ndarray) -> np.ndarray:
        """Relief factor from the north and west surface height steps."""
        has = surface >= 0
        h = surface.astype(np.float32)
        delta = np.zeros_like(h)

        north = np.zeros_like(h)
        north_ok = np.zeros_like(has)
        north[1:, :] = h[:-1, :]
        north_ok[1:, :] = has[:-1, :]
        ok = has & north_ok
        delta[ok] += h[ok] - north[ok]

        west = np.zeros_like(h)
        west_ok = np.zeros_like(has)
        west[:, 1:] = h[:, :-1]
        west_ok[:, 1:] = has[:, :-1]
        ok = has & west_ok
        delta[ok] += h[ok] - west[ok]

        factor = 1.0 + np.clip(delta * self.config.shading_strength, -SHADING_MAX_DELTA, SHADING_MAX_DELTA)
        return factor.astype(np.float32)
