"""Пирамида тайлов: сборка тайла уровня N+1 из дочерних тайлов уровня N.

Родительский тайл того же размера в пикселях получается уменьшением
fan_in x fan_in дочерних тайлов. Отсутствующие дочерние тайлы подставляются
как фон, а не считаются ошибкой.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np
from PIL import Image

from imaging.tile_io import blank_tile, decode_tile, encode_tile, tile_digest
from shared.constants import DownsamplePolicy

if TYPE_CHECKING:
    from domain.models import RenderConfig
    from tiles.cache import TileCache
    from tiles.geometry import TileGrid, TileKey

logger = logging.getLogger(__name__)


def _downsample(arr: np.ndarray, factor: int, policy: DownsamplePolicy) -> np.ndarray:
    """
    Уменьшает RGBA-массив в factor раз по каждой оси.

    Args:
        arr: uint8 массив (h, w, 4)
        factor: Коэффициент уменьшения
        policy: average: усреднение блока (в премультиплицированном виде),
            nearest: левый верхний пиксель блока

    Returns:
        uint8 массив (h // factor, w // factor, 4)

    """
    if policy == DownsamplePolicy.NEAREST:
        return np.ascontiguousarray(arr[::factor, ::factor])

    h, w = arr.shape[:2]
    f = arr.astype(np.float32) / 255.0
    # Усредняем цвет с учётом альфы, иначе прозрачный фон затемняет края
    premul = np.empty_like(f)
    premul[:, :, :3] = f[:, :, :3] * f[:, :, 3:4]
    premul[:, :, 3] = f[:, :, 3]
    small = cv2.resize(premul, (w // factor, h // factor), interpolation=cv2.INTER_AREA)
    out = np.zeros_like(small)
    alpha = small[:, :, 3:4]
    np.divide(small[:, :, :3], alpha, out=out[:, :, :3], where=alpha > 0)
    out[:, :, 3] = small[:, :, 3]
    return np.clip(np.rint(out * 255.0), 0, 255).astype(np.uint8)


def combine(
    parent_key: TileKey,
    child_images: dict[TileKey, Image.Image | None],
    *,
    grid: TileGrid,
    tile_size: int,
    policy: DownsamplePolicy,
    background: tuple[int, int, int, int],
) -> Image.Image:
    """
    Собирает родительский тайл из дочерних.

    Args:
        parent_key: Ключ родительского тайла
        child_images: Дочерние изображения; None или отсутствие ключа: фон
        grid: Геометрия пирамиды (fan_in)
        tile_size: Размер тайла в пикселях
        policy: Фильтр уменьшения
        background: Цвет фона RGBA

    Returns:
        PIL.Image размера tile_size x tile_size

    """
    f = grid.fan_in
    mosaic = np.empty((tile_size * f, tile_size * f, 4), dtype=np.uint8)
    mosaic[:, :] = background
    for child in grid.children(parent_key):
        img = child_images.get(child)
        if img is None:
            continue
        if img.size != (tile_size, tile_size):
            msg = f'child tile {child} has size {img.size}, expected {tile_size}'
            raise ValueError(msg)
        if img.mode != 'RGBA':
            img = img.convert('RGBA')
        dx = child.x - parent_key.x * f
        dy = child.y - parent_key.y * f
        mosaic[dy * tile_size:(dy + 1) * tile_size, dx * tile_size:(dx + 1) * tile_size] = np.asarray(img)
    small = _downsample(mosaic, f, policy)
    return Image.fromarray(small)


@dataclass
class CombinedTile:
    key: TileKey
    image: Image.Image
    data: bytes
    digest: str
    dependencies: dict[TileKey, str]


class TilePyramidBuilder:
    """Строит тайлы уровней > 0 из уже зафиксированных в кэше дочерних тайлов."""

    def __init__(self, config: RenderConfig, grid: TileGrid) -> None:
        self.config = config
        self.grid = grid

    def combine(self, parent_key: TileKey, child_images: dict[TileKey, Image.Image | None]) -> Image.Image:
        return combine(
            parent_key,
            child_images,
            grid=self.grid,
            tile_size=self.config.tile_size_px,
            policy=self.config.downsample,
            background=self.config.background_color,
        )

    def build(self, parent_key: TileKey, cache: TileCache) -> CombinedTile | None:
        """
        Читает дочерние тайлы из кэша и собирает родителя.

        Returns:
            CombinedTile, или None если ни одного дочернего тайла нет

        """
        images: dict[TileKey, Image.Image | None] = {}
        dependencies: dict[TileKey, str] = {}
        for child in self.grid.children(parent_key):
            entry = cache.lookup(child)
            if entry is None:
                continue
            if entry.corrupt:
                logger.warning('Child tile %s is corrupt, used as background for %s', child, parent_key)
                dependencies[child] = entry.digest
                continue
            images[child] = decode_tile(entry.data)
            dependencies[child] = entry.digest
        if not dependencies:
            return None
        image = self.combine(parent_key, images)
        data = encode_tile(image)
        return CombinedTile(
            key=parent_key,
            image=image,
            data=data,
            digest=tile_digest(data),
            dependencies=dependencies,
        )

    def background_tile(self) -> Image.Image:
        return blank_tile(self.config.tile_size_px, self.config.background_color)
