"""Block appearance capability and its per-run lookup cache.

The renderer never reads the appearance table directly: it asks an
AppearanceCache, built for one run and closed at its end, which resolves
packed (id, metadata) keys to colour, opacity and category codes.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

import numpy as np

from shared.constants import BlockCategory

if TYPE_CHECKING:
    from domain.models import RenderConfig

logger = logging.getLogger(__name__)

AppearanceLookup = Callable[[int, int], tuple[tuple[int, int, int, int], float, BlockCategory]]

# Числовые коды категорий для векторных масок
CATEGORY_CODES: dict[BlockCategory, int] = {
    BlockCategory.AIR: 0,
    BlockCategory.SOLID: 1,
    BlockCategory.TRANSLUCENT: 2,
    BlockCategory.FLUID: 3,
    BlockCategory.FOLIAGE: 4,
}

# Категории, чья верхняя грань считается поверхностью для рельефа
SURFACE_CODES = (
    CATEGORY_CODES[BlockCategory.SOLID],
    CATEGORY_CODES[BlockCategory.FLUID],
    CATEGORY_CODES[BlockCategory.FOLIAGE],
)

# Метаданные блока занимают целый байт (uint8)
META_BITS = 8
META_MASK = (1 << META_BITS) - 1


def pack_keys(blocks: np.ndarray, data: np.ndarray) -> np.ndarray:
    """Combine block ids and metadata bytes into one uint32 key."""
    return (blocks.astype(np.uint32) << META_BITS) | (data.astype(np.uint32) & META_MASK)


class AppearanceCache:
    """Thread-safe memo of resolved appearances.

    Usage:
        cache = AppearanceCache(config.lookup)
        rgb, alpha, cat = cache.resolve(keys)
        cache.close()
    """

    def __init__(self, lookup: AppearanceLookup) -> None:
        self._lookup = lookup
        self._lock = threading.Lock()
        self._entries: dict[int, tuple[float, float, float, float, int]] = {}
        self._closed = False

    @classmethod
    def from_config(cls, config: RenderConfig) -> AppearanceCache:
        return cls(config.lookup)

    def __len__(self) -> int:
        return len(self._entries)

    def _entry(self, key: int) -> tuple[float, float, float, float, int]:
        entry = self._entries.get(key)
        if entry is None:
            (r, g, b, a), opacity, category = self._lookup(key >> META_BITS, key & META_MASK)
            alpha = 0.0 if category == BlockCategory.AIR else float(opacity) * (a / 255.0)
            entry = (r / 255.0, g / 255.0, b / 255.0, alpha, CATEGORY_CODES[BlockCategory(category)])
            self._entries[key] = entry
        return entry

    def resolve(self, keys: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Map an array of packed keys to (rgb float32 [...,3], alpha float32, category uint8)."""
        if self._closed:
            msg = 'AppearanceCache is closed'
            raise RuntimeError(msg)
        uniq, inverse = np.unique(keys, return_inverse=True)
        with self._lock:
            table = np.array([self._entry(int(k)) for k in uniq], dtype=np.float32).reshape(-1, 5)
        inverse = inverse.reshape(keys.shape)
        rgb = table[:, :3][inverse]
        alpha = table[:, 3][inverse]
        category = table[:, 4].astype(np.uint8)[inverse]
        return rgb, alpha, category

    def close(self) -> None:
        with self._lock:
            logger.debug('AppearanceCache closed with %d entries', len(self._entries))
            self._entries.clear()
            self._closed = True

    def __enter__(self) -> AppearanceCache:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
