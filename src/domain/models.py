from __future__ import annotations

import hashlib
import json

from pydantic import BaseModel, field_validator, model_validator

from shared.constants import (
    BLOCKS_PER_CHUNK,
    DEFAULT_BACKGROUND_COLOR,
    DEFAULT_CHUNKS_PER_TILE,
    DEFAULT_COMMIT_RETRIES,
    DEFAULT_CONCURRENCY,
    DEFAULT_ERROR_COLOR,
    DEFAULT_FAN_IN,
    DEFAULT_LOAD_RETRIES,
    DEFAULT_MAX_INFLIGHT_LOADS,
    DEFAULT_NEIGHBORHOOD_MARGIN,
    DEFAULT_PYRAMID_DEPTH,
    DEFAULT_RETRY_BACKOFF_S,
    DEFAULT_SHADING_STRENGTH,
    DEFAULT_TILE_SIZE_PX,
    BlockCategory,
    DownsamplePolicy,
    RemovalPolicy,
    default_downsample_policy,
)

RGBA = tuple[int, int, int, int]

# Поля, влияющие на пиксели тайлов; их изменение требует полной перерисовки
_PIXEL_FIELDS = {
    'tile_size_px',
    'chunks_per_tile',
    'neighborhood_margin',
    'pyramid_depth',
    'fan_in',
    'downsample',
    'background_color',
    'error_color',
    'shading',
    'shading_strength',
    'appearance',
    'default_appearance',
    'removal_policy',
}


def parse_color(v: object) -> RGBA:
    """'#rgb', '#rrggbb', '#rrggbbaa' or a 3/4-item sequence -> RGBA tuple."""
    if isinstance(v, str):
        s = v.strip().lstrip('#')
        if len(s) == 3:
            s = ''.join(c * 2 for c in s)
        if len(s) not in (6, 8):
            msg = f'Некорректный цвет: {v!r}'
            raise ValueError(msg)
        items = [int(s[i:i + 2], 16) for i in range(0, len(s), 2)]
    else:
        items = [int(c) for c in v]  # type: ignore[union-attr]
    if len(items) == 3:
        items.append(255)
    if len(items) != 4 or any(not 0 <= c <= 255 for c in items):
        msg = f'Цвет должен содержать 3 или 4 компоненты 0..255: {v!r}'
        raise ValueError(msg)
    return tuple(items)  # type: ignore[return-value]


class BlockAppearance(BaseModel):
    """Как блок выглядит сверху: цвет, непрозрачность и категория."""

    color: RGBA
    opacity: float = 1.0
    category: BlockCategory = BlockCategory.SOLID
    # Варианты цвета по метаданным блока (например, цвет шерсти)
    variants: dict[int, RGBA] = {}

    @field_validator('color', mode='before')
    @classmethod
    def validate_color(cls, v: object) -> RGBA:
        return parse_color(v)

    @field_validator('variants', mode='before')
    @classmethod
    def validate_variants(cls, v: object) -> dict[int, RGBA]:
        out = {int(k): parse_color(c) for k, c in dict(v or {}).items()}  # type: ignore[arg-type]
        bad = sorted(k for k in out if not 0 <= k <= 255)
        if bad:
            msg = f'Метаданные варианта вне диапазона 0..255: {bad}'
            raise ValueError(msg)
        return out

    @field_validator('opacity')
    @classmethod
    def validate_opacity(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            msg = 'Значение должно быть в диапазоне [0.0, 1.0]'
            raise ValueError(msg)
        return v

    @model_validator(mode='after')
    def validate_category(self) -> BlockAppearance:
        if self.category == BlockCategory.AIR:
            self.opacity = 0.0
        elif self.category == BlockCategory.SOLID:
            self.opacity = 1.0
        return self

    def color_for(self, meta: int) -> RGBA:
        return self.variants.get(meta, self.color)


def default_appearance_table() -> dict[int, BlockAppearance]:
    """Небольшая встроенная палитра для миров без собственной таблицы."""
    solid = BlockCategory.SOLID
    return {
        0: BlockAppearance(color=(0, 0, 0, 0), category=BlockCategory.AIR),
        1: BlockAppearance(color=(125, 125, 125), category=solid),  # stone
        2: BlockAppearance(color=(95, 159, 53), category=solid),  # grass
        3: BlockAppearance(color=(134, 96, 67), category=solid),  # dirt
        4: BlockAppearance(color=(110, 110, 110), category=solid),  # cobblestone
        5: BlockAppearance(color=(157, 128, 79), category=solid),  # planks
        8: BlockAppearance(color=(47, 67, 244), opacity=0.45, category=BlockCategory.FLUID),  # water
        10: BlockAppearance(color=(207, 92, 20), opacity=0.9, category=BlockCategory.FLUID),  # lava
        12: BlockAppearance(color=(219, 207, 163), category=solid),  # sand
        17: BlockAppearance(color=(102, 81, 51), category=solid),  # log
        18: BlockAppearance(color=(60, 120, 40), opacity=0.8, category=BlockCategory.FOLIAGE),  # leaves
        20: BlockAppearance(color=(200, 230, 240), opacity=0.2, category=BlockCategory.TRANSLUCENT),  # glass
        35: BlockAppearance(
            color=(234, 236, 237),
            category=solid,
            variants={1: (240, 118, 19), 4: (248, 198, 39), 14: (161, 39, 34)},
        ),  # wool
        79: BlockAppearance(color=(145, 183, 253), opacity=0.6, category=BlockCategory.TRANSLUCENT),  # ice
        80: BlockAppearance(color=(249, 254, 254), category=solid),  # snow
    }


class RenderConfig(BaseModel):
    """
    Параметры рендера карты тайлов.

    Загружается из TOML (см. domain.config_io), неизвестные поля игнорируются.
    """

    model_config = {
        'extra': 'ignore',
    }

    # Геометрия тайлов
    tile_size_px: int = DEFAULT_TILE_SIZE_PX
    chunks_per_tile: int = DEFAULT_CHUNKS_PER_TILE
    neighborhood_margin: int = DEFAULT_NEIGHBORHOOD_MARGIN

    # Пирамида
    pyramid_depth: int = DEFAULT_PYRAMID_DEPTH
    fan_in: int = DEFAULT_FAN_IN
    downsample: DownsamplePolicy = default_downsample_policy()

    # Внешний вид
    background_color: RGBA = DEFAULT_BACKGROUND_COLOR
    error_color: RGBA = DEFAULT_ERROR_COLOR
    shading: bool = True
    shading_strength: float = DEFAULT_SHADING_STRENGTH
    appearance: dict[int, BlockAppearance] = default_appearance_table()
    default_appearance: BlockAppearance = BlockAppearance(color=(255, 0, 255), category=BlockCategory.SOLID)

    # Что делать с тайлом без чанков
    removal_policy: RemovalPolicy = RemovalPolicy.PRUNE

    # Ресурсы и повторы
    concurrency: int = DEFAULT_CONCURRENCY
    max_inflight_loads: int = DEFAULT_MAX_INFLIGHT_LOADS
    load_retries: int = DEFAULT_LOAD_RETRIES
    commit_retries: int = DEFAULT_COMMIT_RETRIES
    retry_backoff_s: float = DEFAULT_RETRY_BACKOFF_S

    @field_validator('background_color', 'error_color', mode='before')
    @classmethod
    def validate_colors(cls, v: object) -> RGBA:
        return parse_color(v)

    @field_validator('appearance', mode='before')
    @classmethod
    def validate_appearance_keys(cls, v: object) -> object:
        # TOML хранит ключи таблиц строками
        if isinstance(v, dict):
            return {int(k): a for k, a in v.items()}
        return v

    @field_validator('chunks_per_tile', 'neighborhood_margin', 'concurrency', 'max_inflight_loads')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            msg = 'Значение должно быть не меньше 1'
            raise ValueError(msg)
        return v

    @field_validator('pyramid_depth', 'load_retries', 'commit_retries')
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            msg = 'Значение не может быть отрицательным'
            raise ValueError(msg)
        return v

    @field_validator('fan_in')
    @classmethod
    def validate_fan_in(cls, v: int) -> int:
        if v < 2:
            msg = 'fan_in должен быть не меньше 2'
            raise ValueError(msg)
        return v

    @field_validator('shading_strength', 'retry_backoff_s')
    @classmethod
    def validate_non_negative_float(cls, v: float) -> float:
        return max(float(v), 0.0)

    @model_validator(mode='after')
    def validate_tile_size(self) -> RenderConfig:
        blocks = self.chunks_per_tile * BLOCKS_PER_CHUNK
        if self.tile_size_px < blocks or self.tile_size_px % blocks:
            msg = f'tile_size_px ({self.tile_size_px}) должен быть кратен числу блоков на тайл ({blocks})'
            raise ValueError(msg)
        if self.tile_size_px % self.fan_in:
            msg = f'tile_size_px ({self.tile_size_px}) должен делиться на fan_in ({self.fan_in})'
            raise ValueError(msg)
        return self

    @property
    def pixels_per_block(self) -> int:
        return self.tile_size_px // (self.chunks_per_tile * BLOCKS_PER_CHUNK)

    def lookup(self, block_id: int, meta: int = 0) -> tuple[RGBA, float, BlockCategory]:
        """Функция внешнего вида блока: id (+метаданные) -> (цвет, непрозрачность, категория)."""
        a = self.appearance.get(block_id, self.default_appearance)
        return a.color_for(meta), a.opacity, a.category

    def fingerprint(self) -> str:
        """Отпечаток полей, влияющих на пиксели; ресурсы и повторы не учитываются."""
        data = self.model_dump(mode='json', include=_PIXEL_FIELDS)
        text = json.dumps(data, sort_keys=True, separators=(',', ':'))
        return hashlib.blake2b(text.encode('utf-8'), digest_size=16).hexdigest()
