"""Загрузка и сохранение RenderConfig в TOML."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

import tomlkit

from domain.models import RenderConfig
from domain.toml_sections import flat_to_sectioned, sectioned_to_flat

logger = logging.getLogger(__name__)


def _stringify_keys(value: object) -> object:
    # TOML допускает только строковые ключи таблиц
    if isinstance(value, dict):
        return {str(k): _stringify_keys(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_stringify_keys(v) for v in value]
    return value


def parse_render_config(text: str) -> RenderConfig:
    """Разбор текста TOML -> RenderConfig (с валидацией)."""
    data = tomlkit.parse(text).unwrap()
    return RenderConfig.model_validate(sectioned_to_flat(data))


def load_render_config(path: str | Path) -> RenderConfig:
    """
    Загрузка и валидация конфигурации рендера из TOML-файла.

    Raises:
        FileNotFoundError: файл не найден
        pydantic.ValidationError: значения вне допустимых диапазонов

    """
    p = Path(path)
    if not p.exists():
        msg = f'Конфигурация не найдена: {p}'
        raise FileNotFoundError(msg)
    config = parse_render_config(p.read_text(encoding='utf-8'))
    logger.info(
        'Render config loaded from %s: tile=%dpx, %d chunk(s)/tile, depth=%d, fingerprint=%s',
        p,
        config.tile_size_px,
        config.chunks_per_tile,
        config.pyramid_depth,
        config.fingerprint(),
    )
    return config


def dump_render_config(config: RenderConfig) -> str:
    data = _stringify_keys(flat_to_sectioned(config.model_dump(mode='json')))
    return tomlkit.dumps(data)


def save_render_config(path: str | Path, config: RenderConfig) -> Path:
    """Сохранение конфигурации в TOML (через временный файл и замену)."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    text = dump_render_config(config)
    fd, tmp = tempfile.mkstemp(dir=p.parent, suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
        os.replace(tmp, p)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    return p
