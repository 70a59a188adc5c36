"""Mapping layer between flat RenderConfig fields and sectioned TOML format.

RenderConfig remains a flat Pydantic model. This module provides two functions:
- flat_to_sectioned(): flat dict → sectioned dict (for TOML save)
- sectioned_to_flat(): sectioned dict → flat dict (for TOML load)

Table-valued fields (the appearance table) are kept as their own top-level
tables and never flattened.
"""

from __future__ import annotations

# {section_name: {flat_field_name: short_name_in_toml}}
SECTION_MAP: dict[str, dict[str, str]] = {
    'tiles': {
        'tile_size_px': 'size_px',
        'chunks_per_tile': 'chunks_per_tile',
        'neighborhood_margin': 'margin',
    },
    'pyramid': {
        'pyramid_depth': 'depth',
        'fan_in': 'fan_in',
        'downsample': 'downsample',
    },
    'style': {
        'background_color': 'background',
        'error_color': 'error',
        'shading': 'shading',
        'shading_strength': 'shading_strength',
        'removal_policy': 'removal_policy',
    },
    'resources': {
        'concurrency': 'concurrency',
        'max_inflight_loads': 'max_inflight_loads',
        'load_retries': 'load_retries',
        'commit_retries': 'commit_retries',
        'retry_backoff_s': 'retry_backoff_s',
    },
}

# Fields stored as TOML tables as-is
STRUCTURED_FIELDS = frozenset({'appearance', 'default_appearance'})

# Reverse index: flat_field → (section, short_name)
_FLAT_TO_SECTION: dict[str, tuple[str, str]] = {}
for _section, _fields in SECTION_MAP.items():
    for _flat, _short in _fields.items():
        _FLAT_TO_SECTION[_flat] = (_section, _short)

# Reverse index: (section, short_name) → flat_field
_SECTION_TO_FLAT: dict[str, dict[str, str]] = {}
for _section, _fields in SECTION_MAP.items():
    _SECTION_TO_FLAT[_section] = {v: k for k, v in _fields.items()}


def flat_to_sectioned(flat: dict) -> dict:
    """Convert flat RenderConfig dict to sectioned dict for TOML output."""
    result: dict = {}
    for key, value in flat.items():
        if key in STRUCTURED_FIELDS:
            result[key] = value
        elif key in _FLAT_TO_SECTION:
            section, short_name = _FLAT_TO_SECTION[key]
            result.setdefault(section, {})[short_name] = value
        else:
            result.setdefault('common', {})[key] = value
    return result


def sectioned_to_flat(data: dict) -> dict:
    """Convert sectioned TOML dict to flat dict for RenderConfig validation."""
    flat: dict = {}
    for key, value in data.items():
        if key in STRUCTURED_FIELDS:
            flat[key] = value
        elif isinstance(value, dict) and key in _SECTION_TO_FLAT:
            # Known section: expand short names to flat names
            mapping = _SECTION_TO_FLAT[key]
            for short_name, field_value in value.items():
                flat[mapping.get(short_name, short_name)] = field_value
        elif isinstance(value, dict):
            # 'common' or unknown section, pass through keys as-is
            flat.update(value)
        else:
            # Top-level key (flat TOML)
            flat[key] = value
    return flat
