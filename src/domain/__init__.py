"""Domain layer - render configuration models and their TOML storage."""
from domain.config_io import load_render_config, parse_render_config, save_render_config
from domain.models import BlockAppearance, RenderConfig, default_appearance_table

__all__ = [
    'BlockAppearance',
    'RenderConfig',
    'default_appearance_table',
    'load_render_config',
    'parse_render_config',
    'save_render_config',
]
