"""Tests for domain.config_io and domain.toml_sections modules."""

import pytest

from domain.config_io import dump_render_config, load_render_config, parse_render_config, save_render_config
from domain.models import RenderConfig
from domain.toml_sections import flat_to_sectioned, sectioned_to_flat
from shared.constants import DownsamplePolicy

SAMPLE = """
[tiles]
size_px = 64
chunks_per_tile = 1
margin = 2

[pyramid]
depth = 3
downsample = "nearest"

[style]
background = "#10203040"
shading = false

[resources]
concurrency = 2

[appearance.1]
color = "#777777"

[appearance.9]
color = [0, 0, 200]
opacity = 0.5
category = "fluid"
"""


class TestSections:
    """Flat <-> sectioned mapping."""

    def test_flat_to_sectioned(self):
        out = flat_to_sectioned({'tile_size_px': 64, 'fan_in': 2, 'appearance': {}, 'other': 1})
        assert out == {'tiles': {'size_px': 64}, 'pyramid': {'fan_in': 2}, 'appearance': {}, 'common': {'other': 1}}

    def test_sectioned_to_flat(self):
        flat = sectioned_to_flat({'tiles': {'size_px': 64}, 'common': {'x': 1}, 'concurrency': 3})
        assert flat == {'tile_size_px': 64, 'x': 1, 'concurrency': 3}


class TestConfigIO:
    """TOML loading and saving."""

    def test_parse(self):
        config = parse_render_config(SAMPLE)
        assert config.tile_size_px == 64
        assert config.pixels_per_block == 4
        assert config.neighborhood_margin == 2
        assert config.pyramid_depth == 3
        assert config.downsample == DownsamplePolicy.NEAREST
        assert config.background_color == (16, 32, 48, 64)
        assert config.shading is False
        assert config.concurrency == 2
        assert config.lookup(1)[0] == (119, 119, 119, 255)
        assert config.lookup(9)[1] == 0.5

    def test_save_and_load(self, temp_dir):
        config = parse_render_config(SAMPLE)
        path = save_render_config(temp_dir / 'cfg' / 'render.toml', config)
        loaded = load_render_config(path)
        assert loaded == config
        assert loaded.fingerprint() == config.fingerprint()

    def test_dump_is_sectioned(self):
        text = dump_render_config(RenderConfig())
        assert '[tiles]' in text
        assert '[pyramid]' in text

    def test_missing_file(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            load_render_config(temp_dir / 'nope.toml')
