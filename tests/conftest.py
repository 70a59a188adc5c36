"""Pytest configuration and fixtures for voxel mapper tests."""

import sys
import tempfile
from pathlib import Path

import numpy as np
import pytest

# Add src directory to path for imports
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from domain.models import RenderConfig  # noqa: E402
from world.memory import InMemoryWorld  # noqa: E402
from world.source import BlockColumn  # noqa: E402

STONE = 1
GRASS = 2
WATER = 8
GLASS = 20
WOOL = 35


def _column(surface=GRASS, *, height=4, top=None, fill=STONE):
    """Chunk of ``fill`` with one ``surface`` layer at ``top`` (default: highest layer)."""
    blocks = np.zeros((height, 16, 16), dtype=np.uint16)
    top = height - 1 if top is None else top
    blocks[:top] = fill
    blocks[top] = surface
    return BlockColumn(blocks)


@pytest.fixture
def make_column():
    """Factory for simple block columns."""
    return _column


@pytest.fixture
def small_config():
    """Config with one pixel per block, a two-level pyramid and no retry pauses."""
    return RenderConfig(
        tile_size_px=32,
        chunks_per_tile=2,
        pyramid_depth=1,
        concurrency=2,
        load_retries=1,
        commit_retries=1,
        retry_backoff_s=0.0,
    )


@pytest.fixture
def four_chunk_world():
    """Chunks (0,0), (0,1), (1,0), (1,1): exactly one zoom-0 tile."""
    return InMemoryWorld({(x, z): _column() for x in (0, 1) for z in (0, 1)})


@pytest.fixture
def temp_dir():
    """Create temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)
