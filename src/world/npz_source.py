"""Directory-backed world: one region directory per 32x32 chunk grid.

Layout::

    <root>/r.<rx>.<rz>/c.<cx>.<cz>.npz   (arrays 'blocks' and optional 'data')

This is the minimal on-disk form the pipeline can read without the external
world parser, e.g. for worlds exported by another tool.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from world.coords import ChunkCoord, RegionCoord
from world.source import BlockColumn

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

REGION_DIR_RE = re.compile(r'^r\.(-?\d+)\.(-?\d+)$')
CHUNK_FILE_RE = re.compile(r'^c\.(-?\d+)\.(-?\d+)\.npz$')


def region_dir(root: Path, region: RegionCoord) -> Path:
    return root / f'r.{region.x}.{region.z}'


def chunk_path(root: Path, coord: ChunkCoord) -> Path:
    return region_dir(root, coord.region) / f'c.{coord.x}.{coord.z}.npz'


class DirectoryWorld:
    """ChunkDataSource reading chunks from a region directory tree."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def regions(self) -> list[RegionCoord]:
        if not self.root.is_dir():
            msg = f'world directory not found: {self.root}'
            raise FileNotFoundError(msg)
        found = []
        for entry in self.root.iterdir():
            m = REGION_DIR_RE.match(entry.name)
            if m and entry.is_dir():
                found.append(RegionCoord(int(m.group(1)), int(m.group(2))))
        return sorted(found)

    def enumerate(self) -> Iterator[ChunkCoord]:
        for region in self.regions():
            folder = region_dir(self.root, region)
            coords = []
            for entry in folder.iterdir():
                m = CHUNK_FILE_RE.match(entry.name)
                if not m:
                    continue
                coord = ChunkCoord(int(m.group(1)), int(m.group(2)))
                if coord.region != region:
                    logger.warning('Chunk file %s is outside its region, ignored', entry)
                    continue
                coords.append(coord)
            yield from sorted(coords)

    def load(self, coord: ChunkCoord) -> BlockColumn | None:
        path = chunk_path(self.root, coord)
        try:
            with np.load(path) as npz:
                blocks = npz['blocks']
                data = npz['data'] if 'data' in npz.files else None
        except FileNotFoundError:
            return None
        return BlockColumn(blocks, data)


def write_chunk(root: str | Path, coord: ChunkCoord, column: BlockColumn) -> Path:
    """Store a chunk atomically (temp file + rename) under ``root``."""
    path = chunk_path(Path(root), coord)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix='.tmp')
    try:
        with os.fdopen(fd, 'wb') as f:
            np.savez_compressed(f, blocks=column.blocks, data=column.data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    return path


def delete_chunk(root: str | Path, coord: ChunkCoord) -> bool:
    path = chunk_path(Path(root), coord)
    if path.exists():
        path.unlink()
        return True
    return False
