"""Export of committed tiles into a static ``<z>/<x>/<y>.png`` tree."""

from __future__ import annotations

import logging
from pathlib import Path

from imaging.tile_io import write_file_atomic
from shared.constants import TILE_DB_SUBDIR
from tiles.cache import TileCache

logger = logging.getLogger(__name__)


def export_tiles(output: str | Path, dest: str | Path) -> int:
    """
    Write every intact committed tile of ``output`` below ``dest``.

    Files are replaced atomically, so a viewer reading ``dest`` during the
    export sees either the old or the new image. Corrupt tiles are skipped.

    Returns:
        Number of tiles written

    """
    tiles_dir = Path(output) / TILE_DB_SUBDIR
    dest = Path(dest)
    if not tiles_dir.is_dir():
        logger.warning('Nothing to export: %s does not exist', tiles_dir)
        return 0
    written = 0
    skipped = 0
    with TileCache(tiles_dir) as cache:
        for zoom in cache.zoom_levels():
            for key in cache.keys(zoom):
                entry = cache.lookup(key)
                if entry is None or entry.corrupt:
                    skipped += 1
                    continue
                write_file_atomic(dest / str(key.zoom) / str(key.x) / f'{key.y}.png', entry.data)
                written += 1
    logger.info('Exported %d tile(s) to %s (%d corrupt skipped)', written, dest, skipped)
    return written
