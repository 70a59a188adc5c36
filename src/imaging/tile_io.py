from __future__ import annotations

import contextlib
import hashlib
import io
import os
from typing import TYPE_CHECKING

from PIL import Image

from shared.constants import TILE_IMAGE_FORMAT

if TYPE_CHECKING:
    from pathlib import Path


def encode_tile(img: Image.Image) -> bytes:
    """Encode a tile as PNG; same pixels give the same bytes."""
    tmp = img.convert('RGBA') if img.mode != 'RGBA' else img
    buf = io.BytesIO()
    tmp.save(buf, format=TILE_IMAGE_FORMAT, optimize=False, compress_level=6)
    return buf.getvalue()


def decode_tile(data: bytes) -> Image.Image:
    """Decode stored tile bytes into an RGBA image (fully loaded)."""
    with Image.open(io.BytesIO(data)) as src:
        src.load()
        return src.convert('RGBA') if src.mode != 'RGBA' else src.copy()


def tile_digest(data: bytes) -> str:
    """Identity of a committed tile image."""
    return hashlib.blake2b(data, digest_size=16).hexdigest()


def blank_tile(size: int, color: tuple[int, int, int, int]) -> Image.Image:
    return Image.new('RGBA', (size, size), color)


def write_file_atomic(path: Path, data: bytes) -> None:
    """Write bytes through a temporary sibling and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + '.tmp')
    with open(tmp, 'wb') as f:
        f.write(data)
        f.flush()
        with contextlib.suppress(OSError):
            os.fsync(f.fileno())
    os.replace(tmp, path)
