"""Imaging package - tile encoding and pyramid downsampling."""

from imaging.pyramid import CombinedTile, TilePyramidBuilder, combine
from imaging.tile_io import (
    blank_tile,
    decode_tile,
    encode_tile,
    tile_digest,
    write_file_atomic,
)

__all__ = [
    'CombinedTile',
    'TilePyramidBuilder',
    'blank_tile',
    'combine',
    'decode_tile',
    'encode_tile',
    'tile_digest',
    'write_file_atomic',
]
