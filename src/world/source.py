"""Chunk data source interface consumed by the pipeline.

Parsing a real world save lives outside this package; anything that can
enumerate chunk coordinates and hand back block columns can be rendered.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np

from shared.constants import AIR_BLOCK_ID, BLOCKS_PER_CHUNK

if TYPE_CHECKING:
    from collections.abc import Iterable

    from world.coords import ChunkCoord


@dataclass(frozen=True)
class BlockColumn:
    """Decoded blocks of one chunk.

    Attributes:
        blocks: uint16 block ids, shape (height, 16, 16), indexed [y, z, x].
        data: uint8 block metadata (orientation, colour variant), same shape.
    """

    blocks: np.ndarray
    data: np.ndarray = field(default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        blocks = np.ascontiguousarray(self.blocks, dtype=np.uint16)
        if blocks.ndim != 3 or blocks.shape[1:] != (BLOCKS_PER_CHUNK, BLOCKS_PER_CHUNK):
            msg = f'block array must have shape (height, {BLOCKS_PER_CHUNK}, {BLOCKS_PER_CHUNK}), got {blocks.shape}'
            raise ValueError(msg)
        data = self.data
        if data is None:
            data = np.zeros(blocks.shape, dtype=np.uint8)
        data = np.ascontiguousarray(data, dtype=np.uint8)
        if data.shape != blocks.shape:
            msg = f'metadata shape {data.shape} does not match blocks {blocks.shape}'
            raise ValueError(msg)
        object.__setattr__(self, 'blocks', blocks)
        object.__setattr__(self, 'data', data)

    @property
    def height(self) -> int:
        return int(self.blocks.shape[0])

    @classmethod
    def empty(cls, height: int) -> BlockColumn:
        return cls(np.full((height, BLOCKS_PER_CHUNK, BLOCKS_PER_CHUNK), AIR_BLOCK_ID, dtype=np.uint16))

    def content_hash(self) -> str:
        """Stable digest of the block data, independent of the process."""
        h = hashlib.blake2b(digest_size=16)
        h.update(np.asarray(self.blocks.shape, dtype='<i8').tobytes())
        h.update(self.blocks.astype('<u2', copy=False).tobytes())
        h.update(self.data.tobytes())
        return h.hexdigest()


@runtime_checkable
class ChunkDataSource(Protocol):
    """World collaborator.

    ``enumerate`` yields every chunk coordinate present in the world and may
    be called once per run. ``load`` returns None for a chunk that does not
    exist and raises OSError on transient read failures. Both must be safe to
    call from several threads.
    """

    def enumerate(self) -> Iterable[ChunkCoord]: ...

    def load(self, coord: ChunkCoord) -> BlockColumn | None: ...
