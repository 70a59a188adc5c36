"""Tests for tiles.scheduler module."""

import sqlite3

import numpy as np
import pytest

from imaging.tile_io import decode_tile
from shared.constants import RemovalPolicy, RunMode
from shared.progress import EventCancelToken
from tiles.cache import TileCache
from tiles.geometry import TileKey
from tiles.scheduler import JobOutcome, RenderScheduler
from world.chunk_store import ChunkStore
from world.coords import ChunkCoord
from world.region_index import RegionIndex

BASE = TileKey(0, 0, 0)
TOP = TileKey(1, 0, 0)


class FailingCache(TileCache):
    """Commit of ``fail_key`` always fails before the swap."""

    fail_key = None

    def _before_swap(self, key):
        if key == self.fail_key:
            raise sqlite3.OperationalError('disk full')


class CancelAfterBase:
    """Progress sink that cancels the run once zoom 0 is done."""

    def __init__(self, token):
        self.token = token
        self.warnings = []

    def on_progress(self, done, total, label):
        if label == 'zoom 0' and done == total:
            self.token.cancel()

    def on_warning(self, text):
        self.warnings.append(text)


@pytest.fixture
def cache(temp_dir):
    tc = FailingCache(temp_dir / 'tiles', commit_retries=0, retry_backoff_s=0)
    yield tc
    tc.close()


def _scheduler(world, cache, config, **kwargs):
    store = ChunkStore(world, load_retries=config.load_retries, retry_backoff_s=0)
    return RenderScheduler(store, cache, config, **kwargs)


async def _full(world, cache, config, **kwargs):
    scheduler = _scheduler(world, cache, config, **kwargs)
    try:
        base = scheduler.full_base_tiles(scheduler.store.enumerate())
        return await scheduler.run(base, mode=RunMode.FULL)
    finally:
        scheduler.close()


async def _incremental(world, cache, config, **kwargs):
    scheduler = _scheduler(world, cache, config, **kwargs)
    try:
        diff = RegionIndex(scheduler.store, cache).scan()
        return await scheduler.run(scheduler.dirty_base_tiles(diff), mode=RunMode.INCREMENTAL)
    finally:
        scheduler.close()


class TestFullRun:
    """First render of a world."""

    @pytest.mark.asyncio
    async def test_four_chunks_make_one_tile(self, cache, small_config, four_chunk_world):
        summary = await _full(four_chunk_world, cache, small_config)
        assert summary.ok
        assert summary.written_tiles == {BASE, TOP}
        entry = cache.lookup(BASE)
        assert entry.dependencies == {
            ChunkCoord(x, z): four_chunk_world.content_hash(ChunkCoord(x, z)) for x in (0, 1) for z in (0, 1)
        }
        assert cache.lookup(TOP).dependencies == {BASE: entry.digest}

    @pytest.mark.asyncio
    async def test_pending_cleared_after_parent_built(self, cache, small_config, four_chunk_world):
        await _full(four_chunk_world, cache, small_config)
        assert cache.pending_keys(0) == []
        assert cache.pending_keys(1) == []

    @pytest.mark.asyncio
    async def test_parent_is_combination_of_children(self, cache, small_config, four_chunk_world, make_column):
        four_chunk_world.put((2, 0), make_column(surface=35))
        await _full(four_chunk_world, cache, small_config)
        scheduler = _scheduler(four_chunk_world, cache, small_config)
        children = {k: decode_tile(cache.lookup(k).data) for k in scheduler.grid.children(TOP) if cache.exists(k)}
        assert set(children) == {TileKey(0, 0, 0), TileKey(0, 1, 0)}
        expected = scheduler.builder.combine(TOP, children)
        actual = decode_tile(cache.lookup(TOP).data)
        np.testing.assert_array_equal(np.asarray(actual), np.asarray(expected))
        scheduler.close()


class TestIncrementalRun:
    """Invalidation precision."""

    @pytest.mark.asyncio
    async def test_no_change_touches_nothing(self, cache, small_config, four_chunk_world):
        await _full(four_chunk_world, cache, small_config)
        before = {k: cache.lookup(k).data for k in (BASE, TOP)}
        summary = await _incremental(four_chunk_world, cache, small_config)
        assert summary.scheduled_tiles == 0
        assert summary.written_tiles == set()
        assert {k: cache.lookup(k).data for k in (BASE, TOP)} == before

    @pytest.mark.asyncio
    async def test_one_chunk_change_dirties_tile_and_ancestor(self, cache, small_config, four_chunk_world, make_column):
        await _full(four_chunk_world, cache, small_config)
        four_chunk_world.put((1, 1), make_column(surface=3))
        summary = await _incremental(four_chunk_world, cache, small_config)
        assert summary.written_tiles == {BASE, TOP}
        assert summary.level(0).changed == {BASE}
        assert summary.level(1).changed == {TOP}
        assert cache.keys(0) == [BASE]
        assert cache.lookup(BASE).dependencies[ChunkCoord(1, 1)] == make_column(surface=3).content_hash()

    @pytest.mark.asyncio
    async def test_invisible_change_does_not_propagate(self, cache, small_config, four_chunk_world, make_column):
        """A buried block changes the chunk hash but not the image."""
        await _full(four_chunk_world, cache, small_config)
        digest = cache.digest_of(BASE)
        col = make_column()
        blocks = col.blocks.copy()
        blocks[0, 5, 5] = 3
        four_chunk_world.put((0, 0), type(col)(blocks))
        summary = await _incremental(four_chunk_world, cache, small_config)
        assert summary.level(0).outcomes[BASE] == JobOutcome.REFRESHED
        assert summary.level(1).scheduled == 0
        assert cache.digest_of(BASE) == digest
        assert cache.lookup(BASE).dependencies[ChunkCoord(0, 0)] == four_chunk_world.content_hash(ChunkCoord(0, 0))

    @pytest.mark.asyncio
    async def test_margin_chunk_rerenders_neighbour(self, cache, small_config, four_chunk_world, make_column):
        """A new chunk in the margin of a tile is recorded in its dependencies."""
        await _full(four_chunk_world, cache, small_config)
        four_chunk_world.put((2, 0), make_column(height=8, top=7))
        summary = await _incremental(four_chunk_world, cache, small_config)
        assert TileKey(0, 1, 0) in summary.written_tiles
        assert cache.lookup(BASE).dependencies.get(ChunkCoord(2, 0)) is not None


class TestRemoval:
    """Tiles whose chunks all disappear."""

    @pytest.mark.asyncio
    async def test_prune(self, cache, small_config, four_chunk_world):
        await _full(four_chunk_world, cache, small_config)
        for coord in [(0, 0), (0, 1), (1, 0), (1, 1)]:
            four_chunk_world.remove(coord)
        summary = await _incremental(four_chunk_world, cache, small_config)
        assert summary.level(0).outcomes[BASE] == JobOutcome.PRUNED
        assert summary.level(1).outcomes[TOP] == JobOutcome.PRUNED
        assert cache.lookup(BASE) is None
        assert cache.lookup(TOP) is None

    @pytest.mark.asyncio
    async def test_background_policy(self, cache, small_config, four_chunk_world):
        config = small_config.model_copy(update={'removal_policy': RemovalPolicy.BACKGROUND})
        await _full(four_chunk_world, cache, config)
        for coord in [(0, 0), (0, 1), (1, 0), (1, 1)]:
            four_chunk_world.remove(coord)
        await _incremental(four_chunk_world, cache, config)
        entry = cache.lookup(BASE)
        assert entry is not None
        assert entry.dependencies == {}
        pixels = np.asarray(decode_tile(entry.data))
        assert (pixels == np.array(config.background_color, dtype=np.uint8)).all()


class TestFailures:
    """Per-tile failures never abort the run."""

    @pytest.mark.asyncio
    async def test_unreadable_chunk_gives_error_tile(self, cache, small_config, four_chunk_world, make_column):
        four_chunk_world.put((4, 4), make_column())
        four_chunk_world.fail_loads[ChunkCoord(1, 1)] = 100
        summary = await _full(four_chunk_world, cache, small_config)
        assert summary.error_tiles == {BASE}
        assert [f.kind for f in summary.failures] == ['chunk_load']
        assert cache.exists(TileKey(0, 2, 2))
        entry = cache.lookup(BASE)
        assert entry.dependencies[ChunkCoord(1, 1)] == ''
        pixels = np.asarray(decode_tile(entry.data))
        assert tuple(pixels[31, 31]) == small_config.error_color

    @pytest.mark.asyncio
    async def test_error_tile_repaired_next_run(self, cache, small_config, four_chunk_world):
        four_chunk_world.fail_loads[ChunkCoord(1, 1)] = 100
        await _full(four_chunk_world, cache, small_config)
        four_chunk_world.fail_loads.clear()
        summary = await _incremental(four_chunk_world, cache, small_config)
        assert summary.ok
        assert BASE in summary.level(0).changed
        assert cache.lookup(BASE).dependencies[ChunkCoord(1, 1)] != ''

    @pytest.mark.asyncio
    async def test_commit_failure_keeps_previous(self, cache, small_config, four_chunk_world, make_column):
        four_chunk_world.put((4, 4), make_column())
        await _full(four_chunk_world, cache, small_config)
        old = cache.lookup(BASE).data
        four_chunk_world.put((1, 1), make_column(surface=3))
        four_chunk_world.put((4, 4), make_column(surface=12))
        cache.fail_key = BASE
        summary = await _incremental(four_chunk_world, cache, small_config)
        assert [(f.key, f.kind) for f in summary.failures] == [(BASE, 'commit')]
        assert summary.level(0).outcomes[BASE] == JobOutcome.FAILED
        assert cache.lookup(BASE).data == old
        assert TileKey(0, 2, 2) in summary.level(0).changed


class TestCancellation:
    """Cancelling between levels, then resuming."""

    @pytest.mark.asyncio
    async def test_resume_after_cancel(self, cache, small_config, four_chunk_world, make_column):
        await _full(four_chunk_world, cache, small_config)
        four_chunk_world.put((1, 1), make_column(surface=3))
        token = EventCancelToken()
        summary = await _incremental(four_chunk_world, cache, small_config, cancel=token, sink=CancelAfterBase(token))
        assert summary.cancelled
        assert [lvl.zoom for lvl in summary.levels] == [0]
        assert cache.pending_keys(0) == [BASE]
        stale_parent = cache.lookup(TOP).dependencies[BASE]
        assert stale_parent != cache.digest_of(BASE)

        resumed = await _incremental(four_chunk_world, cache, small_config)
        assert resumed.level(0).scheduled == 0
        assert resumed.level(1).changed == {TOP}
        assert cache.lookup(TOP).dependencies[BASE] == cache.digest_of(BASE)
        assert cache.pending_keys(0) == []


class TestForce:
    """Forced runs rewrite identical tiles."""

    @pytest.mark.asyncio
    async def test_force_rewrites(self, cache, small_config, four_chunk_world):
        await _full(four_chunk_world, cache, small_config)
        scheduler = _scheduler(four_chunk_world, cache, small_config)
        summary = await scheduler.run({BASE}, mode=RunMode.FULL, force=True)
        scheduler.close()
        assert summary.level(0).outcomes[BASE] == JobOutcome.CHANGED
        assert summary.level(1).outcomes[TOP] == JobOutcome.CHANGED
