"""Tests for world.region_index module."""

import pytest

from imaging.tile_io import blank_tile, encode_tile
from tiles.cache import TileCache
from tiles.geometry import TileKey
from world.chunk_store import ChunkStore
from world.coords import ChunkCoord, RegionCoord
from world.memory import InMemoryWorld
from world.region_index import RegionIndex


@pytest.fixture
def cache(temp_dir):
    tc = TileCache(temp_dir / 'tiles', retry_backoff_s=0)
    yield tc
    tc.close()


def _record(cache, world, coords, key=TileKey(0, 0, 0)):
    deps = {ChunkCoord(*c): world.content_hash(ChunkCoord(*c)) for c in coords}
    cache.commit(key, encode_tile(blank_tile(32, (0, 0, 0, 0))), deps)


class TestRegionIndex:
    """Change detection against recorded dependency hashes."""

    def test_everything_added_on_empty_cache(self, cache, four_chunk_world):
        index = RegionIndex(ChunkStore(four_chunk_world), cache)
        diff = index.scan()
        assert len(diff.added) == 4
        assert not diff.changed and not diff.removed
        assert len(diff.live_hashes) == 4

    def test_unchanged(self, cache, four_chunk_world):
        _record(cache, four_chunk_world, [(0, 0), (0, 1), (1, 0), (1, 1)])
        diff = RegionIndex(ChunkStore(four_chunk_world), cache).scan()
        assert diff.is_empty
        assert len(diff.unchanged) == 4

    def test_changed_and_removed(self, cache, four_chunk_world, make_column):
        _record(cache, four_chunk_world, [(0, 0), (0, 1), (1, 0), (1, 1)])
        four_chunk_world.put((1, 1), make_column(surface=3))
        four_chunk_world.remove((0, 1))
        four_chunk_world.put((5, 5), make_column())
        diff = RegionIndex(ChunkStore(four_chunk_world), cache).scan()
        assert diff.changed == {ChunkCoord(1, 1)}
        assert diff.removed == {ChunkCoord(0, 1)}
        assert diff.added == {ChunkCoord(5, 5)}
        assert diff.dirty == {ChunkCoord(1, 1), ChunkCoord(0, 1), ChunkCoord(5, 5)}

    def test_chunk_with_failed_record_is_changed(self, cache, four_chunk_world):
        """A chunk recorded as unreadable is rendered again once it reads."""
        deps = {ChunkCoord(0, 0): ''}
        cache.commit(TileKey(0, 0, 0), encode_tile(blank_tile(32, (0, 0, 0, 0))), deps)
        diff = RegionIndex(ChunkStore(four_chunk_world), cache).scan()
        assert ChunkCoord(0, 0) in diff.changed

    def test_unreadable_hash_is_failed(self, cache, four_chunk_world):
        four_chunk_world.fail_loads[ChunkCoord(1, 0)] = 100
        store = ChunkStore(four_chunk_world, load_retries=1, retry_backoff_s=0)
        diff = RegionIndex(store, cache).scan()
        assert diff.failed == {ChunkCoord(1, 0)}
        assert ChunkCoord(1, 0) in diff.dirty

    def test_corrupt_metadata_reported(self, cache, four_chunk_world):
        _record(cache, four_chunk_world, [(0, 0)])
        conn = cache._get_connection(0)
        conn.execute("UPDATE tiles SET deps = '{broken' WHERE x = 0 AND y = 0")
        conn.commit()
        diff = RegionIndex(ChunkStore(four_chunk_world), cache).scan()
        assert diff.corrupt_tiles == {TileKey(0, 0, 0)}
        assert not diff.is_empty

    def test_regions(self, cache):
        world = InMemoryWorld({(0, 0): None, (31, 0): None, (32, 0): None})
        index = RegionIndex(ChunkStore(world), cache)
        assert index.regions() == {RegionCoord(0, 0): 2, RegionCoord(1, 0): 1}
