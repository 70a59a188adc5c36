"""End-to-end tests of the render entry points."""

import json
import logging

import pytest

from domain.models import RenderConfig
from services.render_service import check_status, open_cache, render_full, render_incremental
from shared.constants import META_CONFIG_FINGERPRINT, META_TILE_LAYOUT, RunMode
from shared.errors import WorldUnavailableError
from shared.progress import EventCancelToken
from tiles.export import export_tiles
from tiles.geometry import TileKey
from world.coords import ChunkCoord
from world.memory import InMemoryWorld
from world.npz_source import delete_chunk, write_chunk

BASE = TileKey(0, 0, 0)
TOP = TileKey(1, 0, 0)


def _snapshot(output, config):
    with open_cache(output, config) as cache:
        return {key: cache.lookup(key).data for zoom in cache.zoom_levels() for key in cache.keys(zoom)}


class RecordingSink:
    def __init__(self):
        self.progress = []
        self.warnings = []

    def on_progress(self, done, total, label):
        self.progress.append((done, total, label))

    def on_warning(self, text):
        self.warnings.append(text)


class CancelAfterLevel:
    """Sink that cancels the run once the given level has finished."""

    def __init__(self, token, label):
        self.token = token
        self.label = label

    def on_progress(self, done, total, label):
        if label == self.label and done == total:
            self.token.cancel()

    def on_warning(self, text):
        pass


@pytest.fixture
def world(make_column):
    """Two separate islands: the 4-chunk tile at the origin and one far chunk."""
    chunks = {(x, z): make_column() for x in (0, 1) for z in (0, 1)}
    chunks[(9, 6)] = make_column(surface=12)
    return InMemoryWorld(chunks)


class TestRenderFull:
    """Tests for render_full."""

    def test_commits_pyramid(self, world, small_config, temp_dir):
        summary = render_full(world, temp_dir, small_config)
        assert summary.mode == RunMode.FULL
        assert summary.ok
        snap = _snapshot(temp_dir, small_config)
        assert set(snap) == {BASE, TileKey(0, 4, 3), TOP, TileKey(1, 2, 1)}
        with open_cache(temp_dir, small_config) as cache:
            assert cache.get_meta(META_CONFIG_FINGERPRINT) == small_config.fingerprint()

    def test_deterministic_across_outputs(self, world, small_config, temp_dir):
        render_full(world, temp_dir / 'a', small_config)
        render_full(world, temp_dir / 'b', small_config)
        assert _snapshot(temp_dir / 'a', small_config) == _snapshot(temp_dir / 'b', small_config)

    def test_rerun_is_a_no_op(self, world, small_config, temp_dir):
        render_full(world, temp_dir, small_config)
        before = _snapshot(temp_dir, small_config)
        summary = render_full(world, temp_dir, small_config)
        assert summary.written_tiles == set()
        assert _snapshot(temp_dir, small_config) == before

    def test_world_unavailable_is_fatal(self, world, small_config, temp_dir):
        world.unreachable = True
        with pytest.raises(WorldUnavailableError):
            render_full(world, temp_dir, small_config)
        with open_cache(temp_dir, small_config) as cache:
            assert cache.count(0) == 0

    def test_progress_reported(self, world, small_config, temp_dir):
        sink = RecordingSink()
        render_full(world, temp_dir, small_config, sink=sink)
        assert (2, 2, 'zoom 0') in sink.progress
        assert (2, 2, 'zoom 1') in sink.progress

    def test_chunk_reads_logged(self, world, small_config, temp_dir, caplog):
        with caplog.at_level(logging.INFO):
            render_full(world, temp_dir, small_config)
        assert 'Chunk reads: ' in caplog.text
        assert 'Chunk reads: 0,' not in caplog.text
        assert 'failures: 0' in caplog.text

    def test_directory_world(self, small_config, temp_dir, make_column):
        for x in (0, 1):
            for z in (0, 1):
                write_chunk(temp_dir / 'world', ChunkCoord(x, z), make_column())
        summary = render_full(temp_dir / 'world', temp_dir / 'out', small_config)
        assert summary.written_tiles == {BASE, TOP}


class TestRenderIncremental:
    """Tests for render_incremental."""

    def test_idempotent(self, world, small_config, temp_dir):
        render_full(world, temp_dir, small_config)
        before = _snapshot(temp_dir, small_config)
        for _ in range(2):
            summary = render_incremental(world, temp_dir, small_config)
            assert summary.mode == RunMode.INCREMENTAL
            assert summary.scheduled_tiles == 0
            assert summary.diff['changed'] == 0
        assert _snapshot(temp_dir, small_config) == before

    def test_example_scenario(self, four_chunk_world, small_config, temp_dir, make_column):
        render_full(four_chunk_world, temp_dir, small_config)
        with open_cache(temp_dir, small_config) as cache:
            assert len(cache.lookup(BASE).dependencies) == 4
        four_chunk_world.put((1, 1), make_column(surface=3))
        summary = render_incremental(four_chunk_world, temp_dir, small_config)
        assert summary.written_tiles == {BASE, TOP}
        assert summary.diff['changed'] == 1

    def test_only_affected_island_changes(self, world, small_config, temp_dir, make_column):
        render_full(world, temp_dir, small_config)
        before = _snapshot(temp_dir, small_config)
        world.put((9, 6), make_column(surface=1))
        render_incremental(world, temp_dir, small_config)
        after = _snapshot(temp_dir, small_config)
        changed = {k for k in before if before[k] != after.get(k)}
        assert changed == {TileKey(0, 4, 3), TileKey(1, 2, 1)}

    def test_pyramid_consistency(self, world, small_config, temp_dir, make_column):
        """An incremental run ends in the same state as a full run from scratch."""
        render_full(world, temp_dir / 'inc', small_config)
        world.put((1, 0), make_column(surface=12, height=6, top=5))
        world.put((2, 0), make_column(surface=35))
        world.remove((9, 6))
        render_incremental(world, temp_dir / 'inc', small_config)
        render_full(world, temp_dir / 'fresh', small_config)
        assert _snapshot(temp_dir / 'inc', small_config) == _snapshot(temp_dir / 'fresh', small_config)

    def test_removal_prunes(self, world, small_config, temp_dir):
        render_full(world, temp_dir, small_config)
        world.remove((9, 6))
        render_incremental(world, temp_dir, small_config)
        snap = _snapshot(temp_dir, small_config)
        assert TileKey(0, 4, 3) not in snap
        assert TileKey(1, 2, 1) not in snap
        assert BASE in snap

    def test_removal_in_directory_world(self, small_config, temp_dir, make_column):
        root = temp_dir / 'world'
        write_chunk(root, ChunkCoord(0, 0), make_column())
        write_chunk(root, ChunkCoord(6, 6), make_column())
        render_full(root, temp_dir / 'out', small_config)
        delete_chunk(root, ChunkCoord(6, 6))
        summary = render_incremental(root, temp_dir / 'out', small_config)
        assert summary.diff['removed'] == 1
        assert TileKey(0, 3, 3) not in _snapshot(temp_dir / 'out', small_config)

    def test_first_run_falls_back_to_full(self, world, small_config, temp_dir):
        summary = render_incremental(world, temp_dir, small_config)
        assert summary.mode == RunMode.FULL
        assert summary.full_render_reason == 'no previous render'

    def test_config_change_falls_back_to_full(self, world, small_config, temp_dir):
        render_full(world, temp_dir, small_config)
        before = _snapshot(temp_dir, small_config)
        changed = small_config.model_copy(update={'tile_size_px': 64})
        summary = render_incremental(world, temp_dir, changed)
        assert summary.mode == RunMode.FULL
        assert summary.full_render_reason == 'render configuration changed'
        after = _snapshot(temp_dir, changed)
        assert set(after) == set(before)
        assert all(after[k] != before[k] for k in before)

    def test_resource_settings_do_not_force_full(self, world, small_config, temp_dir):
        render_full(world, temp_dir, small_config)
        tuned = small_config.model_copy(update={'concurrency': 1})
        summary = render_incremental(world, temp_dir, tuned)
        assert summary.mode == RunMode.INCREMENTAL

    def test_cancel_then_resume(self, world, small_config, temp_dir, make_column):
        render_full(world, temp_dir, small_config)
        world.put((0, 0), make_column(surface=12))
        token = EventCancelToken()
        token.cancel()
        summary = render_incremental(world, temp_dir, small_config, cancel=token)
        assert summary.cancelled
        assert summary.levels == []
        assert check_status(temp_dir, world, small_config).stale_count == 2

        render_incremental(world, temp_dir, small_config)
        fresh = render_full(world, temp_dir / 'fresh', small_config)
        assert fresh.ok
        assert _snapshot(temp_dir, small_config) == _snapshot(temp_dir / 'fresh', small_config)

    def test_failures_reported_to_sink(self, world, small_config, temp_dir):
        world.fail_loads[ChunkCoord(0, 0)] = 100
        sink = RecordingSink()
        summary = render_full(world, temp_dir, small_config, sink=sink)
        assert not summary.ok
        assert summary.error_tiles == {BASE}
        assert any('z0/0/0' in w for w in sink.warnings)
        assert TileKey(0, 4, 3) in summary.written_tiles


class TestCheckStatus:
    """Tests for check_status."""

    def test_empty_output(self, temp_dir):
        report = check_status(temp_dir / 'nothing')
        assert report.tile_count == 0
        assert report.stale_count == 0
        assert not (temp_dir / 'nothing').exists()

    def test_fresh_output(self, world, small_config, temp_dir):
        render_full(world, temp_dir, small_config)
        report = check_status(temp_dir, world, small_config)
        assert report.tile_count == 4
        assert report.tiles_by_zoom == {0: 2, 1: 2}
        assert report.stale_count == 0
        assert report.config_changed is False
        assert report.dirty_chunks == 0
        assert report.last_run_at is not None

    def test_changed_world(self, world, small_config, temp_dir, make_column):
        render_full(world, temp_dir, small_config)
        world.put((9, 6), make_column(surface=1))
        report = check_status(temp_dir, world, small_config)
        assert report.dirty_chunks == 1
        assert report.stale_count == 2

    def test_without_world_counts_corrupt(self, world, small_config, temp_dir):
        render_full(world, temp_dir, small_config)
        with open_cache(temp_dir, small_config) as cache:
            conn = cache._get_connection(0)
            conn.execute("UPDATE tiles SET deps = 'garbage' WHERE x = 4 AND y = 3")
            conn.commit()
        report = check_status(temp_dir)
        assert report.corrupt_count == 1
        assert report.stale_count == 1
        assert report.config_changed is None

    def test_corrupt_tile_rebuilt(self, world, small_config, temp_dir):
        render_full(world, temp_dir, small_config)
        before = _snapshot(temp_dir, small_config)
        with open_cache(temp_dir, small_config) as cache:
            conn = cache._get_connection(0)
            conn.execute("UPDATE tiles SET deps = 'garbage' WHERE x = 4 AND y = 3")
            conn.commit()
        summary = render_incremental(world, temp_dir, small_config)
        assert summary.level(0).written == {TileKey(0, 4, 3)}
        assert _snapshot(temp_dir, small_config) == before
        assert check_status(temp_dir, world, small_config).stale_count == 0

    def test_config_change_makes_everything_stale(self, world, small_config, temp_dir):
        render_full(world, temp_dir, small_config)
        other = small_config.model_copy(update={'shading': False})
        report = check_status(temp_dir, config=other)
        assert report.config_changed is True
        assert report.stale_count == report.tile_count == 4

    def test_new_base_tile_makes_parent_stale(self, four_chunk_world, small_config, temp_dir, make_column):
        """(3, 0) lies outside the margin of z0/0/0 but joins its parent."""
        render_full(four_chunk_world, temp_dir, small_config)
        four_chunk_world.put((3, 0), make_column())
        report = check_status(temp_dir, four_chunk_world, small_config)
        assert report.dirty_chunks == 1
        assert report.stale_count == 1

        summary = render_incremental(four_chunk_world, temp_dir, small_config)
        assert TOP in summary.level(1).written

    def test_chunk_under_no_stored_ancestor(self, four_chunk_world, small_config, temp_dir, make_column):
        render_full(four_chunk_world, temp_dir, small_config)
        four_chunk_world.put((20, 20), make_column())
        report = check_status(temp_dir, four_chunk_world, small_config)
        assert report.dirty_chunks == 1
        assert report.stale_count == 0

    def test_pending_parents_use_stored_layout(self, make_column, temp_dir):
        config = RenderConfig(
            tile_size_px=96,
            chunks_per_tile=2,
            fan_in=3,
            pyramid_depth=1,
            load_retries=0,
            commit_retries=0,
            retry_backoff_s=0.0,
        )
        chunks = {(x, z): make_column() for x in (0, 1) for z in (0, 1)}
        chunks[(4, 0)] = make_column()
        world = InMemoryWorld(chunks)
        render_full(world, temp_dir, config)
        with open_cache(temp_dir, config) as cache:
            assert json.loads(cache.get_meta(META_TILE_LAYOUT))['fan_in'] == 3
            assert cache.keys(1) == [TOP]

        world.put((4, 0), make_column(surface=12))
        token = EventCancelToken()
        summary = render_incremental(world, temp_dir, config, cancel=token, sink=CancelAfterLevel(token, 'zoom 0'))
        assert summary.cancelled
        assert TileKey(0, 2, 0) in summary.level(0).written

        report = check_status(temp_dir)
        assert report.pending_count == 1
        assert report.stale_count == 1

    def test_unreadable_layout_falls_back_to_config(self, world, small_config, temp_dir):
        render_full(world, temp_dir, small_config)
        with open_cache(temp_dir, small_config) as cache:
            cache.set_meta(META_TILE_LAYOUT, '{"fan_in": "x"}')
        assert check_status(temp_dir, world, small_config).stale_count == 0


class TestExport:
    """Export after a render."""

    def test_export(self, world, small_config, temp_dir):
        render_full(world, temp_dir / 'out', small_config)
        assert export_tiles(temp_dir / 'out', temp_dir / 'site') == 4
        assert (temp_dir / 'site' / '1' / '2' / '1.png').exists()
