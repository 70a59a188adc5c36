"""Entry points of the render pipeline.

``render_full``, ``render_incremental`` and ``check_status`` work the same
from a CLI, a GUI worker thread or tests: progress goes to an optional
ProgressSink and cancellation is polled through an optional CancelToken
between zoom levels.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Union

from domain.models import RenderConfig
from shared.constants import (
    META_CONFIG_FINGERPRINT,
    META_LAST_RUN_AT,
    META_TILE_LAYOUT,
    TILE_DB_SUBDIR,
    RunMode,
)
from shared.diagnostics import ResourceMonitor, get_cache_info
from tiles.cache import TileCache
from tiles.geometry import TileGrid
from tiles.scheduler import RenderScheduler, RunSummary
from world.chunk_store import ChunkStore
from world.npz_source import DirectoryWorld
from world.region_index import RegionIndex

if TYPE_CHECKING:
    from shared.progress import CancelToken, ProgressSink
    from tiles.geometry import TileKey
    from world.source import ChunkDataSource

logger = logging.getLogger(__name__)

WorldLike = Union[str, Path, 'ChunkDataSource', ChunkStore]


@dataclass
class StatusReport:
    """State of an output directory."""

    tile_count: int
    stale_count: int
    tiles_by_zoom: dict[int, int] = field(default_factory=dict)
    pending_count: int = 0
    corrupt_count: int = 0
    # None when no configuration was given to compare against
    config_changed: bool | None = None
    dirty_chunks: int | None = None
    last_run_at: int | None = None
    size_bytes: int = 0


def open_store(world: WorldLike, config: RenderConfig) -> ChunkStore:
    """Wrap a world path or data source into a ChunkStore with the configured
    retry and backpressure limits."""
    if isinstance(world, ChunkStore):
        return world
    source = DirectoryWorld(world) if isinstance(world, (str, Path)) else world
    return ChunkStore(
        source,
        max_inflight_loads=config.max_inflight_loads,
        load_retries=config.load_retries,
        retry_backoff_s=config.retry_backoff_s,
    )


def layout_to_meta(config: RenderConfig) -> str:
    return json.dumps(
        {
            'chunks_per_tile': config.chunks_per_tile,
            'margin': config.neighborhood_margin,
            'fan_in': config.fan_in,
            'pyramid_depth': config.pyramid_depth,
        },
        sort_keys=True,
    )


def layout_from_meta(text: str | None) -> tuple[TileGrid, int] | None:
    """Tile grid and pyramid depth of a finished render, or None if not recorded."""
    if text is None:
        return None
    try:
        raw = json.loads(text)
        grid = TileGrid(
            chunks_per_tile=int(raw['chunks_per_tile']),
            margin=int(raw['margin']),
            fan_in=int(raw['fan_in']),
        )
        depth = int(raw['pyramid_depth'])
    except (ValueError, TypeError, KeyError) as e:
        logger.warning('Stored tile layout is unreadable (%s), using the given config', e)
        return None
    return grid, depth


def open_cache(output: str | Path, config: RenderConfig) -> TileCache:
    return TileCache(
        Path(output) / TILE_DB_SUBDIR,
        commit_retries=config.commit_retries,
        retry_backoff_s=config.retry_backoff_s,
    )


class RenderService:
    """Runs one render of a world into an output directory."""

    def __init__(
        self,
        world: WorldLike,
        output: str | Path,
        config: RenderConfig | None = None,
        *,
        cancel: CancelToken | None = None,
        sink: ProgressSink | None = None,
    ) -> None:
        self.config = config or RenderConfig()
        self.output = Path(output)
        self.store = open_store(world, self.config)
        self.cancel = cancel
        self.sink = sink

    def _scheduler(self, cache: TileCache) -> RenderScheduler:
        return RenderScheduler(self.store, cache, self.config, cancel=self.cancel, sink=self.sink)

    async def render_full(self, *, force: bool = False, reason: str | None = None) -> RunSummary:
        """
        Render every tile of the world and rebuild the whole pyramid.

        Tiles whose output is unchanged are not rewritten unless ``force``.

        Raises:
            WorldUnavailableError: the world cannot be enumerated; nothing
                was scheduled.

        """
        with ResourceMonitor('render_full'), open_cache(self.output, self.config) as cache:
            index = RegionIndex(self.store, cache)
            coords = index.live_coords()
            logger.info('Full render of %d chunk(s) into %s', len(coords), self.output)
            scheduler = self._scheduler(cache)
            try:
                base = scheduler.full_base_tiles(coords)
                summary = await scheduler.run(base, mode=RunMode.FULL, force=force)
            finally:
                scheduler.close()
            summary.full_render_reason = reason
            self._finish(cache, summary)
            return summary

    async def render_incremental(self) -> RunSummary:
        """
        Re-render only tiles affected by chunks changed since the last run.

        Falls back to a full render when there is no previous run or it was
        made with a configuration that renders differently.

        Raises:
            WorldUnavailableError: the world cannot be enumerated; nothing
                was scheduled.

        """
        with open_cache(self.output, self.config) as cache:
            stored = cache.get_meta(META_CONFIG_FINGERPRINT)
        if stored is None:
            reason = 'no previous render'
        elif stored != self.config.fingerprint():
            reason = 'render configuration changed'
        else:
            reason = None
        if reason is not None:
            logger.info('Incremental render not possible (%s), doing a full render', reason)
            return await self.render_full(reason=reason)

        with ResourceMonitor('render_incremental'), open_cache(self.output, self.config) as cache:
            diff = RegionIndex(self.store, cache).scan()
            scheduler = self._scheduler(cache)
            try:
                base = scheduler.dirty_base_tiles(diff)
                summary = await scheduler.run(base, mode=RunMode.INCREMENTAL)
            finally:
                scheduler.close()
            summary.diff = diff.summary()
            self._finish(cache, summary)
            return summary

    def _finish(self, cache: TileCache, summary: RunSummary) -> None:
        # A cancelled run keeps the old fingerprint: the next incremental
        # run must not trust a half-built pyramid made with a new config.
        if not summary.cancelled:
            cache.set_meta(META_CONFIG_FINGERPRINT, self.config.fingerprint())
            cache.set_meta(META_LAST_RUN_AT, str(int(time.time())))
            cache.set_meta(META_TILE_LAYOUT, layout_to_meta(self.config))
        for failure in summary.failures:
            logger.warning('Tile %s: %s (%s)', failure.key, failure.message, failure.kind)
            if self.sink is not None:
                self.sink.on_warning(f'Tile {failure.key}: {failure.message}')
        logger.info(
            'Chunk reads: %(loads)d, retries: %(retries)d, failures: %(failures)d',
            self.store.stats,
        )
        logger.info('Cache after run: %s', get_cache_info(cache.cache_dir))


def render_full(
    world: WorldLike,
    output: str | Path,
    config: RenderConfig | None = None,
    *,
    force: bool = False,
    cancel: CancelToken | None = None,
    sink: ProgressSink | None = None,
) -> RunSummary:
    """Render the whole world into ``output`` (blocking)."""
    service = RenderService(world, output, config, cancel=cancel, sink=sink)
    return asyncio.run(service.render_full(force=force))


def render_incremental(
    world: WorldLike,
    output: str | Path,
    config: RenderConfig | None = None,
    *,
    cancel: CancelToken | None = None,
    sink: ProgressSink | None = None,
) -> RunSummary:
    """Diff the world against ``output`` and re-render dirty tiles (blocking)."""
    service = RenderService(world, output, config, cancel=cancel, sink=sink)
    return asyncio.run(service.render_incremental())


def check_status(
    output: str | Path,
    world: WorldLike | None = None,
    config: RenderConfig | None = None,
) -> StatusReport:
    """
    Count committed and stale tiles without rendering anything.

    Without a world, stale tiles are the corrupt ones and the stored parents
    still waiting for a rebuild. With a world, tiles over changed chunks and
    their stored ancestors are counted as well, including the parents of
    zoom-0 tiles about to be created. With a config that renders differently
    from the stored one, every tile is stale.

    Tiles are mapped to parents with the layout recorded by the last
    finished run, falling back to ``config``.
    """
    tiles_dir = Path(output) / TILE_DB_SUBDIR
    if not tiles_dir.is_dir():
        return StatusReport(tile_count=0, stale_count=0)

    cfg = config or RenderConfig()
    with open_cache(output, cfg) as cache:
        levels = cache.zoom_levels()
        stats = cache.get_stats()

        # Tiles on disk follow the layout they were rendered with
        layout = layout_from_meta(cache.get_meta(META_TILE_LAYOUT)) if 0 in levels else None
        if layout is not None:
            grid, depth = layout
        else:
            grid, depth = TileGrid.from_config(cfg), cfg.pyramid_depth

        stale: set[TileKey] = set()
        corrupt_count = 0
        for zoom in levels:
            corrupt = cache.corrupt_keys(zoom)
            corrupt_count += len(corrupt)
            stale.update(corrupt)

        for zoom in levels:
            parents = {grid.parent(key) for key in cache.pending_keys(zoom)}
            stale.update(p for p in parents if cache.exists(p))

        dirty_chunks = None
        if world is not None:
            store = open_store(world, cfg)
            diff = RegionIndex(store, cache).scan()
            dirty_chunks = len(diff.dirty)
            present = set(diff.live_hashes) | diff.failed
            for key in grid.dirty_tiles_for_chunks(diff.dirty) | diff.corrupt_tiles:
                # a zoom-0 tile about to be created still changes its parents
                appears = any(c in present for c in grid.footprint(key))
                if cache.exists(key) or appears:
                    stale.update(k for k in [key, *grid.ancestors(key, depth)] if cache.exists(k))

        config_changed = None
        last_run_at = None
        if 0 in levels:
            stored = cache.get_meta(META_CONFIG_FINGERPRINT)
            if config is not None:
                config_changed = stored != config.fingerprint()
            raw = cache.get_meta(META_LAST_RUN_AT)
            last_run_at = int(raw) if raw and raw.isdigit() else None

    stale_count = stats.total_tiles if config_changed else len(stale)
    report = StatusReport(
        tile_count=stats.total_tiles,
        stale_count=stale_count,
        tiles_by_zoom=stats.tiles_by_zoom,
        pending_count=sum(stats.pending_by_zoom.values()),
        corrupt_count=corrupt_count,
        config_changed=config_changed,
        dirty_chunks=dirty_chunks,
        last_run_at=last_run_at,
        size_bytes=stats.total_size_bytes,
    )
    logger.info('Status of %s: %s', output, report)
    return report
