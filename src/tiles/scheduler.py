"""Dirty-tile scheduling across the zoom pyramid.

Level 0 tiles are rendered from chunks; every higher level is combined from
the committed tiles of the level below. Each level is a hard barrier: all
jobs of zoom k finish (and commit) before any job of zoom k+1 starts.

Only tiles whose committed image actually changed (new digest, or pruned)
make their parent dirty. Changed tiles also leave a pending marker in the
cache, committed atomically with the tile, so a cancelled or crashed run is
resumed by the next incremental run.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from imaging.pyramid import TilePyramidBuilder
from render.projection import TileRenderer, load_neighborhood
from shared.constants import RemovalPolicy, RunMode
from shared.errors import CacheCommitError, RunCancelled
from shared.progress import ConsoleProgress
from tiles.executor import TileOwnership, run_in_worker, run_tiles
from tiles.geometry import TileGrid, TileKey

if TYPE_CHECKING:
    from collections.abc import Iterable

    from domain.models import RenderConfig
    from render.appearance import AppearanceCache
    from shared.progress import CancelToken, ProgressSink
    from tiles.cache import TileCache
    from world.chunk_store import ChunkStore
    from world.coords import ChunkCoord
    from world.region_index import ChunkDiff

logger = logging.getLogger(__name__)


class JobOutcome(str, Enum):
    CHANGED = 'changed'  # committed with a new image
    REFRESHED = 'refreshed'  # same image, dependency record updated
    UNCHANGED = 'unchanged'  # nothing to write
    PRUNED = 'pruned'
    SKIPPED = 'skipped'  # no content and nothing stored
    FAILED = 'failed'


@dataclass
class TileFailure:
    key: TileKey
    kind: str
    message: str


@dataclass
class LevelResult:
    zoom: int
    scheduled: int = 0
    outcomes: dict[TileKey, JobOutcome] = field(default_factory=dict)
    elapsed_s: float = 0.0

    def keys_with(self, *outcomes: JobOutcome) -> set[TileKey]:
        return {k for k, o in self.outcomes.items() if o in outcomes}

    @property
    def changed(self) -> set[TileKey]:
        """Tiles whose visible state changed; their parents are dirty."""
        return self.keys_with(JobOutcome.CHANGED, JobOutcome.PRUNED)

    @property
    def written(self) -> set[TileKey]:
        """Tiles whose cache entry was rewritten or removed."""
        return self.keys_with(JobOutcome.CHANGED, JobOutcome.REFRESHED, JobOutcome.PRUNED)

    def counts(self) -> dict[str, int]:
        out = {o.value: 0 for o in JobOutcome}
        for o in self.outcomes.values():
            out[o.value] += 1
        return out


@dataclass
class RunSummary:
    """Aggregate report of one run; per-tile failures never abort it."""

    mode: RunMode
    diff: dict[str, int] | None = None
    levels: list[LevelResult] = field(default_factory=list)
    failures: list[TileFailure] = field(default_factory=list)
    error_tiles: set[TileKey] = field(default_factory=set)
    cancelled: bool = False
    full_render_reason: str | None = None
    elapsed_s: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failures and not self.cancelled

    @property
    def written_tiles(self) -> set[TileKey]:
        out: set[TileKey] = set()
        for level in self.levels:
            out |= level.written
        return out

    @property
    def scheduled_tiles(self) -> int:
        return sum(level.scheduled for level in self.levels)

    def level(self, zoom: int) -> LevelResult | None:
        for lvl in self.levels:
            if lvl.zoom == zoom:
                return lvl
        return None


class RenderScheduler:
    """Maps dirty chunks to tiles and runs the level-by-level pipeline.

    Usage:
        scheduler = RenderScheduler(store, cache, config)
        summary = await scheduler.run(scheduler.dirty_base_tiles(diff), mode=RunMode.INCREMENTAL)
        scheduler.close()
    """

    def __init__(
        self,
        store: ChunkStore,
        cache: TileCache,
        config: RenderConfig,
        *,
        appearance: AppearanceCache | None = None,
        cancel: CancelToken | None = None,
        sink: ProgressSink | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.config = config
        self.grid = TileGrid.from_config(config)
        self.renderer = TileRenderer(config, appearance)
        self.builder = TilePyramidBuilder(config, self.grid)
        self.cancel = cancel
        self.sink = sink
        self.top_zoom = config.pyramid_depth
        self._ownership = TileOwnership()

    def close(self) -> None:
        self.renderer.close()

    def dirty_base_tiles(self, diff: ChunkDiff) -> set[TileKey]:
        """Zoom-0 tiles whose neighbourhood contains a dirty chunk, plus tiles
        with unreadable metadata."""
        dirty = self.grid.dirty_tiles_for_chunks(diff.dirty)
        dirty |= set(diff.corrupt_tiles)
        return dirty

    def full_base_tiles(self, coords: Iterable[ChunkCoord]) -> set[TileKey]:
        """Every tile with a live chunk under it, plus every stored tile (so
        vanished ones get pruned)."""
        tiles = {self.grid.tile_of_chunk(c) for c in coords}
        tiles.update(self.cache.keys(0))
        return tiles

    def _check_cancelled(self, zoom: int) -> None:
        if self.cancel is not None and self.cancel.is_cancelled():
            msg = f'run cancelled before zoom {zoom}'
            raise RunCancelled(msg)

    async def run(self, base_tiles: set[TileKey], *, mode: RunMode, force: bool = False) -> RunSummary:
        """Render ``base_tiles`` and propagate changes up the pyramid.

        Args:
            base_tiles: Dirty zoom-0 tiles.
            mode: In FULL mode every stored tile above zoom 0 is rechecked as
                well, so orphaned upper tiles get pruned.
            force: Rewrite every scheduled tile even when output is identical.
        """
        t0 = time.monotonic()
        summary = RunSummary(mode=mode)
        dirty = set(base_tiles)
        try:
            for zoom in range(self.top_zoom + 1):
                self._check_cancelled(zoom)
                if zoom > 0:
                    everything = force or mode == RunMode.FULL
                    dirty = self._next_level_dirty(zoom, summary.levels[-1], everything=everything)
                level = await self._run_level(zoom, dirty, summary, force=force)
                summary.levels.append(level)
                if zoom > 0:
                    self._clear_finished_pending(level)
        except RunCancelled as e:
            summary.cancelled = True
            logger.warning('%s; committed tiles are kept, pending parents resume next run', e)
        summary.elapsed_s = time.monotonic() - t0
        logger.info(
            'Run finished (%s) in %.2fs: %s, %d failure(s)%s',
            mode.value,
            summary.elapsed_s,
            ', '.join(f'z{lvl.zoom}={len(lvl.written)}/{lvl.scheduled}' for lvl in summary.levels),
            len(summary.failures),
            ' [cancelled]' if summary.cancelled else '',
        )
        return summary

    def _next_level_dirty(self, zoom: int, below: LevelResult, *, everything: bool) -> set[TileKey]:
        children = set(below.changed)
        children.update(self.cache.pending_keys(zoom - 1))
        dirty = {self.grid.parent(k) for k in children}
        if everything:
            dirty.update(self.grid.parent(k) for k in below.outcomes)
            dirty.update(self.grid.parent(k) for k in self.cache.keys(zoom - 1))
            dirty.update(self.cache.keys(zoom))
        dirty.update(self.cache.corrupt_keys(zoom))
        return dirty

    def _clear_finished_pending(self, level: LevelResult) -> None:
        done = level.keys_with(
            JobOutcome.CHANGED,
            JobOutcome.REFRESHED,
            JobOutcome.UNCHANGED,
            JobOutcome.PRUNED,
            JobOutcome.SKIPPED,
        )
        self.cache.clear_pending(c for parent in done for c in self.grid.children(parent))

    async def _run_level(self, zoom: int, dirty: set[TileKey], summary: RunSummary, *, force: bool) -> LevelResult:
        t0 = time.monotonic()
        keys = sorted(dirty)
        level = LevelResult(zoom=zoom, scheduled=len(keys))
        if not keys:
            return level
        logger.info('Zoom %d: %d dirty tile(s)', zoom, len(keys))

        job = self._base_job if zoom == 0 else self._combine_job

        async def process(key: TileKey) -> JobOutcome:
            return await run_in_worker(job, key, summary, force)

        progress = ConsoleProgress(total=len(keys), label=f'zoom {zoom}', sink=self.sink)
        try:
            results = await run_tiles(
                keys,
                process_tile=process,
                concurrency=self.config.concurrency,
                progress_step=progress.step,
                ownership=self._ownership,
            )
        finally:
            progress.close()
        for key, result in results.items():
            if isinstance(result, CacheCommitError):
                logger.error('%s; previous tile kept', result)
                summary.failures.append(TileFailure(key, 'commit', str(result)))
                level.outcomes[key] = JobOutcome.FAILED
            elif isinstance(result, BaseException):
                logger.error('Tile %s failed: %r', key, result, exc_info=result)
                summary.failures.append(TileFailure(key, 'unexpected', repr(result)))
                level.outcomes[key] = JobOutcome.FAILED
            else:
                level.outcomes[key] = result
        level.elapsed_s = time.monotonic() - t0
        logger.info('Zoom %d done in %.2fs: %s', zoom, level.elapsed_s, level.counts())
        return level

    def _propagates(self, key: TileKey) -> bool:
        return key.zoom < self.top_zoom

    def _base_job(self, key: TileKey, summary: RunSummary, force: bool) -> JobOutcome:
        neighborhood = load_neighborhood(self.store, self.grid, key)
        rendered = self.renderer.render(key, neighborhood)
        previous = self.cache.lookup(key)

        if not rendered.has_content:
            if previous is None:
                return JobOutcome.SKIPPED
            if self.config.removal_policy == RemovalPolicy.PRUNE:
                self.cache.prune(key, propagate=self._propagates(key))
                return JobOutcome.PRUNED

        if rendered.error_chunks:
            summary.error_tiles.add(key)
            chunks = ', '.join(f'({c.x}, {c.z})' for c in rendered.error_chunks)
            summary.failures.append(TileFailure(key, 'chunk_load', f'rendered with error marker for chunk(s) {chunks}'))

        changed = force or previous is None or previous.corrupt or previous.digest != rendered.digest
        if not changed and previous.dependencies == rendered.dependencies:
            return JobOutcome.UNCHANGED
        self.cache.commit(key, rendered.data, rendered.dependencies, propagate=changed and self._propagates(key))
        return JobOutcome.CHANGED if changed else JobOutcome.REFRESHED

    def _combine_job(self, key: TileKey, summary: RunSummary, force: bool) -> JobOutcome:
        _ = summary
        previous = self.cache.lookup(key)
        combined = self.builder.build(key, self.cache)
        if combined is None:
            if previous is None:
                return JobOutcome.SKIPPED
            self.cache.prune(key, propagate=self._propagates(key))
            return JobOutcome.PRUNED

        changed = force or previous is None or previous.corrupt or previous.digest != combined.digest
        if not changed and previous.dependencies == combined.dependencies:
            return JobOutcome.UNCHANGED
        self.cache.commit(key, combined.data, combined.dependencies, propagate=changed and self._propagates(key))
        return JobOutcome.CHANGED if changed else JobOutcome.REFRESHED
