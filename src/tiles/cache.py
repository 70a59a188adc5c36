"""SQLite-based tile cache with crash-atomic commits.

This module provides TileCache class for storing rendered tiles together
with the dependency metadata they were built from, in SQLite databases
organized by zoom level.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from imaging.tile_io import tile_digest
from shared.constants import (
    DEFAULT_COMMIT_RETRIES,
    DEFAULT_RETRY_BACKOFF_S,
    TILE_DB_NAME_FMT,
)
from shared.errors import CacheCommitError, CacheCorruption
from tiles.geometry import TileKey
from world.coords import ChunkCoord

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


@dataclass
class TileCacheEntry:
    """A committed tile.

    ``dependencies`` maps ChunkCoord -> chunk hash for zoom 0 and child
    TileKey -> child digest for higher zooms. A corrupt entry has an empty
    dependency set, so it is always stale.
    """

    key: TileKey
    data: bytes
    digest: str
    dependencies: dict
    rendered_at: int
    complete: bool = True
    corrupt: bool = False


@dataclass
class CacheStats:
    """Statistics about the tile cache."""

    total_tiles: int
    total_size_bytes: int
    tiles_by_zoom: dict[int, int]
    size_by_zoom: dict[int, int]
    pending_by_zoom: dict[int, int] = field(default_factory=dict)
    oldest_tile: int | None = None
    newest_tile: int | None = None


def encode_dependencies(zoom: int, dependencies: dict) -> str:
    if zoom == 0:
        items = {c.to_key(): h for c, h in dependencies.items()}
    else:
        items = {f'{k.x},{k.y}': d for k, d in dependencies.items()}
    return json.dumps(items, sort_keys=True, separators=(',', ':'))


def decode_dependencies(zoom: int, text: str) -> dict:
    raw = json.loads(text)
    if not isinstance(raw, dict):
        msg = 'dependency record is not an object'
        raise TypeError(msg)
    out: dict = {}
    for k, v in raw.items():
        if not isinstance(v, str):
            msg = f'dependency value for {k} is not a string'
            raise TypeError(msg)
        if zoom == 0:
            out[ChunkCoord.from_key(k)] = v
        else:
            x, y = (int(p) for p in k.split(','))
            out[TileKey(zoom - 1, x, y)] = v
    return out


class TileCache:
    """Tile store: one SQLite file per zoom level, ``zoom_<z>.db``.

    - WAL journal, so readers (status, export) never block a running render
    - Two-step commit: the tile is written to a staging table first, then
      moved into ``tiles`` (and removed from staging) in one transaction.
      A crash at any point leaves either the previous entry or the new one.
    - Pending markers: a changed tile can flag its parent for rebuild in the
      same transaction that commits it.
    - Leftover staged rows from an interrupted run are discarded on open.

    Usage:
        cache = TileCache(output_dir / 'tiles')
        cache.commit(TileKey(0, 3, 4), png_bytes, {ChunkCoord(6, 8): 'ab12...'})
        entry = cache.lookup(TileKey(0, 3, 4))
        cache.close()
    """

    def __init__(
        self,
        cache_dir: str | Path,
        *,
        commit_retries: int = DEFAULT_COMMIT_RETRIES,
        retry_backoff_s: float = DEFAULT_RETRY_BACKOFF_S,
    ) -> None:
        """
        Args:
            cache_dir: Directory for the per-zoom database files.
            commit_retries: Extra attempts after a failed commit.
            retry_backoff_s: Base pause between attempts (doubled each time).
        """
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.commit_retries = max(0, commit_retries)
        self.retry_backoff_s = max(0.0, retry_backoff_s)
        self._connections: dict[int, sqlite3.Connection] = {}
        self._lock = threading.RLock()
        logger.info('Tile cache opened at %s', self.cache_dir)

    def _db_path(self, zoom: int) -> Path:
        return self.cache_dir / TILE_DB_NAME_FMT.format(zoom=zoom)

    def _get_connection(self, zoom: int) -> sqlite3.Connection:
        """Connection of a zoom level; the database is created and recovered
        on first use."""
        if zoom < 0:
            msg = f'invalid zoom level {zoom}'
            raise ValueError(msg)
        with self._lock:
            if zoom not in self._connections:
                conn = sqlite3.connect(str(self._db_path(zoom)), check_same_thread=False)
                conn.execute('PRAGMA journal_mode=WAL')
                conn.execute('PRAGMA synchronous=FULL')
                self._init_schema(conn)
                self._recover(conn, zoom)
                self._connections[zoom] = conn
            return self._connections[zoom]

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        # staging mirrors tiles; pending holds children whose parent is stale
        conn.executescript('''
            CREATE TABLE IF NOT EXISTS metadata (
                name TEXT PRIMARY KEY,
                value TEXT
            );

            CREATE TABLE IF NOT EXISTS tiles (
                x INTEGER NOT NULL,
                y INTEGER NOT NULL,
                tile_data BLOB NOT NULL,
                digest TEXT NOT NULL,
                deps TEXT NOT NULL,
                rendered_at INTEGER NOT NULL,
                size_bytes INTEGER NOT NULL,
                complete INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (x, y)
            );

            CREATE TABLE IF NOT EXISTS staging (
                x INTEGER NOT NULL,
                y INTEGER NOT NULL,
                tile_data BLOB NOT NULL,
                digest TEXT NOT NULL,
                deps TEXT NOT NULL,
                rendered_at INTEGER NOT NULL,
                size_bytes INTEGER NOT NULL,
                PRIMARY KEY (x, y)
            );

            CREATE TABLE IF NOT EXISTS pending (
                x INTEGER NOT NULL,
                y INTEGER NOT NULL,
                PRIMARY KEY (x, y)
            );

            CREATE INDEX IF NOT EXISTS idx_tiles_rendered ON tiles(rendered_at);
        ''')
        conn.commit()

    def _recover(self, conn: sqlite3.Connection, zoom: int) -> None:
        """Drop staged rows left behind by an interrupted commit."""
        count = conn.execute('SELECT COUNT(*) FROM staging').fetchone()[0]
        if count:
            conn.execute('DELETE FROM staging')
            conn.commit()
            logger.warning('Zoom %d: discarded %d staged tile(s) from an interrupted commit', zoom, count)

    def lookup(self, key: TileKey) -> TileCacheEntry | None:
        """Get a committed tile.

        Returns:
            TileCacheEntry (possibly flagged corrupt), or None if missing.
        """
        conn = self._get_connection(key.zoom)
        with self._lock:
            row = conn.execute(
                '''SELECT tile_data, digest, deps, rendered_at, complete
                   FROM tiles WHERE x = ? AND y = ?''',
                (key.x, key.y),
            ).fetchone()
        if row is None:
            return None
        data, digest, deps_text, rendered_at, complete = row
        if not complete:
            return None
        try:
            if tile_digest(bytes(data)) != digest:
                raise CacheCorruption(key, 'image digest mismatch')
            try:
                dependencies = decode_dependencies(key.zoom, deps_text)
            except (ValueError, TypeError, AttributeError) as e:
                raise CacheCorruption(key, f'unreadable dependency record: {e}') from e
        except CacheCorruption as e:
            logger.warning('%s; it will be rebuilt', e)
            return TileCacheEntry(
                key=key,
                data=bytes(data),
                digest=digest,
                dependencies={},
                rendered_at=rendered_at,
                corrupt=True,
            )
        return TileCacheEntry(
            key=key,
            data=bytes(data),
            digest=digest,
            dependencies=dependencies,
            rendered_at=rendered_at,
        )

    def exists(self, key: TileKey) -> bool:
        conn = self._get_connection(key.zoom)
        with self._lock:
            row = conn.execute(
                'SELECT 1 FROM tiles WHERE x = ? AND y = ? AND complete = 1',
                (key.x, key.y),
            ).fetchone()
        return row is not None

    def digest_of(self, key: TileKey) -> str | None:
        """Stored digest of a tile without reading its image."""
        conn = self._get_connection(key.zoom)
        with self._lock:
            row = conn.execute(
                'SELECT digest FROM tiles WHERE x = ? AND y = ? AND complete = 1',
                (key.x, key.y),
            ).fetchone()
        return None if row is None else row[0]

    def is_stale(self, key: TileKey, live_dependencies: dict) -> bool:
        """True unless the entry exists, is intact and was built from exactly
        ``live_dependencies`` (chunk hashes for zoom 0, child digests above)."""
        entry = self.lookup(key)
        if entry is None or entry.corrupt:
            return True
        return entry.dependencies != live_dependencies

    def commit(
        self,
        key: TileKey,
        data: bytes,
        dependencies: dict,
        *,
        propagate: bool = False,
        rendered_at: int | None = None,
    ) -> TileCacheEntry:
        """Store a tile and its dependency set atomically.

        Args:
            key: Tile key.
            data: Encoded image bytes.
            dependencies: Chunk hashes (zoom 0) or child digests (zoom > 0).
            propagate: Also flag the parent of this tile for rebuild.
            rendered_at: Timestamp of the render. Defaults to now.

        Raises:
            CacheCommitError: all attempts failed; the previous entry is intact.
        """
        now = int(time.time()) if rendered_at is None else rendered_at
        digest = tile_digest(data)
        deps_text = encode_dependencies(key.zoom, dependencies)
        conn = self._get_connection(key.zoom)
        attempts = self.commit_retries + 1
        last_error: BaseException | None = None
        for i in range(attempts):
            try:
                with self._lock:
                    try:
                        conn.execute(
                            '''INSERT OR REPLACE INTO staging
                               (x, y, tile_data, digest, deps, rendered_at, size_bytes)
                               VALUES (?, ?, ?, ?, ?, ?, ?)''',
                            (key.x, key.y, data, digest, deps_text, now, len(data)),
                        )
                        conn.commit()
                        self._before_swap(key)
                        conn.execute(
                            '''INSERT OR REPLACE INTO tiles
                               (x, y, tile_data, digest, deps, rendered_at, size_bytes, complete)
                               SELECT x, y, tile_data, digest, deps, rendered_at, size_bytes, 1
                               FROM staging WHERE x = ? AND y = ?''',
                            (key.x, key.y),
                        )
                        conn.execute('DELETE FROM staging WHERE x = ? AND y = ?', (key.x, key.y))
                        if propagate:
                            conn.execute('INSERT OR IGNORE INTO pending (x, y) VALUES (?, ?)', (key.x, key.y))
                        conn.commit()
                    except BaseException:
                        conn.rollback()
                        raise
            except (sqlite3.Error, OSError) as e:
                last_error = e
                if i < attempts - 1:
                    backoff = self.retry_backoff_s * (2**i)
                    logger.warning(
                        'Commit of tile %s failed (attempt %d/%d): %s; retry in %.1fs',
                        key,
                        i + 1,
                        attempts,
                        e,
                        backoff,
                    )
                    if backoff > 0:
                        time.sleep(backoff)
                continue
            return TileCacheEntry(
                key=key,
                data=data,
                digest=digest,
                dependencies=dict(dependencies),
                rendered_at=now,
            )
        raise CacheCommitError(key, attempts, last_error)

    def _before_swap(self, key: TileKey) -> None:
        """Point between staging and swap (a seam for failure injection)."""

    def prune(self, key: TileKey, *, propagate: bool = False) -> bool:
        """Delete a tile whose dependency set became empty.

        Returns:
            True if a tile was deleted.
        """
        conn = self._get_connection(key.zoom)
        with self._lock:
            try:
                cursor = conn.execute('DELETE FROM tiles WHERE x = ? AND y = ?', (key.x, key.y))
                deleted = cursor.rowcount > 0
                conn.execute('DELETE FROM staging WHERE x = ? AND y = ?', (key.x, key.y))
                if deleted and propagate:
                    conn.execute('INSERT OR IGNORE INTO pending (x, y) VALUES (?, ?)', (key.x, key.y))
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
        if deleted:
            logger.info('Pruned tile %s', key)
        return deleted

    def keys(self, zoom: int) -> list[TileKey]:
        """All committed tile keys of a zoom level, ordered by row then column."""
        if zoom not in self.zoom_levels():
            return []
        conn = self._get_connection(zoom)
        with self._lock:
            rows = conn.execute('SELECT x, y FROM tiles WHERE complete = 1 ORDER BY y, x').fetchall()
        return [TileKey(zoom, x, y) for x, y in rows]

    def count(self, zoom: int) -> int:
        if zoom not in self.zoom_levels():
            return 0
        conn = self._get_connection(zoom)
        with self._lock:
            return conn.execute('SELECT COUNT(*) FROM tiles WHERE complete = 1').fetchone()[0]

    def scan_dependencies(self, zoom: int = 0) -> tuple[dict, list[TileKey]]:
        """Read the dependency records of a whole level without the images.

        Returns:
            (dependency -> set of recorded hashes/digests, keys with unreadable records)
        """
        recorded: dict = {}
        corrupt: list[TileKey] = []
        if zoom not in self.zoom_levels():
            return recorded, corrupt
        conn = self._get_connection(zoom)
        with self._lock:
            rows = conn.execute('SELECT x, y, deps FROM tiles WHERE complete = 1 ORDER BY y, x').fetchall()
        for x, y, deps_text in rows:
            key = TileKey(zoom, x, y)
            try:
                deps = decode_dependencies(zoom, deps_text)
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning('%s; it will be rebuilt', CacheCorruption(key, f'unreadable dependency record: {e}'))
                corrupt.append(key)
                continue
            for dep, value in deps.items():
                recorded.setdefault(dep, set()).add(value)
        return recorded, corrupt

    def dependency_hashes(self) -> dict[ChunkCoord, set[str]]:
        """Chunk hashes recorded by zoom-0 tiles during previous runs."""
        return self.scan_dependencies(0)[0]

    def corrupt_keys(self, zoom: int) -> list[TileKey]:
        return self.scan_dependencies(zoom)[1]

    def pending_keys(self, zoom: int) -> list[TileKey]:
        """Tiles of ``zoom`` whose parent still has to be rebuilt."""
        if zoom not in self.zoom_levels():
            return []
        conn = self._get_connection(zoom)
        with self._lock:
            rows = conn.execute('SELECT x, y FROM pending ORDER BY y, x').fetchall()
        return [TileKey(zoom, x, y) for x, y in rows]

    def clear_pending(self, keys: Iterable[TileKey]) -> None:
        by_zoom: dict[int, list[tuple[int, int]]] = {}
        for key in keys:
            by_zoom.setdefault(key.zoom, []).append((key.x, key.y))
        for zoom, items in by_zoom.items():
            if zoom not in self.zoom_levels():
                continue
            conn = self._get_connection(zoom)
            with self._lock:
                conn.executemany('DELETE FROM pending WHERE x = ? AND y = ?', items)
                conn.commit()

    def get_meta(self, name: str, zoom: int = 0) -> str | None:
        conn = self._get_connection(zoom)
        with self._lock:
            row = conn.execute('SELECT value FROM metadata WHERE name = ?', (name,)).fetchone()
        return None if row is None else row[0]

    def set_meta(self, name: str, value: str, zoom: int = 0) -> None:
        conn = self._get_connection(zoom)
        with self._lock:
            conn.execute('INSERT OR REPLACE INTO metadata (name, value) VALUES (?, ?)', (name, value))
            conn.commit()

    def zoom_levels(self) -> list[int]:
        """Zoom levels that have a database file."""
        levels = set(self._connections)
        for db_file in self.cache_dir.glob('zoom_*.db'):
            try:
                levels.add(int(db_file.stem.split('_')[1]))
            except (IndexError, ValueError):
                continue
        return sorted(levels)

    def get_stats(self) -> CacheStats:
        """Counts and sizes of complete tiles, per zoom and in total."""
        total_tiles = 0
        total_size = 0
        tiles_by_zoom: dict[int, int] = {}
        size_by_zoom: dict[int, int] = {}
        pending_by_zoom: dict[int, int] = {}
        oldest_tile: int | None = None
        newest_tile: int | None = None

        for zoom in self.zoom_levels():
            conn = self._get_connection(zoom)
            with self._lock:
                count, size, oldest, newest = conn.execute(
                    '''SELECT COUNT(*), COALESCE(SUM(size_bytes), 0), MIN(rendered_at), MAX(rendered_at)
                       FROM tiles WHERE complete = 1'''
                ).fetchone()
                pending = conn.execute('SELECT COUNT(*) FROM pending').fetchone()[0]
            tiles_by_zoom[zoom] = count
            size_by_zoom[zoom] = size
            pending_by_zoom[zoom] = pending
            total_tiles += count
            total_size += size
            if oldest is not None and (oldest_tile is None or oldest < oldest_tile):
                oldest_tile = oldest
            if newest is not None and (newest_tile is None or newest > newest_tile):
                newest_tile = newest

        return CacheStats(
            total_tiles=total_tiles,
            total_size_bytes=total_size,
            tiles_by_zoom=tiles_by_zoom,
            size_by_zoom=size_by_zoom,
            pending_by_zoom=pending_by_zoom,
            oldest_tile=oldest_tile,
            newest_tile=newest_tile,
        )

    def close(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()
        logger.info('Tile cache closed: %s', self.cache_dir)

    def __enter__(self) -> TileCache:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
