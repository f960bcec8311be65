"""
Persistent connection cache

Stores two kinds of rows in SQLite:
- edges: observed (from, to) adjacencies, upserted as they are discovered
- searches: an append-only log of search outcomes, replayed as cached paths

Reads are advisory: they degrade to empty results on storage errors.
Writes surface StorageError to the caller, which decides whether the
failure matters.
"""
import asyncio
import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from degrees.errors import ResetNotPermitted, StorageError
from degrees.models import Edge, SearchRecord
from degrees.utils import is_valid_identity, utc_now

logger = logging.getLogger(__name__)

CREATE_STATEMENTS = [
    '''
    CREATE TABLE IF NOT EXISTS edges (
        from_fid INTEGER NOT NULL,
        to_fid INTEGER NOT NULL,
        last_updated TEXT NOT NULL,
        PRIMARY KEY (from_fid, to_fid)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS searches (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        searcher_fid INTEGER,
        from_fid INTEGER NOT NULL,
        to_fid INTEGER NOT NULL,
        path_json TEXT NOT NULL,
        hops INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    ''',
    # Reverse lookups for edges_from (the primary key covers from_fid)
    'CREATE INDEX IF NOT EXISTS idx_edges_to_fid ON edges(to_fid)',
    'CREATE INDEX IF NOT EXISTS idx_searches_pair ON searches(from_fid, to_fid)',
    'CREATE INDEX IF NOT EXISTS idx_searches_created_at ON searches(created_at DESC)',
]


def decode_path(path_json: str) -> List[int]:
    """
    Parse a stored path back into identities

    Accepts a JSON array of identities, or of user objects carrying an
    'fid' key (the format older rows were written in).

    Raises:
        ValueError: If the payload is not a list of valid identities
    """
    data = json.loads(path_json)
    if not isinstance(data, list):
        raise ValueError(f"Stored path is not a list: {type(data).__name__}")

    path = []
    for item in data:
        if isinstance(item, dict):
            item = item.get('fid', item.get('identity'))
        if not is_valid_identity(item):
            raise ValueError(f"Stored path contains invalid identity: {item!r}")
        path.append(item)
    return path


class ConnectionStore:
    """
    SQLite-backed store for discovered edges and past search results

    Every operation opens its own connection inside a worker thread, so
    concurrent searches share nothing but the database file. WAL mode lets
    readers proceed while a writer is active; concurrent upserts of the same
    key resolve as last-writer-wins.

    Call open() once before use. It is safe to call concurrently: callers
    share one in-flight initialization instead of racing table creation.
    """

    def __init__(self, database_path: Union[str, Path], allow_reset: bool = False, max_retries: int = 3):
        """
        Args:
            database_path: SQLite database file
            allow_reset: Whether reset_all() may drop data (non-production only)
            max_retries: Retries for operations hitting a locked database (default: 3)
        """
        self.database_path = str(database_path)
        self.allow_reset = allow_reset
        self.max_retries = max_retries
        self._ready = False
        self._init_task: Optional[asyncio.Future] = None
        self._init_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._ready

    @contextmanager
    def get_db(self):
        """Context manager for database connections with proper timeout"""
        # Set timeout to 20 seconds to handle concurrent writes better
        conn = sqlite3.connect(self.database_path, timeout=20.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _create_tables(self, cursor: sqlite3.Cursor):
        for statement in CREATE_STATEMENTS:
            cursor.execute(statement)

    def _init_db(self):
        """Initialize the database with required tables and enable WAL mode"""
        with self.get_db() as conn:
            cursor = conn.cursor()

            # WAL allows multiple readers while a writer is active
            cursor.execute('PRAGMA journal_mode=WAL')
            cursor.execute('PRAGMA busy_timeout=20000')

            self._create_tables(cursor)

        logger.info(f"Connection store ready at {self.database_path}")

    async def open(self) -> "ConnectionStore":
        """
        Initialize storage, at most once

        Concurrent callers await the same in-flight initialization. If it
        fails, every waiter sees the error and a later call starts over.

        Returns:
            The ready-to-use store

        Raises:
            sqlite3.Error: If the database cannot be created
        """
        if self._ready:
            return self

        async with self._init_lock:
            if self._init_task is None:
                self._init_task = asyncio.ensure_future(asyncio.to_thread(self._init_db))
            task = self._init_task

        try:
            await asyncio.shield(task)
        except Exception:
            async with self._init_lock:
                if self._init_task is task:
                    self._init_task = None
            raise

        self._ready = True
        return self

    def _run_with_retries(self, operation, *args):
        """
        Run a blocking database operation

        Missing tables are recreated once and the operation retried. Lock and
        busy errors are retried with exponential backoff: 0.1s, 0.2s, 0.4s.
        """
        recreated = False
        attempt = 0

        while True:
            try:
                return operation(*args)

            except sqlite3.OperationalError as e:
                error_str = str(e).lower()

                if 'no such table' in error_str and not recreated:
                    logger.warning(f"Table missing, recreating schema: {e}")
                    with self.get_db() as conn:
                        self._create_tables(conn.cursor())
                    recreated = True
                    continue

                if ('locked' in error_str or 'busy' in error_str) and attempt < self.max_retries:
                    sleep_time = 0.1 * (2 ** attempt)
                    logger.warning(
                        f"Database locked, retrying in {sleep_time}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    time.sleep(sleep_time)
                    attempt += 1
                    continue

                raise

    async def _write(self, operation, *args):
        if not self._ready:
            raise StorageError("Connection store used before open()")
        try:
            return await asyncio.to_thread(self._run_with_retries, operation, *args)
        except sqlite3.Error as e:
            raise StorageError(f"{operation.__name__} failed: {e}") from e

    async def _read(self, operation, *args, default=None):
        if not self._ready:
            logger.warning(f"{operation.__name__} called before open(), returning empty result")
            return default
        try:
            return await asyncio.to_thread(self._run_with_retries, operation, *args)
        except sqlite3.Error as e:
            logger.error(f"{operation.__name__} failed, returning empty result: {e}")
            return default

    # ----- edges -----

    def _upsert_edges(self, pairs: List[Tuple[int, int]]) -> int:
        timestamp = utc_now()
        with self.get_db() as conn:
            conn.executemany('''
                INSERT OR REPLACE INTO edges (from_fid, to_fid, last_updated)
                VALUES (?, ?, ?)
            ''', [(from_fid, to_fid, timestamp) for from_fid, to_fid in pairs])
        return len(pairs)

    async def upsert_edge(self, from_fid: int, to_fid: int):
        """
        Insert or replace the edge (from_fid, to_fid), refreshing its timestamp

        Raises:
            StorageError: If the write fails
        """
        await self._write(self._upsert_edges, [(from_fid, to_fid)])

    async def upsert_edges(self, pairs: Iterable[Tuple[int, int]]) -> int:
        """
        Insert or replace several edges in a single transaction

        Returns:
            Number of edges written

        Raises:
            StorageError: If the write fails
        """
        pairs = list(pairs)
        if not pairs:
            return 0
        return await self._write(self._upsert_edges, pairs)

    def _edges_from(self, fid: int) -> List[Edge]:
        with self.get_db() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT from_fid, to_fid, last_updated
                FROM edges
                WHERE from_fid = ? OR to_fid = ?
                ORDER BY last_updated DESC
            ''', (fid, fid))
            return [
                Edge(from_=row['from_fid'], to=row['to_fid'], last_updated=row['last_updated'])
                for row in cursor.fetchall()
            ]

    async def edges_from(self, fid: int) -> List[Edge]:
        """
        Get stored edges touching an identity, in either direction

        Returns:
            List of edges, empty when nothing is known or storage fails
        """
        return await self._read(self._edges_from, fid, default=[])

    # ----- searches -----

    def _insert_search(self, searcher_fid, from_fid, to_fid, path) -> int:
        with self.get_db() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO searches
                (searcher_fid, from_fid, to_fid, path_json, hops, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (searcher_fid, from_fid, to_fid, json.dumps(path), len(path) - 1, utc_now()))
            return cursor.lastrowid

    async def record_search(self, searcher_fid: Optional[int], from_fid: int, to_fid: int, path: List[int]) -> int:
        """
        Append a search outcome to the log

        Args:
            searcher_fid: Who ran the search (optional)
            from_fid: Source identity
            to_fid: Target identity
            path: Ordered identities from source to target

        Returns:
            int: The ID of the inserted search record

        Raises:
            StorageError: If the write fails
        """
        return await self._write(self._insert_search, searcher_fid, from_fid, to_fid, list(path))

    def _row_to_record(self, row: sqlite3.Row) -> SearchRecord:
        try:
            path = decode_path(row['path_json'])
        except ValueError as e:
            logger.debug(f"Search {row['id']} has an unreadable path: {e}")
            path = []

        return SearchRecord(
            id=row['id'],
            searcher=row['searcher_fid'],
            from_=row['from_fid'],
            to=row['to_fid'],
            path=path,
            created_at=row['created_at'],
        )

    def _recent_searches(self, from_fid, to_fid, limit) -> List[SearchRecord]:
        query = 'SELECT * FROM searches WHERE 1=1'
        args = []

        if from_fid is not None:
            query += ' AND from_fid = ?'
            args.append(from_fid)

        if to_fid is not None:
            query += ' AND to_fid = ?'
            args.append(to_fid)

        query += ' ORDER BY created_at DESC, id DESC'

        if limit is not None:
            query += ' LIMIT ?'
            args.append(limit)

        with self.get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(query, args)
            return [self._row_to_record(row) for row in cursor.fetchall()]

    async def recent_searches(self, from_fid: Optional[int] = None, to_fid: Optional[int] = None,
                              limit: Optional[int] = None) -> List[SearchRecord]:
        """
        Get logged searches, most recent first

        Args:
            from_fid: Only searches starting at this identity
            to_fid: Only searches ending at this identity
            limit: Maximum number of records

        Returns:
            Matching records, empty on no match or storage errors
        """
        return await self._read(self._recent_searches, from_fid, to_fid, limit, default=[])

    def _get_search(self, search_id: int) -> Optional[SearchRecord]:
        with self.get_db() as conn:
            cursor = conn.cursor()
            cursor.execute('SELECT * FROM searches WHERE id = ?', (search_id,))
            row = cursor.fetchone()
            return self._row_to_record(row) if row else None

    async def get_search(self, search_id: int) -> Optional[SearchRecord]:
        """Get a specific search by ID"""
        return await self._read(self._get_search, search_id, default=None)

    def _stats(self) -> dict:
        with self.get_db() as conn:
            cursor = conn.cursor()
            cursor.execute('SELECT COUNT(*) AS total_edges FROM edges')
            total_edges = cursor.fetchone()['total_edges']

            cursor.execute('''
                SELECT COUNT(*) AS total_searches, AVG(hops) AS avg_degree
                FROM searches
            ''')
            row = cursor.fetchone()

            return {
                'total_edges': total_edges,
                'total_searches': row['total_searches'],
                'avg_degree': row['avg_degree'],
            }

    async def stats(self) -> dict:
        """Get counts of stored edges and searches"""
        return await self._read(
            self._stats, default={'total_edges': 0, 'total_searches': 0, 'avg_degree': None}
        )

    # ----- admin -----

    def _reset(self):
        with self.get_db() as conn:
            cursor = conn.cursor()
            cursor.execute('DROP TABLE IF EXISTS edges')
            cursor.execute('DROP TABLE IF EXISTS searches')
            self._create_tables(cursor)

    async def reset_all(self):
        """
        Drop and recreate all state

        Raises:
            ResetNotPermitted: If the store was not created with allow_reset
            StorageError: If the reset fails
        """
        if not self.allow_reset:
            raise ResetNotPermitted("Reset is only available outside production")

        await self._write(self._reset)
        logger.warning("Connection store reset, all edges and searches dropped")
