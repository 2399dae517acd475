"""Persistent named cache buckets backed by SQLite.

A bucket maps a normalized request identity (method + URL) to a stored
response snapshot. Bucket names carry the app version, so rolling the
version makes every older bucket stale; the worker purges those on
activation.

Writes to a key replace the previous entry (last writer wins). Every
read/write runs under one lock, which is all the atomicity the worker needs.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path

from .models import Request, Response

logger = logging.getLogger(__name__)


class CacheStorageError(Exception):
    """Raised when a bucket cannot be read or written."""

    pass


class BucketStore:
    """All cache buckets of one worker origin.

    Example:
        store = BucketStore("buckets.db")
        core = store.open("cfd-marine-v8-core")
        core.put(request, response)
    """

    def __init__(self, db_path: str) -> None:
        """Open (and create if needed) the bucket database.

        Args:
            db_path: Path to the SQLite file, or ":memory:".

        Raises:
            CacheStorageError: If the database cannot be opened.
        """
        self._lock = threading.Lock()
        try:
            if db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.execute("PRAGMA foreign_keys=ON")
            if db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS buckets (
                    name TEXT PRIMARY KEY
                )
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    bucket TEXT NOT NULL REFERENCES buckets(name) ON DELETE CASCADE,
                    method TEXT NOT NULL,
                    url TEXT NOT NULL,
                    status INTEGER NOT NULL,
                    status_text TEXT NOT NULL,
                    headers TEXT NOT NULL,
                    body BLOB NOT NULL,
                    response_url TEXT NOT NULL,
                    response_type TEXT NOT NULL,
                    redirected INTEGER NOT NULL,
                    PRIMARY KEY (bucket, method, url)
                )
            """)
            self._conn.commit()
        except sqlite3.Error as e:
            raise CacheStorageError(f"Failed to open bucket storage: {e}")
        except OSError as e:
            raise CacheStorageError(f"Failed to create bucket storage directory: {e}")

    def open(self, name: str) -> "CacheBucket":
        """Return the bucket called name, creating it if missing."""
        try:
            with self._lock:
                self._conn.execute("INSERT OR IGNORE INTO buckets (name) VALUES (?)", (name,))
                self._conn.commit()
        except sqlite3.Error as e:
            raise CacheStorageError(f"Failed to open bucket {name}: {e}")
        return CacheBucket(self, name)

    def bucket(self, name: str) -> "CacheBucket":
        """Return a handle on the bucket called name without touching storage.

        The bucket is created by its first put().
        """
        return CacheBucket(self, name)

    def has(self, name: str) -> bool:
        """Check whether a bucket exists."""
        try:
            with self._lock:
                row = self._conn.execute("SELECT 1 FROM buckets WHERE name = ?", (name,)).fetchone()
        except sqlite3.Error as e:
            raise CacheStorageError(f"Failed to look up bucket {name}: {e}")
        return row is not None

    def keys(self) -> list[str]:
        """Return all bucket names in creation order."""
        try:
            with self._lock:
                rows = self._conn.execute("SELECT name FROM buckets ORDER BY rowid").fetchall()
        except sqlite3.Error as e:
            raise CacheStorageError(f"Failed to list buckets: {e}")
        return [row[0] for row in rows]

    def delete(self, name: str) -> bool:
        """Delete a bucket and all its entries.

        Returns:
            True if the bucket existed.
        """
        try:
            with self._lock:
                cursor = self._conn.execute("DELETE FROM buckets WHERE name = ?", (name,))
                self._conn.commit()
        except sqlite3.Error as e:
            raise CacheStorageError(f"Failed to delete bucket {name}: {e}")
        return cursor.rowcount > 0

    def close(self) -> None:
        """Close the underlying database connection."""
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple, fetch: bool = False) -> list[tuple] | int:
        try:
            with self._lock:
                cursor = self._conn.execute(sql, params)
                if fetch:
                    return cursor.fetchall()
                self._conn.commit()
                return cursor.rowcount
        except sqlite3.Error as e:
            raise CacheStorageError(str(e))

    def _write(self, statements: list[tuple[str, tuple]]) -> None:
        """Run several statements in one transaction."""
        try:
            with self._lock, self._conn:
                for sql, params in statements:
                    self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise CacheStorageError(str(e))


class CacheBucket:
    """A single named bucket. Obtain one through BucketStore.open() or bucket()."""

    def __init__(self, store: BucketStore, name: str) -> None:
        self._store = store
        self.name = name

    def __repr__(self) -> str:
        return f"CacheBucket({self.name!r})"

    def match(self, request: Request) -> Response | None:
        """Return the stored response for request, or None."""
        method, url = request.cache_key
        rows = self._store._execute(
            """
            SELECT status, status_text, headers, body, response_url, response_type, redirected
            FROM entries WHERE bucket = ? AND method = ? AND url = ?
            """,
            (self.name, method, url),
            fetch=True,
        )
        if not rows:
            return None
        status, status_text, headers, body, response_url, response_type, redirected = rows[0]
        return Response(
            status=status,
            status_text=status_text,
            headers=json.loads(headers),
            body=bytes(body),
            url=response_url,
            type=response_type,
            redirected=bool(redirected),
        )

    def put(self, request: Request, response: Response) -> None:
        """Store response under request's identity, replacing any previous entry.

        Creates the bucket if it does not exist yet.

        Raises:
            CacheStorageError: For non-GET requests or storage failures.
        """
        method, url = request.cache_key
        if method != "GET":
            raise CacheStorageError(f"Only GET requests can be cached (got {method})")
        self._store._write(
            [
                ("INSERT OR IGNORE INTO buckets (name) VALUES (?)", (self.name,)),
                (
                    """
                    INSERT OR REPLACE INTO entries
                    (bucket, method, url, status, status_text, headers, body, response_url, response_type, redirected)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        self.name,
                        method,
                        url,
                        response.status,
                        response.status_text,
                        json.dumps(response.headers),
                        response.body,
                        response.url,
                        response.type,
                        1 if response.redirected else 0,
                    ),
                ),
            ]
        )
        logger.debug("Cached %s in %s", url, self.name)

    def delete(self, request: Request) -> bool:
        """Remove the entry for request. Returns True if one existed."""
        method, url = request.cache_key
        deleted = self._store._execute(
            "DELETE FROM entries WHERE bucket = ? AND method = ? AND url = ?",
            (self.name, method, url),
        )
        return bool(deleted)

    def keys(self) -> list[str]:
        """Return the URLs stored in this bucket."""
        rows = self._store._execute(
            "SELECT url FROM entries WHERE bucket = ? ORDER BY url",
            (self.name,),
            fetch=True,
        )
        return [row[0] for row in rows]
