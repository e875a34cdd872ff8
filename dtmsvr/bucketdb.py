"""A small embedded store of named buckets holding byte keys in sorted order."""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Union

KeyLike = Union[bytes, bytearray, memoryview, str]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS buckets (
    name BLOB PRIMARY KEY
) WITHOUT ROWID;
CREATE TABLE IF NOT EXISTS items (
    bucket BLOB NOT NULL,
    key BLOB NOT NULL,
    value BLOB NOT NULL,
    PRIMARY KEY (bucket, key)
) WITHOUT ROWID;
"""


def _to_bytes(value: KeyLike) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


class Bucket:
    """A named collection of key/value pairs ordered by key bytes."""

    def __init__(self, tx: Tx, name: bytes) -> None:
        self._tx = tx
        self.name = name

    def get(self, key: KeyLike) -> bytes | None:
        """Return the value stored under ``key``, or None."""
        row = self._tx._execute(
            "SELECT value FROM items WHERE bucket = ? AND key = ?",
            (self.name, _to_bytes(key)),
        ).fetchone()
        return None if row is None else bytes(row[0])

    def put(self, key: KeyLike, value: KeyLike) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        self._tx._require_writable()
        raw_key = _to_bytes(key)
        if not raw_key:
            raise ValueError("key required")
        self._tx._execute(
            "INSERT OR REPLACE INTO items (bucket, key, value) VALUES (?, ?, ?)",
            (self.name, raw_key, _to_bytes(value)),
        )

    def delete(self, key: KeyLike) -> None:
        """Remove ``key``; removing an absent key does nothing."""
        self._tx._require_writable()
        self._tx._execute(
            "DELETE FROM items WHERE bucket = ? AND key = ?",
            (self.name, _to_bytes(key)),
        )

    def items(self, start: KeyLike | None = None) -> Iterator[tuple[bytes, bytes]]:
        """Yield pairs in key order, beginning at the first key not below ``start``.

        The pairs are read up front, so the bucket may be changed while iterating.
        """
        if start is None:
            rows = self._tx._execute(
                "SELECT key, value FROM items WHERE bucket = ? ORDER BY key",
                (self.name,),
            ).fetchall()
        else:
            rows = self._tx._execute(
                "SELECT key, value FROM items WHERE bucket = ? AND key >= ? ORDER BY key",
                (self.name, _to_bytes(start)),
            ).fetchall()
        for key, value in rows:
            yield bytes(key), bytes(value)

    def keys(self) -> list[bytes]:
        """All keys of the bucket in order."""
        return [key for key, _ in self.items()]


class Tx:
    """A transaction over the buckets of a database."""

    def __init__(self, conn: sqlite3.Connection, writable: bool) -> None:
        self._conn = conn
        self.writable = writable
        self._closed = False

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self._closed:
            raise ValueError("transaction is closed")
        return self._conn.execute(sql, params)

    def _require_writable(self) -> None:
        if not self.writable:
            raise PermissionError("transaction is read-only")

    def _exists(self, name: bytes) -> bool:
        return self._execute("SELECT 1 FROM buckets WHERE name = ?", (name,)).fetchone() is not None

    def bucket(self, name: KeyLike) -> Bucket | None:
        """Return the bucket called ``name``, or None when there is none."""
        raw = _to_bytes(name)
        return Bucket(self, raw) if self._exists(raw) else None

    def create_bucket(self, name: KeyLike) -> Bucket:
        """Create a bucket; raises ValueError if it already exists."""
        self._require_writable()
        raw = _to_bytes(name)
        if not raw:
            raise ValueError("bucket name required")
        if self._exists(raw):
            raise ValueError(f"bucket already exists: {raw!r}")
        self._execute("INSERT INTO buckets (name) VALUES (?)", (raw,))
        return Bucket(self, raw)

    def create_bucket_if_not_exists(self, name: KeyLike) -> Bucket:
        """Return the bucket called ``name``, creating it when needed."""
        existing = self.bucket(name)
        return existing if existing is not None else self.create_bucket(name)

    def delete_bucket(self, name: KeyLike) -> None:
        """Delete a bucket and all it holds; raises KeyError if it does not exist."""
        self._require_writable()
        raw = _to_bytes(name)
        if not self._exists(raw):
            raise KeyError(raw)
        self._execute("DELETE FROM items WHERE bucket = ?", (raw,))
        self._execute("DELETE FROM buckets WHERE name = ?", (raw,))

    def bucket_names(self) -> list[bytes]:
        """Names of all buckets in order."""
        rows = self._execute("SELECT name FROM buckets ORDER BY name").fetchall()
        return [bytes(row[0]) for row in rows]


class BucketDB:
    """A database file of buckets with read-only and read-write transactions."""

    def __init__(self, path: str | Path, timeout: float = 1.0) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = sqlite3.connect(
            str(self.path), timeout=timeout, isolation_level=None, check_same_thread=False
        )
        with self._lock:
            self._conn.executescript(_SCHEMA)

    @contextmanager
    def _transaction(self, writable: bool) -> Iterator[Tx]:
        with self._lock:
            if self._conn is None:
                raise ValueError("database is closed")
            conn = self._conn
            conn.execute("BEGIN IMMEDIATE" if writable else "BEGIN")
            tx = Tx(conn, writable)
            try:
                yield tx
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT" if writable else "ROLLBACK")
            finally:
                tx._closed = True

    def view(self) -> contextmanager:
        """A read-only transaction."""
        return self._transaction(False)

    def update(self) -> contextmanager:
        """A read-write transaction, committed on success and rolled back on error."""
        return self._transaction(True)

    def close(self) -> None:
        """Close the database file."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> BucketDB:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()