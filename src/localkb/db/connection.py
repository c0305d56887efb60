"""SQLite connection layer for per-knowledge-base databases.

Each knowledge base lives in its own file, ``<db_dir>/<kb>.db``. Live files
use write-ahead logging so readers never block on an update; build files are
written with a rollback journal and renamed into place when complete.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

DB_SUFFIX = ".db"
_BUSY_TIMEOUT_MS = 5000


def db_path_for(db_dir: Path | str, name: str) -> Path:
    """Return the database file of knowledge base *name* under *db_dir*."""
    return Path(db_dir) / f"{name}{DB_SUFFIX}"


class Database:
    """One SQLite file holding a single knowledge base."""

    def __init__(self, db_path: Path | str, *, wal: bool = True) -> None:
        """Store the path; the file is created on first connect.

        Args:
            db_path: Path to the SQLite database file.
            wal: Use write-ahead logging. Disabled for temporary build files
                that are renamed into place once complete.
        """
        self.db_path = Path(db_path)
        self.wal = wal
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Open a connection with row access by column name.

        Raises:
            sqlite3.DatabaseError: If the file exists but is not a database.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {_BUSY_TIMEOUT_MS}")
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute(f"PRAGMA journal_mode = {'WAL' if self.wal else 'DELETE'}")
        except sqlite3.DatabaseError:
            conn.close()
            raise
        return conn

    def __enter__(self) -> sqlite3.Connection:
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
