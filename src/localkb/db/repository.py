"""Repository for all knowledge-base database operations.

Single interface for: chunks (+ the trigger-maintained FTS5 mirror), file hash
records, the id counter, and full-text search. Write methods never commit on
their own; group them in :meth:`Repository.transaction` so a file's chunks,
their index postings, and its hash record land together or not at all.
"""

from __future__ import annotations

import re
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager

from localkb.db.models import Chunk, IngestedFile
from localkb.db.vectors import decode_vector, encode_vector

_WORD_RE = re.compile(r"\w+")

_CHUNK_COLUMNS = "c.id, c.doc, c.chunk_id, c.text, c.emb"


class Repository:
    """Data access layer over one knowledge-base connection.

    The connection is owned by the caller and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with the schema initialised
                (see localkb.db.migrations.initialize).
        """
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[Repository]:
        """Commit everything written inside the block, or roll it all back."""
        with self._conn:
            yield self

    # ------------------------------------------------------------------
    # Metadata (id counter, embedding model identity)
    # ------------------------------------------------------------------

    def get_meta(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM kb_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        self._conn.execute(
            """
            INSERT INTO kb_meta (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )

    def high_water_mark(self) -> int:
        """Return the largest chunk id ever handed out (0 for a fresh KB)."""
        stored = self.get_meta("next_id")
        counter = int(stored) - 1 if stored is not None else 0
        row = self._conn.execute("SELECT COALESCE(MAX(id), 0) FROM chunks").fetchone()
        return max(counter, row[0])

    def allocate_ids(self, count: int) -> list[int]:
        """Reserve *count* fresh chunk ids, strictly above any id used before.

        Must run inside :meth:`transaction` so the counter and the rows that
        use the ids commit together.
        """
        if count < 0:
            raise ValueError("count must be >= 0")
        start = self.high_water_mark() + 1
        self.set_meta("next_id", str(start + count))
        return list(range(start, start + count))

    @property
    def embedding_model(self) -> str | None:
        return self.get_meta("embedding_model")

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def add_chunk(self, chunk: Chunk) -> int:
        """Insert a chunk with its pre-allocated id. The FTS trigger mirrors it."""
        if chunk.id is None:
            raise ValueError("chunk.id must be allocated before insert")
        self._conn.execute(
            "INSERT INTO chunks (id, doc, chunk_id, text, emb) VALUES (?, ?, ?, ?, ?)",
            (chunk.id, chunk.doc, chunk.chunk_id, chunk.text, encode_vector(chunk.embedding)),
        )
        return chunk.id

    def update_chunk_text(self, chunk_id: int, text: str) -> None:
        """Replace a chunk's text; the update trigger re-indexes it."""
        self._conn.execute("UPDATE chunks SET text = ? WHERE id = ?", (text, chunk_id))

    def get_chunk(self, chunk_id: int) -> Chunk | None:
        row = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks c WHERE c.id = ?", (chunk_id,)
        ).fetchone()
        return _row_to_chunk(row) if row else None

    def list_chunks(self, doc: str | None = None) -> list[Chunk]:
        """Return chunks ordered by id, optionally restricted to *doc*."""
        if doc is None:
            rows = self._conn.execute(f"SELECT {_CHUNK_COLUMNS} FROM chunks c ORDER BY c.id")
        else:
            rows = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks c WHERE c.doc = ? ORDER BY c.id", (doc,)
            )
        return [_row_to_chunk(r) for r in rows.fetchall()]

    def count_chunks(self, doc: str | None = None) -> int:
        if doc is None:
            return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE doc = ?", (doc,)
        ).fetchone()[0]

    def max_chunk_position(self, doc: str) -> int | None:
        """Return the highest ``chunk_id`` stored for *doc*, or None."""
        return self._conn.execute(
            "SELECT MAX(chunk_id) FROM chunks WHERE doc = ?", (doc,)
        ).fetchone()[0]

    def delete_chunks_by_doc(self, doc: str) -> int:
        """Delete every chunk of *doc*; the delete trigger drops their postings."""
        cur = self._conn.execute("DELETE FROM chunks WHERE doc = ?", (doc,))
        return cur.rowcount

    def scan_chunks(self, limit: int) -> list[Chunk]:
        """Unranked scan used when full-text search finds nothing."""
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks c ORDER BY c.id LIMIT ?", (limit,)
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    # ------------------------------------------------------------------
    # FTS5 / BM25 search
    # ------------------------------------------------------------------

    def search_fts(self, query: str, limit: int = 40) -> list[tuple[Chunk, float]]:
        """BM25 full-text search. Returns (chunk, score) sorted best-first.

        Every word of *query* is quoted and OR-joined, so punctuation and FTS5
        keywords in user input cannot break the MATCH syntax and a single
        shared token is enough to become a candidate. bm25() is negative;
        lower (more negative) is better and the raw value is returned.
        """
        tokens = _WORD_RE.findall(query.lower())
        if not tokens:
            return []
        fts_query = " OR ".join(f'"{t}"' for t in dict.fromkeys(tokens))
        rows = self._conn.execute(
            f"""
            SELECT {_CHUNK_COLUMNS}, bm25(chunks_fts) AS score
            FROM chunks_fts
            JOIN chunks c ON c.id = chunks_fts.rowid
            WHERE chunks_fts MATCH ?
            ORDER BY score
            LIMIT ?
            """,
            (fts_query, limit),
        ).fetchall()
        return [(_row_to_chunk(r), r["score"]) for r in rows]

    def index_rows(self) -> list[tuple[int, str]]:
        """Return the full-text index contents as (rowid, text), ordered by rowid."""
        rows = self._conn.execute(
            "SELECT rowid, text FROM chunks_fts ORDER BY rowid"
        ).fetchall()
        return [(r[0], r[1]) for r in rows]

    # ------------------------------------------------------------------
    # Ingested file records
    # ------------------------------------------------------------------

    def get_file(self, doc: str) -> IngestedFile | None:
        row = self._conn.execute(
            "SELECT doc, content_hash, updated_at FROM ingested_files WHERE doc = ?", (doc,)
        ).fetchone()
        return _row_to_file(row) if row else None

    def list_files(self) -> list[IngestedFile]:
        rows = self._conn.execute(
            "SELECT doc, content_hash, updated_at FROM ingested_files ORDER BY doc"
        ).fetchall()
        return [_row_to_file(r) for r in rows]

    def upsert_file(self, doc: str, content_hash: str) -> None:
        """Record *content_hash* as the latest processed version of *doc*."""
        self._conn.execute(
            """
            INSERT INTO ingested_files (doc, content_hash, updated_at)
            VALUES (?, ?, datetime('now'))
            ON CONFLICT(doc) DO UPDATE SET
                content_hash = excluded.content_hash,
                updated_at = datetime('now')
            """,
            (doc, content_hash),
        )


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        doc=row["doc"],
        chunk_id=row["chunk_id"],
        text=row["text"],
        embedding=decode_vector(row["emb"]).tolist(),
    )


def _row_to_file(row: sqlite3.Row) -> IngestedFile:
    return IngestedFile(
        doc=row["doc"],
        content_hash=row["content_hash"],
        updated_at=row["updated_at"],
    )
