"""Knowledge-base store: full rebuild and hash-based incremental update.

One SQLite file per knowledge base (``<db_dir>/<kb>.db``) holds the chunks,
their embeddings, the trigger-maintained full-text mirror, and one content
hash per source document.

Rebuild writes to ``<kb>.db.tmp`` and swaps it in with :func:`os.replace`
once every file is written, so readers only ever see a complete KB. The id
counter is seeded from the previous file's high-water mark, so ids stay
strictly increasing across rebuilds.

Incremental update commits one transaction per file. A backend failure on one
file is recorded in the report and the batch continues; files already
committed are untouched.
"""

from __future__ import annotations

import hashlib
import logging
import os
import sqlite3
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from localkb.config import LocalKBConfig
from localkb.db.connection import Database, db_path_for
from localkb.db.migrations import initialize
from localkb.db.models import Chunk
from localkb.db.repository import Repository
from localkb.ingest.readers import SUPPORTED_SUFFIXES, read_document
from localkb.ingest.segmenter import segment
from localkb.rag.llm_client import Backend, BackendError

logger = logging.getLogger(__name__)

_IGNORED_NAMES: frozenset[str] = frozenset([".DS_Store", "Thumbs.db", ".gitkeep", ".gitignore"])
_SIDECAR_SUFFIXES = ("-wal", "-shm", "-journal")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class StoreError(RuntimeError):
    """Base class for knowledge-base store failures."""


class EmbeddingModelMismatch(StoreError):
    """The KB was embedded with a different model; a rebuild is required."""


class KnowledgeBaseNotFound(StoreError):
    """No database exists for the requested knowledge base."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class UpdatePolicy(str, Enum):
    """What happens to a changed document's previous chunks."""

    APPEND = "append"  # keep old chunks; new ones get higher ids and positions
    REPLACE = "replace"  # delete old chunks first


@dataclass
class BuildReport:
    """Outcome of one rebuild or incremental update."""

    knowledge_base: str
    processed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    empty: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    chunks_added: int = 0
    chunks_removed: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class _PreparedFile:
    path: Path
    doc: str
    content_hash: str
    texts: list[str]
    embeddings: list[list[float]]


# ---------------------------------------------------------------------------
# Discovery helpers
# ---------------------------------------------------------------------------


def content_hash(path: Path) -> str:
    """Return the SHA-256 hex digest of *path*'s raw bytes."""
    h = hashlib.sha256()
    with path.open("rb") as fh:
        for block in iter(lambda: fh.read(65536), b""):
            h.update(block)
    return h.hexdigest()


def list_source_files(kb_dir: Path) -> list[Path]:
    """Return every supported document under *kb_dir*, recursively, sorted."""
    if not kb_dir.is_dir():
        return []
    return sorted(
        p
        for p in kb_dir.rglob("*")
        if p.is_file() and p.name not in _IGNORED_NAMES and p.suffix.lower() in SUPPORTED_SUFFIXES
    )


def discover_knowledge_bases(data_dir: Path) -> list[str]:
    """Return the names of the KB sub-directories of *data_dir*, sorted."""
    if not data_dir.is_dir():
        return []
    return sorted(p.name for p in data_dir.iterdir() if p.is_dir() and not p.name.startswith("."))


def available_databases(data_dir: Path, db_dir: Path) -> list[str]:
    """Return KB names that have both a data directory and a built database."""
    return [name for name in discover_knowledge_bases(data_dir) if db_path_for(db_dir, name).exists()]


def _remove_db_files(path: Path, *, sidecars_only: bool = False) -> None:
    targets = [Path(f"{path}{suffix}") for suffix in _SIDECAR_SUFFIXES]
    if not sidecars_only:
        targets.append(path)
    for target in targets:
        target.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class KnowledgeStore:
    """Build and update the database of one knowledge base.

    Args:
        name: Knowledge-base name (the data sub-directory name).
        kb_dir: Directory holding the KB's source documents.
        db_path: Path of the KB's SQLite file.
        backend: Embedding collaborator.
        chunk_size: Maximum chunk length in characters.
        overlap: Characters carried over between consecutive chunks.
        update_policy: Append (default) or replace changed documents.
        max_workers: Files embedded concurrently during an update. Writes stay
            on the calling thread.
    """

    def __init__(
        self,
        name: str,
        *,
        kb_dir: Path,
        db_path: Path,
        backend: Backend,
        chunk_size: int = 1100,
        overlap: int = 120,
        update_policy: UpdatePolicy | str = UpdatePolicy.APPEND,
        max_workers: int = 1,
    ) -> None:
        self.name = name
        self.kb_dir = Path(kb_dir)
        self.db_path = Path(db_path)
        self._backend = backend
        self._chunk_size = chunk_size
        self._overlap = overlap
        self.update_policy = UpdatePolicy(update_policy)
        self._max_workers = max(1, max_workers)

    @classmethod
    def from_config(cls, name: str, cfg: LocalKBConfig, backend: Backend) -> KnowledgeStore:
        return cls(
            name,
            kb_dir=Path(cfg.paths.data_dir) / name,
            db_path=db_path_for(cfg.paths.db_dir, name),
            backend=backend,
            chunk_size=cfg.chunking.chunk_size,
            overlap=cfg.chunking.overlap,
            update_policy=cfg.store.update_policy,
            max_workers=cfg.store.max_workers,
        )

    @property
    def exists(self) -> bool:
        return self.db_path.exists()

    @property
    def temp_path(self) -> Path:
        return self.db_path.with_name(f"{self.db_path.name}.tmp")

    def doc_id(self, path: Path) -> str:
        """Document identifier: the path relative to the KB directory, posix style."""
        try:
            return Path(path).resolve().relative_to(self.kb_dir.resolve()).as_posix()
        except ValueError:
            return Path(path).name

    def open(self) -> Database:
        """Return a Database for reading. Raises KnowledgeBaseNotFound if unbuilt."""
        if not self.exists:
            raise KnowledgeBaseNotFound(f"knowledge base '{self.name}' has no database at {self.db_path}")
        return Database(self.db_path)

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    def rebuild(
        self,
        files: Iterable[Path] | None = None,
        *,
        on_file: Callable[[str], None] | None = None,
    ) -> BuildReport:
        """Recreate the KB from scratch and atomically replace the old database.

        Files that cannot be read are logged, listed in ``report.failed`` and
        left out. Any other failure, including a backend error on a single
        file, aborts the whole rebuild: the temp file is deleted, the previous
        database is left in place, and the error is re-raised.
        """
        paths = list(files) if files is not None else list_source_files(self.kb_dir)
        report = BuildReport(self.name)
        tmp = self.temp_path
        _remove_db_files(tmp)
        seed = self._previous_high_water_mark()

        try:
            with Database(tmp, wal=False) as conn:
                initialize(conn)
                repo = Repository(conn)
                with repo.transaction():
                    repo.set_meta("next_id", str(seed + 1))
                    repo.set_meta("embedding_model", self._backend.embedding_model)
                for path in paths:
                    try:
                        prepared = self._prepare(path, content_hash(path))
                    except OSError as exc:
                        self._skip(report, path, exc)
                        continue
                    with repo.transaction():
                        self._write(repo, prepared, UpdatePolicy.REPLACE, report)
                    if on_file:
                        on_file(prepared.doc)
        except BaseException:
            _remove_db_files(tmp)
            raise

        _remove_db_files(self.db_path, sidecars_only=True)
        os.replace(tmp, self.db_path)
        logger.info(
            "Rebuilt %s: %d file(s), %d chunk(s)", self.name, len(report.processed), report.chunks_added
        )
        return report

    def _previous_high_water_mark(self) -> int:
        if not self.exists:
            return 0
        try:
            with Database(self.db_path) as conn:
                initialize(conn)
                return Repository(conn).high_water_mark()
        except sqlite3.DatabaseError as exc:
            logger.warning("Existing database %s is unreadable (%s); ids restart at 1", self.db_path, exc)
            return 0

    # ------------------------------------------------------------------
    # Incremental update
    # ------------------------------------------------------------------

    def incremental_update(
        self,
        files: Iterable[Path] | None = None,
        *,
        on_file: Callable[[str], None] | None = None,
    ) -> BuildReport:
        """Re-process only documents whose content hash changed.

        Creates the database when it does not exist yet.

        Raises:
            EmbeddingModelMismatch: If the KB was embedded with another model.
        """
        paths = list(files) if files is not None else list_source_files(self.kb_dir)
        report = BuildReport(self.name)

        with Database(self.db_path) as conn:
            initialize(conn)
            repo = Repository(conn)
            self._check_embedding_model(repo)

            pending: list[tuple[Path, str]] = []
            for path in paths:
                doc = self.doc_id(path)
                try:
                    digest = content_hash(path)
                except OSError as exc:
                    self._skip(report, path, exc)
                    continue
                record = repo.get_file(doc)
                if record is not None and record.content_hash == digest:
                    report.unchanged.append(doc)
                    continue
                pending.append((path, digest))

            for path, result in self._prepare_all(pending):
                doc = self.doc_id(path)
                if isinstance(result, (BackendError, OSError)):
                    self._skip(report, path, result)
                    continue
                with repo.transaction():
                    self._write(repo, result, self.update_policy, report)
                if on_file:
                    on_file(doc)

        logger.info(
            "Updated %s: %d changed, %d unchanged, %d failed",
            self.name,
            len(report.processed),
            len(report.unchanged),
            len(report.failed),
        )
        return report

    def _check_embedding_model(self, repo: Repository) -> None:
        stored = repo.embedding_model
        current = self._backend.embedding_model
        if stored is None:
            with repo.transaction():
                repo.set_meta("embedding_model", current)
        elif stored != current:
            raise EmbeddingModelMismatch(
                f"knowledge base '{self.name}' was embedded with '{stored}', "
                f"not '{current}'; rebuild it"
            )

    def _prepare_all(
        self, pending: list[tuple[Path, str]]
    ) -> Iterable[tuple[Path, _PreparedFile | BackendError | OSError]]:
        """Yield prepared files in input order, embedding up to max_workers at once."""
        if self._max_workers == 1 or len(pending) < 2:
            for path, digest in pending:
                try:
                    yield path, self._prepare(path, digest)
                except (BackendError, OSError) as exc:
                    yield path, exc
            return

        with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            futures: list[tuple[Path, Future[_PreparedFile]]] = [
                (path, executor.submit(self._prepare, path, digest)) for path, digest in pending
            ]
            for path, future in futures:
                try:
                    yield path, future.result()
                except (BackendError, OSError) as exc:
                    yield path, exc

    def _skip(self, report: BuildReport, path: Path, exc: Exception) -> None:
        doc = self.doc_id(path)
        logger.warning("Skipping %s: %s", doc, exc)
        report.failed[doc] = str(exc) or type(exc).__name__

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _prepare(self, path: Path, digest: str) -> _PreparedFile:
        """Read, segment and embed one file. No database access."""
        doc = self.doc_id(path)
        texts = segment(read_document(path), self._chunk_size, self._overlap)
        if not texts:
            logger.info("No text extracted from %s", doc)
        embeddings = [self._backend.embed(text) for text in texts]
        return _PreparedFile(path=path, doc=doc, content_hash=digest, texts=texts, embeddings=embeddings)

    @staticmethod
    def _write(
        repo: Repository, prepared: _PreparedFile, policy: UpdatePolicy, report: BuildReport
    ) -> None:
        """Persist one prepared file. Caller owns the transaction."""
        doc = prepared.doc
        if policy is UpdatePolicy.REPLACE:
            report.chunks_removed += repo.delete_chunks_by_doc(doc)
            start = 0
        else:
            top = repo.max_chunk_position(doc)
            start = 0 if top is None else top + 1

        ids = repo.allocate_ids(len(prepared.texts))
        for offset, (chunk_id, text, vector) in enumerate(zip(ids, prepared.texts, prepared.embeddings)):
            repo.add_chunk(
                Chunk(doc=doc, chunk_id=start + offset, text=text, embedding=vector, id=chunk_id)
            )
        repo.upsert_file(doc, prepared.content_hash)

        report.chunks_added += len(ids)
        if prepared.texts:
            report.processed.append(doc)
        else:
            report.empty.append(doc)
