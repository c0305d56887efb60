"""Shared pytest fixtures."""

from __future__ import annotations

import logging
import os
import re
import zlib
from pathlib import Path

import pytest

# Rich reads COLUMNS when the shared Console is created; keep CLI output
# unwrapped so assertions do not depend on tmp path length.
os.environ.setdefault("COLUMNS", "200")

from localkb.db.connection import Database
from localkb.db.migrations import initialize
from localkb.rag.llm_client import BackendError

_WORD_RE = re.compile(r"[a-z0-9]+")


class FakeBackend:
    """Deterministic embedding + generation backend.

    Embeddings are hashed bag-of-words vectors over the first ``dim - 1``
    dimensions; the last dimension is reserved so :meth:`orthogonal` yields a
    vector with zero similarity to every text. ``overrides`` maps exact texts
    to fixed vectors. Every call is recorded.
    """

    def __init__(
        self,
        *,
        dim: int = 512,
        model: str = "fake/bag-of-words",
        reply: str = "Generated answer text.",
        overrides: dict[str, list[float]] | None = None,
        fail_on: set[str] | None = None,
        fail_generate: bool = False,
    ) -> None:
        self.dim = dim
        self._model = model
        self.reply = reply
        self.overrides = dict(overrides or {})
        self.fail_on = set(fail_on or ())
        self.fail_generate = fail_generate
        self.embed_calls: list[str] = []
        self.generate_calls: list[dict] = []

    @property
    def embedding_model(self) -> str:
        return self._model

    def orthogonal(self) -> list[float]:
        vec = [0.0] * self.dim
        vec[-1] = 1.0
        return vec

    def embed(self, text: str) -> list[float]:
        self.embed_calls.append(text)
        if any(marker in text for marker in self.fail_on):
            raise BackendError(f"embedding failed for {text[:20]!r}")
        if text in self.overrides:
            return list(self.overrides[text])
        vec = [0.0] * self.dim
        for word in _WORD_RE.findall(text.lower()):
            vec[zlib.crc32(word.encode()) % (self.dim - 1)] += 1.0
        return vec

    def generate(self, prompt: str, *, temperature: float = 0.0, max_tokens: int = 64, model: str | None = None) -> str:
        self.generate_calls.append(
            {"prompt": prompt, "temperature": temperature, "max_tokens": max_tokens, "model": model}
        )
        if self.fail_generate:
            raise BackendError("generation failed")
        return self.reply


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / "kb.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def project(tmp_path, monkeypatch) -> Path:
    """Empty project directory used as CWD, with no global config or env overrides."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("localkb.config._GLOBAL_CONFIG_PATH", tmp_path / "no-global.yaml")
    for var in (
        "LOCALKB_EMBEDDING_MODEL",
        "LOCALKB_GENERATION_MODEL",
        "LOCALKB_MODE",
        "LOCALKB_UPDATE_POLICY",
        "OLLAMA_HOST",
    ):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


def write_doc(root: Path, kb: str, name: str, text: str) -> Path:
    path = root / "data" / kb / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def make_backend():
    """Factory for FakeBackend with custom options."""
    return FakeBackend


@pytest.fixture
def docs(tmp_path):
    """Writer for ``<tmp_path>/data/<kb>/<name>`` documents."""

    def _write(kb: str, name: str, text: str) -> Path:
        return write_doc(tmp_path, kb, name, text)

    return _write


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """The CLI callback replaces root handlers; undo that between tests."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
