"""Few-shot example selector.

Examples live in ``<examples_dir>/<kb>/**/*.jsonl``, one JSON object per line.
Each record is normalized at load time onto :class:`FewShotExample`:

  input   ← ``input`` | ``instruction`` | ``prompt`` | ``question``
  output  ← ``output`` | ``response`` | ``completion`` | ``answer``

Records with no recognizable input are skipped with a warning, as are lines
that are not valid JSON objects.

Embeddings are cached per KB in ``<cache_dir>/<kb>.json`` as
``{model, fingerprint, examples, embeddings}``. The cache is rebuilt when the
embedding model or any example file changes.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from localkb.config import LocalKBConfig
from localkb.db.vectors import cosine_similarity
from localkb.rag.classify import Category, Classifier, HedgeDetector, says_dont_know
from localkb.rag.llm_client import Backend
from localkb.rag.ranker import tokenize

logger = logging.getLogger(__name__)

INPUT_ALIASES: tuple[str, ...] = ("input", "instruction", "prompt", "question")
OUTPUT_ALIASES: tuple[str, ...] = ("output", "response", "completion", "answer")

_IGNORED_NAMES = frozenset([".DS_Store", "Thumbs.db", ".gitkeep", ".gitignore"])
_HEDGED_CONFIDENCE_CAP = 0.25
_GUARDED_CONFIDENCE = 0.25

_GUARDED_PROMPT = """\
You are a careful assistant.
If the answer is not clearly implied by your prior knowledge, reply exactly: "I don't know".
User: {query}
Assistant:"""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class FewShotExample:
    input_text: str
    output_text: str
    embedding: list[float] = field(default_factory=list, repr=False)


@dataclass
class ExampleIndex:
    knowledge_base: str
    model: str
    fingerprint: str
    examples: list[FewShotExample] = field(default_factory=list)


@dataclass
class Selection:
    """Selected examples, best first per KB, with a lexical-overlap confidence."""

    examples: list[FewShotExample] = field(default_factory=list)
    confidence: float = 0.0


@dataclass
class FewShotAnswer:
    text: str
    confidence: float
    hedged: bool = False
    confident: bool = False


def _first_field(record: dict[str, Any], aliases: tuple[str, ...]) -> str:
    for key in aliases:
        value = record.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return ""


def normalize_record(record: dict[str, Any]) -> FewShotExample | None:
    """Map a raw example record onto the canonical shape, or None if it has no input."""
    input_text = _first_field(record, INPUT_ALIASES)
    if not input_text:
        return None
    return FewShotExample(input_text=input_text, output_text=_first_field(record, OUTPUT_ALIASES))


def overlap_ratio(query: str, text: str) -> float:
    """Share of *text*'s tokens that also appear in *query*."""
    query_tokens = set(tokenize(query))
    tokens = tokenize(text)
    if not tokens:
        return 0.0
    return sum(1 for t in tokens if t in query_tokens) / len(tokens)


def build_fewshot_prompt(query: str, examples: list[FewShotExample]) -> str:
    shots = "\n\n".join(
        f"### Example {i}\nUser: {ex.input_text}\nAssistant: {ex.output_text}"
        for i, ex in enumerate(examples, 1)
    )
    return f"{shots}\n\n### Task\nUser: {query}\nAssistant:"


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def example_files(kb_dir: Path) -> list[Path]:
    if not kb_dir.is_dir():
        return []
    return sorted(p for p in kb_dir.rglob("*.jsonl") if p.is_file() and p.name not in _IGNORED_NAMES)


def fingerprint_files(files: list[Path], root: Path) -> str:
    """SHA-256 over every file's relative path and bytes, in sorted order."""
    h = hashlib.sha256()
    for path in files:
        h.update(path.relative_to(root).as_posix().encode())
        h.update(b"\0")
        h.update(path.read_bytes())
        h.update(b"\0")
    return h.hexdigest()


def load_examples(files: list[Path]) -> list[FewShotExample]:
    """Parse and normalize every record in *files*, skipping bad lines."""
    examples: list[FewShotExample] = []
    for path in files:
        with path.open(encoding="utf-8", errors="replace") as fh:
            for lineno, line in enumerate(fh, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as exc:
                    logger.warning("%s:%d: invalid JSON skipped (%s)", path, lineno, exc.msg)
                    continue
                if not isinstance(record, dict):
                    logger.warning("%s:%d: expected a JSON object, skipped", path, lineno)
                    continue
                example = normalize_record(record)
                if example is None:
                    logger.warning("%s:%d: no input field (%s), skipped", path, lineno, "|".join(INPUT_ALIASES))
                    continue
                examples.append(example)
    return examples


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        os.replace(tmp_path, path)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# Selector
# ---------------------------------------------------------------------------


class ExampleSelector:
    """Pick few-shot examples per knowledge base and answer from them.

    Args:
        backend: Embedding + generation collaborator.
        examples_dir: Root holding one sub-directory of ``*.jsonl`` per KB.
        cache_dir: Where per-KB embedding caches are written.
        per_kb_k: Examples taken from each KB.
        confidence_threshold: Below this overlap confidence, generation is skipped.
        model: Generation model for few-shot answers (backend default if None).
        temperature: Sampling temperature for few-shot answers.
        max_tokens: Output budget for few-shot answers.
        hedge_detector: Classifier that flags untrustworthy generated text.
    """

    def __init__(
        self,
        backend: Backend,
        examples_dir: Path,
        cache_dir: Path,
        *,
        per_kb_k: int = 6,
        confidence_threshold: float = 0.35,
        model: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 128,
        hedge_detector: Classifier | None = None,
    ) -> None:
        self._backend = backend
        self.examples_dir = Path(examples_dir)
        self.cache_dir = Path(cache_dir)
        self.per_kb_k = per_kb_k
        self.confidence_threshold = confidence_threshold
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._hedge = hedge_detector or HedgeDetector()
        self._indices: dict[str, ExampleIndex] = {}

    @classmethod
    def from_config(cls, cfg: LocalKBConfig, backend: Backend) -> ExampleSelector:
        return cls(
            backend,
            Path(cfg.paths.examples_dir),
            Path(cfg.paths.cache_dir),
            per_kb_k=cfg.examples.per_kb_k,
            confidence_threshold=cfg.examples.confidence_threshold,
            model=cfg.generation.fewshot_model,
            temperature=cfg.generation.fewshot_temperature,
            max_tokens=cfg.generation.fewshot_max_tokens,
        )

    def knowledge_bases(self) -> list[str]:
        if not self.examples_dir.is_dir():
            return []
        return sorted(
            p.name
            for p in self.examples_dir.iterdir()
            if p.is_dir() and p.name not in _IGNORED_NAMES and not p.name.startswith(".")
        )

    def cache_path(self, kb: str) -> Path:
        return self.cache_dir / f"{kb}.json"

    # ------------------------------------------------------------------
    # Index cache
    # ------------------------------------------------------------------

    def load(self) -> dict[str, ExampleIndex]:
        """Return the index of every KB that has examples.

        Each call re-fingerprints the example files, so edits are picked up
        without a restart; unchanged indices are served from memory.
        """
        kbs = self.knowledge_bases()
        indices: dict[str, ExampleIndex] = {}
        for kb in kbs:
            index = self.ensure_index(kb)
            if index.examples:
                indices[kb] = index
        for kb in set(self._indices) - set(kbs):
            del self._indices[kb]
        return indices

    def ensure_index(self, kb: str) -> ExampleIndex:
        """Return *kb*'s index from memory or cache, rebuilding it when stale."""
        kb_dir = self.examples_dir / kb
        files = example_files(kb_dir)
        fingerprint = fingerprint_files(files, kb_dir)
        model = self._backend.embedding_model

        current = self._indices.get(kb)
        if current is not None and current.model == model and current.fingerprint == fingerprint:
            return current

        cached = self._read_cache(kb)
        if cached is not None and cached.model == model and cached.fingerprint == fingerprint:
            self._indices[kb] = cached
            return cached

        logger.info("Indexing few-shot examples for %s", kb)
        examples = load_examples(files)
        for example in examples:
            example.embedding = self._backend.embed(example.input_text)
        index = ExampleIndex(knowledge_base=kb, model=model, fingerprint=fingerprint, examples=examples)
        _write_json_atomic(
            self.cache_path(kb),
            {
                "model": model,
                "fingerprint": fingerprint,
                "examples": [{"input": ex.input_text, "output": ex.output_text} for ex in examples],
                "embeddings": [ex.embedding for ex in examples],
            },
        )
        self._indices[kb] = index
        return index

    def _read_cache(self, kb: str) -> ExampleIndex | None:
        path = self.cache_path(kb)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            records = data["examples"]
            embeddings = data["embeddings"]
            if len(records) != len(embeddings):
                raise ValueError("examples/embeddings length mismatch")
            examples = [
                FewShotExample(input_text=r["input"], output_text=r["output"], embedding=list(e))
                for r, e in zip(records, embeddings)
            ]
            return ExampleIndex(
                knowledge_base=kb, model=data["model"], fingerprint=data["fingerprint"], examples=examples
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable example cache %s: %s", path, exc)
            return None

    # ------------------------------------------------------------------
    # Selection + answering
    # ------------------------------------------------------------------

    @property
    def configured(self) -> bool:
        """True when at least one KB has examples."""
        return bool(self.load())

    def select(self, query: str, per_kb_k: int | None = None) -> Selection:
        """Top examples per KB by cosine similarity, concatenated in KB order."""
        k = self.per_kb_k if per_kb_k is None else max(per_kb_k, 0)
        indices = self.load()
        if not indices:
            return Selection()
        query_vec = self._backend.embed(query)
        picked: list[FewShotExample] = []
        for index in indices.values():
            ranked = sorted(
                index.examples,
                key=lambda ex: cosine_similarity(query_vec, ex.embedding),
                reverse=True,
            )
            picked.extend(ranked[:k])
        confidence = max((overlap_ratio(query, ex.input_text) for ex in picked), default=0.0)
        return Selection(examples=picked, confidence=confidence)

    def answer(self, query: str) -> FewShotAnswer:
        """Answer *query* from selected examples.

        Confidence below the threshold skips generation and returns empty
        text. Hedged output keeps its text but caps confidence at 0.25.
        """
        query = query.strip()
        if not self.load():
            text = self._backend.generate(
                _GUARDED_PROMPT.format(query=query),
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                model=self._model,
            )
            confidence = 0.0 if says_dont_know(text) else _GUARDED_CONFIDENCE
            return self._finish(text, confidence)

        selection = self.select(query)
        if not selection.examples or selection.confidence < self.confidence_threshold:
            logger.debug("Few-shot confidence %.2f below threshold", selection.confidence)
            return FewShotAnswer(text="", confidence=selection.confidence)

        text = self._backend.generate(
            build_fewshot_prompt(query, selection.examples),
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            model=self._model,
        )
        return self._finish(text, selection.confidence)

    def _finish(self, text: str, confidence: float) -> FewShotAnswer:
        hedged = self._hedge.classify(text) is Category.HEDGED
        if hedged:
            confidence = min(confidence, _HEDGED_CONFIDENCE_CAP)
        confident = bool(text) and not hedged and confidence >= self.confidence_threshold
        return FewShotAnswer(text=text, confidence=confidence, hedged=hedged, confident=confident)
