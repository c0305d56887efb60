"""Hybrid ranker: FTS5 prune, cosine re-rank, and the direct Q/A shortcut.

Per knowledge base, BM25 full-text search picks at most ``fts_candidates``
chunks (an unranked scan of the same size when nothing matches), then every
candidate is re-scored by cosine similarity against the query embedding. The
per-KB top ``top_k`` lists are merged and cut to a global ``top_k``.

A best score under ``min_similarity`` is a hard floor: the ranking comes back
empty and marked insufficient instead of feeding weak context to generation.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from localkb.db.connection import Database, db_path_for
from localkb.db.models import Chunk
from localkb.db.repository import Repository
from localkb.db.vectors import cosine_similarity
from localkb.ingest.store import EmbeddingModelMismatch, KnowledgeBaseNotFound
from localkb.rag.llm_client import Backend

logger = logging.getLogger(__name__)

INSUFFICIENT_TEXT = "Not enough info in the knowledge base to answer confidently."
NO_DATABASES_TEXT = "No knowledge bases are built yet. Run 'localkb build' first."

_TRAILING_PUNCT_RE = re.compile(r"[?!.,;:。，、！？…\s]+$")
_WHITESPACE_RE = re.compile(r"\s+")
_TOKEN_RE = re.compile(r"[^\W_]+")
_QA_RE = re.compile(r"^Q:\s*(?P<question>.*?)\s+A:\s*(?P<answer>.+)$", re.DOTALL)

_CONTEXT_PROMPT = """\
Use ONLY the provided CONTEXT. If the answer isn't present, say "I don't know based on the provided documents."

CONTEXT:
{context}

QUESTION: {question}

Answer in 1-2 short sentences:"""


def normalize_query(query: str) -> str:
    """Trim, drop trailing punctuation, and collapse whitespace."""
    text = (query or "").replace("\r\n", "\n").strip()
    text = _TRAILING_PUNCT_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text)


def tokenize(text: str) -> list[str]:
    """Lowercase alphanumeric tokens; everything else is a separator."""
    return _TOKEN_RE.findall((text or "").lower())


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class RetrievalHit:
    chunk: Chunk
    score: float
    knowledge_base: str

    @property
    def text(self) -> str:
        return self.chunk.text

    @property
    def label(self) -> str:
        return f"{self.knowledge_base}/{self.chunk.doc}"

    def as_source(self) -> dict:
        return {
            "knowledge_base": self.knowledge_base,
            "document": self.chunk.doc,
            "chunk_position": self.chunk.chunk_id,
            "score": round(self.score, 4),
        }


@dataclass
class Ranking:
    """Ranked hits for one query, best first.

    ``insufficient`` is true when nothing cleared the similarity floor; the
    hit list is then empty.
    """

    query: str
    hits: list[RetrievalHit] = field(default_factory=list)
    insufficient: bool = False
    best_score: float | None = None


@dataclass
class DirectAnswer:
    answer: str
    overlap: float
    hit: RetrievalHit


@dataclass
class RagAnswer:
    text: str
    ranking: Ranking
    direct: bool = False

    @property
    def insufficient(self) -> bool:
        return self.ranking.insufficient


# ---------------------------------------------------------------------------
# Direct Q/A shortcut
# ---------------------------------------------------------------------------


def _qa_pairs(text: str) -> list[tuple[str, str]]:
    pairs = []
    for block in text.split("\n\n"):
        m = _QA_RE.match(block.strip())
        if m:
            pairs.append((m.group("question"), m.group("answer").strip()))
    return pairs


def find_direct_answer(
    query: str, hits: Sequence[RetrievalHit], threshold: float
) -> DirectAnswer | None:
    """Return the stored answer whose question best overlaps *query*.

    Overlap is ``|question tokens found in the query| / |question tokens|``.
    The best pair across all hits wins if it reaches *threshold*; ties go to
    the higher-ranked hit.
    """
    query_tokens = set(tokenize(normalize_query(query)))
    if not query_tokens:
        return None
    best: DirectAnswer | None = None
    for hit in hits:
        for question, answer in _qa_pairs(hit.text):
            q_tokens = tokenize(normalize_query(question))
            if not q_tokens or not answer:
                continue
            overlap = sum(1 for t in q_tokens if t in query_tokens) / len(q_tokens)
            if best is None or overlap > best.overlap:
                best = DirectAnswer(answer=answer, overlap=overlap, hit=hit)
    if best is not None and best.overlap >= threshold:
        return best
    return None


# ---------------------------------------------------------------------------
# Ranker
# ---------------------------------------------------------------------------


class Ranker:
    """Rank chunks across knowledge bases and answer one-shot questions.

    Args:
        backend: Embedding + generation collaborator.
        db_dir: Directory holding ``<kb>.db`` files.
        top_k: Hits kept per KB and globally.
        fts_candidates: Full-text candidates re-ranked per KB.
        min_similarity: Floor below which the ranking is insufficient.
        max_tokens: Output budget for context-grounded answers.
    """

    def __init__(
        self,
        backend: Backend,
        db_dir: Path,
        *,
        top_k: int = 6,
        fts_candidates: int = 40,
        min_similarity: float = 0.35,
        max_tokens: int = 64,
    ) -> None:
        self._backend = backend
        self._db_dir = Path(db_dir)
        self.top_k = top_k
        self.fts_candidates = fts_candidates
        self.min_similarity = min_similarity
        self._max_tokens = max_tokens

    def rank(
        self, query: str, knowledge_bases: Sequence[str], top_k: int | None = None
    ) -> Ranking:
        """Return the global top-k hits for *query*, highest cosine first.

        Raises:
            KnowledgeBaseNotFound: If a named KB has no database.
            EmbeddingModelMismatch: If a KB was embedded with another model.
            BackendError: If the query cannot be embedded.
        """
        k = self.top_k if top_k is None else max(top_k, 0)
        normalized = normalize_query(query)
        if not normalized or not knowledge_bases:
            return Ranking(query=normalized, insufficient=True)

        query_vec = self._backend.embed(normalized)
        merged: list[RetrievalHit] = []
        for name in knowledge_bases:
            merged.extend(self._rank_one(name, normalized, query_vec)[:k])
        merged.sort(key=lambda h: h.score, reverse=True)
        hits = merged[:k]

        best = hits[0].score if hits else None
        if best is None or best < self.min_similarity:
            logger.debug("Best score %s below floor %.2f for %r", best, self.min_similarity, normalized)
            return Ranking(query=normalized, insufficient=True, best_score=best)
        return Ranking(query=normalized, hits=hits, best_score=best)

    def _rank_one(self, name: str, query: str, query_vec: list[float]) -> list[RetrievalHit]:
        db_path = db_path_for(self._db_dir, name)
        if not db_path.exists():
            raise KnowledgeBaseNotFound(f"knowledge base '{name}' has no database at {db_path}")
        with Database(db_path) as conn:
            repo = Repository(conn)
            stored_model = repo.embedding_model
            if stored_model and stored_model != self._backend.embedding_model:
                raise EmbeddingModelMismatch(
                    f"knowledge base '{name}' was embedded with '{stored_model}', "
                    f"not '{self._backend.embedding_model}'; rebuild it"
                )
            candidates = [chunk for chunk, _ in repo.search_fts(query, self.fts_candidates)]
            if not candidates:
                candidates = repo.scan_chunks(self.fts_candidates)

        hits = [
            RetrievalHit(chunk=c, score=cosine_similarity(query_vec, c.embedding), knowledge_base=name)
            for c in candidates
        ]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits

    def answer(self, question: str, knowledge_bases: Sequence[str]) -> RagAnswer:
        """One-shot retrieval answer.

        Insufficient rankings get a fixed reply, an adequate stored Q/A pair
        is returned verbatim, and anything else is generated from the hits
        at temperature 0.
        """
        if not knowledge_bases:
            return RagAnswer(text=NO_DATABASES_TEXT, ranking=Ranking(query=question, insufficient=True))

        ranking = self.rank(question, knowledge_bases)
        if ranking.insufficient:
            return RagAnswer(text=INSUFFICIENT_TEXT, ranking=ranking)

        direct = find_direct_answer(ranking.query, ranking.hits, self.min_similarity)
        if direct is not None:
            return RagAnswer(text=direct.answer, ranking=ranking, direct=True)

        context = "\n\n".join(f"[Context {i}]\n{hit.text}" for i, hit in enumerate(ranking.hits, 1))
        prompt = _CONTEXT_PROMPT.format(context=context, question=ranking.query)
        text = self._backend.generate(prompt, temperature=0.0, max_tokens=self._max_tokens)
        return RagAnswer(text=text, ranking=ranking)
