"""Engine: wires config, backend, ranker, selector and router together.

Two entry points:

* :meth:`Engine.answer_once`: stateless question answering in ``rag``,
  ``llm`` (few-shot) or ``hybrid`` mode (few-shot first, retrieval when the
  few-shot answer is not confident).
* :meth:`Engine.handle_query`: the request surface. Returns
  ``{status, answer_text, mode, sources}``; with a session id the turn goes through
  the conversation router under that session's lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from localkb.config import LocalKBConfig
from localkb.ingest.store import StoreError, available_databases
from localkb.rag.conversation import ConversationRouter, SessionStore
from localkb.rag.examples import ExampleSelector
from localkb.rag.llm_client import Backend, BackendError, LiteLLMBackend
from localkb.rag.ranker import Ranker, RetrievalHit

logger = logging.getLogger(__name__)

UNAVAILABLE_TEXT = "The answering service is temporarily unavailable. Please try again shortly."
EMPTY_QUESTION_TEXT = "Please provide a question."


@dataclass
class EngineAnswer:
    text: str
    mode: str  # rag | llm | insufficient | no_databases
    hits: list[RetrievalHit] = field(default_factory=list)
    confidence: float | None = None

    def sources(self) -> list[dict]:
        return [h.as_source() for h in self.hits]


class Engine:
    """Question answering over every built knowledge base.

    Args:
        cfg: Loaded configuration.
        backend: Embedding + generation collaborator. Defaults to a
            LiteLLMBackend built from *cfg*.
    """

    def __init__(self, cfg: LocalKBConfig, backend: Backend | None = None) -> None:
        self.cfg = cfg
        self.backend = backend or LiteLLMBackend(cfg.embedding.model, cfg.generation)
        self.data_dir = Path(cfg.paths.data_dir)
        self.db_dir = Path(cfg.paths.db_dir)
        self.ranker = Ranker(
            self.backend,
            self.db_dir,
            top_k=cfg.retrieval.top_k,
            fts_candidates=cfg.retrieval.fts_candidates,
            min_similarity=cfg.retrieval.min_similarity,
            max_tokens=cfg.generation.max_tokens,
        )
        self.selector = ExampleSelector.from_config(cfg, self.backend)
        conv = cfg.conversation
        self.router = ConversationRouter(
            self.ranker,
            self.knowledge_bases,
            backend=self.backend,
            selector=self.selector,
            top_k=conv.top_k,
            relevance_threshold=conv.relevance_threshold,
            history_window=conv.history_window,
            rewrite_terms=conv.rewrite_terms,
            paraphrase=conv.paraphrase,
            temperature=cfg.generation.fewshot_temperature,
            max_tokens=cfg.generation.fewshot_max_tokens,
        )
        self.sessions = SessionStore(
            conv.session_ttl_seconds,
            conv.max_sessions,
            max_terms=conv.max_context_terms,
        )

    @classmethod
    def from_config(cls, cfg: LocalKBConfig, backend: Backend | None = None) -> Engine:
        return cls(cfg, backend)

    def knowledge_bases(self) -> list[str]:
        """Names of the KBs that have a built database."""
        return available_databases(self.data_dir, self.db_dir)

    # ------------------------------------------------------------------
    # One-shot answering
    # ------------------------------------------------------------------

    def answer_once(self, question: str, mode: str | None = None) -> EngineAnswer:
        """Answer *question* without conversation state.

        Raises:
            ValueError: For an unknown mode.
            BackendError: If the backend fails.
        """
        mode = (mode or self.cfg.engine.mode).lower()
        if mode == "rag":
            return self._rag(question)
        if mode == "llm":
            fewshot = self.selector.answer(question)
            return EngineAnswer(text=fewshot.text, mode="llm", confidence=fewshot.confidence)
        if mode == "hybrid":
            fewshot = self.selector.answer(question)
            if fewshot.confident:
                return EngineAnswer(text=fewshot.text, mode="llm", confidence=fewshot.confidence)
            logger.debug("Few-shot not confident (%.2f); falling back to retrieval", fewshot.confidence)
            return self._rag(question)
        raise ValueError(f"unknown mode '{mode}' (expected rag, llm or hybrid)")

    def _rag(self, question: str) -> EngineAnswer:
        knowledge_bases = self.knowledge_bases()
        result = self.ranker.answer(question, knowledge_bases)
        if not knowledge_bases:
            mode = "no_databases"
        elif result.insufficient:
            mode = "insufficient"
        else:
            mode = "rag"
        return EngineAnswer(text=result.text, mode=mode, hits=result.ranking.hits)

    # ------------------------------------------------------------------
    # Request surface
    # ------------------------------------------------------------------

    def handle_query(self, question: str, session_id: str | None = None) -> dict:
        """Answer one request and return ``{status, answer_text, mode, sources}``.

        Backend and store failures become ``status="error"`` responses rather
        than exceptions.
        """
        question = (question or "").strip()
        if not question:
            return {"status": "error", "answer_text": EMPTY_QUESTION_TEXT, "mode": None, "sources": []}

        try:
            if session_id:
                with self.sessions.session(session_id) as state:
                    turn = self.router.answer_turn(state, question)
                return {
                    "status": "ok",
                    "answer_text": turn.text,
                    "mode": turn.mode.value,
                    "sources": turn.sources(),
                }
            answer = self.answer_once(question)
        except BackendError as exc:
            logger.error("Backend failure: %s", exc)
            return {"status": "error", "answer_text": UNAVAILABLE_TEXT, "mode": None, "sources": []}
        except StoreError as exc:
            logger.error("Store failure: %s", exc)
            return {"status": "error", "answer_text": str(exc), "mode": None, "sources": []}

        return {"status": "ok", "answer_text": answer.text, "mode": answer.mode, "sources": answer.sources()}
