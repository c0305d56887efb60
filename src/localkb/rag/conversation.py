"""Multi-turn conversation router.

Every turn runs RECEIVE → REWRITE → RETRIEVE → FILTER → answer → RECORD:

* REWRITE: follow-up turns get the carried context terms and last objective
  appended as a parenthetical hint, e.g.
  ``"what about revenue (context: Acme Corp)"``.
* RETRIEVE / FILTER: the ranker runs on the rewritten query and hits below
  ``relevance_threshold`` are dropped.
* Answer: a surviving hit answers from context (a matching stored Q/A pair
  first, else the best chunk). Otherwise generation is tried, and when that
  is unavailable or untrusted the turn ends with a fixed no-answer reply.
* RECORD: the user turn, its extracted terms and objective, and the reply are
  written to the :class:`ConversationState`. Nothing is written if the turn
  fails.

Session states live in a :class:`SessionStore`; its per-session lock keeps
turns on one session from interleaving.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import Counter, OrderedDict
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from localkb.rag.classify import Category, Classifier, FollowUpClassifier, infer_objective
from localkb.rag.examples import ExampleSelector
from localkb.rag.llm_client import Backend
from localkb.rag.ranker import Ranker, RetrievalHit, find_direct_answer

logger = logging.getLogger(__name__)

NO_ANSWER_TEXT = "I don't have that in the documents yet."

_HISTORY_PROMPT = """\
Using the conversation below, answer the latest user message as best you can, concisely.

{history}User: {text}
Assistant:"""

_PARAPHRASE_PROMPT = """\
Rewrite the following answer to be clear, concise, and friendly, preserving facts:

{answer}"""

STOPWORDS: frozenset[str] = frozenset(
    """
    the a an and or but if so of in on for to from with about regarding is are
    was were be been it that this those these at by as into over under after
    before then than just can could should would do does did have has had you
    your what which when where who why how tell please me
    """.split()
)

_CAPITALIZED_PHRASE_RE = re.compile(r"\b[A-Z][A-Za-z0-9\-_/]+(?:\s+[A-Z][A-Za-z0-9\-_/]+)*\b")
_TERM_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9\-_/]*")


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@dataclass
class Message:
    role: str  # "user" | "assistant"
    content: str


@dataclass
class ConversationState:
    """Per-session memory: history, recency-ordered context terms, objective.

    ``context_terms`` is oldest first and case-insensitively unique; adding a
    term already present moves it to the newest end, and the oldest terms are
    evicted beyond ``max_terms``.
    """

    messages: list[Message] = field(default_factory=list)
    context_terms: list[str] = field(default_factory=list)
    last_objective: str | None = None
    max_terms: int = 16

    def add_terms(self, terms: Sequence[str]) -> None:
        for term in terms:
            key = term.lower()
            self.context_terms = [t for t in self.context_terms if t.lower() != key]
            self.context_terms.append(term)
        overflow = len(self.context_terms) - self.max_terms
        if overflow > 0:
            del self.context_terms[:overflow]

    def recent_terms(self, n: int) -> list[str]:
        return self.context_terms[-n:] if n > 0 else []


def extract_context_terms(text: str, max_terms: int = 12) -> list[str]:
    """Salient terms of one turn: capitalized phrases first, then frequent words.

    Leading stopwords and question/command words are trimmed from capitalized
    phrases, so "What" or "Tell" alone never becomes a term. Frequent words
    are non-stopword tokens of three or more characters.
    """
    phrases: list[str] = []
    for match in _CAPITALIZED_PHRASE_RE.finditer(text or ""):
        words = match.group(0).split()
        while words and words[0].lower() in STOPWORDS:
            words.pop(0)
        if words:
            phrases.append(" ".join(words))

    counts = Counter(
        tok for tok in _TERM_TOKEN_RE.findall((text or "").lower()) if len(tok) >= 3 and tok not in STOPWORDS
    )
    frequent = [tok for tok, _ in counts.most_common(max_terms)]

    seen: set[str] = set()
    terms: list[str] = []
    for term in phrases + frequent:
        key = term.lower()
        if key in seen:
            continue
        seen.add(key)
        terms.append(term)
        if len(terms) >= max_terms:
            break
    return terms


def rewrite_query(text: str, state: ConversationState, max_terms: int = 8) -> str:
    """Append the carried objective and recent terms as a context hint."""
    parts = []
    if state.last_objective:
        parts.append(state.last_objective)
    parts.extend(state.recent_terms(max_terms))
    if not parts:
        return text.strip()
    return f"{text.strip()} (context: {' '.join(parts)})"


def format_history(messages: Sequence[Message], window: int) -> str:
    recent = messages[-window:] if window > 0 else []
    return "".join(
        f"{'User' if m.role == 'user' else 'Assistant'}: {m.content}\n" for m in recent
    )


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------


@dataclass
class _Session:
    state: ConversationState
    lock: threading.Lock = field(default_factory=threading.Lock)
    last_used: float = 0.0


class SessionStore:
    """Session id → ConversationState, LRU-bounded with idle expiry.

    Args:
        ttl_seconds: Idle time after which a session is forgotten.
        max_sessions: Least recently used sessions beyond this are evicted.
        max_terms: Context-term cap for new states.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_sessions: int = 1000,
        *,
        max_terms: int = 16,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self._max_terms = max_terms
        self._clock = clock
        self._sessions: OrderedDict[str, _Session] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            self._expire(self._clock())
            return session_id in self._sessions

    def _expire(self, now: float) -> None:
        expired = [
            sid
            for sid, s in self._sessions.items()
            if now - s.last_used > self.ttl_seconds and not s.lock.locked()
        ]
        for sid in expired:
            del self._sessions[sid]

    def _checkout(self, session_id: str) -> _Session:
        with self._lock:
            now = self._clock()
            self._expire(now)
            entry = self._sessions.get(session_id)
            if entry is None:
                entry = _Session(state=ConversationState(max_terms=self._max_terms))
                self._sessions[session_id] = entry
            self._sessions.move_to_end(session_id)
            entry.last_used = now
            overflow = len(self._sessions) - self.max_sessions
            if overflow > 0:
                # Sessions mid-turn hold their lock and are never evicted, so the
                # store can briefly exceed max_sessions.
                idle = [sid for sid, s in self._sessions.items() if sid != session_id and not s.lock.locked()]
                for evicted in idle[:overflow]:
                    del self._sessions[evicted]
                    logger.debug("Evicted session %s", evicted)
            return entry

    @contextmanager
    def session(self, session_id: str) -> Iterator[ConversationState]:
        """Hold *session_id*'s lock and yield its state (created on first use)."""
        entry = self._checkout(session_id)
        with entry.lock:
            yield entry.state
        with self._lock:
            entry.last_used = self._clock()

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class AnswerMode(str, Enum):
    CONTEXT = "context"
    GENERATION = "generation"
    NO_ANSWER = "no_answer"


@dataclass
class TurnResult:
    text: str
    mode: AnswerMode
    query: str
    hits: list[RetrievalHit] = field(default_factory=list)

    def sources(self) -> list[dict]:
        return [h.as_source() for h in self.hits]


class ConversationRouter:
    """Decide, per turn, between context, generation, and no answer.

    Args:
        ranker: Retrieval over built knowledge bases.
        knowledge_bases: Callable returning the KB names to search.
        backend: Generation collaborator for the history fallback and
            paraphrasing; None disables both.
        selector: Few-shot selector. When it has examples a confident answer
            is used and a distrusted one ends in no-answer; when no example is
            close enough the history fallback runs.
        follow_up: Turn classifier used to decide on rewriting.
    """

    def __init__(
        self,
        ranker: Ranker,
        knowledge_bases: Callable[[], Sequence[str]],
        *,
        backend: Backend | None = None,
        selector: ExampleSelector | None = None,
        follow_up: Classifier | None = None,
        top_k: int = 5,
        relevance_threshold: float = 0.38,
        history_window: int = 6,
        rewrite_terms: int = 8,
        paraphrase: bool = False,
        temperature: float = 0.1,
        max_tokens: int = 128,
    ) -> None:
        self._ranker = ranker
        self._knowledge_bases = knowledge_bases
        self._backend = backend
        self._selector = selector
        self._follow_up = follow_up or FollowUpClassifier()
        self.top_k = top_k
        self.relevance_threshold = relevance_threshold
        self.history_window = history_window
        self.rewrite_terms = rewrite_terms
        self.paraphrase = paraphrase
        self._temperature = temperature
        self._max_tokens = max_tokens

    def answer_turn(self, state: ConversationState, text: str) -> TurnResult:
        """Run one turn against *state* and record it.

        Raises:
            BackendError: If embedding or generation fails. *state* is left
                unchanged.
        """
        text = (text or "").strip()

        # REWRITE uses only what earlier turns carried.
        if self._follow_up.classify(text) is Category.FOLLOW_UP:
            query = rewrite_query(text, state, self.rewrite_terms)
        else:
            query = text
        logger.debug("Turn %r → query %r", text, query)

        # RETRIEVE + FILTER
        knowledge_bases = list(self._knowledge_bases())
        hits: list[RetrievalHit] = []
        if knowledge_bases:
            ranking = self._ranker.rank(query, knowledge_bases, self.top_k)
            hits = [h for h in ranking.hits if h.score >= self.relevance_threshold]

        if hits:
            result = self._answer_from_context(query, hits)
        else:
            result = self._answer_from_generation(state, text, query)

        if self.paraphrase and self._backend is not None and result.mode is not AnswerMode.NO_ANSWER:
            result.text = self._backend.generate(
                _PARAPHRASE_PROMPT.format(answer=result.text),
                temperature=0.3,
                max_tokens=self._max_tokens,
            )

        # RECORD
        state.add_terms(extract_context_terms(text))
        state.last_objective = infer_objective(text, state.last_objective)
        state.messages.append(Message(role="user", content=text))
        state.messages.append(Message(role="assistant", content=result.text))
        return result

    def _answer_from_context(self, query: str, hits: list[RetrievalHit]) -> TurnResult:
        direct = find_direct_answer(query, hits, self.relevance_threshold)
        hit = direct.hit if direct else hits[0]
        body = direct.answer if direct else hit.text.strip()
        return TurnResult(
            text=f"{body}\n\nSource: {hit.label}",
            mode=AnswerMode.CONTEXT,
            query=query,
            hits=hits,
        )

    def _answer_from_generation(self, state: ConversationState, text: str, query: str) -> TurnResult:
        if self._selector is not None and self._selector.configured:
            fewshot = self._selector.answer(text)
            if fewshot.confident:
                return TurnResult(text=fewshot.text, mode=AnswerMode.GENERATION, query=query)
            if fewshot.text:
                logger.debug("Few-shot answer distrusted (confidence %.2f)", fewshot.confidence)
                return TurnResult(text=NO_ANSWER_TEXT, mode=AnswerMode.NO_ANSWER, query=query)
            # Nothing was generated from the examples; answer from the history.

        if self._backend is not None:
            history = format_history(state.messages, self.history_window)
            prompt = _HISTORY_PROMPT.format(history=f"{history}\n" if history else "", text=text)
            generated = self._backend.generate(
                prompt, temperature=self._temperature, max_tokens=self._max_tokens
            )
            if generated:
                return TurnResult(text=generated, mode=AnswerMode.GENERATION, query=query)

        return TurnResult(text=NO_ANSWER_TEXT, mode=AnswerMode.NO_ANSWER, query=query)
