"""Tests for conversation state, session storage, and the turn router."""

from __future__ import annotations

import threading

import pytest

from localkb.ingest.store import KnowledgeStore
from localkb.rag.conversation import (
    NO_ANSWER_TEXT,
    AnswerMode,
    ConversationRouter,
    ConversationState,
    Message,
    SessionStore,
    extract_context_terms,
    format_history,
    rewrite_query,
)
from localkb.rag.examples import FewShotAnswer
from localkb.rag.llm_client import BackendError
from localkb.rag.ranker import Ranker

REVENUE_DOC = "Acme Corp revenue was 10 million."
OPENING_TURN = "Tell me about Acme Corp history and founding details please"


class StubSelector:
    def __init__(self, answer: FewShotAnswer, configured: bool = True) -> None:
        self._answer = answer
        self.configured = configured
        self.queries: list[str] = []

    def answer(self, query: str) -> FewShotAnswer:
        self.queries.append(query)
        return self._answer


@pytest.fixture
def kb(tmp_path, backend, docs):
    docs("acme", "revenue.txt", REVENUE_DOC)
    KnowledgeStore(
        "acme", kb_dir=tmp_path / "data" / "acme", db_path=tmp_path / "db" / "acme.db", backend=backend
    ).rebuild()
    backend.embed_calls.clear()
    return Ranker(backend, tmp_path / "db")


def _router(ranker, backend, **kwargs) -> ConversationRouter:
    return ConversationRouter(ranker, lambda: ["acme"], backend=backend, **kwargs)


# ------------------------------------------------------------------
# Context terms + rewriting
# ------------------------------------------------------------------


def test_extract_context_terms_phrases_then_words():
    terms = extract_context_terms("What is the revenue of Acme Corp in Berlin?")
    assert terms == ["Acme Corp", "Berlin", "revenue", "acme", "corp"]


def test_extract_context_terms_trims_question_words():
    assert "What" not in extract_context_terms("What happened?")
    assert extract_context_terms("Tell me more") == ["more"]


def test_extract_context_terms_cap():
    assert len(extract_context_terms("alpha beta gamma delta epsilon", max_terms=3)) == 3


def test_add_terms_recency_and_cap():
    state = ConversationState(max_terms=3)
    state.add_terms(["a", "b", "c"])
    state.add_terms(["A", "d"])
    assert state.context_terms == ["c", "A", "d"]
    assert state.recent_terms(2) == ["A", "d"]
    assert state.recent_terms(0) == []


def test_rewrite_query_appends_context():
    state = ConversationState(context_terms=["Acme Corp"], last_objective="explain revenue")
    assert rewrite_query("what about 2021", state) == "what about 2021 (context: explain revenue Acme Corp)"


def test_rewrite_query_without_context_is_unchanged():
    assert rewrite_query("  what about revenue ", ConversationState()) == "what about revenue"


def test_format_history_window():
    messages = [Message("user", "one"), Message("assistant", "two"), Message("user", "three")]
    assert format_history(messages, 2) == "Assistant: two\nUser: three\n"
    assert format_history(messages, 0) == ""


# ------------------------------------------------------------------
# Session store
# ------------------------------------------------------------------


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_session_state_persists_per_id():
    store = SessionStore()
    with store.session("s1") as state:
        state.context_terms.append("Acme")
    with store.session("s1") as state:
        assert state.context_terms == ["Acme"]
    with store.session("s2") as other:
        assert other.context_terms == []
    assert len(store) == 2


def test_session_expires_after_ttl():
    clock = FakeClock()
    store = SessionStore(ttl_seconds=10, clock=clock)
    with store.session("s1") as state:
        state.last_objective = "explain pricing"
    clock.now = 11
    assert "s1" not in store
    with store.session("s1") as state:
        assert state.last_objective is None


def test_least_recently_used_session_evicted():
    store = SessionStore(max_sessions=2)
    for sid in ("a", "b"):
        with store.session(sid):
            pass
    with store.session("a"):
        pass
    with store.session("c"):
        pass
    assert "a" in store
    assert "b" not in store
    assert "c" in store


def test_session_in_use_is_not_evicted():
    store = SessionStore(max_sessions=1)
    with store.session("a") as state:
        state.last_objective = "explain pricing"
        for sid in ("b", "c"):
            with store.session(sid):
                pass
        assert "a" in store
        assert "b" not in store
        assert "c" in store
    with store.session("a") as state:
        assert state.last_objective == "explain pricing"


def test_session_in_use_does_not_expire():
    clock = FakeClock()
    store = SessionStore(ttl_seconds=10, clock=clock)
    with store.session("s1"):
        clock.now = 11
        assert "s1" in store


def test_session_serializes_turns():
    store = SessionStore()
    entered = threading.Event()
    release = threading.Event()
    order: list[str] = []

    def first():
        with store.session("s"):
            order.append("first-start")
            entered.set()
            release.wait(timeout=5)
            order.append("first-end")

    def second():
        with store.session("s"):
            order.append("second")

    t1 = threading.Thread(target=first)
    t1.start()
    entered.wait(timeout=5)
    t2 = threading.Thread(target=second)
    t2.start()
    release.set()
    t1.join(timeout=5)
    t2.join(timeout=5)
    assert order == ["first-start", "first-end", "second"]


def test_discard_forgets_session():
    store = SessionStore()
    with store.session("s"):
        pass
    store.discard("s")
    assert "s" not in store


# ------------------------------------------------------------------
# Router
# ------------------------------------------------------------------


def test_follow_up_is_rewritten_with_prior_terms(kb, backend):
    router = _router(kb, backend)
    state = ConversationState()

    first = router.answer_turn(state, OPENING_TURN)
    assert first.mode is AnswerMode.GENERATION

    second = router.answer_turn(state, "what about revenue")
    assert "Acme" in second.query
    assert second.query.startswith("what about revenue (context: ")
    assert second.mode is AnswerMode.CONTEXT
    assert second.text == f"{REVENUE_DOC}\n\nSource: acme/revenue.txt"
    assert second.sources()[0]["document"] == "revenue.txt"


def test_standalone_turn_is_not_rewritten(kb, backend):
    router = _router(kb, backend)
    state = ConversationState(context_terms=["Globex"])
    result = router.answer_turn(state, "Please describe the revenue of Acme Corp in detail")
    assert result.query == "Please describe the revenue of Acme Corp in detail"


def test_history_fallback_prompt(kb, backend):
    router = _router(kb, backend)
    state = ConversationState(messages=[Message("user", f"old {i}") for i in range(8)])
    result = router.answer_turn(state, OPENING_TURN)

    assert result.text == backend.reply
    call = backend.generate_calls[0]
    assert call["temperature"] == 0.1
    assert call["max_tokens"] == 128
    assert "User: old 1\n" not in call["prompt"]
    assert "User: old 2\n" in call["prompt"]
    assert call["prompt"].endswith(f"User: {OPENING_TURN}\nAssistant:")


def test_empty_generation_is_no_answer(kb, make_backend, tmp_path):
    quiet = make_backend(reply="")
    router = ConversationRouter(Ranker(quiet, tmp_path / "db"), lambda: ["acme"], backend=quiet)
    result = router.answer_turn(ConversationState(), OPENING_TURN)
    assert result.mode is AnswerMode.NO_ANSWER
    assert result.text == NO_ANSWER_TEXT


def test_configured_selector_without_examples_falls_back_to_history(kb, backend):
    selector = StubSelector(FewShotAnswer(text="", confidence=0.05))
    router = _router(kb, backend, selector=selector)
    state = ConversationState()

    first = router.answer_turn(state, "Tell me about the weather in Seattle today please")
    second = router.answer_turn(state, "what about Sydney")

    assert first.mode is AnswerMode.GENERATION
    assert second.mode is AnswerMode.GENERATION
    assert second.text == backend.reply
    assert len(selector.queries) == 2
    assert len(backend.generate_calls) == 2
    assert "User: Tell me about the weather in Seattle today please\n" in backend.generate_calls[1]["prompt"]


def test_configured_selector_hedged_answer_is_no_answer(kb, backend):
    selector = StubSelector(FewShotAnswer(text="I don't know.", confidence=0.25, hedged=True))
    router = _router(kb, backend, selector=selector)
    result = router.answer_turn(ConversationState(), OPENING_TURN)
    assert result.mode is AnswerMode.NO_ANSWER
    assert result.text == NO_ANSWER_TEXT
    assert selector.queries == [OPENING_TURN]
    assert backend.generate_calls == []


def test_configured_selector_confident_answer(kb, backend):
    selector = StubSelector(FewShotAnswer(text="Founded in 1998 by Jane Roe.", confidence=0.9, confident=True))
    router = _router(kb, backend, selector=selector)
    result = router.answer_turn(ConversationState(), OPENING_TURN)
    assert result.mode is AnswerMode.GENERATION
    assert result.text == "Founded in 1998 by Jane Roe."


def test_unconfigured_selector_uses_history_prompt(kb, backend):
    selector = StubSelector(FewShotAnswer(text="", confidence=0.0), configured=False)
    router = _router(kb, backend, selector=selector)
    result = router.answer_turn(ConversationState(), OPENING_TURN)
    assert result.mode is AnswerMode.GENERATION
    assert selector.queries == []


def test_no_knowledge_bases_skips_retrieval(kb, backend):
    router = ConversationRouter(kb, lambda: [], backend=backend)
    result = router.answer_turn(ConversationState(), "Acme Corp revenue")
    assert result.mode is AnswerMode.GENERATION
    assert backend.embed_calls == []


def test_paraphrase_rewrites_context_answer(kb, backend):
    router = _router(kb, backend, paraphrase=True)
    result = router.answer_turn(ConversationState(), "Acme Corp revenue was how much")
    assert result.mode is AnswerMode.CONTEXT
    assert result.text == backend.reply
    assert backend.generate_calls[-1]["temperature"] == 0.3


def test_turn_is_recorded(kb, backend):
    router = _router(kb, backend)
    state = ConversationState()
    result = router.answer_turn(state, "Explain the Acme Corp revenue figures")
    assert [m.role for m in state.messages] == ["user", "assistant"]
    assert state.messages[1].content == result.text
    assert state.last_objective == "Explain the Acme Corp revenue figures"
    assert "Acme Corp" in state.context_terms


def test_failed_turn_leaves_state_unchanged(kb, make_backend, tmp_path):
    broken = make_backend(fail_generate=True)
    router = ConversationRouter(Ranker(broken, tmp_path / "db"), lambda: ["acme"], backend=broken)
    state = ConversationState(context_terms=["Acme"])
    with pytest.raises(BackendError):
        router.answer_turn(state, OPENING_TURN)
    assert state.messages == []
    assert state.context_terms == ["Acme"]
