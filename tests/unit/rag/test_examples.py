"""Tests for the few-shot example selector."""

from __future__ import annotations

import json
import logging

import pytest

from localkb.rag.examples import (
    ExampleSelector,
    FewShotExample,
    build_fewshot_prompt,
    load_examples,
    normalize_record,
    overlap_ratio,
)


def _write_jsonl(path, lines):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def examples_dir(tmp_path):
    root = tmp_path / "examples"
    _write_jsonl(
        root / "acme" / "faq.jsonl",
        [
            json.dumps({"input": "What is the Acme refund window?", "output": "Thirty days from purchase."}),
            json.dumps({"instruction": "Who founded Acme?", "response": "Jane Roe founded Acme."}),
            json.dumps({"question": "Where is Acme based?", "answer": "Berlin, Germany."}),
        ],
    )
    return root


@pytest.fixture
def selector(tmp_path, examples_dir, backend):
    return ExampleSelector(backend, examples_dir, tmp_path / "cache", per_kb_k=2, model="fake/small")


# ------------------------------------------------------------------
# Records
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    "record, expected",
    [
        ({"input": "a", "output": "b"}, ("a", "b")),
        ({"instruction": "a", "response": "b"}, ("a", "b")),
        ({"prompt": "a", "completion": "b"}, ("a", "b")),
        ({"question": " a ", "answer": " b "}, ("a", "b")),
        ({"input": "", "prompt": "a"}, ("a", "")),
    ],
)
def test_normalize_record_aliases(record, expected):
    example = normalize_record(record)
    assert (example.input_text, example.output_text) == expected


def test_normalize_record_without_input():
    assert normalize_record({"output": "orphan"}) is None


def test_load_examples_skips_bad_lines(tmp_path, caplog):
    path = _write_jsonl(
        tmp_path / "mixed.jsonl",
        ['{"input": "ok", "output": "fine"}', "{not json", "[1, 2]", '{"output": "no input"}', ""],
    )
    with caplog.at_level(logging.WARNING, logger="localkb.rag.examples"):
        examples = load_examples([path])
    assert [ex.input_text for ex in examples] == ["ok"]
    assert "invalid JSON" in caplog.text
    assert "expected a JSON object" in caplog.text
    assert "no input field" in caplog.text


def test_overlap_ratio():
    assert overlap_ratio("who founded acme", "Who founded Acme?") == 1.0
    assert overlap_ratio("acme", "Where is Acme based?") == 0.25
    assert overlap_ratio("acme", "") == 0.0


def test_build_fewshot_prompt():
    prompt = build_fewshot_prompt("Q?", [FewShotExample("in1", "out1"), FewShotExample("in2", "out2")])
    assert "### Example 1\nUser: in1\nAssistant: out1" in prompt
    assert "### Example 2\nUser: in2\nAssistant: out2" in prompt
    assert prompt.endswith("### Task\nUser: Q?\nAssistant:")


# ------------------------------------------------------------------
# Index cache
# ------------------------------------------------------------------


def test_index_is_cached_and_reused(tmp_path, examples_dir, selector, backend):
    index = selector.ensure_index("acme")
    assert len(index.examples) == 3
    cache = json.loads(selector.cache_path("acme").read_text(encoding="utf-8"))
    assert cache["model"] == backend.embedding_model
    assert cache["examples"][1] == {"input": "Who founded Acme?", "output": "Jane Roe founded Acme."}
    assert len(cache["embeddings"]) == 3

    backend.embed_calls.clear()
    again = ExampleSelector(backend, examples_dir, tmp_path / "cache").ensure_index("acme")
    assert backend.embed_calls == []
    assert [ex.input_text for ex in again.examples] == [ex.input_text for ex in index.examples]
    assert again.examples[0].embedding == index.examples[0].embedding


def test_cache_rebuilt_when_examples_change(examples_dir, selector, backend):
    selector.ensure_index("acme")
    _write_jsonl(examples_dir / "acme" / "more.jsonl", [json.dumps({"input": "New question?", "output": "Yes."})])
    backend.embed_calls.clear()
    index = selector.ensure_index("acme")
    assert len(index.examples) == 4
    assert len(backend.embed_calls) == 4


def test_cache_rebuilt_when_model_changes(tmp_path, examples_dir, selector, make_backend):
    selector.ensure_index("acme")
    other = make_backend(model="fake/other")
    ExampleSelector(other, examples_dir, tmp_path / "cache").ensure_index("acme")
    assert len(other.embed_calls) == 3
    cache = json.loads(selector.cache_path("acme").read_text(encoding="utf-8"))
    assert cache["model"] == "fake/other"


def test_corrupt_cache_is_rebuilt(selector, backend):
    path = selector.cache_path("acme")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{broken", encoding="utf-8")
    index = selector.ensure_index("acme")
    assert len(index.examples) == 3
    assert json.loads(path.read_text(encoding="utf-8"))["fingerprint"] == index.fingerprint


def test_empty_kb_directory_not_configured(tmp_path, backend):
    (tmp_path / "examples" / "empty").mkdir(parents=True)
    selector = ExampleSelector(backend, tmp_path / "examples", tmp_path / "cache")
    assert selector.knowledge_bases() == ["empty"]
    assert not selector.configured


def test_loaded_index_served_from_memory(selector, backend):
    selector.load()
    backend.embed_calls.clear()
    selector.cache_path("acme").unlink()
    assert list(selector.load()) == ["acme"]
    assert backend.embed_calls == []
    assert not selector.cache_path("acme").exists()


def test_example_edits_seen_without_new_selector(examples_dir, selector):
    assert len(selector.load()["acme"].examples) == 3
    _write_jsonl(
        examples_dir / "acme" / "more.jsonl",
        [json.dumps({"input": "Where is Globex headquartered?", "output": "Springfield."})],
    )
    selection = selector.select("Where is Globex headquartered?")
    assert selection.examples[0].input_text == "Where is Globex headquartered?"


def test_new_kb_directory_enables_selector(tmp_path, backend):
    selector = ExampleSelector(backend, tmp_path / "examples", tmp_path / "cache")
    assert not selector.configured
    _write_jsonl(tmp_path / "examples" / "hr" / "faq.jsonl", [json.dumps({"input": "Leave policy?", "output": "25 days."})])
    assert selector.configured
    assert list(selector.load()) == ["hr"]


# ------------------------------------------------------------------
# Selection + answering
# ------------------------------------------------------------------


def test_select_takes_top_k_per_kb(selector):
    selection = selector.select("Who founded Acme?")
    assert len(selection.examples) == 2
    assert selection.examples[0].input_text == "Who founded Acme?"
    assert selection.confidence == 1.0


def test_select_with_zero_k_picks_nothing(selector):
    selection = selector.select("Who founded Acme?", per_kb_k=0)
    assert selection.examples == []
    assert selection.confidence == 0.0


def test_answer_confident(selector, backend):
    backend.reply = "Jane Roe founded Acme in 1998."
    result = selector.answer("Who founded Acme?")
    assert result.text == "Jane Roe founded Acme in 1998."
    assert result.confident
    assert not result.hedged
    call = backend.generate_calls[0]
    assert call["model"] == "fake/small"
    assert call["temperature"] == 0.1
    assert call["max_tokens"] == 128
    assert call["prompt"].endswith("User: Who founded Acme?\nAssistant:")


def test_answer_below_threshold_skips_generation(selector, backend):
    result = selector.answer("weather forecast tomorrow")
    assert result.text == ""
    assert not result.confident
    assert backend.generate_calls == []


def test_hedged_answer_caps_confidence(selector, backend):
    backend.reply = "That is not publicly disclosed."
    result = selector.answer("Who founded Acme?")
    assert result.hedged
    assert result.confidence == 0.25
    assert not result.confident
    assert result.text == "That is not publicly disclosed."


def test_guarded_prompt_without_examples(tmp_path, backend):
    selector = ExampleSelector(backend, tmp_path / "missing", tmp_path / "cache")
    backend.reply = "Paris is the capital of France."
    result = selector.answer("Capital of France?")
    assert result.confidence == 0.25
    assert not result.confident
    assert 'reply exactly: "I don\'t know"' in backend.generate_calls[0]["prompt"]

    backend.reply = "I don't know"
    assert selector.answer("Capital of France?").confidence == 0.0
