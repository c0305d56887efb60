"""Tests for block detection and chunk packing."""

from __future__ import annotations

import pytest

from localkb.ingest.segmenter import normalize, pack_blocks, parse_blocks, segment


# ------------------------------------------------------------------
# parse_blocks
# ------------------------------------------------------------------


def test_normalize_collapses_whitespace():
    assert normalize("  a \t b\n\nc  ") == "a b c"


def test_explicit_qa_block():
    text = "Q: What is Acme?\nA: Acme Corp was founded in 1998."
    assert parse_blocks(text) == ["Q: What is Acme? A: Acme Corp was founded in 1998."]


def test_question_marker_variants():
    text = "Question - Where is HQ?\nAnswer: Berlin.\n\nq: Who runs it?\nThe board."
    assert parse_blocks(text) == [
        "Q: Where is HQ? A: Berlin.",
        "Q: Who runs it? A: The board.",
    ]


def test_multiline_answer_stops_at_next_question():
    text = "Q: One?\nA: first line\nsecond line\nQ: Two?\nA: two"
    assert parse_blocks(text) == ["Q: One? A: first line second line", "Q: Two? A: two"]


def test_word_starting_with_q_is_not_a_marker():
    text = "Quarterly revenue rose.\nQuality improved."
    assert parse_blocks(text) == ["Quarterly revenue rose. Quality improved."]


def test_implicit_question_with_answer():
    text = "How big is the team?\nAbout forty people.\n\nNext paragraph."
    assert parse_blocks(text) == ["Q: How big is the team? A: About forty people.", "Next paragraph."]


def test_implicit_question_without_answer_is_paragraph():
    text = "Is this a question?\n\nStandalone."
    assert parse_blocks(text) == ["Is this a question?", "Standalone."]


def test_paragraphs_split_on_blank_lines_and_crlf():
    text = "line one\r\nline two\r\n\r\nline three"
    assert parse_blocks(text) == ["line one line two", "line three"]


def test_empty_input_has_no_blocks():
    assert parse_blocks("") == []
    assert parse_blocks("  \n\n \t\n") == []


# ------------------------------------------------------------------
# pack_blocks
# ------------------------------------------------------------------


def test_small_blocks_packed_together():
    assert pack_blocks(["aaa", "bbb"], 20) == ["aaa\n\nbbb"]


def test_blocks_split_when_full():
    assert pack_blocks(["aaaa", "bbbb", "cccc"], 10) == ["aaaa\n\nbbbb", "cccc"]


def test_oversized_block_split_at_sentences():
    block = "First sentence here. Second sentence here. Third one."
    chunks = pack_blocks(["intro", block], 25)
    assert chunks[0] == "intro"
    assert chunks[1:] == ["First sentence here.", "Second sentence here.", "Third one."]


def test_oversized_sentence_hard_split():
    chunks = pack_blocks(["x" * 25], 10)
    assert chunks == ["x" * 10, "x" * 10, "x" * 5]


def test_overlap_prefixes_previous_tail():
    chunks = pack_blocks(["aaaaaaaaaa", "bbbbbbbbbb"], 16, overlap_size=3)
    assert chunks[0] == "aaaaaaaaaa"
    assert chunks[1] == "aaa\n\nbbbbbbbbbb"


def test_overlap_capped_at_half_chunk_size():
    chunks = pack_blocks(["a" * 5, "b" * 5], 20, overlap_size=100)
    assert len(chunks) == 1 or all(len(c) <= 20 for c in chunks)


def test_invalid_sizes_raise():
    with pytest.raises(ValueError):
        pack_blocks(["a"], 0)
    with pytest.raises(ValueError):
        pack_blocks(["a"], 10, overlap_size=-1)


# ------------------------------------------------------------------
# segment: size bound
# ------------------------------------------------------------------


_CORPUS = [
    "Short text.",
    "Q: What is Acme?\nA: Acme Corp was founded in 1998.\n\nQ: Revenue?\nA: Ten million.",
    " ".join(f"Sentence number {i} talks about widgets." for i in range(200)),
    "\n\n".join(f"Paragraph {i}. " + "word " * (i * 7) for i in range(40)),
    "y" * 5000,
    "Mixed? Yes.\nAnswer line.\n\n" + "Long " * 900,
]


@pytest.mark.parametrize("text", _CORPUS)
@pytest.mark.parametrize("size,overlap", [(50, 0), (120, 20), (1100, 120), (64, 200), (3, 1)])
def test_every_chunk_respects_max_size(text, size, overlap):
    chunks = segment(text, size, overlap)
    assert chunks
    assert all(0 < len(c) <= size for c in chunks)


def test_segment_preserves_order():
    text = "\n\n".join(f"Block {i}." for i in range(50))
    joined = " ".join(segment(text, 40, 0))
    positions = [joined.index(f"Block {i}.") for i in range(50)]
    assert positions == sorted(positions)


def test_segment_empty_document():
    assert segment("   ", 100, 10) == []
