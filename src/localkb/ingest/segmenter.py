"""Segmenter: raw document text → ordered, size-bounded chunk texts.

Two passes:

1. :func:`parse_blocks` walks the text line by line and emits Q/A blocks
   (explicit ``Q:``/``A:`` markers, or a ``?``-terminated line followed by
   answer lines) and plain paragraphs. Every block is whitespace-normalized.
2. :func:`pack_blocks` greedily joins blocks with a paragraph break into
   chunks of at most ``max_chunk_size`` characters. Oversized blocks are split
   at sentence boundaries, and oversized sentences at fixed offsets. With
   overlap enabled, every chunk after the first starts with the tail of the
   previous chunk.

Q/A blocks are emitted as ``"Q: <question> A: <answer>"``; the ranker's
direct-answer shortcut relies on that shape.
"""

from __future__ import annotations

import re

# ------------------------------------------------------------------
# Patterns
# ------------------------------------------------------------------

_WHITESPACE_RE = re.compile(r"\s+")
_Q_MARKER_RE = re.compile(r"^(?:question|q)\s*[:\-]\s*", re.IGNORECASE)
_A_MARKER_RE = re.compile(r"^(?:answer|a)\s*[:\-]\s*", re.IGNORECASE)
_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9‘“\"(\[])")

PARAGRAPH_BREAK = "\n\n"


def normalize(text: str) -> str:
    """Collapse runs of whitespace to one space and trim."""
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def _is_question_marker(line: str) -> bool:
    return bool(_Q_MARKER_RE.match(line))


def _ends_with_question(line: str) -> bool:
    return line.rstrip().endswith("?")


def _qa_block(question: str, answer_lines: list[str]) -> str:
    question = normalize(question)
    answer = normalize(" ".join(answer_lines))
    if not answer:
        return f"Q: {question}" if question else ""
    return f"Q: {question} A: {answer}"


# ------------------------------------------------------------------
# Block detection
# ------------------------------------------------------------------


def parse_blocks(raw_text: str) -> list[str]:
    """Split *raw_text* into normalized Q/A and paragraph blocks.

    Empty blocks are dropped. Line endings are normalized first, so
    ``\\r\\n`` and ``\\r`` input behave like ``\\n``.
    """
    lines = [ln.strip() for ln in (raw_text or "").replace("\r\n", "\n").replace("\r", "\n").split("\n")]
    blocks: list[str] = []
    i = 0
    n = len(lines)

    while i < n:
        line = lines[i]
        if not line:
            i += 1
            continue

        # Explicit "Q:" marker: answer runs until a blank line or the next Q.
        if _is_question_marker(line):
            question = _Q_MARKER_RE.sub("", line, count=1)
            i += 1
            answer: list[str] = []
            while i < n and lines[i] and not _is_question_marker(lines[i]):
                answer.append(_A_MARKER_RE.sub("", lines[i], count=1))
                i += 1
            blocks.append(_qa_block(question, answer))
            continue

        # Implicit question: needs at least one answer line to count.
        if _ends_with_question(line):
            answer = []
            j = i + 1
            while (
                j < n
                and lines[j]
                and not _is_question_marker(lines[j])
                and not _ends_with_question(lines[j])
            ):
                answer.append(lines[j])
                j += 1
            if answer:
                blocks.append(_qa_block(line, answer))
                i = j
                continue

        # Plain paragraph until a blank line or a Q marker.
        paragraph = [line]
        i += 1
        while i < n and lines[i] and not _is_question_marker(lines[i]):
            paragraph.append(lines[i])
            i += 1
        blocks.append(normalize(" ".join(paragraph)))

    return [b for b in blocks if b]


# ------------------------------------------------------------------
# Packing
# ------------------------------------------------------------------


def _split_oversized(block: str, size: int) -> list[str]:
    """Split one block longer than *size* at sentence boundaries."""
    pieces: list[str] = []
    buf = ""
    sentences = [s.strip() for s in _SENTENCE_BOUNDARY_RE.split(block) if s.strip()]
    for sentence in sentences:
        needed = (len(buf) + 1 if buf else 0) + len(sentence)
        if needed <= size:
            buf = f"{buf} {sentence}" if buf else sentence
            continue
        if buf:
            pieces.append(buf)
            buf = ""
        if len(sentence) > size:
            # Last resort: fixed-offset hard split.
            pieces.extend(sentence[k : k + size] for k in range(0, len(sentence), size))
        else:
            buf = sentence
    if buf:
        pieces.append(buf)
    return pieces


def pack_blocks(blocks: list[str], max_chunk_size: int, overlap_size: int = 0) -> list[str]:
    """Greedily pack *blocks* into chunks of at most *max_chunk_size* characters.

    Args:
        blocks: Normalized blocks from :func:`parse_blocks`.
        max_chunk_size: Upper bound on every chunk's length, overlap included.
        overlap_size: Characters of the previous chunk to repeat at the start
            of the next one. Capped at half of *max_chunk_size*.

    Returns:
        Ordered chunk texts.

    Raises:
        ValueError: If *max_chunk_size* < 1 or *overlap_size* < 0.
    """
    if max_chunk_size < 1:
        raise ValueError("max_chunk_size must be >= 1")
    if overlap_size < 0:
        raise ValueError("overlap_size must be >= 0")

    overlap = min(overlap_size, max_chunk_size // 2)
    # Room left for content once the overlap prefix and its separator are added.
    budget = max_chunk_size - overlap - len(PARAGRAPH_BREAK) if overlap else max_chunk_size
    if budget < 1:
        # Too small to carry any overlap.
        overlap, budget = 0, max_chunk_size

    chunks: list[str] = []
    current = ""

    for block in blocks:
        if len(block) > budget:
            if current:
                chunks.append(current)
                current = ""
            chunks.extend(_split_oversized(block, budget))
            continue
        needed = (len(current) + len(PARAGRAPH_BREAK) if current else 0) + len(block)
        if needed <= budget:
            current = f"{current}{PARAGRAPH_BREAK}{block}" if current else block
        else:
            chunks.append(current)
            current = block
    if current.strip():
        chunks.append(current)

    if not overlap or len(chunks) < 2:
        return chunks
    with_overlap = [chunks[0]]
    for prev, content in zip(chunks, chunks[1:]):
        with_overlap.append(f"{prev[-overlap:]}{PARAGRAPH_BREAK}{content}")
    return with_overlap


def segment(raw_text: str, max_chunk_size: int, overlap_size: int = 0) -> list[str]:
    """Turn raw document text into ordered chunk texts.

    Empty or whitespace-only input yields no chunks.
    """
    return pack_blocks(parse_blocks(raw_text), max_chunk_size, overlap_size)
