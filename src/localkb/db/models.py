"""Domain models for the knowledge-base database layer."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Chunk:
    doc: str
    chunk_id: int
    text: str
    embedding: list[float] = field(default_factory=list)
    id: int | None = None  # assigned by the store; None for unsaved chunks


@dataclass
class IngestedFile:
    doc: str
    content_hash: str
    updated_at: str | None = None
