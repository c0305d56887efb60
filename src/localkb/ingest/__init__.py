"""localkb ingest pipeline: readers, segmenter, knowledge-base store."""

from localkb.ingest.readers import read_document
from localkb.ingest.segmenter import normalize, pack_blocks, parse_blocks, segment
from localkb.ingest.store import (
    BuildReport,
    EmbeddingModelMismatch,
    KnowledgeBaseNotFound,
    KnowledgeStore,
    StoreError,
    UpdatePolicy,
    available_databases,
    discover_knowledge_bases,
    list_source_files,
)

__all__ = [
    "BuildReport",
    "EmbeddingModelMismatch",
    "KnowledgeBaseNotFound",
    "KnowledgeStore",
    "StoreError",
    "UpdatePolicy",
    "available_databases",
    "discover_knowledge_bases",
    "list_source_files",
    "normalize",
    "pack_blocks",
    "parse_blocks",
    "read_document",
    "segment",
]
