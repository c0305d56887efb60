"""localkb database layer."""

from localkb.db.connection import Database
from localkb.db.migrations import MIGRATIONS, initialize, run_migrations
from localkb.db.repository import Repository
from localkb.db.vectors import cosine_similarity, decode_vector, encode_vector

__all__ = [
    "Database",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "Repository",
    "cosine_similarity",
    "decode_vector",
    "encode_vector",
]
