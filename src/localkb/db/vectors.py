"""Embedding vector codec and similarity.

Vectors are persisted as fixed-width little-endian float32 arrays so the
stored bytes do not depend on the host's byte order.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

_DTYPE = np.dtype("<f4")
_EPSILON = 1e-10


def encode_vector(vector: Sequence[float]) -> bytes:
    """Serialize *vector* to little-endian float32 bytes."""
    if len(vector) == 0:
        raise ValueError("cannot encode an empty embedding")
    return np.asarray(vector, dtype=_DTYPE).tobytes()


def decode_vector(blob: bytes) -> np.ndarray:
    """Deserialize bytes written by :func:`encode_vector`."""
    if len(blob) % _DTYPE.itemsize:
        raise ValueError(f"embedding blob length {len(blob)} is not a multiple of 4")
    return np.frombuffer(blob, dtype=_DTYPE)


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Return ``dot(a, b) / (|a| * |b| + eps)``.

    The epsilon keeps zero vectors at a similarity of 0.0 instead of NaN.

    Raises:
        ValueError: If the vectors have different dimensionality.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"dimension mismatch: {va.shape[0]} vs {vb.shape[0]}")
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb)) + _EPSILON
    return float(np.dot(va, vb)) / denom
