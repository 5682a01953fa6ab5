"""Embedding encoding and cosine similarity helpers."""

from typing import Optional, Sequence

import numpy as np


def encode_embedding(vector: Optional[Sequence[float]]) -> Optional[bytes]:
    """Pack a vector as little-endian float32 bytes (None stays None)."""
    if vector is None:
        return None
    return np.asarray(vector, dtype="<f4").tobytes()


def decode_embedding(blob: Optional[bytes]) -> Optional[list[float]]:
    """Unpack float32 bytes into a list of floats."""
    if blob is None:
        return None
    return np.frombuffer(blob, dtype="<f4").astype(float).tolist()


def cosine_similarities(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``.

    Zero-norm rows (and a zero-norm query) score 0.0.
    """
    q = np.asarray(query, dtype=np.float64)
    m = np.asarray(matrix, dtype=np.float64)
    if m.size == 0:
        return np.zeros(0)

    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(m, axis=1)
    denom = row_norms * q_norm
    dots = m @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denom > 0, dots / denom, 0.0)
    return np.clip(sims, -1.0, 1.0)
