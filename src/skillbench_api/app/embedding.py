"""Deterministic hashed bag-of-words embeddings.

Beginner terms used in this file:
- Embedding: a fixed-length list of floats that represents a piece of text.
- Hashing trick: each token is hashed into one of ``dims`` buckets, so no
  vocabulary has to be stored.
- Unit vector: a vector scaled so its L2 length is exactly 1.
"""

from __future__ import annotations

import math
import re
from collections.abc import Sequence

DEFAULT_EMBEDDING_DIM = 96

_FNV_OFFSET_BASIS = 2166136261
_FNV_PRIME = 16777619
_UINT32_MASK = 0xFFFFFFFF


def tokenize(text: str) -> list[str]:
    """Lowercase, split on separators/punctuation, and drop 1-char tokens."""
    normalized = text.lower()
    normalized = re.sub(r"[_-]+", " ", normalized)
    normalized = re.sub(r"[^a-z0-9\s]", " ", normalized)
    return [token for token in normalized.split() if len(token) > 1]


def hash_token(token: str, dims: int) -> int:
    # 32-bit FNV-1a over the token characters.
    value = _FNV_OFFSET_BASIS
    for char in token:
        value ^= ord(char)
        value = (value * _FNV_PRIME) & _UINT32_MASK
    return value % dims


def embed_text(text: str, dims: int = DEFAULT_EMBEDDING_DIM) -> list[float]:
    vector = [0.0] * dims
    for token in tokenize(text):
        vector[hash_token(token, dims)] += 1.0
    return normalize_embedding(vector)


def normalize_embedding(vector: Sequence[float]) -> list[float]:
    norm = vector_magnitude(vector)
    if norm == 0:
        return list(vector)
    return [value / norm for value in vector]


def vector_magnitude(vector: Sequence[float]) -> float:
    return math.sqrt(sum(value * value for value in vector))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for left, right in zip(a, b):
        dot += left * right
        norm_a += left * left
        norm_b += right * right
    if norm_a == 0 or norm_b == 0:
        return 0.0
    similarity = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    return min(1.0, max(0.0, similarity))
