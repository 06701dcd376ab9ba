# Path: core/embedders/hashing_embedder.py
# Purpose: Provide a deterministic, dependency-free text embedder.
# Layer: core/embedders.
# Details: Uses signed feature hashing of tokens and bigrams so overlapping texts land close together.

from __future__ import annotations

import hashlib
import re
from typing import List, Sequence

import numpy as np

from .base import EmbeddingService

_TOKEN = re.compile(r"[a-z0-9]+")


class HashingEmbedder(EmbeddingService):
    """Offline embedder; identical inputs always map to identical unit vectors."""

    def __init__(self, dim: int = 384, name: str = "hashing") -> None:
        if dim <= 0:
            raise ValueError("Embedding dimensionality must be positive.")
        self.dim = dim
        self.name = name
        self.calls = 0

    async def embed_text(self, text: str) -> List[float]:
        self.calls += 1
        return self._embed(text).tolist()

    async def embed_text_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls += 1
        return [self._embed(text).tolist() for text in texts]

    def _embed(self, text: str) -> np.ndarray:
        tokens = _TOKEN.findall(text.lower())
        features = tokens + [f"{a}_{b}" for a, b in zip(tokens, tokens[1:])]
        vector = np.zeros(self.dim, dtype=np.float32)
        for feature in features:
            digest = hashlib.sha256(feature.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "little") % self.dim
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[index] += sign
        return self._normalize(vector)
