# Path: core/embedders/base.py
# Purpose: Define the EmbeddingService interface for text embeddings.
# Layer: core/embedders.
# Details: Provides abstract methods to ensure pluggable embedding backends with a fixed dimensionality.

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Sequence

import numpy as np


class EmbeddingService(ABC):
    """Abstract base class for all embedding backends used in the sorting pipeline."""

    name: str
    dim: int
    supports_batch: bool = True

    @abstractmethod
    async def embed_text(self, text: str) -> List[float]:
        """Return an embedding for a single text."""

    async def embed_text_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Return embeddings for many texts in one call, order preserved.

        Backends without a batch endpoint set ``supports_batch = False`` and
        callers fan out over :meth:`embed_text` instead.
        """

        return [await self.embed_text(text) for text in texts]

    @staticmethod
    def _normalize(vector: np.ndarray) -> np.ndarray:
        """Normalize embedding vectors to unit length to simplify similarity comparisons."""

        norm = np.linalg.norm(vector)
        if norm == 0:
            return vector.astype(np.float32)
        return (vector / norm).astype(np.float32)

    async def close(self) -> None:
        """Release network sessions or other held resources."""
