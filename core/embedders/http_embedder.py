# Path: core/embedders/http_embedder.py
# Purpose: Provide an embedding backend calling an OpenAI-compatible /embeddings endpoint.
# Layer: core/embedders.
# Details: One batched request per call; vectors are validated against the configured dimensionality.

from __future__ import annotations

from typing import Any, List, Sequence

from core.errors import EmbeddingServiceError
from core.services.openai_client import OpenAICompatibleClient

from .base import EmbeddingService


class OpenAIEmbedder(OpenAICompatibleClient, EmbeddingService):
    """Remote embedder; deterministic per input for a fixed model."""

    def __init__(self, model_name: str = "text-embedding-3-small", dim: int = 384, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.model_name = model_name
        self.dim = dim
        self.name = f"openai:{model_name}"

    async def embed_text(self, text: str) -> List[float]:
        vectors = await self.embed_text_batch([text])
        return vectors[0]

    async def embed_text_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        payload = {"model": self.model_name, "input": list(texts), "dimensions": self.dim}
        data = await self._post_json("embeddings", payload, EmbeddingServiceError)

        try:
            rows = sorted(data["data"], key=lambda row: row["index"])
            vectors = [[float(value) for value in row["embedding"]] for row in rows]
        except (KeyError, TypeError, ValueError) as exc:
            raise EmbeddingServiceError("Malformed embeddings response.") from exc

        if len(vectors) != len(texts):
            raise EmbeddingServiceError(f"Expected {len(texts)} embeddings, received {len(vectors)}.")
        for vector in vectors:
            if len(vector) != self.dim:
                raise EmbeddingServiceError(f"Embedding has {len(vector)} dimensions, expected {self.dim}.")
        return vectors
