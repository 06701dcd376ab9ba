# Path: core/embedders/engine.py
# Purpose: Turn images and queries into vectors and answer similarity questions over them.
# Layer: core/embedders.
# Details: Query vectors are cached; missing image vectors are computed in one batch and written back to the store.

from __future__ import annotations

import asyncio
import logging
import re
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from core.cache import ResultCache, embedding_key
from core.errors import ServiceError, VectorDimensionError
from core.models.domain import ImageRecord
from core.services.base import ImageStore

from .base import EmbeddingService

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_ABBREVIATIONS = (
    (re.compile(r"\bpic\b"), "picture"),
    (re.compile(r"\bimg\b"), "image"),
    (re.compile(r"\bphoto\b"), "photograph"),
)


class EmbeddingEngine:
    """Similarity engine on top of a pluggable :class:`EmbeddingService`."""

    def __init__(
        self,
        service: EmbeddingService,
        cache: Optional[ResultCache] = None,
        image_store: Optional[ImageStore] = None,
        similarity_threshold: float = 0.5,
        search_limit: int = 20,
        concurrency: int = 5,
        query_ttl: float = 86400.0,
    ) -> None:
        self.service = service
        self.cache = cache
        self.image_store = image_store
        self.similarity_threshold = similarity_threshold
        self.search_limit = search_limit
        self.concurrency = max(1, concurrency)
        self.query_ttl = query_ttl

    @classmethod
    def from_settings(
        cls,
        service: EmbeddingService,
        settings,
        cache: Optional[ResultCache] = None,
        image_store: Optional[ImageStore] = None,
    ) -> "EmbeddingEngine":
        return cls(
            service,
            cache=cache,
            image_store=image_store,
            similarity_threshold=settings.similarity_threshold,
            search_limit=settings.search_limit,
            concurrency=settings.concurrency,
            query_ttl=settings.query_ttl,
        )

    @staticmethod
    def compose_image_text(image: ImageRecord) -> str:
        """Build the text an image is embedded from, most descriptive fields first."""

        parts: List[str] = []
        if image.title:
            parts.append(f"Title: {image.title}")
        if image.description:
            parts.append(f"Description: {image.description}")
        if image.caption:
            parts.append(f"Content: {image.caption}")
        if image.visual_summary:
            parts.append(f"Analysis: {image.visual_summary}")
        if image.tags:
            parts.append("Tags: " + ", ".join(image.tags))
        if image.metadata is not None:
            keywords = image.metadata.keywords()
            if keywords:
                parts.append("Features: " + ", ".join(keywords))
        if not parts:
            parts.append(f"Image: {image.display_name}")
        return ". ".join(parts)

    @staticmethod
    def normalize_query(query: str) -> str:
        text = _WHITESPACE.sub(" ", query.strip().lower())
        for pattern, replacement in _ABBREVIATIONS:
            text = pattern.sub(replacement, text)
        return text

    @staticmethod
    def has_embeddable_content(image: ImageRecord) -> bool:
        return bool(image.embedding) or bool(image.text_fields() or image.tags or image.has_structured_metadata())

    async def embed_query(self, query: str) -> List[float]:
        """Embed a normalized query, reusing the cached vector when one exists."""

        text = self.normalize_query(query)
        key = embedding_key(text, self.service.name)
        if self.cache is None:
            return await self.service.embed_text(text)
        return await self.cache.get_or_set(key, lambda: self.service.embed_text(text), ttl=self.query_ttl)

    async def ensure_embeddings(self, images: Sequence[ImageRecord], owner_id: Optional[str] = None) -> int:
        """
        Compute embeddings for records that lack one and persist them.

        External calls:
        - core/embedders/base.py::EmbeddingService.embed_text_batch - one call for all missing records.
        - core/services/base.py::ImageStore.update_embedding - write-back, failures logged only.
        """

        missing = [image for image in images if not image.embedding]
        if not missing:
            return 0

        texts = [self.compose_image_text(image) for image in missing]
        if self.service.supports_batch:
            vectors = await self.service.embed_text_batch(texts)
        else:
            semaphore = asyncio.Semaphore(self.concurrency)

            async def _embed_one(text: str) -> List[float]:
                async with semaphore:
                    return await self.service.embed_text(text)

            vectors = await asyncio.gather(*(_embed_one(text) for text in texts))

        for image, vector in zip(missing, vectors):
            image.embedding = list(vector)
            if self.image_store is None:
                continue
            try:
                await self.image_store.update_embedding(image.id, image.embedding, owner_id or image.owner_id or "")
            except ServiceError as exc:
                logger.warning("Could not persist embedding for %s: %s", image.id, exc)

        logger.debug("Computed %d embeddings with %s", len(missing), self.service.name)
        return len(missing)

    @staticmethod
    def cosine_similarity(first: Sequence[float], second: Sequence[float]) -> float:
        if len(first) != len(second):
            raise VectorDimensionError(f"Cannot compare vectors of length {len(first)} and {len(second)}.")
        a = np.asarray(first, dtype=np.float64)
        b = np.asarray(second, dtype=np.float64)
        norm = float(np.linalg.norm(a) * np.linalg.norm(b))
        if norm == 0.0:
            return 0.0
        return float(np.dot(a, b) / norm)

    def similarity_search(
        self,
        query_vector: Sequence[float],
        images: Iterable[ImageRecord],
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[Tuple[ImageRecord, float]]:
        """Return up to ``limit`` embedded images whose similarity exceeds ``threshold``, best first."""

        threshold = self.similarity_threshold if threshold is None else threshold
        limit = self.search_limit if limit is None else limit
        excluded = set(exclude_ids or ())

        hits: List[Tuple[ImageRecord, float]] = []
        for image in images:
            if image.id in excluded or not image.embedding:
                continue
            score = self.cosine_similarity(query_vector, image.embedding)
            if score > threshold:
                hits.append((image, score))

        hits.sort(key=lambda hit: hit[1], reverse=True)
        return hits[:limit]

    def find_similar(
        self,
        reference: ImageRecord,
        images: Iterable[ImageRecord],
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[ImageRecord, float]]:
        if not reference.embedding:
            raise ValueError(f"Reference image {reference.id} has no embedding.")
        return self.similarity_search(reference.embedding, images, threshold, limit, exclude_ids=[reference.id])

    def diversity_score(self, images: Sequence[ImageRecord]) -> float:
        """Mean pairwise cosine similarity of the embedded images; 1.0 when fewer than two exist."""

        vectors = [image.embedding for image in images if image.embedding]
        if len(vectors) < 2:
            return 1.0
        similarities = [self.cosine_similarity(a, b) for a, b in combinations(vectors, 2)]
        return float(sum(similarities) / len(similarities))

    def similarity_map(self, query_vector: Sequence[float], images: Iterable[ImageRecord]) -> Dict[str, float]:
        """Similarity of every embedded image to the query, clamped into [0, 1]."""

        return {
            image.id: min(1.0, max(0.0, self.cosine_similarity(query_vector, image.embedding)))
            for image in images
            if image.embedding
        }
