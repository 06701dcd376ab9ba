# Path: core/indexing/index_builder.py
# Purpose: Backfill missing image embeddings for scanned or stored records.
# Layer: core/indexing.
# Details: Feeds the embedding engine batch by batch with progress reporting; vectors land in the image store.

from __future__ import annotations

import logging
from typing import List, Sequence

from tqdm import tqdm

from core.embedders.engine import EmbeddingEngine
from core.models.domain import ImageRecord

logger = logging.getLogger(__name__)


class EmbeddingBackfill:
    """Batch process records so every one carries an embedding."""

    def __init__(self, engine: EmbeddingEngine, batch_size: int = 32) -> None:
        if batch_size <= 0:
            raise ValueError("Batch size must be positive.")
        self.engine = engine
        self.batch_size = batch_size

    async def run(self, images: Sequence[ImageRecord], owner_id: str) -> int:
        """
        Embed every record that lacks a vector and return how many were computed.

        External calls:
        - core/embedders/engine.py::EmbeddingEngine.ensure_embeddings - one batched call per chunk, with store write-back.
        """

        pending: List[ImageRecord] = [image for image in images if not image.embedding]
        computed = 0
        with tqdm(total=len(pending), desc="Embedding images", unit="img") as progress:
            for start in range(0, len(pending), self.batch_size):
                batch = pending[start : start + self.batch_size]
                computed += await self.engine.ensure_embeddings(batch, owner_id)
                progress.update(len(batch))

        logger.info("Embedded %d of %d images", computed, len(images))
        return computed
