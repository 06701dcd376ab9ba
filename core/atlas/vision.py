# Path: core/atlas/vision.py
# Purpose: Run one visual-analysis call per atlas and map the per-cell verdicts back to image ids.
# Layer: core/atlas.
# Details: Uploads the composite when an object store is configured and removes it afterwards, best effort.

from __future__ import annotations

import logging
import uuid
from typing import Dict, Optional, Sequence

from core.cache import ResultCache, vision_key
from core.errors import ServiceError
from core.models.domain import ImageRecord, PositionAnalysis
from core.services.base import ObjectStore, VisualAnalysisService

from .packer import AtlasPacker

logger = logging.getLogger(__name__)


class AtlasVisionAnalyzer:
    """Pack, upload, analyze, and rejoin for a group of at most nine images."""

    def __init__(
        self,
        packer: AtlasPacker,
        vision: VisualAnalysisService,
        object_store: Optional[ObjectStore] = None,
        cache: Optional[ResultCache] = None,
        analysis_ttl: float = 3600.0,
    ) -> None:
        self.packer = packer
        self.vision = vision
        self.object_store = object_store
        self.cache = cache
        self.analysis_ttl = analysis_ttl

    async def analyze(self, images: Sequence[ImageRecord], query: str, purpose: str = "analysis") -> Dict[str, PositionAnalysis]:
        """
        Analyze the images as one atlas; returns analyses keyed by image id.

        External calls:
        - core/atlas/packer.py::AtlasPacker.pack - composite and position map.
        - core/services/base.py::ObjectStore.upload - reference URL for the vision backend.
        - core/services/base.py::VisualAnalysisService.analyze - one call per atlas.
        """

        atlas = await self.packer.pack(images, purpose)
        key = vision_key(atlas.cache_key, query)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        reference_url: Optional[str] = None
        object_name: Optional[str] = None
        if self.object_store is not None:
            object_name = f"atlases/{atlas.purpose}-{uuid.uuid4().hex}.jpg"
            try:
                reference_url = await self.object_store.upload(atlas.buffer, object_name)
            except ServiceError as exc:
                logger.warning("Atlas upload failed, sending inline: %s", exc)
                object_name = None

        try:
            by_position = await self.vision.analyze(atlas.buffer, atlas.position_map, query, reference_url)
        finally:
            if object_name is not None:
                await self._discard(object_name)

        by_image: Dict[str, PositionAnalysis] = {}
        for label, analysis in by_position.items():
            position = atlas.position_map.get(label.strip().upper())
            if position is None or position.placeholder:
                continue
            by_image[position.image_id] = analysis

        logger.debug("Atlas %s: %d of %d cells analyzed", atlas.cache_key, len(by_image), len(atlas.position_map))
        if self.cache is not None:
            self.cache.set(key, by_image, ttl=self.analysis_ttl)
        return by_image

    async def _discard(self, object_name: str) -> None:
        try:
            await self.object_store.delete(object_name)
        except ServiceError as exc:
            logger.warning("Could not delete uploaded atlas %s: %s", object_name, exc)
