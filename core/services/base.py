# Path: core/services/base.py
# Purpose: Define the external service boundaries consumed by the sorting pipeline.
# Layer: core/services.
# Details: Image store, object store, visual analysis, and language model contracts; implementations live beside.

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence

from core.models.domain import AtlasPosition, ImageRecord, PositionAnalysis


class ImageStore(ABC):
    """Owner-scoped access to image records. The pipeline never queries across owners."""

    @abstractmethod
    async def get_by_ids(self, ids: Sequence[str], owner_id: str) -> List[ImageRecord]:
        """Return the owner's records for the given ids, in the order requested."""

    @abstractmethod
    async def get_by_owner(self, owner_id: str, filters: Optional[Mapping[str, Any]] = None) -> List[ImageRecord]:
        """Return all records for an owner, optionally filtered."""

    @abstractmethod
    async def update_embedding(self, image_id: str, vector: Sequence[float], owner_id: str) -> None:
        """Persist a freshly computed embedding."""

    @abstractmethod
    async def update_analysis(self, image_id: str, fields: Mapping[str, Any], owner_id: str) -> None:
        """Persist analysis fields (caption, visual summary, tags, scores)."""


class ObjectStore(ABC):
    """Binary object storage used for atlas composites handed to the vision backend."""

    @abstractmethod
    async def upload(self, buffer: bytes, name: str) -> str:
        """Store ``buffer`` under ``name`` and return a URL referencing it."""

    @abstractmethod
    async def delete(self, name: str) -> None:
        """Remove a previously uploaded object."""


class VisualAnalysisService(ABC):
    """Analyzes an atlas composite, one verdict per labeled position."""

    @abstractmethod
    async def analyze(
        self,
        composite: bytes,
        position_map: Mapping[str, AtlasPosition],
        query: str,
        reference_url: Optional[str] = None,
    ) -> Dict[str, PositionAnalysis]:
        """Return a mapping of position label (``A1``..``C3``) to analysis."""

    async def close(self) -> None:
        """Release network sessions or other held resources."""


class LanguageModel(ABC):
    """Plain text completion used for query classification."""

    @abstractmethod
    async def complete(self, prompt: str) -> str:
        """Return the model's raw text response."""

    async def close(self) -> None:
        """Release network sessions or other held resources."""
