"""Test doubles and record builders shared across the test modules."""

import asyncio
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from core.errors import ClassificationError, StorageError, VisualAnalysisError
from core.models.domain import (
    AtlasPosition,
    DetectedLabel,
    ImageMetadata,
    ImageRecord,
    ObjectDetection,
    PositionAnalysis,
    QualityAnalysis,
)
from core.services.base import LanguageModel, ObjectStore, VisualAnalysisService


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVision(VisualAnalysisService):
    """Scores each cell from a per-image table; can be slowed down or made to fail."""

    def __init__(self, scores: Optional[Dict[str, float]] = None, delay: float = 0.0, fail: bool = False) -> None:
        self.scores = scores or {}
        self.delay = delay
        self.fail = fail
        self.calls: List[Dict[str, AtlasPosition]] = []
        self.reference_urls: List[Optional[str]] = []

    async def analyze(
        self,
        composite: bytes,
        position_map: Mapping[str, AtlasPosition],
        query: str,
        reference_url: Optional[str] = None,
    ) -> Dict[str, PositionAnalysis]:
        self.calls.append(dict(position_map))
        self.reference_urls.append(reference_url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise VisualAnalysisError("vision backend down")
        return {
            label: PositionAnalysis(
                description=f"photo {position.image_id}",
                tags=["photo"],
                suitability_score=self.scores.get(position.image_id, 0.5),
                reasoning="fake",
                confidence=0.9,
            )
            for label, position in position_map.items()
        }


class FakeLanguageModel(LanguageModel):
    def __init__(self, reply: Optional[str] = None, fail: bool = False) -> None:
        self.reply = reply
        self.fail = fail
        self.prompts: List[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise ClassificationError("model unavailable")
        return self.reply or ""


class MemoryObjectStore(ObjectStore):
    def __init__(self, fail_delete: bool = False) -> None:
        self.objects: Dict[str, bytes] = {}
        self.deleted: List[str] = []
        self.fail_delete = fail_delete

    async def upload(self, buffer: bytes, name: str) -> str:
        self.objects[name] = buffer
        return f"memory://{name}"

    async def delete(self, name: str) -> None:
        if self.fail_delete:
            raise StorageError("delete refused")
        self.objects.pop(name, None)
        self.deleted.append(name)


def make_record(image_id: str, path: Optional[Path] = None, **fields) -> ImageRecord:
    fields.setdefault("owner_id", "user-1")
    return ImageRecord(id=image_id, path=path or Path(f"/missing/{image_id}.jpg"), **fields)


def make_metadata(quality: float = 0.5, labels: Optional[List[str]] = None, **fields) -> ImageMetadata:
    return ImageMetadata(
        quality=QualityAnalysis(quality_score=quality, aesthetic_score=quality),
        objects=ObjectDetection(labels=[DetectedLabel(name=name, confidence=95.0) for name in labels or []]),
        **fields,
    )
