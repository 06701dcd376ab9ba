# Path: core/models/domain.py
# Purpose: Define domain models shared across embedding, atlas, aggregation, ranking, and dispatch workflows.
# Layer: core/models.
# Details: Lightweight dataclasses for records and results; pydantic models validate per-source image metadata.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


class ExecutionStrategy(str, Enum):
    """Execution path chosen once per sorting request."""

    EMBEDDING = "embedding"
    METADATA = "metadata"
    VISUAL = "visual"
    HYBRID = "hybrid"
    FALLBACK = "fallback"


# Structured metadata, one schema per known analysis source.


class DetectedLabel(BaseModel):
    """A label reported by a detector, with confidence in percent (0-100)."""

    name: str
    confidence: float = Field(default=100.0, ge=0.0, le=100.0)


class QualityAnalysis(BaseModel):
    """Technical quality measurements, scores normalized to [0, 1]."""

    quality_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    brightness_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    aesthetic_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    blur_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)
    file_size: Optional[int] = Field(default=None, ge=0)
    format: Optional[str] = None


class ObjectDetection(BaseModel):
    """Objects found in the image."""

    labels: List[DetectedLabel] = Field(default_factory=list)
    text_detected: bool = False
    faces_count: Optional[int] = Field(default=None, ge=0)


class SceneAnalysis(BaseModel):
    """Scene classification and color summary."""

    scenes: List[DetectedLabel] = Field(default_factory=list)
    scene_type: Optional[str] = None
    dominant_colors: List[str] = Field(default_factory=list)


class ImageMetadata(BaseModel):
    """Structured metadata attached to an image by upstream analysis."""

    quality: Optional[QualityAnalysis] = None
    objects: Optional[ObjectDetection] = None
    scene: Optional[SceneAnalysis] = None
    captured_at: Optional[datetime] = None
    latitude: Optional[float] = Field(default=None, ge=-90.0, le=90.0)
    longitude: Optional[float] = Field(default=None, ge=-180.0, le=180.0)
    location_name: Optional[str] = None
    is_flagged: bool = False
    view_count: int = Field(default=0, ge=0)
    favorite_count: int = Field(default=0, ge=0)

    def is_structured(self) -> bool:
        """Return True when at least one analysis section is present."""

        return any(section is not None for section in (self.quality, self.objects, self.scene))

    def keywords(self, object_threshold: float = 80.0, scene_threshold: float = 70.0, limit: int = 5) -> List[str]:
        """Return confident object and scene label names, most confident objects first."""

        words: List[str] = []
        if self.objects is not None:
            confident = [label for label in self.objects.labels if label.confidence > object_threshold]
            confident.sort(key=lambda label: label.confidence, reverse=True)
            words.extend(label.name for label in confident[:limit])
        if self.scene is not None:
            words.extend(label.name for label in self.scene.scenes if label.confidence > scene_threshold)
            if self.scene.scene_type:
                words.append(self.scene.scene_type)
        return words


@dataclass
class ImageRecord:
    """Metadata describing a stored image and its annotations."""

    id: str
    path: Path
    owner_id: Optional[str] = None
    filename: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    caption: Optional[str] = None
    visual_summary: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    metadata: Optional[ImageMetadata] = None
    analysis: Dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.filename or Path(self.path).name

    @property
    def is_flagged(self) -> bool:
        return bool(self.metadata and self.metadata.is_flagged)

    def has_structured_metadata(self) -> bool:
        return self.metadata is not None and self.metadata.is_structured()

    def text_fields(self) -> List[str]:
        """Return the non-empty free-text fields in priority order."""

        return [text for text in (self.title, self.description, self.caption, self.visual_summary) if text]


@dataclass
class StrategyPreferences:
    """Caller preferences steering strategy selection."""

    allow_visual_analysis: bool = True
    max_vision_calls: int = 5
    exclude_flagged: bool = True
    strategy_hint: Optional[ExecutionStrategy] = None


@dataclass
class ResourceConstraints:
    """Per-request limits; processing time in seconds, cost in credits."""

    max_results: int = 100
    max_processing_time: float = 30.0
    max_cost: float = 10.0
    min_confidence: float = 0.6


@dataclass
class SortingRequest:
    """A free-text sorting query over a set of images owned by one user."""

    query: str
    images: List[ImageRecord]
    owner_id: str = "anonymous"
    preferences: StrategyPreferences = field(default_factory=StrategyPreferences)
    constraints: ResourceConstraints = field(default_factory=ResourceConstraints)
    sort_criteria: List[str] = field(default_factory=list)
    user_context: Dict[str, Any] = field(default_factory=dict)

    def image_ids(self) -> List[str]:
        return [image.id for image in self.images]


@dataclass
class QueryAnalysis:
    """Outcome of query classification."""

    sort_type: str
    confidence: float
    reasoning: str
    parameters: Dict[str, str] = field(default_factory=dict)
    use_vision: bool = False
    vision_terms: List[str] = field(default_factory=list)
    source: str = "rules"


FACTOR_NAMES: Tuple[str, ...] = ("relevance", "quality", "recency", "popularity", "personalization")


@dataclass
class FactorScores:
    """Independent per-image factor scores, each in [0, 1]."""

    relevance: float = 0.0
    quality: float = 0.0
    recency: float = 0.0
    popularity: float = 0.0
    personalization: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return {name: float(getattr(self, name)) for name in FACTOR_NAMES}


@dataclass
class RankedResult:
    """One image placed in a ranking."""

    image: ImageRecord
    score: float
    position: int
    reasoning: str = ""
    breakdown: Dict[str, float] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SortResponse:
    """Ranked results plus how they were produced."""

    results: List[RankedResult]
    processing_time_ms: float
    confidence: float
    method_used: ExecutionStrategy
    query_analysis: Optional[QueryAnalysis] = None
    from_cache: bool = False
    vision_calls: int = 0
    cost: float = 0.0
    degraded_from: List[ExecutionStrategy] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ContentSource:
    """One tool's opinion about an image's attributes."""

    tool: str
    data: Dict[str, Any]
    confidence: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"ContentSource confidence must lie in [0, 1], got {self.confidence}.")


@dataclass
class SourceValue:
    """The value one source reports for a conflicting field."""

    tool: str
    value: Any
    confidence: float


@dataclass
class Conflict:
    """Disagreement between two or more sources on one dotted field path."""

    field: str
    values: List[SourceValue]
    conflict_type: str


@dataclass
class Resolution:
    field: str
    value: Any
    reason: str


@dataclass
class AggregatedContent:
    """Merged view of one image across all content sources."""

    merged_data: Dict[str, Any]
    sources: List[ContentSource]
    confidence: float
    conflicts: List[Conflict] = field(default_factory=list)
    resolutions: Dict[str, Resolution] = field(default_factory=dict)


@dataclass
class Bounds:
    x: int
    y: int
    width: int
    height: int


@dataclass
class AtlasPosition:
    """Where one source image sits inside an atlas composite."""

    image_id: str
    path: Path
    bounds: Bounds
    placeholder: bool = False


@dataclass
class Atlas:
    """A composite of up to nine images and the map from labels back to images."""

    images: List[ImageRecord]
    buffer: bytes
    position_map: Dict[str, AtlasPosition]
    cache_key: str
    purpose: str
    created_at: float
    expires_at: float
    image_format: str = "jpeg"

    @property
    def size(self) -> int:
        return len(self.buffer)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def image_id_for(self, label: str) -> Optional[str]:
        position = self.position_map.get(label.strip().upper())
        return position.image_id if position else None


@dataclass
class PositionAnalysis:
    """Visual-analysis verdict for one atlas cell."""

    description: str
    tags: List[str] = field(default_factory=list)
    suitability_score: float = 0.0
    reasoning: str = ""
    confidence: float = 0.8
