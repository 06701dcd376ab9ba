# Path: api/schemas.py
# Purpose: Define the HTTP request and response payloads of the sorting API.
# Layer: api.
# Details: camelCase on the wire, converted to and from the core dataclasses here.

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.models.domain import (
    ExecutionStrategy,
    ImageMetadata,
    ImageRecord,
    RankedResult,
    ResourceConstraints,
    SortingRequest,
    SortResponse,
    StrategyPreferences,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImagePayload(CamelModel):
    id: str = Field(min_length=1)
    path: str = ""
    filename: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    caption: Optional[str] = None
    visual_summary: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    embedding: Optional[List[float]] = None
    metadata: Optional[ImageMetadata] = None

    def to_record(self, owner_id: str) -> ImageRecord:
        return ImageRecord(
            id=self.id,
            path=Path(self.path or self.id),
            owner_id=owner_id,
            filename=self.filename,
            title=self.title,
            description=self.description,
            caption=self.caption,
            visual_summary=self.visual_summary,
            tags=list(self.tags),
            embedding=self.embedding,
            metadata=self.metadata,
        )

    @classmethod
    def from_record(cls, record: ImageRecord) -> "ImagePayload":
        return cls(
            id=record.id,
            path=str(record.path),
            filename=record.filename,
            title=record.title,
            description=record.description,
            caption=record.caption,
            visual_summary=record.visual_summary,
            tags=list(record.tags),
            metadata=record.metadata,
        )


class SortOptions(CamelModel):
    max_results: Optional[int] = Field(default=None, gt=0)
    sort_criteria: List[str] = Field(default_factory=list)
    use_visual_analysis: bool = True
    user_context: Dict[str, Any] = Field(default_factory=dict)
    strategy_hint: Optional[ExecutionStrategy] = None
    max_processing_time: Optional[float] = Field(default=None, gt=0)
    max_vision_calls: Optional[int] = Field(default=None, ge=0)
    max_cost: Optional[float] = Field(default=None, ge=0)
    min_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    exclude_flagged: bool = True


class SortRequestBody(CamelModel):
    query: str
    images: List[ImagePayload] = Field(default_factory=list)
    image_ids: List[str] = Field(default_factory=list)
    owner_id: str = "anonymous"
    options: SortOptions = Field(default_factory=SortOptions)

    def to_request(self, records: List[ImageRecord], defaults: Any = None) -> SortingRequest:
        """Build the core request; ``defaults`` is a :class:`config.DispatcherSettings`."""

        options = self.options
        preferences = StrategyPreferences(
            allow_visual_analysis=options.use_visual_analysis,
            exclude_flagged=options.exclude_flagged,
            strategy_hint=options.strategy_hint,
        )
        constraints = ResourceConstraints()
        if defaults is not None:
            preferences.max_vision_calls = defaults.default_max_vision_calls
            constraints = ResourceConstraints(
                max_results=defaults.default_max_results,
                max_processing_time=defaults.default_max_processing_time,
                max_cost=defaults.default_max_cost,
            )
        if options.max_vision_calls is not None:
            preferences.max_vision_calls = options.max_vision_calls
        if options.max_results is not None:
            constraints.max_results = options.max_results
        if options.max_processing_time is not None:
            constraints.max_processing_time = options.max_processing_time
        if options.max_cost is not None:
            constraints.max_cost = options.max_cost
        if options.min_confidence is not None:
            constraints.min_confidence = options.min_confidence

        return SortingRequest(
            query=self.query,
            images=records,
            owner_id=self.owner_id,
            preferences=preferences,
            constraints=constraints,
            sort_criteria=list(options.sort_criteria),
            user_context=dict(options.user_context),
        )


class SortedImage(CamelModel):
    image: ImagePayload
    sort_score: float
    position: int
    reasoning: str = ""
    breakdown: Dict[str, float] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: RankedResult) -> "SortedImage":
        return cls(
            image=ImagePayload.from_record(result.image),
            sort_score=result.score,
            position=result.position,
            reasoning=result.reasoning,
            breakdown=result.breakdown,
            metadata=result.metadata,
        )


class SortResponseBody(CamelModel):
    results: List[SortedImage]
    processing_time_ms: float
    confidence: float
    method_used: ExecutionStrategy
    from_cache: bool = False
    vision_calls: int = 0
    cost: float = 0.0
    degraded_from: List[ExecutionStrategy] = Field(default_factory=list)
    sort_type: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_response(cls, response: SortResponse) -> "SortResponseBody":
        return cls(
            results=[SortedImage.from_result(result) for result in response.results],
            processing_time_ms=response.processing_time_ms,
            confidence=response.confidence,
            method_used=response.method_used,
            from_cache=response.from_cache,
            vision_calls=response.vision_calls,
            cost=response.cost,
            degraded_from=list(response.degraded_from),
            sort_type=response.query_analysis.sort_type if response.query_analysis else None,
            metadata=response.metadata,
        )
