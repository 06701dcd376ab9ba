# Path: core/models/__init__.py
# Purpose: Package initializer for domain model definitions.
# Layer: core/models.
# Details: Exposes dataclasses and metadata schemas used across the sorting pipeline.

from .domain import (
    FACTOR_NAMES,
    AggregatedContent,
    Atlas,
    AtlasPosition,
    Bounds,
    Conflict,
    ContentSource,
    DetectedLabel,
    ExecutionStrategy,
    FactorScores,
    ImageMetadata,
    ImageRecord,
    ObjectDetection,
    PositionAnalysis,
    QualityAnalysis,
    QueryAnalysis,
    RankedResult,
    Resolution,
    ResourceConstraints,
    SceneAnalysis,
    SortingRequest,
    SortResponse,
    SourceValue,
    StrategyPreferences,
)

__all__ = [
    "FACTOR_NAMES",
    "AggregatedContent",
    "Atlas",
    "AtlasPosition",
    "Bounds",
    "Conflict",
    "ContentSource",
    "DetectedLabel",
    "ExecutionStrategy",
    "FactorScores",
    "ImageMetadata",
    "ImageRecord",
    "ObjectDetection",
    "PositionAnalysis",
    "QualityAnalysis",
    "QueryAnalysis",
    "RankedResult",
    "Resolution",
    "ResourceConstraints",
    "SceneAnalysis",
    "SortingRequest",
    "SortResponse",
    "SourceValue",
    "StrategyPreferences",
]
