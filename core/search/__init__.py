# Path: core/search/__init__.py
# Purpose: Package initializer for query classification, ranking, strategies, and dispatch.
# Layer: core/search.
# Details: Exposes the dispatcher entrypoint together with its strategy and limit building blocks.

from .classifier import SORT_TYPES, VISION_TERMS, QueryClassifier, find_vision_terms
from .dispatcher import DEGRADATION_CHAINS, SortingDispatcher
from .factors import FactorExtractor
from .limits import CallQuota, CircuitBreaker, CostBudget
from .progress import ProgressSnapshot, SortProgress
from .ranker import DEFAULT_WEIGHTS, RankCandidate, SearchRanker
from .strategies import (
    EmbeddingSort,
    ExecutionContext,
    FallbackSort,
    HybridSort,
    MetadataSort,
    SortStrategy,
    StrategyOutcome,
    StrategyToolkit,
    VisualSort,
)

__all__ = [
    "SortingDispatcher",
    "DEGRADATION_CHAINS",
    "QueryClassifier",
    "SORT_TYPES",
    "VISION_TERMS",
    "find_vision_terms",
    "FactorExtractor",
    "CallQuota",
    "CircuitBreaker",
    "CostBudget",
    "ProgressSnapshot",
    "SortProgress",
    "DEFAULT_WEIGHTS",
    "RankCandidate",
    "SearchRanker",
    "SortStrategy",
    "EmbeddingSort",
    "MetadataSort",
    "VisualSort",
    "HybridSort",
    "FallbackSort",
    "ExecutionContext",
    "StrategyOutcome",
    "StrategyToolkit",
]
