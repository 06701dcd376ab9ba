# Path: core/search/strategies.py
# Purpose: Define the five sorting strategies and the per-request context they share.
# Layer: core/search.
# Details: Strategies gather signals (metadata, embeddings, atlas vision), combine them per image, and rank.

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from core.aggregation import ContentAggregator
from core.atlas import AtlasVisionAnalyzer
from core.embedders import EmbeddingEngine
from core.errors import EmbeddingServiceError, ServiceError, VisualAnalysisError
from core.models.domain import (
    FACTOR_NAMES,
    ContentSource,
    ExecutionStrategy,
    ImageRecord,
    PositionAnalysis,
    QueryAnalysis,
    RankedResult,
    SortingRequest,
)
from core.services.base import ImageStore

from .factors import FactorExtractor
from .limits import CallQuota, CircuitBreaker, CostBudget
from .progress import SortProgress
from .ranker import DEFAULT_WEIGHTS, RankCandidate, SearchRanker

logger = logging.getLogger(__name__)

METADATA_SOURCE_CONFIDENCE = 0.7
EMBEDDING_SOURCE_CONFIDENCE = 0.75
NO_SIGNAL_CONFIDENCE = 0.3
FALLBACK_CONFIDENCE = 0.3
HYBRID_VISION_SHARE = 0.6
CRITERIA_BOOST = 0.3

# Per sort type, factor weights used by the metadata strategy.
SORT_TYPE_WEIGHTS: Dict[str, Dict[str, float]] = {
    "chronological": {"relevance": 0.2, "recency": 0.8},
    "thumbnail": {"relevance": 0.4, "quality": 0.6},
}


@dataclass
class ExecutionContext:
    """Mutable per-request state; partial signals survive a cancelled strategy."""

    request: SortingRequest
    images: List[ImageRecord]
    analysis: QueryAnalysis
    quota: CallQuota
    request_budget: CostBudget
    caller_budget: Optional[CostBudget] = None
    progress: Optional[SortProgress] = None
    vision_results: Dict[str, PositionAnalysis] = field(default_factory=dict)
    similarities: Dict[str, float] = field(default_factory=dict)
    vision_calls: int = 0
    cost: float = 0.0
    notes: List[str] = field(default_factory=list)

    def can_reserve_vision_call(self, cost: float) -> bool:
        return (
            self.quota.available()
            and self.request_budget.can_afford(cost)
            and (self.caller_budget is None or self.caller_budget.can_afford(cost))
        )

    def reserve_vision_call(self, cost: float) -> bool:
        if not self.can_reserve_vision_call(cost):
            return False
        self.quota.try_acquire()
        self.request_budget.try_spend(cost)
        if self.caller_budget is not None:
            self.caller_budget.try_spend(cost)
        self.vision_calls += 1
        self.cost += cost
        return True

    def report(self, stage: str, percent: float, message: str = "") -> None:
        if self.progress is not None:
            self.progress.update(stage, percent, message)


@dataclass
class StrategyToolkit:
    """Collaborators shared by every strategy of one dispatcher."""

    ranker: SearchRanker
    factors: FactorExtractor
    aggregator: ContentAggregator
    embedding_engine: Optional[EmbeddingEngine] = None
    vision_analyzer: Optional[AtlasVisionAnalyzer] = None
    image_store: Optional[ImageStore] = None
    breakers: Dict[str, CircuitBreaker] = field(default_factory=dict)
    vision_call_cost: float = 1.0
    vision_concurrency: int = 3
    hybrid_sample_ratio: float = 0.3
    hybrid_max_sample: int = 20

    def breaker(self, name: str) -> CircuitBreaker:
        if name not in self.breakers:
            self.breakers[name] = CircuitBreaker(name)
        return self.breakers[name]

    def vision_available(self, context: ExecutionContext) -> bool:
        return (
            self.vision_analyzer is not None
            and context.request.preferences.allow_visual_analysis
            and self.breaker("vision").available()
            and context.can_reserve_vision_call(self.vision_call_cost)
        )


@dataclass
class StrategyOutcome:
    results: List[RankedResult]
    confidence: float


class SortStrategy(ABC):
    """Interface for one execution path of the dispatcher."""

    id: ExecutionStrategy
    description: str

    @abstractmethod
    async def execute(self, context: ExecutionContext, toolkit: StrategyToolkit) -> StrategyOutcome:
        """Produce a ranking for ``context.images``; raise ServiceError when a required backend fails."""


def request_weights(context: ExecutionContext, base: Mapping[str, float]) -> Dict[str, float]:
    """Strategy weights adjusted by the caller's sort criteria, or replaced by explicit ``weights``."""

    explicit = context.request.user_context.get("weights")
    if explicit:
        return dict(explicit)

    table = {name: float(base.get(name, 0.0)) for name in FACTOR_NAMES}
    named = [criterion for criterion in context.request.sort_criteria if criterion in table]
    if not named:
        return table
    for name in named:
        table[name] += CRITERIA_BOOST
    total = sum(table.values())
    return {name: value / total for name, value in table.items()}


def signal_sources(context: ExecutionContext, toolkit: StrategyToolkit, image: ImageRecord) -> List[ContentSource]:
    """Every signal collected so far for one image, as aggregator inputs."""

    sources: List[ContentSource] = []
    if image.has_structured_metadata() or image.text_fields() or image.tags:
        keywords = image.metadata.keywords() if image.metadata else []
        sources.append(
            ContentSource(
                tool="metadata",
                data={"relevance": toolkit.factors.text_relevance(context.request.query, image), "tags": list(image.tags) + keywords},
                confidence=METADATA_SOURCE_CONFIDENCE,
            )
        )
    analysis = context.vision_results.get(image.id)
    if analysis is not None:
        sources.append(
            ContentSource(
                tool="vision",
                data={"relevance": analysis.suitability_score, "tags": list(analysis.tags), "description": analysis.description},
                confidence=min(1.0, max(0.0, analysis.confidence)),
            )
        )
    similarity = context.similarities.get(image.id)
    if similarity is not None:
        sources.append(ContentSource(tool="embedding", data={"relevance": similarity}, confidence=EMBEDDING_SOURCE_CONFIDENCE))
    return sources


def combine_signals(
    context: ExecutionContext, toolkit: StrategyToolkit, image: ImageRecord
) -> Tuple[Optional[float], float, Dict[str, object]]:
    """Return (relevance or None, signal confidence, result metadata) for one image."""

    sources = signal_sources(context, toolkit, image)
    if not sources:
        return None, NO_SIGNAL_CONFIDENCE, {"sources": []}

    tools = [source.tool for source in sources]
    if len(sources) == 1:
        return float(sources[0].data["relevance"]), sources[0].confidence, {"sources": tools}

    aggregated = toolkit.aggregator.aggregate(sources)
    metadata: Dict[str, object] = {
        "sources": tools,
        "conflicts_resolved": len(aggregated.resolutions),
        "tags": aggregated.merged_data.get("tags", []),
    }
    relevance = aggregated.merged_data.get("relevance")
    return (float(relevance) if relevance is not None else None), aggregated.confidence, metadata


def rank_with_signals(
    context: ExecutionContext,
    toolkit: StrategyToolkit,
    base_weights: Mapping[str, float],
    relevance_override: Optional[Mapping[str, float]] = None,
) -> StrategyOutcome:
    """Combine each image's signals, score all factors, and rank."""

    relevance: Dict[str, float] = {}
    confidences: List[float] = []
    extra: Dict[str, Dict[str, object]] = {}
    for image in context.images:
        value, confidence, metadata = combine_signals(context, toolkit, image)
        if relevance_override and image.id in relevance_override:
            value = relevance_override[image.id]
        if value is not None:
            relevance[image.id] = value
        confidences.append(confidence)
        analysis = context.vision_results.get(image.id)
        if analysis is not None:
            metadata["vision"] = {"description": analysis.description, "tags": analysis.tags, "reasoning": analysis.reasoning}
        extra[image.id] = metadata

    factor_scores = toolkit.factors.extract(context.request.query, context.images, context.request.user_context, relevance)
    candidates = [RankCandidate(image, factor_scores[image.id], extra[image.id]) for image in context.images]
    results = toolkit.ranker.rank(candidates, request_weights(context, base_weights))
    confidence = sum(confidences) / len(confidences) if confidences else FALLBACK_CONFIDENCE
    return StrategyOutcome(results=results, confidence=confidence)


async def run_visual_analysis(context: ExecutionContext, toolkit: StrategyToolkit, images: Sequence[ImageRecord]) -> int:
    """
    Analyze images atlas by atlas under the vision quota, cost budget, and concurrency cap.

    Returns the number of successful calls; raises VisualAnalysisError when no call succeeded.

    External calls:
    - core/atlas/vision.py::AtlasVisionAnalyzer.analyze - one call per packed atlas.
    - core/services/base.py::ImageStore.update_analysis - best-effort write-back of summaries.
    """

    analyzer = toolkit.vision_analyzer
    if analyzer is None:
        raise VisualAnalysisError("No visual analysis service is configured.")
    breaker = toolkit.breaker("vision")
    semaphore = asyncio.Semaphore(toolkit.vision_concurrency)
    chunks = analyzer.packer.chunk(list(images))
    completed = 0

    async def _analyze(chunk: List[ImageRecord]) -> bool:
        nonlocal completed
        async with semaphore:
            try:
                results = await analyzer.analyze(chunk, context.request.query, purpose="sorting")
            except ServiceError as exc:
                breaker.record_failure()
                logger.warning("Atlas analysis of %d images failed: %s", len(chunk), exc)
                return False
            breaker.record_success()
            context.vision_results.update(results)
            completed += 1
            context.report("visual_analysis", 30 + 50 * completed / len(chunks), f"Analyzed {completed} of {len(chunks)} atlases")
            await _persist(context, toolkit, results)
            return True

    tasks = []
    for chunk in chunks:
        if not breaker.allow():
            context.notes.append("vision circuit open")
            break
        if not context.reserve_vision_call(toolkit.vision_call_cost):
            context.notes.append("vision budget exhausted")
            logger.info("Vision budget exhausted after %d calls", context.vision_calls)
            break
        tasks.append(_analyze(chunk))

    if not tasks:
        raise VisualAnalysisError("No visual analysis call could be scheduled.")
    outcomes = await asyncio.gather(*tasks)
    succeeded = sum(1 for ok in outcomes if ok)
    if succeeded == 0:
        raise VisualAnalysisError(f"All {len(tasks)} visual analysis calls failed.")
    return succeeded


async def _persist(context: ExecutionContext, toolkit: StrategyToolkit, results: Mapping[str, PositionAnalysis]) -> None:
    if toolkit.image_store is None:
        return
    for image_id, analysis in results.items():
        try:
            await toolkit.image_store.update_analysis(
                image_id,
                {"visual_summary": analysis.description, "vision_tags": list(analysis.tags)},
                context.request.owner_id,
            )
        except ServiceError as exc:
            logger.warning("Could not persist analysis for %s: %s", image_id, exc)


class EmbeddingSort(SortStrategy):
    """Rank by cosine similarity between the query and image embeddings."""

    id = ExecutionStrategy.EMBEDDING
    description = "Embed the query, backfill missing image embeddings, rank by similarity."
    weights = {"relevance": 0.7, "quality": 0.15, "recency": 0.05, "popularity": 0.05, "personalization": 0.05}

    async def execute(self, context: ExecutionContext, toolkit: StrategyToolkit) -> StrategyOutcome:
        engine = toolkit.embedding_engine
        if engine is None:
            raise EmbeddingServiceError("No embedding service is configured.")
        breaker = toolkit.breaker("embedding")
        if not breaker.allow():
            raise EmbeddingServiceError("Embedding circuit is open.")

        context.report("embedding", 30, "Embedding query and images")
        try:
            query_vector = await engine.embed_query(context.request.query)
            await engine.ensure_embeddings(context.images, context.request.owner_id)
        except ServiceError:
            breaker.record_failure()
            raise
        breaker.record_success()

        comparable = [image for image in context.images if image.embedding and len(image.embedding) == len(query_vector)]
        if len(comparable) < len(context.images):
            logger.warning("%d images have incomparable embeddings", len(context.images) - len(comparable))
        context.similarities.update(engine.similarity_map(query_vector, comparable))
        context.report("ranking", 85, "Ranking by similarity")
        return rank_with_signals(context, toolkit, self.weights)


class MetadataSort(SortStrategy):
    """Rank from stored metadata plus whatever partial signals the request already holds."""

    id = ExecutionStrategy.METADATA
    description = "Score relevance, quality, recency, and popularity from stored metadata."

    async def execute(self, context: ExecutionContext, toolkit: StrategyToolkit) -> StrategyOutcome:
        context.report("ranking", 85, "Ranking from metadata")
        weights = SORT_TYPE_WEIGHTS.get(context.analysis.sort_type, DEFAULT_WEIGHTS)
        return rank_with_signals(context, toolkit, weights)


class VisualSort(SortStrategy):
    """Analyze every image through atlases and rank by visual suitability."""

    id = ExecutionStrategy.VISUAL
    description = "Pack images into atlases, analyze each atlas once, rank by suitability."
    weights = {"relevance": 0.8, "quality": 0.2}

    async def execute(self, context: ExecutionContext, toolkit: StrategyToolkit) -> StrategyOutcome:
        await run_visual_analysis(context, toolkit, context.images)
        context.report("ranking", 85, "Ranking by visual analysis")
        return rank_with_signals(context, toolkit, self.weights)


class HybridSort(SortStrategy):
    """Analyze a leading sample visually while scoring everything from metadata."""

    id = ExecutionStrategy.HYBRID
    description = "Visual analysis of a sample joined with metadata scoring of the whole set."

    @staticmethod
    def sample_size(count: int, ratio: float, cap: int) -> int:
        return max(1, min(cap, math.ceil(count * ratio)))

    async def execute(self, context: ExecutionContext, toolkit: StrategyToolkit) -> StrategyOutcome:
        size = self.sample_size(len(context.images), toolkit.hybrid_sample_ratio, toolkit.hybrid_max_sample)
        sample = context.images[:size]

        async def _metadata_relevance() -> Dict[str, float]:
            return {image.id: toolkit.factors.text_relevance(context.request.query, image) for image in context.images}

        _, metadata_relevance = await asyncio.gather(
            run_visual_analysis(context, toolkit, sample),
            _metadata_relevance(),
        )

        blended = {
            image_id: HYBRID_VISION_SHARE * analysis.suitability_score
            + (1.0 - HYBRID_VISION_SHARE) * metadata_relevance.get(image_id, 0.0)
            for image_id, analysis in context.vision_results.items()
        }
        context.report("ranking", 85, "Ranking hybrid scores")
        return rank_with_signals(context, toolkit, {"relevance": 1.0}, relevance_override={**metadata_relevance, **blended})


class FallbackSort(SortStrategy):
    """Keep the input order; scores fall linearly from 1."""

    id = ExecutionStrategy.FALLBACK
    description = "Preserve input order when no signal is usable."

    async def execute(self, context: ExecutionContext, toolkit: StrategyToolkit) -> StrategyOutcome:
        count = len(context.images)
        results = [
            RankedResult(
                image=image,
                score=1.0 - index / count,
                position=index + 1,
                reasoning="Original order preserved; no ranking signal was available.",
                breakdown={},
                metadata={"sources": []},
            )
            for index, image in enumerate(context.images)
        ]
        return StrategyOutcome(results=results, confidence=FALLBACK_CONFIDENCE)


DEFAULT_STRATEGIES: Tuple[SortStrategy, ...] = (EmbeddingSort(), MetadataSort(), VisualSort(), HybridSort(), FallbackSort())
