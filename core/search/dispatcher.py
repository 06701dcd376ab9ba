# Path: core/search/dispatcher.py
# Purpose: Orchestrate a sorting request from validation through strategy execution to a cached response.
# Layer: core/search.
# Details: Picks one strategy per request, bounds it by time and budget, and degrades along fixed chains on failure.

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections import Counter
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.aggregation import ContentAggregator
from core.atlas import AtlasVisionAnalyzer
from core.cache import ResultCache, sorting_key
from core.embedders import EmbeddingEngine
from core.errors import InvalidRequestError, InvalidWeightError, ServiceError, SortingError
from core.models.domain import ExecutionStrategy, ImageRecord, SortingRequest, SortResponse
from core.services.base import ImageStore

from .classifier import QueryClassifier
from .factors import FactorExtractor
from .limits import CallQuota, CircuitBreaker, CostBudget
from .progress import CANCELLED, COMPLETED, FAILED, SortProgress
from .ranker import SearchRanker
from .strategies import DEFAULT_STRATEGIES, ExecutionContext, SortStrategy, StrategyOutcome, StrategyToolkit

logger = logging.getLogger(__name__)

DEGRADATION_CHAINS: Dict[ExecutionStrategy, Tuple[ExecutionStrategy, ...]] = {
    ExecutionStrategy.VISUAL: (
        ExecutionStrategy.VISUAL,
        ExecutionStrategy.HYBRID,
        ExecutionStrategy.METADATA,
        ExecutionStrategy.FALLBACK,
    ),
    ExecutionStrategy.HYBRID: (ExecutionStrategy.HYBRID, ExecutionStrategy.METADATA, ExecutionStrategy.FALLBACK),
    ExecutionStrategy.EMBEDDING: (ExecutionStrategy.EMBEDDING, ExecutionStrategy.METADATA, ExecutionStrategy.FALLBACK),
    ExecutionStrategy.METADATA: (ExecutionStrategy.METADATA, ExecutionStrategy.FALLBACK),
    ExecutionStrategy.FALLBACK: (ExecutionStrategy.FALLBACK,),
}


class _Interrupted(Exception):
    """A strategy run stopped by its deadline or by a cancellation request."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class SortingDispatcher:
    """High-level service bridging API and script layers with the sorting strategies."""

    def __init__(
        self,
        cache: Optional[ResultCache] = None,
        classifier: Optional[QueryClassifier] = None,
        embedding_engine: Optional[EmbeddingEngine] = None,
        vision_analyzer: Optional[AtlasVisionAnalyzer] = None,
        aggregator: Optional[ContentAggregator] = None,
        ranker: Optional[SearchRanker] = None,
        factors: Optional[FactorExtractor] = None,
        image_store: Optional[ImageStore] = None,
        breakers: Optional[Dict[str, CircuitBreaker]] = None,
        strategies: Optional[Sequence[SortStrategy]] = None,
        vision_call_cost: float = 1.0,
        vision_concurrency: int = 3,
        max_visual_images: int = 50,
        metadata_min_images: int = 20,
        hybrid_min_images: int = 10,
        hybrid_max_images: int = 100,
        hybrid_sample_ratio: float = 0.3,
        hybrid_max_sample: int = 20,
        cache_min_confidence: float = 0.7,
        result_ttl: float = 3600.0,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.cache = cache if cache is not None else ResultCache()
        self.classifier = classifier or QueryClassifier()
        self.toolkit = StrategyToolkit(
            ranker=ranker or SearchRanker(),
            factors=factors or FactorExtractor(),
            aggregator=aggregator or ContentAggregator(),
            embedding_engine=embedding_engine,
            vision_analyzer=vision_analyzer,
            image_store=image_store,
            breakers=dict(breakers or {}),
            vision_call_cost=vision_call_cost,
            vision_concurrency=vision_concurrency,
            hybrid_sample_ratio=hybrid_sample_ratio,
            hybrid_max_sample=hybrid_max_sample,
        )
        self.strategies: Dict[ExecutionStrategy, SortStrategy] = {
            strategy.id: strategy for strategy in (strategies or DEFAULT_STRATEGIES)
        }
        self.max_visual_images = max_visual_images
        self.metadata_min_images = metadata_min_images
        self.hybrid_min_images = hybrid_min_images
        self.hybrid_max_images = hybrid_max_images
        self.cache_min_confidence = cache_min_confidence
        self.result_ttl = result_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, **services) -> "SortingDispatcher":
        """Build a dispatcher from :class:`config.AppSettings` and already-constructed services."""

        dispatch = settings.dispatcher
        breakers = {
            name: CircuitBreaker.from_settings(name, dispatch) for name in ("vision", "embedding")
        }
        return cls(
            breakers=breakers,
            vision_call_cost=settings.vision.call_cost,
            vision_concurrency=settings.vision.concurrency,
            max_visual_images=dispatch.max_visual_images,
            metadata_min_images=dispatch.metadata_min_images,
            hybrid_min_images=dispatch.hybrid_min_images,
            hybrid_max_images=dispatch.hybrid_max_images,
            hybrid_sample_ratio=dispatch.hybrid_sample_ratio,
            hybrid_max_sample=dispatch.hybrid_max_sample,
            cache_min_confidence=dispatch.cache_min_confidence,
            result_ttl=dispatch.result_ttl,
            aggregator=ContentAggregator.from_settings(settings.aggregation),
            **services,
        )

    @staticmethod
    def validate(request: SortingRequest) -> None:
        if not request.query or not request.query.strip():
            raise InvalidRequestError("Sorting query must not be empty.")
        if not request.images:
            raise InvalidRequestError("Sorting request needs at least one image.")
        ids = request.image_ids()
        if len(set(ids)) != len(ids):
            raise InvalidRequestError("Image ids must be unique within a request.")
        constraints = request.constraints
        if constraints.max_results <= 0:
            raise InvalidRequestError("max_results must be positive.")
        if constraints.max_processing_time <= 0:
            raise InvalidRequestError("max_processing_time must be positive.")
        if constraints.max_cost < 0 or request.preferences.max_vision_calls < 0:
            raise InvalidRequestError("Cost and vision-call limits must not be negative.")
        if not 0.0 <= constraints.min_confidence <= 1.0:
            raise InvalidRequestError("min_confidence must lie in [0, 1].")
        weights = request.user_context.get("weights")
        if weights:
            try:
                SearchRanker.validate_weights(weights)
            except (InvalidWeightError, TypeError, ValueError) as exc:
                raise InvalidRequestError(f"Invalid ranking weights: {exc}") from exc

    def cache_key(self, request: SortingRequest) -> str:
        preferences = request.preferences
        hints = {
            "strategy": ExecutionStrategy(preferences.strategy_hint).value if preferences.strategy_hint else None,
            "criteria": list(request.sort_criteria),
            "allow_visual": preferences.allow_visual_analysis,
            "exclude_flagged": preferences.exclude_flagged,
            "max_results": request.constraints.max_results,
            "min_confidence": request.constraints.min_confidence,
            "weights": dict(request.user_context.get("weights") or {}),
        }
        return sorting_key(request.query, request.owner_id, request.image_ids(), hints)

    def select_strategy(self, context: ExecutionContext) -> ExecutionStrategy:
        """Pick the execution path; an explicit hint always wins."""

        hint = context.request.preferences.strategy_hint
        if hint is not None:
            return ExecutionStrategy(hint)

        images = context.images
        count = len(images)
        if count == 0:
            return ExecutionStrategy.FALLBACK
        vision_ok = self.toolkit.vision_available(context)
        structured = sum(1 for image in images if image.has_structured_metadata())

        if vision_ok and context.analysis.vision_terms and count <= self.max_visual_images:
            return ExecutionStrategy.VISUAL
        if structured * 2 > count and count > self.metadata_min_images:
            return ExecutionStrategy.METADATA
        if vision_ok and self.hybrid_min_images < count <= self.hybrid_max_images:
            return ExecutionStrategy.HYBRID
        engine = self.toolkit.embedding_engine
        if engine is not None and any(engine.has_embeddable_content(image) for image in images):
            return ExecutionStrategy.EMBEDDING
        return ExecutionStrategy.FALLBACK

    async def dispatch(
        self,
        request: SortingRequest,
        budget: Optional[CostBudget] = None,
        progress: Optional[SortProgress] = None,
    ) -> SortResponse:
        """
        Run a sorting request end to end.

        External calls:
        - core/search/classifier.py::QueryClassifier.classify - sort type and vision terms.
        - core/search/strategies.py::SortStrategy.execute - the selected path and its degradations.
        - core/cache/result_cache.py::ResultCache.get/set - response reuse.
        """

        self.validate(request)
        started = self._clock()
        key = self.cache_key(request)

        cached = self._cache_get(key)
        if cached is not None:
            logger.info("Serving sorting result from cache (%s)", key)
            if progress is not None:
                progress.close(COMPLETED, "Served from cache")
            return dataclasses.replace(cached, from_cache=True, processing_time_ms=self._elapsed_ms(started))

        try:
            response = await self._run(request, budget, progress, started, key)
        except Exception:
            if progress is not None:
                progress.close(FAILED)
            raise
        if progress is not None:
            progress.close(CANCELLED if response.metadata.get("cancelled") else COMPLETED)
        return response

    async def _run(
        self,
        request: SortingRequest,
        budget: Optional[CostBudget],
        progress: Optional[SortProgress],
        started: float,
        key: str,
    ) -> SortResponse:
        if progress is not None:
            progress.update("classifying", 5, "Analyzing query")
        analysis = await self.classifier.classify(request.query)

        images = list(request.images)
        if request.preferences.exclude_flagged:
            images = [image for image in images if not image.is_flagged]

        context = ExecutionContext(
            request=request,
            images=images,
            analysis=analysis,
            quota=CallQuota(request.preferences.max_vision_calls),
            request_budget=CostBudget(request.constraints.max_cost),
            caller_budget=budget,
            progress=progress,
        )
        selected = self.select_strategy(context)
        logger.info(
            "Selected %s strategy for %d images (sort type %s, confidence %.2f)",
            selected.value,
            len(images),
            analysis.sort_type,
            analysis.confidence,
        )
        context.report("executing", 20, f"Running {selected.value} strategy")

        deadline = started + request.constraints.max_processing_time
        outcome, used, degraded, interrupted = await self._execute(selected, context, deadline)

        results = outcome.results[: request.constraints.max_results]
        metadata = {
            "selected_strategy": selected.value,
            "timed_out": interrupted == "timeout",
            "cancelled": interrupted == "cancelled",
            "notes": list(context.notes),
            "excluded_flagged": len(request.images) - len(images),
        }
        diversity = self._diversity([result.image for result in results])
        if diversity is not None:
            metadata["diversity"] = diversity
        if outcome.confidence < request.constraints.min_confidence:
            logger.warning(
                "%s result confidence %.2f is below the requested %.2f",
                used.value,
                outcome.confidence,
                request.constraints.min_confidence,
            )
            metadata["below_min_confidence"] = True

        response = SortResponse(
            results=results,
            processing_time_ms=self._elapsed_ms(started),
            confidence=outcome.confidence,
            method_used=used,
            query_analysis=analysis,
            vision_calls=context.vision_calls,
            cost=context.cost,
            degraded_from=degraded,
            metadata=metadata,
        )
        if interrupted is None and response.confidence > self.cache_min_confidence:
            self._cache_set(key, response)
        return response

    async def _execute(
        self,
        selected: ExecutionStrategy,
        context: ExecutionContext,
        deadline: float,
    ) -> Tuple[StrategyOutcome, ExecutionStrategy, List[ExecutionStrategy], Optional[str]]:
        degraded: List[ExecutionStrategy] = []
        for candidate in DEGRADATION_CHAINS[selected]:
            if candidate in (ExecutionStrategy.VISUAL, ExecutionStrategy.HYBRID) and not self.toolkit.vision_available(context):
                if candidate == selected:
                    degraded.append(candidate)
                continue
            if candidate == ExecutionStrategy.FALLBACK:
                return await self._strategy(candidate).execute(context, self.toolkit), candidate, degraded, None

            try:
                outcome = await self._run_bounded(candidate, context, deadline - self._clock())
                return outcome, candidate, degraded, None
            except _Interrupted as interrupted:
                logger.warning("%s strategy %s; ranking partial signals by metadata", candidate.value, interrupted.reason)
                degraded.append(candidate)
                context.notes.append(f"{candidate.value} {interrupted.reason}")
                metadata = self._strategy(ExecutionStrategy.METADATA)
                return await metadata.execute(context, self.toolkit), ExecutionStrategy.METADATA, degraded, interrupted.reason
            except ServiceError as exc:
                logger.warning("%s strategy failed, degrading: %s", candidate.value, exc)
                degraded.append(candidate)
                context.notes.append(f"{candidate.value} failed: {exc}")

        raise SortingError(f"No strategy produced a result for {selected.value}.")

    async def _run_bounded(self, candidate: ExecutionStrategy, context: ExecutionContext, remaining: float) -> StrategyOutcome:
        if remaining <= 0:
            raise _Interrupted("timeout")

        task = asyncio.ensure_future(self._strategy(candidate).execute(context, self.toolkit))
        waiters = {task}
        cancel_waiter = None
        if context.progress is not None:
            cancel_waiter = asyncio.ensure_future(context.progress.wait_cancelled())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except ServiceError as exc:
            logger.debug("Strategy raised while being cancelled: %s", exc)
        raise _Interrupted("cancelled" if context.progress is not None and context.progress.cancelled else "timeout")

    async def close(self) -> None:
        """Release sessions held by the embedding, vision, and classification backends."""

        if self.toolkit.embedding_engine is not None:
            await self.toolkit.embedding_engine.service.close()
        if self.toolkit.vision_analyzer is not None:
            await self.toolkit.vision_analyzer.vision.close()
        model = self.classifier.language_model
        if model is not None and (self.toolkit.vision_analyzer is None or model is not self.toolkit.vision_analyzer.vision):
            await model.close()

    def _diversity(self, images: List[ImageRecord]) -> Optional[float]:
        """Diversity over the embeddings sharing the most common length; None without embeddings."""

        engine = self.toolkit.embedding_engine
        lengths = Counter(len(image.embedding) for image in images if image.embedding)
        if engine is None or not lengths:
            return None
        dim = lengths.most_common(1)[0][0]
        if len(lengths) > 1:
            logger.debug("Diversity ignores embeddings not of length %d", dim)
        return engine.diversity_score([image for image in images if image.embedding and len(image.embedding) == dim])

    def _strategy(self, strategy: ExecutionStrategy) -> SortStrategy:
        return self.strategies[strategy]

    def _cache_get(self, key: str) -> Optional[SortResponse]:
        try:
            return self.cache.get(key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Result cache read failed for %s: %s", key, exc)
            return None

    def _cache_set(self, key: str, response: SortResponse) -> None:
        try:
            self.cache.set(key, response, ttl=self.result_ttl)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Result cache write failed for %s: %s", key, exc)

    def _elapsed_ms(self, started: float) -> float:
        return (self._clock() - started) * 1000.0
