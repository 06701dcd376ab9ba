import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from core.atlas import AtlasPacker, AtlasVisionAnalyzer
from core.embedders import EmbeddingEngine, HashingEmbedder
from core.errors import InvalidRequestError
from core.models.domain import ExecutionStrategy, ResourceConstraints, SortingRequest, StrategyPreferences
from core.search import CircuitBreaker, CostBudget, HybridSort, SortingDispatcher, SortProgress
from core.search.progress import CANCELLED, COMPLETED
from core.services import InMemoryImageStore

from .fakes import FakeVision, make_metadata, make_record


def vision_dispatcher(clock, vision, **kwargs) -> SortingDispatcher:
    packer = AtlasPacker(cell_size=(16, 16), padding=2, clock=clock)
    return SortingDispatcher(vision_analyzer=AtlasVisionAnalyzer(packer, vision), **kwargs)


def request(query, images, **kwargs) -> SortingRequest:
    return SortingRequest(query=query, images=list(images), owner_id="user-1", **kwargs)


def test_vision_query_over_small_set_uses_visual_strategy(plain_records, clock):
    images = plain_records[:10]
    vision = FakeVision(scores={"img-7": 0.95})
    dispatcher = vision_dispatcher(clock, vision)

    response = asyncio.run(dispatcher.dispatch(request("colorful sunset", images)))

    assert response.method_used == ExecutionStrategy.VISUAL
    assert response.vision_calls == 2
    assert response.results[0].image.id == "img-7"
    assert [result.position for result in response.results] == list(range(1, 11))
    assert response.results[0].metadata["vision"]["description"] == "photo img-7"
    assert response.degraded_from == []


def test_vision_query_over_large_set_does_not_use_visual(clock):
    images = [make_record(f"n-{index}") for index in range(200)]
    vision = FakeVision()
    dispatcher = vision_dispatcher(clock, vision)

    response = asyncio.run(dispatcher.dispatch(request("colorful sunset", images)))

    assert response.method_used != ExecutionStrategy.VISUAL
    assert vision.calls == []


def test_vision_failure_degrades_along_the_chain(plain_records, clock):
    dispatcher = vision_dispatcher(clock, FakeVision(fail=True))

    response = asyncio.run(dispatcher.dispatch(request("colorful sunset", plain_records[:10])))

    assert response.method_used == ExecutionStrategy.METADATA
    assert response.degraded_from == [ExecutionStrategy.VISUAL, ExecutionStrategy.HYBRID]
    assert len(response.results) == 10
    assert response.metadata["selected_strategy"] == "visual"


def test_timeout_ranks_partial_signals_by_metadata(plain_records, clock):
    dispatcher = vision_dispatcher(clock, FakeVision(delay=5.0))
    constraints = ResourceConstraints(max_processing_time=0.3)

    response = asyncio.run(dispatcher.dispatch(request("colorful sunset", plain_records[:10], constraints=constraints)))

    assert response.method_used == ExecutionStrategy.METADATA
    assert response.metadata["timed_out"] is True
    assert response.degraded_from == [ExecutionStrategy.VISUAL]
    assert len(response.results) == 10


def test_cancellation_stops_the_strategy_and_closes_progress(plain_records, clock):
    dispatcher = vision_dispatcher(clock, FakeVision(delay=5.0))

    async def scenario():
        progress = SortProgress()
        task = asyncio.create_task(dispatcher.dispatch(request("colorful sunset", plain_records[:10]), progress=progress))
        await asyncio.sleep(0.1)
        progress.cancel()
        response = await asyncio.wait_for(task, timeout=2)
        return response, progress

    response, progress = asyncio.run(scenario())

    assert response.metadata["cancelled"] is True
    assert response.method_used == ExecutionStrategy.METADATA
    assert progress.snapshot().status == CANCELLED


def test_confident_response_is_served_from_cache(plain_records, clock):
    vision = FakeVision()
    dispatcher = vision_dispatcher(clock, vision)
    sort_request = request("colorful sunset", plain_records[:10])

    first = asyncio.run(dispatcher.dispatch(sort_request))
    progress = SortProgress()
    second = asyncio.run(dispatcher.dispatch(sort_request, progress=progress))

    assert first.confidence > 0.7
    assert first.from_cache is False
    assert second.from_cache is True
    assert [result.image.id for result in second.results] == [result.image.id for result in first.results]
    assert len(vision.calls) == 2
    assert progress.snapshot().status == COMPLETED


def test_interrupted_responses_are_not_cached(plain_records, clock):
    vision = FakeVision(delay=5.0)
    dispatcher = vision_dispatcher(clock, vision)
    sort_request = request("colorful sunset", plain_records[:10], constraints=ResourceConstraints(max_processing_time=0.2))

    asyncio.run(dispatcher.dispatch(sort_request))
    again = asyncio.run(dispatcher.dispatch(sort_request))

    assert again.from_cache is False


def test_caller_budget_caps_vision_calls(plain_records, clock):
    vision = FakeVision()
    dispatcher = vision_dispatcher(clock, vision)
    budget = CostBudget(1.0)

    response = asyncio.run(dispatcher.dispatch(request("colorful sunset", plain_records[:10]), budget=budget))

    assert response.vision_calls == 1
    assert response.cost == 1.0
    assert budget.remaining == 0.0
    assert "vision budget exhausted" in response.metadata["notes"]


def test_explicit_hint_wins(plain_records, clock):
    vision = FakeVision()
    dispatcher = vision_dispatcher(clock, vision)
    preferences = StrategyPreferences(strategy_hint=ExecutionStrategy.FALLBACK)

    response = asyncio.run(dispatcher.dispatch(request("colorful sunset", plain_records[:10], preferences=preferences)))

    assert response.method_used == ExecutionStrategy.FALLBACK
    assert vision.calls == []


def test_fallback_preserves_input_order():
    images = [make_record(f"p-{index}") for index in range(5)]
    response = asyncio.run(SortingDispatcher().dispatch(request("anything", images)))

    assert response.method_used == ExecutionStrategy.FALLBACK
    assert [result.image.id for result in response.results] == [image.id for image in images]
    assert [result.score for result in response.results] == pytest.approx([1.0, 0.8, 0.6, 0.4, 0.2])
    assert response.confidence == 0.3


def test_flagged_images_are_excluded_by_default():
    images = [
        make_record("ok-1"),
        make_record("bad", metadata=make_metadata(is_flagged=True)),
        make_record("ok-2"),
    ]
    dispatcher = SortingDispatcher()

    response = asyncio.run(dispatcher.dispatch(request("anything", images)))
    assert [result.image.id for result in response.results] == ["ok-1", "ok-2"]
    assert response.metadata["excluded_flagged"] == 1

    keep = StrategyPreferences(exclude_flagged=False)
    response = asyncio.run(dispatcher.dispatch(request("anything", images, preferences=keep)))
    assert len(response.results) == 3


def test_mostly_structured_large_set_uses_metadata():
    now = datetime.now(timezone.utc)
    images = [
        make_record(f"m-{index}", metadata=make_metadata(captured_at=now - timedelta(days=index * 10)))
        for index in range(25)
    ]
    images.reverse()

    response = asyncio.run(SortingDispatcher().dispatch(request("newest first", images)))

    assert response.method_used == ExecutionStrategy.METADATA
    assert response.results[0].image.id == "m-0"


def test_embedding_strategy_ranks_matching_text_first():
    store = InMemoryImageStore()
    images = [
        make_record("sky", title="blue sky over hills"),
        make_record("car", title="red car on a street"),
        make_record("forest", title="green forest trail"),
    ]
    for image in images:
        store.add(image)
    engine = EmbeddingEngine(HashingEmbedder(dim=64), image_store=store)
    dispatcher = SortingDispatcher(embedding_engine=engine, image_store=store)

    response = asyncio.run(dispatcher.dispatch(request("red car", images)))

    assert response.method_used == ExecutionStrategy.EMBEDDING
    assert response.results[0].image.id == "car"
    assert "embedding" in response.results[0].metadata["sources"]
    assert 0.0 <= response.metadata["diversity"] <= 1.0
    assert all(image.embedding for image in store.all_records())


def test_max_results_truncates():
    images = [make_record(f"t-{index}") for index in range(6)]
    response = asyncio.run(
        SortingDispatcher().dispatch(request("anything", images, constraints=ResourceConstraints(max_results=2)))
    )
    assert len(response.results) == 2


@pytest.mark.parametrize(
    "sort_request",
    [
        request("   ", [make_record("a")]),
        request("beach", []),
        request("beach", [make_record("a"), make_record("a")]),
        request("beach", [make_record("a")], constraints=ResourceConstraints(max_results=0)),
        request("beach", [make_record("a")], user_context={"weights": {"relevance": -1}}),
    ],
)
def test_malformed_requests_are_rejected(sort_request):
    with pytest.raises(InvalidRequestError):
        asyncio.run(SortingDispatcher().dispatch(sort_request))


def test_hybrid_sample_size_is_bounded():
    assert HybridSort.sample_size(10, 0.3, 20) == 3
    assert HybridSort.sample_size(100, 0.3, 20) == 20
    assert HybridSort.sample_size(1, 0.01, 20) == 1


def test_vision_call_quota_stops_further_atlases(clock):
    images = [make_record(f"q-{index}") for index in range(27)]
    vision = FakeVision()
    dispatcher = vision_dispatcher(clock, vision)
    preferences = StrategyPreferences(max_vision_calls=1)

    response = asyncio.run(dispatcher.dispatch(request("colorful sunset", images, preferences=preferences)))

    assert len(vision.calls) == 1
    assert response.vision_calls == 1
    assert "vision budget exhausted" in response.metadata["notes"]
    assert len(response.results) == 27


def test_hybrid_blends_sample_vision_with_metadata(plain_records, clock):
    vision = FakeVision(scores={"img-2": 1.0})
    dispatcher = vision_dispatcher(clock, vision)
    preferences = StrategyPreferences(strategy_hint=ExecutionStrategy.HYBRID)

    response = asyncio.run(dispatcher.dispatch(request("colorful sunset", plain_records[:10], preferences=preferences)))

    assert response.method_used == ExecutionStrategy.HYBRID
    assert len(vision.calls) == 1
    assert sorted(position.image_id for position in vision.calls[0].values()) == ["img-0", "img-1", "img-2"]
    assert [result.image.id for result in response.results[:3]] == ["img-2", "img-0", "img-1"]
    assert [result.score for result in response.results[:4]] == pytest.approx([0.6, 0.3, 0.3, 0.0])
    assert len(response.results) == 10


def test_mixed_embedding_lengths_do_not_break_diversity():
    images = [
        make_record("a", embedding=[1.0, 0.0, 0.0]),
        make_record("b", embedding=[0.0, 1.0, 0.0]),
        make_record("c", embedding=[0.0, 1.0]),
        make_record("d", title="beach"),
    ]
    dispatcher = SortingDispatcher(embedding_engine=EmbeddingEngine(HashingEmbedder(dim=3)))
    preferences = StrategyPreferences(strategy_hint=ExecutionStrategy.METADATA)

    response = asyncio.run(dispatcher.dispatch(request("beach", images, preferences=preferences)))

    assert response.method_used == ExecutionStrategy.METADATA
    assert len(response.results) == 4
    assert response.metadata["diversity"] == pytest.approx(0.0)


def test_results_below_min_confidence_are_flagged():
    images = [make_record(f"c-{index}") for index in range(3)]
    dispatcher = SortingDispatcher()

    strict = asyncio.run(dispatcher.dispatch(request("anything", images, constraints=ResourceConstraints(min_confidence=0.6))))
    lenient = asyncio.run(dispatcher.dispatch(request("anything", images, constraints=ResourceConstraints(min_confidence=0.2))))

    assert strict.confidence == 0.3
    assert strict.metadata["below_min_confidence"] is True
    assert "below_min_confidence" not in lenient.metadata


def test_min_confidence_outside_unit_range_is_rejected():
    sort_request = request("beach", [make_record("a")], constraints=ResourceConstraints(min_confidence=1.5))
    with pytest.raises(InvalidRequestError):
        asyncio.run(SortingDispatcher().dispatch(sort_request))


def test_half_open_vision_breaker_sends_one_trial_atlas(plain_records, clock):
    breaker = CircuitBreaker("vision", failure_threshold=1, reset_seconds=30, clock=clock)
    breaker.record_failure()
    clock.advance(30)
    vision = FakeVision()
    dispatcher = vision_dispatcher(clock, vision, breakers={"vision": breaker})

    response = asyncio.run(dispatcher.dispatch(request("colorful sunset", plain_records[:10])))

    assert response.method_used == ExecutionStrategy.VISUAL
    assert len(vision.calls) == 1
    assert "vision circuit open" in response.metadata["notes"]
    assert breaker.state == CircuitBreaker.CLOSED
