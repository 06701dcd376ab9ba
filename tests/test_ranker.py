from datetime import datetime, timedelta, timezone

import pytest

from core.errors import InvalidWeightError
from core.models.domain import FactorScores
from core.search import FactorExtractor, RankCandidate, SearchRanker

from .fakes import make_metadata, make_record

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def candidate(image_id: str, **factors) -> RankCandidate:
    return RankCandidate(image=make_record(image_id), factors=FactorScores(**factors))


def test_positions_are_consecutive_and_scores_non_increasing():
    ranker = SearchRanker()
    results = ranker.rank(
        [
            candidate("low", relevance=0.1, quality=0.2),
            candidate("high", relevance=0.9, quality=0.9, recency=1.0),
            candidate("mid", relevance=0.5, quality=0.5),
        ]
    )

    assert [result.image.id for result in results] == ["high", "mid", "low"]
    assert [result.position for result in results] == [1, 2, 3]
    scores = [result.score for result in results]
    assert scores == sorted(scores, reverse=True)
    assert all(0.0 <= score <= 1.0 for score in scores)


def test_equal_scores_keep_input_order():
    results = SearchRanker().rank([candidate(name, relevance=0.5) for name in ("c", "a", "b")])
    assert [result.image.id for result in results] == ["c", "a", "b"]


def test_scores_are_clamped_when_weights_sum_above_one():
    results = SearchRanker().rank(
        [candidate("x", relevance=1.0, quality=1.0)],
        weights={"relevance": 2.0, "quality": 2.0},
    )
    assert results[0].score == 1.0


def test_unnamed_factors_weigh_zero():
    results = SearchRanker().rank(
        [candidate("fresh", recency=1.0), candidate("relevant", relevance=0.2)],
        weights={"relevance": 1.0},
    )
    assert results[0].image.id == "relevant"
    assert results[1].score == 0.0
    assert results[1].reasoning == "No weighted factor contributed to this score."


def test_reasoning_names_the_dominant_factor():
    result = SearchRanker().rank([candidate("x", relevance=0.2, quality=0.9)])[0]
    assert "quality" in result.reasoning
    assert result.breakdown["quality"] == 0.9


@pytest.mark.parametrize("weights", [{"relevance": -0.1}, {"colour": 0.5}, {"quality": float("nan")}])
def test_invalid_weights_are_rejected(weights):
    with pytest.raises(InvalidWeightError):
        SearchRanker().rank([candidate("x")], weights=weights)


@pytest.mark.parametrize(
    "age, expected",
    [
        (timedelta(hours=2), 1.0),
        (timedelta(days=5), 0.8),
        (timedelta(days=20), 0.6),
        (timedelta(days=60), 0.4),
        (timedelta(days=200), 0.2),
        (timedelta(days=900), 0.1),
    ],
)
def test_recency_buckets(age, expected):
    extractor = FactorExtractor(now=lambda: NOW)
    image = make_record("x", metadata=make_metadata(captured_at=NOW - age))
    assert extractor.recency(image) == expected


def test_unknown_signals_score_neutral():
    extractor = FactorExtractor(now=lambda: NOW)
    image = make_record("x")

    assert extractor.recency(image) == 0.5
    assert extractor.quality(image) == 0.5
    assert extractor.personalization(image, {}) == 0.5
    assert extractor.text_relevance("sort by the", image) == 0.5
    assert extractor.text_relevance("beach", image) == 0.0


def test_text_relevance_counts_matched_query_terms():
    extractor = FactorExtractor()
    image = make_record("x", title="Sunset at the beach", tags=["vacation"])

    assert extractor.text_relevance("beach sunsets", image) == 1.0
    assert extractor.text_relevance("beach mountains", image) == 0.5


def test_popularity_is_relative_to_the_ranked_set():
    extractor = FactorExtractor(now=lambda: NOW)
    popular = make_record("p", metadata=make_metadata(view_count=100, favorite_count=10))
    quiet = make_record("q", metadata=make_metadata(view_count=50, favorite_count=0))

    scores = extractor.extract("anything", [popular, quiet])

    assert scores["p"].popularity == pytest.approx(1.0)
    assert scores["q"].popularity == pytest.approx(0.3)


def test_relevance_override_replaces_text_matching():
    extractor = FactorExtractor()
    image = make_record("x", title="beach")
    scores = extractor.extract("beach", [image], relevance={"x": 0.25})
    assert scores["x"].relevance == 0.25


def test_personalization_uses_preferred_tags():
    image = make_record("x", tags=["Dog", "park"], metadata=make_metadata(labels=["Ball"]))
    score = FactorExtractor.personalization(image, {"preferred_tags": ["dog", "ball", "cat", "lake"]})
    assert score == pytest.approx(0.5)
