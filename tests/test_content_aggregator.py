from datetime import timedelta

import pytest

from core.aggregation import ContentAggregator
from core.aggregation.content_aggregator import METADATA_KEY, NUMERIC, TYPE_MISMATCH
from core.errors import EmptyAggregationError
from core.models.domain import ContentSource


def test_numeric_conflict_uses_confidence_weighted_average():
    aggregator = ContentAggregator()
    high = ContentSource("detector", {"quality": {"score": 10}}, 0.8)
    low = ContentSource("heuristic", {"quality": {"score": 20}}, 0.2)

    for sources in ([high, low], [low, high]):
        result = aggregator.aggregate(sources)
        assert result.merged_data["quality"]["score"] == pytest.approx(12.0)
        assert result.resolutions["quality.score"].reason == "confidence_weighted_average"
        assert result.conflicts == []


def test_boolean_conflict_follows_weighted_majority():
    result = ContentAggregator().aggregate(
        [
            ContentSource("a", {"has_text": True}, 0.3),
            ContentSource("b", {"has_text": False}, 0.7),
        ]
    )
    assert result.merged_data["has_text"] is False


def test_text_conflict_prefers_confident_then_longer_value():
    result = ContentAggregator().aggregate(
        [
            ContentSource("a", {"caption": "dog"}, 0.6),
            ContentSource("b", {"caption": "a brown dog on grass"}, 0.6),
            ContentSource("c", {"caption": "cat"}, 0.5),
        ]
    )
    assert result.merged_data["caption"] == "a brown dog on grass"


def test_exact_text_tie_keeps_the_first_source():
    aggregator = ContentAggregator(conflict_penalty=0.1, agreement_bonus=0.1)
    sources = [
        ContentSource("a", {"scene": "beach"}, 0.6),
        ContentSource("b", {"scene": "coast"}, 0.6),
    ]

    result = aggregator.aggregate(sources)
    assert result.merged_data["scene"] == "beach"
    assert result.conflicts == []
    assert result.merged_data[METADATA_KEY]["remaining_conflicts"] == 0
    assert result.confidence == pytest.approx(0.6 + 0.1)

    assert aggregator.aggregate(list(reversed(sources))).merged_data["scene"] == "coast"


def test_tied_type_mismatch_is_resolved_not_dropped():
    result = ContentAggregator().aggregate(
        [
            ContentSource("vision", {"label": 5}, 0.7),
            ContentSource("metadata", {"label": "five"}, 0.7),
        ]
    )

    assert result.merged_data["label"] == 5
    assert result.resolutions["label"].reason == "highest_confidence"
    assert result.merged_data[METADATA_KEY]["conflicts_resolved"] == 1


def test_lists_are_unioned_without_duplicates_most_confident_first():
    result = ContentAggregator().aggregate(
        [
            ContentSource("a", {"tags": ["Beach", "sea"]}, 0.5),
            ContentSource("b", {"tags": ["beach", "sunset"]}, 0.9),
        ]
    )
    assert result.merged_data["tags"] == ["beach", "sunset", "sea"]


def test_list_items_sort_by_their_own_confidence():
    result = ContentAggregator().aggregate(
        [
            ContentSource("a", {"objects": [{"name": "car", "confidence": 0.4}]}, 0.9),
            ContentSource("b", {"objects": [{"name": "tree", "confidence": 0.95}, {"name": "Car", "confidence": 0.99}]}, 0.5),
        ]
    )
    assert [item["name"] for item in result.merged_data["objects"]] == ["tree", "car"]


def test_agreeing_and_missing_values_are_not_conflicts():
    aggregator = ContentAggregator()
    sources = [
        ContentSource("a", {"width": 640, "format": None}, 0.5),
        ContentSource("b", {"width": 640, "format": "jpeg"}, 0.5),
    ]

    assert aggregator.identify_conflicts(sources) == []
    merged = aggregator.aggregate(sources).merged_data
    assert merged["width"] == 640
    assert merged["format"] == "jpeg"


def test_mixed_types_are_flagged_as_type_mismatch():
    conflicts = ContentAggregator().identify_conflicts(
        [ContentSource("a", {"size": 10}, 0.5), ContentSource("b", {"size": "large"}, 0.9)]
    )
    assert conflicts[0].conflict_type == TYPE_MISMATCH


def test_single_source_has_no_agreement_bonus():
    result = ContentAggregator().aggregate([ContentSource("a", {"score": 3}, 0.7)])

    assert result.confidence == pytest.approx(0.7)
    assert result.merged_data[METADATA_KEY]["tools_used"] == ["a"]
    assert result.merged_data[METADATA_KEY]["source_count"] == 1


def test_confidence_is_clamped():
    result = ContentAggregator(agreement_bonus=0.5).aggregate(
        [ContentSource("a", {"x": 1}, 1.0), ContentSource("b", {"y": 2}, 1.0)]
    )
    assert result.confidence == 1.0


def test_zero_weight_numeric_conflict_falls_back_to_mean():
    conflicts = ContentAggregator().identify_conflicts(
        [ContentSource("a", {"n": 2}, 0.0), ContentSource("b", {"n": 4}, 0.0)]
    )
    assert conflicts[0].conflict_type == NUMERIC
    assert ContentAggregator().resolve_conflicts(conflicts)["n"].value == pytest.approx(3.0)


def test_empty_input_and_bad_confidence_are_rejected():
    with pytest.raises(EmptyAggregationError):
        ContentAggregator().aggregate([])
    with pytest.raises(ValueError):
        ContentSource("a", {}, 1.5)


def test_source_timestamps_are_utc_aware():
    source = ContentSource("a", {}, 0.5)
    assert source.timestamp.utcoffset() == timedelta(0)
