# Path: core/aggregation/content_aggregator.py
# Purpose: Merge partial descriptions of one image from several tools into a single view.
# Layer: core/aggregation.
# Details: Conflicts are found per dotted field path and resolved by value type; list fields merge with dedup.

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Sequence, Tuple

from core.errors import EmptyAggregationError
from core.models.domain import AggregatedContent, Conflict, ContentSource, Resolution, SourceValue

logger = logging.getLogger(__name__)

NUMERIC = "numeric_difference"
TEXT = "text_difference"
BOOLEAN = "boolean_conflict"
TYPE_MISMATCH = "type_mismatch"
VALUE = "value_difference"

METADATA_KEY = "_aggregation"


def _walk(data: Dict[str, Any], prefix: str = "") -> Iterator[Tuple[str, Any]]:
    """Yield ``(dotted_path, value)`` for every non-dict value, lists included."""

    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            yield from _walk(value, path)
        else:
            yield path, value


def _set_path(target: Dict[str, Any], path: str, value: Any) -> None:
    *parents, last = path.split(".")
    node = target
    for key in parents:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[last] = value


def _kind(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return type(value).__name__


def _dedup_key(item: Any) -> str:
    if isinstance(item, str):
        return item.strip().casefold()
    if isinstance(item, dict):
        if item.get("id") is not None:
            return f"id:{item['id']}"
        if isinstance(item.get("name"), str):
            return "name:" + item["name"].strip().casefold()
        if item.get("value") is not None:
            return f"value:{item['value']}"
        return json.dumps(item, sort_keys=True, default=str)
    return repr(item)


class ContentAggregator:
    """Four-stage merge: identify conflicts, merge compatible data, resolve, finalize."""

    def __init__(self, conflict_penalty: float = 0.1, agreement_bonus: float = 0.1) -> None:
        self.conflict_penalty = conflict_penalty
        self.agreement_bonus = agreement_bonus

    @classmethod
    def from_settings(cls, settings) -> "ContentAggregator":
        return cls(conflict_penalty=settings.conflict_penalty, agreement_bonus=settings.agreement_bonus)

    def aggregate(self, sources: Sequence[ContentSource]) -> AggregatedContent:
        if not sources:
            raise EmptyAggregationError("Cannot aggregate zero content sources.")

        conflicts = self.identify_conflicts(sources)
        merged = self.merge_compatible(sources, {conflict.field for conflict in conflicts})
        resolutions = self.resolve_conflicts(conflicts)
        for field_path, resolution in resolutions.items():
            _set_path(merged, field_path, resolution.value)
        remaining = [conflict for conflict in conflicts if conflict.field not in resolutions]

        average = sum(source.confidence for source in sources) / len(sources)
        merged[METADATA_KEY] = {
            "aggregated_at": datetime.now(timezone.utc).isoformat(),
            "source_count": len(sources),
            "tools_used": sorted({source.tool for source in sources}),
            "conflicts_resolved": len(resolutions),
            "remaining_conflicts": len(remaining),
            "avg_confidence": average,
        }
        if remaining:
            logger.debug("Unresolved fields after aggregation: %s", [conflict.field for conflict in remaining])

        return AggregatedContent(
            merged_data=merged,
            sources=list(sources),
            confidence=self.overall_confidence(sources, len(remaining)),
            conflicts=remaining,
            resolutions=resolutions,
        )

    def overall_confidence(self, sources: Sequence[ContentSource], remaining_conflicts: int) -> float:
        average = sum(source.confidence for source in sources) / len(sources)
        score = average - self.conflict_penalty * remaining_conflicts
        if len(sources) > 1:
            score += self.agreement_bonus
        return min(1.0, max(0.0, score))

    def identify_conflicts(self, sources: Sequence[ContentSource]) -> List[Conflict]:
        """Return fields where two or more sources report different defined scalar values."""

        by_field: Dict[str, List[SourceValue]] = {}
        for source in sources:
            for path, value in _walk(source.data):
                if isinstance(value, list):
                    continue
                by_field.setdefault(path, []).append(SourceValue(source.tool, value, source.confidence))

        conflicts: List[Conflict] = []
        for path, values in by_field.items():
            if len(values) < 2:
                continue
            distinct: List[Any] = []
            for item in values:
                if item.value is not None and not any(_kind(item.value) == _kind(seen) and item.value == seen for seen in distinct):
                    distinct.append(item.value)
            if len(distinct) > 1:
                conflicts.append(Conflict(field=path, values=values, conflict_type=self._conflict_type(distinct)))
        return conflicts

    def merge_compatible(self, sources: Sequence[ContentSource], conflict_fields: set) -> Dict[str, Any]:
        """Copy agreed scalar fields and union list fields across sources."""

        merged: Dict[str, Any] = {}
        assigned: set = set()
        collections: Dict[str, List[Tuple[Any, float]]] = {}

        by_confidence = sorted(sources, key=lambda source: source.confidence, reverse=True)
        for source in by_confidence:
            for path, value in _walk(source.data):
                if isinstance(value, list):
                    collections.setdefault(path, []).extend((item, source.confidence) for item in value)
                    continue
                if path in conflict_fields or path in assigned or value is None:
                    continue
                _set_path(merged, path, value)
                assigned.add(path)

        for path, items in collections.items():
            _set_path(merged, path, self._merge_collection(items))
        return merged

    @staticmethod
    def _merge_collection(items: List[Tuple[Any, float]]) -> List[Any]:
        seen = set()
        unique: List[Tuple[Any, float]] = []
        for item, source_confidence in items:
            key = _dedup_key(item)
            if key in seen:
                continue
            seen.add(key)
            declared = item.get("confidence") if isinstance(item, dict) else None
            weight = float(declared) if isinstance(declared, (int, float)) and not isinstance(declared, bool) else source_confidence
            unique.append((item, weight))
        unique.sort(key=lambda pair: pair[1], reverse=True)
        return [item for item, _ in unique]

    def resolve_conflicts(self, conflicts: Sequence[Conflict]) -> Dict[str, Resolution]:
        return {conflict.field: self._resolve(conflict) for conflict in conflicts}

    def _resolve(self, conflict: Conflict) -> Resolution:
        values = [item for item in conflict.values if item.value is not None]
        if conflict.conflict_type == NUMERIC:
            total = sum(item.confidence for item in values)
            if total == 0:
                value = sum(item.value for item in values) / len(values)
            else:
                value = sum(item.value * item.confidence for item in values) / total
            return Resolution(conflict.field, value, "confidence_weighted_average")

        if conflict.conflict_type == BOOLEAN:
            true_weight = sum(item.confidence for item in values if item.value)
            false_weight = sum(item.confidence for item in values if not item.value)
            return Resolution(conflict.field, true_weight > false_weight, "confidence_weighted_majority")

        # max() keeps the earliest source on ties.
        if conflict.conflict_type == TEXT:
            best = max(values, key=lambda item: (item.confidence, len(item.value)))
            return Resolution(conflict.field, best.value, "highest_confidence_longest")

        best = max(values, key=lambda item: item.confidence)
        return Resolution(conflict.field, best.value, "highest_confidence")

    @staticmethod
    def _conflict_type(distinct: List[Any]) -> str:
        kinds = {_kind(value) for value in distinct}
        if len(kinds) > 1:
            return TYPE_MISMATCH
        kind = kinds.pop()
        if kind == "number":
            return NUMERIC
        if kind == "string":
            return TEXT
        if kind == "boolean":
            return BOOLEAN
        return VALUE
