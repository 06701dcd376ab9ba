# Path: core/search/ranker.py
# Purpose: Combine per-image factor scores into one weighted score and order the images.
# Layer: core/search.
# Details: Weights are non-negative and need not sum to one; ties keep input order.

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from core.errors import InvalidWeightError
from core.models.domain import FACTOR_NAMES, FactorScores, ImageRecord, RankedResult

DEFAULT_WEIGHTS: Dict[str, float] = {
    "relevance": 0.4,
    "quality": 0.3,
    "recency": 0.1,
    "popularity": 0.1,
    "personalization": 0.1,
}


@dataclass
class RankCandidate:
    """An image with its factor scores, waiting to be ranked."""

    image: ImageRecord
    factors: FactorScores
    metadata: Dict[str, Any] = field(default_factory=dict)


class SearchRanker:
    """Weighted multi-factor ranking."""

    def __init__(self, default_weights: Optional[Mapping[str, float]] = None) -> None:
        self.default_weights = self.validate_weights(default_weights or DEFAULT_WEIGHTS)

    @staticmethod
    def validate_weights(weights: Mapping[str, float]) -> Dict[str, float]:
        """Return a full weight table; factors not named weigh zero."""

        unknown = set(weights) - set(FACTOR_NAMES)
        if unknown:
            raise InvalidWeightError(f"Unknown ranking factors: {sorted(unknown)}")
        table = {name: 0.0 for name in FACTOR_NAMES}
        for name, value in weights.items():
            value = float(value)
            if math.isnan(value) or value < 0:
                raise InvalidWeightError(f"Weight for {name} must be non-negative, got {value}.")
            table[name] = value
        return table

    @staticmethod
    def aggregate_score(factors: FactorScores, weights: Mapping[str, float]) -> float:
        total = sum(weights.get(name, 0.0) * score for name, score in factors.as_dict().items())
        return min(1.0, max(0.0, total))

    def rank(self, candidates: Sequence[RankCandidate], weights: Optional[Mapping[str, float]] = None) -> List[RankedResult]:
        """Return results ordered by descending score with positions 1..N."""

        table = self.default_weights if weights is None else self.validate_weights(weights)
        scored = [(self.aggregate_score(candidate.factors, table), candidate) for candidate in candidates]
        scored.sort(key=lambda pair: pair[0], reverse=True)

        return [
            RankedResult(
                image=candidate.image,
                score=score,
                position=position,
                reasoning=self.explain(candidate.factors, table),
                breakdown=candidate.factors.as_dict(),
                metadata=dict(candidate.metadata),
            )
            for position, (score, candidate) in enumerate(scored, start=1)
        ]

    @staticmethod
    def explain(factors: FactorScores, weights: Mapping[str, float]) -> str:
        contributions = {name: weights.get(name, 0.0) * score for name, score in factors.as_dict().items()}
        dominant = max(FACTOR_NAMES, key=lambda name: contributions[name])
        if contributions[dominant] <= 0:
            return "No weighted factor contributed to this score."
        return f"Ranked mainly by {dominant} ({getattr(factors, dominant):.2f} at weight {weights[dominant]:.2f})."
