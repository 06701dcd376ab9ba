# Path: core/search/factors.py
# Purpose: Derive per-image ranking factor scores from records, metadata, and caller context.
# Layer: core/search.
# Details: Every factor lands in [0, 1]; popularity is normalized against the set being ranked.

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from core.models.domain import FactorScores, ImageRecord

_WORD = re.compile(r"[a-z0-9]+")
STOPWORDS = frozenset(
    {"a", "an", "and", "by", "first", "for", "in", "me", "my", "of", "on", "show", "sort", "the", "to", "with"}
)

# (max age in days, score), checked in order.
RECENCY_BUCKETS = ((1, 1.0), (7, 0.8), (30, 0.6), (90, 0.4), (365, 0.2))
RECENCY_OLDEST = 0.1
RECENCY_UNKNOWN = 0.5
NEUTRAL = 0.5
UHD_PIXELS = 3840 * 2160


def query_terms(query: str) -> List[str]:
    return [word for word in _WORD.findall(query.lower()) if word not in STOPWORDS and len(word) > 1]


def image_terms(image: ImageRecord) -> List[str]:
    texts = image.text_fields() + list(image.tags)
    if image.metadata is not None:
        texts.extend(image.metadata.keywords())
        if image.metadata.location_name:
            texts.append(image.metadata.location_name)
    return _WORD.findall(" ".join(texts).lower())


class FactorExtractor:
    """Computes :class:`FactorScores` for every image of a ranking."""

    def __init__(self, now: Optional[Callable[[], datetime]] = None) -> None:
        self._now = now or (lambda: datetime.now(timezone.utc))

    def text_relevance(self, query: str, image: ImageRecord) -> float:
        """Share of query terms found in the image's text, substring matches included."""

        terms = query_terms(query)
        if not terms:
            return NEUTRAL
        words = image_terms(image)
        if not words:
            return 0.0
        matched = sum(1 for term in terms if any(term in word or (len(word) > 2 and word in term) for word in words))
        return matched / len(terms)

    def quality(self, image: ImageRecord) -> float:
        quality = image.metadata.quality if image.metadata else None
        if quality is None:
            return NEUTRAL

        parts: List[float] = []
        if quality.quality_score is not None:
            parts.append(quality.quality_score)
        if quality.aesthetic_score is not None:
            parts.append(quality.aesthetic_score)
        if quality.brightness_score is not None:
            # Mid-tone exposure scores highest.
            parts.append(1.0 - abs(quality.brightness_score - 0.5) * 2.0)
        if quality.blur_score is not None:
            parts.append(1.0 - quality.blur_score)
        if quality.width and quality.height:
            parts.append(min(1.0, (quality.width * quality.height) / UHD_PIXELS))
        if not parts:
            return NEUTRAL
        return _clamp(sum(parts) / len(parts))

    def recency(self, image: ImageRecord) -> float:
        captured = image.metadata.captured_at if image.metadata else None
        if captured is None:
            return RECENCY_UNKNOWN
        if captured.tzinfo is None:
            captured = captured.replace(tzinfo=timezone.utc)
        age_days = (self._now() - captured).total_seconds() / 86400.0
        for max_age, score in RECENCY_BUCKETS:
            if age_days <= max_age:
                return score
        return RECENCY_OLDEST

    @staticmethod
    def popularity(image: ImageRecord, max_views: int, max_favorites: int) -> float:
        if image.metadata is None:
            return 0.0
        score = 0.0
        if max_views > 0:
            score += 0.6 * image.metadata.view_count / max_views
        if max_favorites > 0:
            score += 0.4 * image.metadata.favorite_count / max_favorites
        return _clamp(score)

    @staticmethod
    def personalization(image: ImageRecord, user_context: Mapping[str, Any]) -> float:
        """Overlap with ``preferred_tags`` from the user context; neutral without preferences."""

        preferred = {str(tag).casefold() for tag in user_context.get("preferred_tags", ())}
        if not preferred:
            return NEUTRAL
        own = {tag.casefold() for tag in image.tags}
        if image.metadata is not None:
            own.update(word.casefold() for word in image.metadata.keywords())
        return len(preferred & own) / len(preferred)

    def extract(
        self,
        query: str,
        images: Sequence[ImageRecord],
        user_context: Optional[Mapping[str, Any]] = None,
        relevance: Optional[Mapping[str, float]] = None,
    ) -> Dict[str, FactorScores]:
        """Score every image; ``relevance`` overrides text relevance for the ids it names."""

        user_context = user_context or {}
        relevance = relevance or {}
        max_views = max((image.metadata.view_count for image in images if image.metadata), default=0)
        max_favorites = max((image.metadata.favorite_count for image in images if image.metadata), default=0)

        scores: Dict[str, FactorScores] = {}
        for image in images:
            text_score = relevance.get(image.id)
            scores[image.id] = FactorScores(
                relevance=_clamp(text_score if text_score is not None else self.text_relevance(query, image)),
                quality=self.quality(image),
                recency=self.recency(image),
                popularity=self.popularity(image, max_views, max_favorites),
                personalization=self.personalization(image, user_context),
            )
        return scores


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, float(value)))
