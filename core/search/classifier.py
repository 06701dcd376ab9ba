# Path: core/search/classifier.py
# Purpose: Classify a free-text sorting query into a sort type with extracted parameters.
# Layer: core/search.
# Details: Keyword rules run first; a language model, when configured, settles low-confidence cases.

from __future__ import annotations

import json
import logging
import re
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.errors import ServiceError
from core.models.domain import QueryAnalysis
from core.services.base import LanguageModel
from core.services.openai_client import extract_json_object

logger = logging.getLogger(__name__)

SORT_TYPES = ("tone", "scene", "thumbnail", "custom", "smart_album", "chronological")

VISION_TERMS = (
    "color",
    "colour",
    "bright",
    "dark",
    "beautiful",
    "quality",
    "sharp",
    "blurry",
    "composition",
    "lighting",
    "scene",
    "object",
    "person",
    "animal",
    "landscape",
    "portrait",
    "sunset",
    "sunrise",
    "vivid",
)

# Checked in order; the type with the most keyword hits wins, earlier entries win ties.
SORT_RULES: Tuple[Tuple[str, str, Tuple[str, ...]], ...] = (
    ("thumbnail", "thumbnailCriteria", ("thumbnail", "cover", "representative", "best", "highlight")),
    ("chronological", "order", ("recent", "newest", "latest", "oldest", "chronological", "timeline", "date")),
    ("tone", "targetTone", ("happy", "sad", "calm", "energetic", "mood", "cheerful", "moody", "peaceful", "romantic", "joyful")),
    ("scene", "sceneType", ("beach", "city", "indoor", "outdoor", "mountain", "forest", "nature", "park", "urban", "ocean", "scene", "landscape", "sunset")),
    ("smart_album", "albumTheme", ("album", "collection", "group", "organize", "trip", "event", "vacation")),
)

UNPARSED_CONFIDENCE = 0.5
NO_MATCH_CONFIDENCE = 0.4

_WORD = re.compile(r"[a-z]+")

CLASSIFICATION_PROMPT = """You are an expert at analyzing natural language requests for image sorting.
Determine the best sorting approach and extract key parameters.

User Query: "{query}"

Respond with JSON in this exact format:
{{"sortType": "tone|scene|thumbnail|custom|smart_album|chronological", "confidence": 0.0-1.0,
"reasoning": "brief explanation", "parameters": {{"targetTone": "", "sceneType": "", "thumbnailCriteria": "",
"customCriteria": ""}}, "useVision": true/false}}

Use "tone" for mood, "scene" for location or setting, "thumbnail" for picking representative images,
"smart_album" for themed collections, "chronological" for time ordering, and "custom" otherwise.
Set useVision=true only when existing metadata is insufficient."""


class _ModelClassification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sort_type: str = Field(alias="sortType")
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    parameters: Dict[str, str] = Field(default_factory=dict)
    use_vision: bool = Field(default=False, alias="useVision")


def find_vision_terms(query: str) -> List[str]:
    """Return the vision-related terms a query mentions; ``colorful`` counts as ``color``."""

    words = _WORD.findall(query.lower())
    return [term for term in VISION_TERMS if any(word.startswith(term) for word in words)]


class QueryClassifier:
    """Rule-based query classification with optional language-model confirmation."""

    def __init__(self, language_model: Optional[LanguageModel] = None, confirm_below: float = 0.8) -> None:
        self.language_model = language_model
        self.confirm_below = confirm_below

    def classify_rules(self, query: str) -> QueryAnalysis:
        words = _WORD.findall(query.lower())
        vision_terms = find_vision_terms(query)

        best: Optional[Tuple[str, str, List[str]]] = None
        for sort_type, parameter, keywords in SORT_RULES:
            hits = [word for word in words if word in keywords]
            if hits and (best is None or len(hits) > len(best[2])):
                best = (sort_type, parameter, hits)

        if best is None:
            return QueryAnalysis(
                sort_type="custom",
                confidence=NO_MATCH_CONFIDENCE,
                reasoning="No sort-type keywords found; using a flexible custom ranking.",
                parameters={"customCriteria": query.strip()},
                use_vision=bool(vision_terms),
                vision_terms=vision_terms,
            )

        sort_type, parameter, hits = best
        return QueryAnalysis(
            sort_type=sort_type,
            confidence=min(0.9, 0.6 + 0.1 * len(hits)),
            reasoning=f"Matched {sort_type} keywords: {', '.join(hits)}.",
            parameters={parameter: " ".join(hits)},
            use_vision=bool(vision_terms),
            vision_terms=vision_terms,
        )

    async def classify(self, query: str) -> QueryAnalysis:
        """
        Classify a query, asking the language model when the rules are unsure.

        External calls:
        - core/services/base.py::LanguageModel.complete - JSON classification.
        """

        analysis = self.classify_rules(query)
        if self.language_model is None or analysis.confidence >= self.confirm_below:
            return analysis

        try:
            raw = await self.language_model.complete(CLASSIFICATION_PROMPT.format(query=query))
            parsed = _ModelClassification.model_validate(extract_json_object(raw))
        except ServiceError as exc:
            logger.warning("Query classification call failed: %s", exc)
            return self._unparsed(query, analysis.vision_terms)
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Unparseable classification response: %s", exc)
            return self._unparsed(query, analysis.vision_terms)

        sort_type = parsed.sort_type if parsed.sort_type in SORT_TYPES else "custom"
        return QueryAnalysis(
            sort_type=sort_type,
            confidence=parsed.confidence,
            reasoning=parsed.reasoning,
            parameters={key: value for key, value in parsed.parameters.items() if value},
            use_vision=parsed.use_vision or bool(analysis.vision_terms),
            vision_terms=analysis.vision_terms,
            source="model",
        )

    @staticmethod
    def _unparsed(query: str, vision_terms: List[str]) -> QueryAnalysis:
        return QueryAnalysis(
            sort_type="custom",
            confidence=UNPARSED_CONFIDENCE,
            reasoning="Could not parse query, using flexible custom approach.",
            parameters={"customCriteria": query.strip()},
            use_vision=bool(vision_terms),
            vision_terms=vision_terms,
            source="fallback",
        )
