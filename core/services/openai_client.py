# Path: core/services/openai_client.py
# Purpose: Talk to an OpenAI-compatible HTTP API for visual analysis and query classification.
# Layer: core/services.
# Details: aiohttp session with bounded retries; vision replies are parsed into position-keyed analyses.

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Type

import aiohttp
from pydantic import BaseModel, Field, ValidationError

from core.errors import ClassificationError, ServiceError, VisualAnalysisError
from core.models.domain import AtlasPosition, PositionAnalysis

from .base import LanguageModel, VisualAnalysisService

logger = logging.getLogger(__name__)

_JSON_FENCE = re.compile(r"```(?:json)?\s*(\{[\s\S]*\})\s*```")


class OpenAICompatibleClient:
    """Shared session and retry handling for OpenAI-style endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 60.0,
        max_retries: int = 3,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, max_retries)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                headers=headers,
            )
            self._owns_session = True
        return self._session

    async def _post_json(
        self,
        path: str,
        payload: Dict[str, Any],
        error_type: Type[ServiceError] = ServiceError,
    ) -> Dict[str, Any]:
        endpoint = f"{self.base_url}/{path.lstrip('/')}"
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                async with self._get_session().post(endpoint, json=payload) as resp:
                    text = await resp.text()
                    if resp.status == 429 or resp.status >= 500:
                        raise aiohttp.ClientResponseError(
                            resp.request_info, resp.history, status=resp.status, message=text[:200]
                        )
                    if resp.status >= 400:
                        # Client errors will not improve on retry.
                        raise error_type(f"{endpoint} returned {resp.status}: {text[:200]}")
                    return json.loads(text)
            except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as exc:
                last_error = exc
                logger.warning("Request to %s failed (attempt %d/%d): %s", endpoint, attempt, self.max_retries, exc)
            if attempt < self.max_retries:
                await asyncio.sleep(min(2.5, 0.4 * attempt))

        raise error_type(f"{endpoint} failed after {self.max_retries} attempts: {last_error}") from last_error


class _PositionPayload(BaseModel):
    position: str
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    suitability_score: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)


class _VisionPayload(BaseModel):
    results: List[_PositionPayload]
    summary: str = ""


def extract_json_object(content: str) -> Dict[str, Any]:
    """Parse a JSON object from a model reply, tolerating markdown fences and surrounding prose."""

    match = _JSON_FENCE.search(content)
    candidate = match.group(1) if match else content
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        start, end = candidate.find("{"), candidate.rfind("}")
        if start == -1 or end <= start:
            raise
        return json.loads(candidate[start : end + 1])


def build_vision_prompt(position_map: Mapping[str, AtlasPosition], query: str) -> str:
    labels = sorted(position_map)
    layout = ", ".join(labels)
    return (
        f"You are analyzing a grid of {len(labels)} photos for sorting. Cells are labeled by row letter and "
        f"column number; occupied cells: {layout}.\n"
        f'USER QUERY: "{query}"\n'
        "For every occupied cell describe the photo, list short tags, and rate how well it suits the query "
        "from 0 to 1. Respond with JSON only:\n"
        '{"results": [{"position": "A1", "description": "...", "tags": ["..."], '
        '"suitability_score": 0.85, "reasoning": "...", "confidence": 0.9}], "summary": "..."}'
    )


class OpenAIVisionClient(OpenAICompatibleClient, VisualAnalysisService, LanguageModel):
    """Chat-completions client serving both atlas analysis and text completion."""

    def __init__(self, model_name: str = "gpt-4o", temperature: float = 0.1, max_tokens: int = 2000, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.model_name = model_name
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings: Any) -> "OpenAIVisionClient":
        """Build a client from :class:`config.VisionSettings`."""

        return cls(
            model_name=settings.model_name,
            base_url=settings.base_url,
            api_key=settings.api_key,
            timeout_seconds=settings.timeout_seconds,
            max_retries=settings.max_retries,
        )

    async def complete(self, prompt: str) -> str:
        payload = {
            "model": self.model_name,
            "temperature": self.temperature,
            "max_tokens": 1000,
            "response_format": {"type": "json_object"},
            "messages": [{"role": "user", "content": prompt}],
        }
        data = await self._post_json("chat/completions", payload, ClassificationError)
        return self._message_content(data, ClassificationError)

    async def analyze(
        self,
        composite: bytes,
        position_map: Mapping[str, AtlasPosition],
        query: str,
        reference_url: Optional[str] = None,
    ) -> Dict[str, PositionAnalysis]:
        image_url = reference_url or "data:image/jpeg;base64," + base64.b64encode(composite).decode("ascii")
        payload = {
            "model": self.model_name,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": build_vision_prompt(position_map, query)},
                        {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                    ],
                }
            ],
        }
        data = await self._post_json("chat/completions", payload, VisualAnalysisError)
        content = self._message_content(data, VisualAnalysisError)

        try:
            parsed = _VisionPayload.model_validate(extract_json_object(content))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise VisualAnalysisError(f"Unparseable vision response: {content[:200]}") from exc

        analyses: Dict[str, PositionAnalysis] = {}
        for item in parsed.results:
            label = item.position.strip().upper()
            if label not in position_map:
                logger.debug("Ignoring analysis for unoccupied cell %s", label)
                continue
            analyses[label] = PositionAnalysis(
                description=item.description,
                tags=item.tags,
                suitability_score=item.suitability_score,
                reasoning=item.reasoning,
                confidence=item.confidence,
            )
        return analyses

    @staticmethod
    def _message_content(data: Mapping[str, Any], error_type: Type[ServiceError]) -> str:
        try:
            return str(data["choices"][0]["message"]["content"])
        except (KeyError, IndexError, TypeError) as exc:
            raise error_type("Response carried no message content.") from exc
