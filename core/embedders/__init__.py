# Path: core/embedders/__init__.py
# Purpose: Package initializer for embedding services and the similarity engine.
# Layer: core/embedders.
# Details: Exposes the service interface, reference implementations, and a settings-driven factory.

from .base import EmbeddingService
from .engine import EmbeddingEngine
from .hashing_embedder import HashingEmbedder
from .http_embedder import OpenAIEmbedder


def build_embedding_service(settings, vision_settings=None) -> EmbeddingService:
    """Create the embedding backend named by :class:`config.EmbeddingSettings`."""

    if settings.name == "hashing":
        return HashingEmbedder(dim=settings.dim)
    if settings.name == "openai":
        kwargs = {}
        if vision_settings is not None:
            kwargs = {
                "base_url": vision_settings.base_url,
                "api_key": vision_settings.api_key,
                "timeout_seconds": vision_settings.timeout_seconds,
                "max_retries": vision_settings.max_retries,
            }
        kwargs.setdefault("base_url", "https://api.openai.com/v1")
        return OpenAIEmbedder(model_name=settings.model_name, dim=settings.dim, **kwargs)
    raise ValueError(f"Unknown embedding backend: {settings.name}")


__all__ = ["EmbeddingService", "EmbeddingEngine", "HashingEmbedder", "OpenAIEmbedder", "build_embedding_service"]
