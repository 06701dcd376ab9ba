# Path: core/services/__init__.py
# Purpose: Package initializer for external service boundaries.
# Layer: core/services.
# Details: Exposes the abstract contracts plus the local stores and the OpenAI-compatible client.

from .base import ImageStore, LanguageModel, ObjectStore, VisualAnalysisService
from .memory_store import InMemoryImageStore, LocalObjectStore, record_from_dict, record_to_dict
from .openai_client import OpenAICompatibleClient, OpenAIVisionClient, extract_json_object

__all__ = [
    "ImageStore",
    "LanguageModel",
    "ObjectStore",
    "VisualAnalysisService",
    "InMemoryImageStore",
    "LocalObjectStore",
    "OpenAICompatibleClient",
    "OpenAIVisionClient",
    "extract_json_object",
    "record_from_dict",
    "record_to_dict",
]
