# Path: core/cache/__init__.py
# Purpose: Package initializer for the shared result cache.
# Layer: core/cache.
# Details: Exposes the cache, its entry/stat records, and key derivation helpers.

from .keys import atlas_key, embedding_key, normalize_text, sorting_key, vision_key
from .result_cache import CacheEntry, CacheStats, ResultCache, estimate_size, format_bytes

__all__ = [
    "CacheEntry",
    "CacheStats",
    "ResultCache",
    "estimate_size",
    "format_bytes",
    "atlas_key",
    "embedding_key",
    "normalize_text",
    "sorting_key",
    "vision_key",
]
