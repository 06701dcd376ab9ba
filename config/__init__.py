# Path: config/__init__.py
# Purpose: Package initializer for configuration module.
# Layer: config.
# Details: Exposes settings models for application-wide configuration.

from .settings import (
    AggregationSettings,
    AppSettings,
    AtlasSettings,
    CacheSettings,
    DispatcherSettings,
    EmbeddingSettings,
    VisionSettings,
    configure_logging,
)

__all__ = [
    "AppSettings",
    "AggregationSettings",
    "AtlasSettings",
    "CacheSettings",
    "DispatcherSettings",
    "EmbeddingSettings",
    "VisionSettings",
    "configure_logging",
]
