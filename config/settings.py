# Path: config/settings.py
# Purpose: Provide typed application configuration models.
# Layer: config.
# Details: Centralizes settings for the cache, atlas packer, embedding engine, vision client, and dispatcher.

import logging
from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CacheSettings(BaseModel):
    """Capacity and expiry settings for the shared result cache."""

    max_bytes: int = Field(default=100 * 1024 * 1024, description="Byte budget across all entries.")
    max_entries: int = Field(default=10_000, description="Maximum number of live entries.")
    default_ttl: float = Field(default=3600.0, description="TTL in seconds used when set() receives none.")
    sweep_interval: float = Field(default=300.0, description="Seconds between background expiry sweeps.")


class AtlasSettings(BaseModel):
    """Grid geometry and encoding settings for atlas composites."""

    grid_size: Tuple[int, int] = Field(default=(3, 3), description="Columns and rows of the atlas grid.")
    cell_size: Tuple[int, int] = Field(default=(300, 300), description="Pixel width and height of one cell.")
    padding: int = Field(default=10, description="Pixels between cells and around the border.")
    background_color: str = Field(default="#f0f0f0", description="Fill color behind the cells.")
    label_color: str = Field(default="#000000", description="Color of the position labels.")
    draw_labels: bool = Field(default=True, description="Draw A1..C3 labels onto each cell.")
    quality: int = Field(default=85, description="JPEG quality of the composite.")
    max_file_size: int = Field(default=2 * 1024 * 1024, description="Re-encode at lower quality above this size.")
    ttl: float = Field(default=3600.0, description="Seconds a packed atlas may be reused.")


class EmbeddingSettings(BaseModel):
    """Settings describing which embedding backend to use and how to query it."""

    name: str = Field(default="hashing", description="Identifier of the embedding implementation.")
    model_name: str = Field(default="text-embedding-3-small", description="Remote model used by the HTTP backend.")
    dim: int = Field(default=384, description="Embedding dimensionality fixed per deployment.")
    similarity_threshold: float = Field(default=0.5, description="Minimum cosine similarity for search hits.")
    search_limit: int = Field(default=20, description="Default top-K for similarity search.")
    concurrency: int = Field(default=5, description="Parallel calls when the backend has no batch endpoint.")
    query_ttl: float = Field(default=86400.0, description="Seconds a query embedding stays cached.")


class VisionSettings(BaseModel):
    """Settings for the remote visual-analysis and language-model backend."""

    base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI-compatible API root.")
    api_key: Optional[str] = Field(default=None, description="Bearer token for the API.")
    model_name: str = Field(default="gpt-4o", description="Vision-capable chat model.")
    timeout_seconds: float = Field(default=60.0, description="Per-request HTTP timeout.")
    max_retries: int = Field(default=3, description="Attempts per call before giving up.")
    concurrency: int = Field(default=3, description="Parallel atlas analyses per request.")
    call_cost: float = Field(default=1.0, description="Credits consumed by one atlas analysis.")


class AggregationSettings(BaseModel):
    """Tunable constants of the aggregation confidence formula."""

    conflict_penalty: float = Field(default=0.1, description="Subtracted per unresolved conflict.")
    agreement_bonus: float = Field(default=0.1, description="Added when more than one source contributed.")


class DispatcherSettings(BaseModel):
    """Strategy selection thresholds and result caching policy."""

    max_visual_images: int = Field(default=50, description="Above this count visual analysis is never chosen.")
    metadata_min_images: int = Field(default=20, description="Metadata strategy needs strictly more images.")
    hybrid_min_images: int = Field(default=10, description="Lower bound of the hybrid range.")
    hybrid_max_images: int = Field(default=100, description="Upper bound of the hybrid range.")
    hybrid_sample_ratio: float = Field(default=0.3, description="Share of images sampled for visual analysis.")
    hybrid_max_sample: int = Field(default=20, description="Cap on the hybrid visual sample.")
    cache_min_confidence: float = Field(default=0.7, description="Results must exceed this to be cached.")
    result_ttl: float = Field(default=3600.0, description="TTL of cached sorting results.")
    default_max_results: int = Field(default=100, description="Results returned when the caller sets no limit.")
    default_max_processing_time: float = Field(default=30.0, description="Seconds allowed per request.")
    default_max_vision_calls: int = Field(default=5, description="Vision calls allowed per request.")
    default_max_cost: float = Field(default=10.0, description="Credits allowed per request.")
    breaker_failure_threshold: int = Field(default=3, description="Consecutive failures that open a breaker.")
    breaker_reset_seconds: float = Field(default=60.0, description="Seconds an open breaker waits before a retry.")


class AppSettings(BaseSettings):
    """Top-level application settings shared across services and interfaces."""

    model_config = SettingsConfigDict(
        env_prefix="IMGSORT_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    image_folder: Path = Field(default=Path("storage/images"), description="Root folder containing user images.")
    store_path: Path = Field(default=Path("storage/db/images.json"), description="Path of the JSON image store.")
    object_store_dir: Path = Field(default=Path("storage/atlases"), description="Directory receiving atlas uploads.")
    batch_size: int = Field(default=32, description="Batch size for embedding backfill.")
    cache: CacheSettings = Field(default_factory=CacheSettings)
    atlas: AtlasSettings = Field(default_factory=AtlasSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    vision: VisionSettings = Field(default_factory=VisionSettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)
    dispatcher: DispatcherSettings = Field(default_factory=DispatcherSettings)
    log_level: str = Field(default="INFO", description="Verbosity level for application logs.")

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Instantiate settings from IMGSORT_* environment variables when available."""

        return cls()


def configure_logging(settings: AppSettings) -> None:
    """Apply the configured log level to the root logger."""

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
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
