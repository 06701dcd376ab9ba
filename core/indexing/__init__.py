# Path: core/indexing/__init__.py
# Purpose: Package initializer for indexing utilities.
# Layer: core/indexing.
# Details: Exposes folder scanning and embedding backfill.

from .index_builder import EmbeddingBackfill
from .scanner import ImageScanner

__all__ = ["ImageScanner", "EmbeddingBackfill"]
