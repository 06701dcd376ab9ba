# Path: core/aggregation/__init__.py
# Purpose: Package initializer for multi-source content aggregation.
# Layer: core/aggregation.
# Details: Exposes the aggregator and its conflict type names.

from .content_aggregator import BOOLEAN, METADATA_KEY, NUMERIC, TEXT, TYPE_MISMATCH, VALUE, ContentAggregator

__all__ = ["ContentAggregator", "BOOLEAN", "METADATA_KEY", "NUMERIC", "TEXT", "TYPE_MISMATCH", "VALUE"]
