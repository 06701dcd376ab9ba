# Path: core/__init__.py
# Purpose: Package initializer for core application layer.
# Layer: core.
# Details: Holds the sorting pipeline: models, cache, embedders, atlas, aggregation, search, and indexing.
