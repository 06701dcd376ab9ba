# Path: core/errors.py
# Purpose: Define the exception hierarchy shared by the sorting pipeline.
# Layer: core.
# Details: Contract violations fail fast; service errors are recovered by strategy degradation.

from __future__ import annotations


class ImgSortError(Exception):
    """Base class for all pipeline errors."""


class InvalidRequestError(ImgSortError, ValueError):
    """Raised when a sorting request is malformed."""


class AtlasCapacityError(ImgSortError, ValueError):
    """Raised when an atlas is asked to hold zero images or more than its grid allows."""


class VectorDimensionError(ImgSortError, ValueError):
    """Raised when two vectors of different lengths are compared."""


class EmptyAggregationError(ImgSortError, ValueError):
    """Raised when aggregation is requested without any content source."""


class InvalidWeightError(ImgSortError, ValueError):
    """Raised when a ranking weight is negative or names an unknown factor."""


class ServiceError(ImgSortError):
    """An external collaborator (model backend, store) failed."""


class EmbeddingServiceError(ServiceError):
    pass


class VisualAnalysisError(ServiceError):
    pass


class ClassificationError(ServiceError):
    pass


class StorageError(ServiceError):
    pass


class SortingError(ImgSortError):
    """Raised only when no strategy could produce a result."""


__all__ = [
    "ImgSortError",
    "InvalidRequestError",
    "AtlasCapacityError",
    "VectorDimensionError",
    "EmptyAggregationError",
    "InvalidWeightError",
    "ServiceError",
    "EmbeddingServiceError",
    "VisualAnalysisError",
    "ClassificationError",
    "StorageError",
    "SortingError",
]
