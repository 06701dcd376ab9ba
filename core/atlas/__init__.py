# Path: core/atlas/__init__.py
# Purpose: Package initializer for atlas packing and atlas-based visual analysis.
# Layer: core/atlas.
# Details: Exposes the Pillow packer and the analyzer that rejoins per-cell verdicts to images.

from .packer import MAX_ATLAS_IMAGES, AtlasPacker, load_image
from .vision import AtlasVisionAnalyzer

__all__ = ["MAX_ATLAS_IMAGES", "AtlasPacker", "AtlasVisionAnalyzer", "load_image"]
