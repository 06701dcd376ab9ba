# Path: core/atlas/packer.py
# Purpose: Pack up to nine images into one labeled grid composite for batched visual analysis.
# Layer: core/atlas.
# Details: Pillow compositing with placeholder tiles for unreadable sources; packed atlases are cached per purpose.

from __future__ import annotations

import asyncio
import io
import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont, ImageOps

from core.cache import ResultCache, atlas_key
from core.errors import AtlasCapacityError
from core.models.domain import Atlas, AtlasPosition, Bounds, ImageRecord

logger = logging.getLogger(__name__)

MAX_ATLAS_IMAGES = 9
MIN_REENCODE_QUALITY = 20

ImageLoader = Callable[[Path], Image.Image]


def load_image(path: Path) -> Image.Image:
    """Open an image from disk fully decoded in RGB."""

    with Image.open(path) as image:
        return image.convert("RGB")


class AtlasPacker:
    """Lays images out row by row on a fixed grid, labeling cells ``A1``..``C3``."""

    def __init__(
        self,
        grid_size: Tuple[int, int] = (3, 3),
        cell_size: Tuple[int, int] = (300, 300),
        padding: int = 10,
        background_color: str = "#f0f0f0",
        label_color: str = "#000000",
        draw_labels: bool = True,
        quality: int = 85,
        max_file_size: int = 2 * 1024 * 1024,
        ttl: float = 3600.0,
        cache: Optional[ResultCache] = None,
        clock: Optional[Callable[[], float]] = None,
        loader: ImageLoader = load_image,
    ) -> None:
        columns, rows = grid_size
        if columns <= 0 or rows <= 0:
            raise ValueError("Atlas grid needs at least one row and one column.")
        self.grid_size = (columns, rows)
        self.cell_size = cell_size
        self.padding = padding
        self.background_color = background_color
        self.label_color = label_color
        self.draw_labels = draw_labels
        self.quality = quality
        self.max_file_size = max_file_size
        self.ttl = ttl
        self._clock = clock or time.monotonic
        self.cache = cache or ResultCache(max_bytes=64 * 1024 * 1024, max_entries=256, default_ttl=ttl, clock=self._clock)
        self._loader = loader

    @classmethod
    def from_settings(cls, settings, cache: Optional[ResultCache] = None, clock=None) -> "AtlasPacker":
        return cls(
            grid_size=tuple(settings.grid_size),
            cell_size=tuple(settings.cell_size),
            padding=settings.padding,
            background_color=settings.background_color,
            label_color=settings.label_color,
            draw_labels=settings.draw_labels,
            quality=settings.quality,
            max_file_size=settings.max_file_size,
            ttl=settings.ttl,
            cache=cache,
            clock=clock,
        )

    @property
    def capacity(self) -> int:
        columns, rows = self.grid_size
        return min(MAX_ATLAS_IMAGES, columns * rows)

    @property
    def canvas_size(self) -> Tuple[int, int]:
        columns, rows = self.grid_size
        width, height = self.cell_size
        return (
            columns * (width + self.padding) + self.padding,
            rows * (height + self.padding) + self.padding,
        )

    def label_for(self, index: int) -> str:
        columns = self.grid_size[0]
        row, column = divmod(index, columns)
        return f"{chr(ord('A') + row)}{column + 1}"

    def bounds_for(self, index: int) -> Bounds:
        columns = self.grid_size[0]
        width, height = self.cell_size
        row, column = divmod(index, columns)
        return Bounds(
            x=column * (width + self.padding) + self.padding,
            y=row * (height + self.padding) + self.padding,
            width=width,
            height=height,
        )

    def chunk(self, images: Sequence[ImageRecord]) -> List[List[ImageRecord]]:
        """Split images into consecutive groups that each fit one atlas."""

        size = self.capacity
        return [list(images[start : start + size]) for start in range(0, len(images), size)]

    async def pack(self, images: Sequence[ImageRecord], purpose: str = "analysis") -> Atlas:
        """
        Return an atlas for the images, reusing a cached one for the same ids and purpose.

        External calls:
        - core/atlas/packer.py::AtlasPacker.compose - Pillow compositing, run off the event loop.
        """

        self._check_capacity(images)
        key = atlas_key([image.id for image in images], purpose)

        cached = self.cache.get(key)
        if cached is not None and not cached.is_expired(self._clock()):
            logger.debug("Reusing atlas %s", key)
            return cached

        buffer, position_map = await asyncio.to_thread(self.compose, images)
        now = self._clock()
        atlas = Atlas(
            images=list(images),
            buffer=buffer,
            position_map=position_map,
            cache_key=key,
            purpose=purpose,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.cache.set(key, atlas, ttl=self.ttl)
        return atlas

    def invalidate(self, image_ids: Sequence[str], purpose: str = "analysis") -> bool:
        return self.cache.delete(atlas_key(image_ids, purpose))

    def compose(self, images: Sequence[ImageRecord]) -> Tuple[bytes, Dict[str, AtlasPosition]]:
        """Render the composite and return JPEG bytes plus the label-to-image map."""

        self._check_capacity(images)
        canvas = Image.new("RGB", self.canvas_size, self.background_color)
        draw = ImageDraw.Draw(canvas)
        font = ImageFont.load_default()
        position_map: Dict[str, AtlasPosition] = {}

        for index, record in enumerate(images):
            label = self.label_for(index)
            bounds = self.bounds_for(index)
            tile, placeholder = self._tile_for(record)
            canvas.paste(tile, (bounds.x, bounds.y))
            if self.draw_labels:
                draw.rectangle((bounds.x, bounds.y, bounds.x + 34, bounds.y + 20), fill="#ffffff")
                draw.text((bounds.x + 6, bounds.y + 4), label, fill=self.label_color, font=font)
            position_map[label] = AtlasPosition(image_id=record.id, path=Path(record.path), bounds=bounds, placeholder=placeholder)

        return self._encode(canvas), position_map

    def _tile_for(self, record: ImageRecord) -> Tuple[Image.Image, bool]:
        try:
            source = self._loader(Path(record.path))
            return ImageOps.fit(source.convert("RGB"), self.cell_size), False
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            logger.warning("Using placeholder for %s: %s", record.id, exc)
            return self._placeholder(), True

    def _placeholder(self) -> Image.Image:
        tile = Image.new("RGB", self.cell_size, "#c8c8c8")
        draw = ImageDraw.Draw(tile)
        width, height = self.cell_size
        draw.line((0, 0, width - 1, height - 1), fill="#9a9a9a", width=3)
        draw.line((0, height - 1, width - 1, 0), fill="#9a9a9a", width=3)
        return tile

    def _encode(self, canvas: Image.Image) -> bytes:
        buffer = self._jpeg_bytes(canvas, self.quality)
        if len(buffer) > self.max_file_size:
            reduced = max(MIN_REENCODE_QUALITY, int(self.quality * 0.7))
            logger.warning("Atlas is %d bytes, re-encoding at quality %d", len(buffer), reduced)
            buffer = self._jpeg_bytes(canvas, reduced)
        return buffer

    @staticmethod
    def _jpeg_bytes(canvas: Image.Image, quality: int) -> bytes:
        output = io.BytesIO()
        canvas.save(output, format="JPEG", quality=quality, optimize=True)
        return output.getvalue()

    def _check_capacity(self, images: Sequence[ImageRecord]) -> None:
        if not images:
            raise AtlasCapacityError("An atlas needs at least one image.")
        if len(images) > self.capacity:
            raise AtlasCapacityError(f"An atlas holds at most {self.capacity} images, got {len(images)}.")
