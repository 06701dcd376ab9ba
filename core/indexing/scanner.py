# Path: core/indexing/scanner.py
# Purpose: Scan folders and collect image records with lightweight file metadata.
# Layer: core/indexing.
# Details: Ids derive from the path relative to the root so rescans keep them stable.

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from PIL import Image

from core.models.domain import ImageMetadata, ImageRecord, QualityAnalysis

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".bmp", ".gif", ".webp"}
EXIF_DATETIME = 306


class ImageScanner:
    """Scan filesystem paths for supported image files."""

    def __init__(self, root: Path, owner_id: str = "local", inspect: bool = True) -> None:
        self.root = Path(root)
        self.owner_id = owner_id
        self.inspect = inspect

    def scan(self) -> List[ImageRecord]:
        """Return one record per discovered image, sorted by path."""

        records: List[ImageRecord] = []
        for path in sorted(self._iter_image_files()):
            records.append(
                ImageRecord(
                    id=self.image_id(path),
                    path=path,
                    owner_id=self.owner_id,
                    filename=path.name,
                    metadata=self._read_metadata(path) if self.inspect else None,
                )
            )
        return records

    def image_id(self, path: Path) -> str:
        relative = path.relative_to(self.root).as_posix()
        return hashlib.sha1(relative.encode("utf-8")).hexdigest()[:16]

    def _iter_image_files(self) -> Iterable[Path]:
        """Yield image files under the root directory."""

        for path in self.root.rglob("*"):
            if path.is_file() and path.suffix.lower() in SUPPORTED_EXTENSIONS:
                yield path

    @staticmethod
    def _read_metadata(path: Path) -> Optional[ImageMetadata]:
        """Read dimensions, format, and capture time from the file header; None if unreadable."""

        try:
            with Image.open(path) as image:
                width, height = image.size
                image_format = image.format
                raw_date = image.getexif().get(EXIF_DATETIME)
        except OSError as exc:
            logger.warning("Skipping metadata for %s: %s", path, exc)
            return None

        captured_at = None
        if isinstance(raw_date, str):
            try:
                captured_at = datetime.strptime(raw_date.strip(), "%Y:%m:%d %H:%M:%S")
            except ValueError:
                logger.debug("Unrecognized EXIF date %r in %s", raw_date, path)

        quality = QualityAnalysis(width=width, height=height, file_size=path.stat().st_size, format=image_format)
        return ImageMetadata(quality=quality, captured_at=captured_at)
