"""Test configuration and fixtures."""

from pathlib import Path
from typing import List

import pytest
from PIL import Image

from core.models.domain import ImageRecord

from .fakes import FakeClock, make_record


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def image_files(tmp_path: Path) -> List[Path]:
    """Twelve small solid-color PNGs."""

    paths = []
    for index in range(12):
        path = tmp_path / f"img_{index:02d}.png"
        Image.new("RGB", (64, 48), (index * 20, 100, 255 - index * 20)).save(path)
        paths.append(path)
    return paths


@pytest.fixture
def plain_records(image_files) -> List[ImageRecord]:
    """Records without any text or metadata, backed by real files."""

    return [make_record(f"img-{index}", path) for index, path in enumerate(image_files)]
