# Path: core/services/memory_store.py
# Purpose: Provide reference image and object stores backed by memory and the local filesystem.
# Layer: core/services.
# Details: Image records persist as one JSON document; atlas uploads land in a directory as plain files.

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from core.errors import StorageError
from core.models.domain import ImageMetadata, ImageRecord

from .base import ImageStore, ObjectStore

logger = logging.getLogger(__name__)

_ANALYSIS_FIELDS = {"title", "description", "caption", "visual_summary", "tags"}


def record_to_dict(record: ImageRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "path": str(record.path),
        "owner_id": record.owner_id,
        "filename": record.filename,
        "title": record.title,
        "description": record.description,
        "caption": record.caption,
        "visual_summary": record.visual_summary,
        "tags": list(record.tags),
        "embedding": record.embedding,
        "metadata": record.metadata.model_dump(mode="json") if record.metadata else None,
        "analysis": record.analysis,
    }


def record_from_dict(data: Mapping[str, Any]) -> ImageRecord:
    metadata = data.get("metadata")
    return ImageRecord(
        id=str(data["id"]),
        path=Path(data["path"]),
        owner_id=data.get("owner_id"),
        filename=data.get("filename"),
        title=data.get("title"),
        description=data.get("description"),
        caption=data.get("caption"),
        visual_summary=data.get("visual_summary"),
        tags=list(data.get("tags") or []),
        embedding=data.get("embedding"),
        metadata=ImageMetadata.model_validate(metadata) if metadata else None,
        analysis=dict(data.get("analysis") or {}),
    )


class InMemoryImageStore(ImageStore):
    """Owner-scoped record store with JSON save/load.

    Records of other owners are invisible: lookups and updates against them
    behave exactly like lookups of unknown ids.
    """

    def __init__(self, records: Optional[Iterable[ImageRecord]] = None) -> None:
        self._records: Dict[str, ImageRecord] = {}
        for record in records or ():
            self.add(record)

    def __len__(self) -> int:
        return len(self._records)

    def add(self, record: ImageRecord) -> None:
        self._records[record.id] = record

    def all_records(self) -> List[ImageRecord]:
        return list(self._records.values())

    async def get_by_ids(self, ids: Sequence[str], owner_id: str) -> List[ImageRecord]:
        found: List[ImageRecord] = []
        for image_id in ids:
            record = self._records.get(image_id)
            if record is not None and record.owner_id == owner_id:
                found.append(record)
        return found

    async def get_by_owner(self, owner_id: str, filters: Optional[Mapping[str, Any]] = None) -> List[ImageRecord]:
        filters = filters or {}
        records = [record for record in self._records.values() if record.owner_id == owner_id]

        if "tags" in filters:
            wanted = {str(tag).casefold() for tag in filters["tags"]}
            records = [r for r in records if wanted & {tag.casefold() for tag in r.tags}]
        if "is_flagged" in filters:
            records = [r for r in records if r.is_flagged == bool(filters["is_flagged"])]
        if "has_embedding" in filters:
            records = [r for r in records if bool(r.embedding) == bool(filters["has_embedding"])]
        return records

    async def update_embedding(self, image_id: str, vector: Sequence[float], owner_id: str) -> None:
        record = self._owned(image_id, owner_id)
        record.embedding = [float(value) for value in vector]

    async def update_analysis(self, image_id: str, fields: Mapping[str, Any], owner_id: str) -> None:
        record = self._owned(image_id, owner_id)
        for name, value in fields.items():
            if name in _ANALYSIS_FIELDS:
                setattr(record, name, list(value) if name == "tags" else value)
            else:
                record.analysis[name] = value

    def _owned(self, image_id: str, owner_id: str) -> ImageRecord:
        record = self._records.get(image_id)
        if record is None or record.owner_id != owner_id:
            raise StorageError(f"Image {image_id} not found for owner {owner_id}.")
        return record

    def save(self, path: Path) -> None:
        """Persist every record as a JSON document."""

        target = Path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            payload = {"records": [record_to_dict(record) for record in self._records.values()]}
            target.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Could not write image store to {target}.") from exc

    @classmethod
    def load(cls, path: Path) -> "InMemoryImageStore":
        """Load records previously written by :meth:`save`; a missing file yields an empty store."""

        target = Path(path)
        if not target.exists():
            logger.info("No image store at %s; starting empty", target)
            return cls()
        try:
            payload = json.loads(target.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Could not read image store from {target}.") from exc
        return cls(record_from_dict(item) for item in payload.get("records", []))


class LocalObjectStore(ObjectStore):
    """Writes uploaded buffers under a directory and hands out file:// URLs."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _target(self, name: str) -> Path:
        target = (self.root / name).resolve()
        if self.root.resolve() not in target.parents:
            raise StorageError(f"Object name escapes the store root: {name}")
        return target

    async def upload(self, buffer: bytes, name: str) -> str:
        target = self._target(name)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(buffer)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise StorageError(f"Upload of {name} failed.") from exc
        return target.as_uri()

    async def delete(self, name: str) -> None:
        target = self._target(name)
        try:
            await asyncio.to_thread(target.unlink, True)
        except OSError as exc:
            raise StorageError(f"Delete of {name} failed.") from exc

    def exists(self, name: str) -> bool:
        return self._target(name).exists()
