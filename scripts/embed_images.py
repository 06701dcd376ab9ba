# Path: scripts/embed_images.py
# Purpose: CLI tool to scan image folders and backfill embeddings into the JSON image store.
# Layer: scripts.
# Details: New files are added to the store; records that already carry a vector are left untouched.

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Ensure project root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import AppSettings, configure_logging
from core.embedders import EmbeddingEngine, build_embedding_service
from core.indexing import EmbeddingBackfill, ImageScanner
from core.services import InMemoryImageStore


async def _backfill(settings: AppSettings, owner_id: str) -> int:
    store = InMemoryImageStore.load(settings.store_path)
    for record in ImageScanner(settings.image_folder, owner_id=owner_id).scan():
        if not (await store.get_by_ids([record.id], owner_id)):
            store.add(record)

    service = build_embedding_service(settings.embedding, settings.vision)
    engine = EmbeddingEngine.from_settings(service, settings.embedding, image_store=store)
    records = await store.get_by_owner(owner_id)
    try:
        computed = await EmbeddingBackfill(engine, batch_size=settings.batch_size).run(records, owner_id)
    finally:
        await service.close()
    store.save(settings.store_path)
    return computed


def main() -> None:
    """Run embedding backfill over a folder of images."""

    parser = argparse.ArgumentParser(description="Backfill image embeddings for ImgSort")
    parser.add_argument("--folder", type=Path, default=None, help="Folder containing images to embed")
    parser.add_argument("--owner", type=str, default="local", help="Owner id assigned to scanned images")
    parser.add_argument("--batch-size", type=int, default=None, help="Number of images to embed per batch")
    args = parser.parse_args()

    overrides = {}
    if args.folder is not None:
        overrides["image_folder"] = args.folder
    if args.batch_size is not None:
        overrides["batch_size"] = args.batch_size
    settings = AppSettings(**overrides)
    configure_logging(settings)

    computed = asyncio.run(_backfill(settings, args.owner))
    print(f"Embedded {computed} images into {settings.store_path}")


if __name__ == "__main__":
    main()
