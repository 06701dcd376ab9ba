# Path: scripts/sort_images.py
# Purpose: CLI to sort a folder of images by a free-text query.
# Layer: scripts.
# Details: Wires scanner, stores, embedding engine, atlas analyzer, and dispatcher from AppSettings.

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

# Ensure project root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import AppSettings, configure_logging
from core.atlas import AtlasPacker, AtlasVisionAnalyzer
from core.cache import ResultCache
from core.embedders import EmbeddingEngine, build_embedding_service
from core.indexing import ImageScanner
from core.models.domain import ExecutionStrategy, ResourceConstraints, SortingRequest, StrategyPreferences
from core.search import QueryClassifier, SortingDispatcher, SortProgress
from core.services import InMemoryImageStore, LocalObjectStore, OpenAIVisionClient


def build_dispatcher(settings: AppSettings, image_store: Optional[InMemoryImageStore] = None, offline: bool = True) -> SortingDispatcher:
    """Assemble a dispatcher; remote vision and classification are used only when online with an API key."""

    cache = ResultCache.from_settings(settings.cache)
    engine = EmbeddingEngine.from_settings(
        build_embedding_service(settings.embedding, settings.vision),
        settings.embedding,
        cache=cache,
        image_store=image_store,
    )

    vision_analyzer = None
    classifier = QueryClassifier()
    if not offline and settings.vision.api_key:
        client = OpenAIVisionClient.from_settings(settings.vision)
        vision_analyzer = AtlasVisionAnalyzer(
            AtlasPacker.from_settings(settings.atlas),
            client,
            object_store=LocalObjectStore(settings.object_store_dir),
            cache=cache,
        )
        classifier = QueryClassifier(language_model=client)

    return SortingDispatcher.from_settings(
        settings,
        cache=cache,
        classifier=classifier,
        embedding_engine=engine,
        vision_analyzer=vision_analyzer,
        image_store=image_store,
    )


async def _sort(args: argparse.Namespace, settings: AppSettings) -> None:
    scanner = ImageScanner(args.folder, owner_id=args.owner)
    images = scanner.scan()
    if not images:
        print(f"No images found under {args.folder}")
        return

    store = InMemoryImageStore(images)
    dispatcher = build_dispatcher(settings, store, offline=args.offline)
    request = SortingRequest(
        query=args.query,
        images=images,
        owner_id=args.owner,
        preferences=StrategyPreferences(
            allow_visual_analysis=not args.offline,
            max_vision_calls=settings.dispatcher.default_max_vision_calls,
            strategy_hint=ExecutionStrategy(args.strategy) if args.strategy else None,
        ),
        constraints=ResourceConstraints(
            max_results=args.limit,
            max_processing_time=settings.dispatcher.default_max_processing_time,
            max_cost=settings.dispatcher.default_max_cost,
        ),
    )

    progress = SortProgress()
    try:
        response = await dispatcher.dispatch(request, progress=progress)
    finally:
        await dispatcher.close()
    print(f"method={response.method_used.value} confidence={response.confidence:.2f} time={response.processing_time_ms:.0f}ms")
    for result in response.results:
        print(f"{result.position:>3}. score={result.score:.3f} {result.image.path}  {result.reasoning}")


def main() -> None:
    """Sort the images of a folder from the command line."""

    parser = argparse.ArgumentParser(description="Sort a folder of images by a natural-language query")
    parser.add_argument("query", type=str, help="Free-text sorting query")
    parser.add_argument("--folder", type=Path, default=None, help="Folder containing images to sort")
    parser.add_argument("--owner", type=str, default="local", help="Owner id assigned to scanned images")
    parser.add_argument("--limit", type=int, default=20, help="Number of results to print")
    parser.add_argument("--strategy", choices=[strategy.value for strategy in ExecutionStrategy], help="Force a strategy")
    parser.add_argument("--offline", action="store_true", help="Never call remote model backends")
    args = parser.parse_args()

    settings = AppSettings.from_env()
    configure_logging(settings)
    args.folder = args.folder or settings.image_folder
    asyncio.run(_sort(args, settings))


if __name__ == "__main__":
    main()
