# Path: api/app.py
# Purpose: Expose a FastAPI application for image sorting.
# Layer: api.
# Details: Health and cache endpoints plus POST /sort delegating to the sorting dispatcher.

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from api.schemas import SortRequestBody, SortResponseBody
from config import configure_logging
from core.errors import InvalidRequestError, SortingError, StorageError
from core.models.domain import ImageRecord
from core.search.dispatcher import SortingDispatcher
from core.services.base import ImageStore

logger = logging.getLogger(__name__)


def create_app(
    dispatcher: Optional[SortingDispatcher] = None,
    image_store: Optional[ImageStore] = None,
    settings: Any = None,
):  # type: ignore[override]
    """Create a FastAPI app instance wired to the provided dispatcher."""

    from fastapi import FastAPI, HTTPException

    @asynccontextmanager
    async def lifespan(_app):
        sweeping = dispatcher is not None and settings is not None
        if sweeping:
            dispatcher.cache.start_background_sweep(settings.cache.sweep_interval)
        try:
            yield
        finally:
            if sweeping:
                dispatcher.cache.stop_background_sweep()
            if dispatcher is not None:
                await dispatcher.close()

    if settings is not None:
        configure_logging(settings)
    app = FastAPI(title="ImgSort API", version="0.2.0", lifespan=lifespan)
    defaults = settings.dispatcher if settings is not None else None

    @app.get("/health")
    def health() -> Dict[str, Any]:
        """Return service status and whether the result cache answers."""

        if dispatcher is None:
            return {"status": "degraded", "dispatcher": False}
        return {"status": "ok", "dispatcher": True, "cache": dispatcher.cache.health_check()}

    @app.get("/cache/stats")
    def cache_stats() -> Dict[str, Any]:
        if dispatcher is None:
            raise HTTPException(status_code=503, detail="Sorting dispatcher is not configured.")
        stats = dispatcher.cache.stats()
        return {
            "hits": stats.hits,
            "misses": stats.misses,
            "sets": stats.sets,
            "evictions": stats.evictions,
            "hitRate": stats.hit_rate,
            "totalSize": stats.total_size,
            "entryCount": stats.entry_count,
        }

    @app.post("/sort", response_model=SortResponseBody)
    async def sort(body: SortRequestBody) -> SortResponseBody:
        """Sort the posted images, or the owner's stored images named by ``imageIds``."""

        if dispatcher is None:
            raise HTTPException(status_code=503, detail="Sorting dispatcher is not configured.")

        records: List[ImageRecord] = [image.to_record(body.owner_id) for image in body.images]
        if body.image_ids:
            if image_store is None:
                raise HTTPException(status_code=400, detail="imageIds requires a configured image store.")
            try:
                records.extend(await image_store.get_by_ids(body.image_ids, body.owner_id))
            except StorageError as exc:
                logger.warning("Image lookup failed: %s", exc)
                raise HTTPException(status_code=502, detail="Image store unavailable.") from exc

        try:
            response = await dispatcher.dispatch(body.to_request(records, defaults))
        except InvalidRequestError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except SortingError as exc:
            logger.error("Sorting failed: %s", exc)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return SortResponseBody.from_response(response)

    return app
