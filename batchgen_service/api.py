"""
FastAPI layer exposing streaming batch generation.

Endpoints:
 - GET /health
 - POST /generate/collection-preview
 - POST /generate/collection
 - POST /generate-thumbnail
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from . import config, records
from .auth import get_current_user_id
from .errors import RequestInvalid, Unauthenticated
from .events import NDJSON_MEDIA_TYPE, CollectionWireFormat, NdjsonEmitter, PreviewWireFormat, WireFormat
from .generation import GenerationBackend, GenerationInvoker, ReplicateBackend
from .jobs import BatchRun, normalize_templates
from .limiter import ConcurrencyLimiter
from .orchestrator import BatchOrchestrator
from .persistence import PersistContext, PersistenceSidecar
from .storage import R2Storage
from .thumbnails import ThumbnailRequester, generate_thumbnail

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    store = records.get_record_store()
    await store.init_models()
    yield
    await store.dispose()


app = FastAPI(title="Batch Generation Service", version="0.1.0", lifespan=lifespan)


class BatchRequest(BaseModel):
    model: Optional[str] = None
    templates: List[Any] = Field(default_factory=list)
    baseImageUrl: Optional[str] = None
    collectionId: Optional[str] = None
    collectionName: Optional[str] = None

    def base_image(self) -> Optional[str]:
        if self.baseImageUrl and self.baseImageUrl.strip():
            return self.baseImageUrl.strip()
        return None


class ThumbnailRequest(BaseModel):
    imageUrl: Optional[str] = None
    imageId: Optional[str] = None


# ------------------------------------------------------------------------------
# Error mapping
# ------------------------------------------------------------------------------


@app.exception_handler(RequestInvalid)
async def request_invalid_handler(_request: Request, exc: RequestInvalid) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Rejected malformed request: %s", exc.errors())
    return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request"})


@app.exception_handler(Unauthenticated)
async def unauthenticated_handler(_request: Request, exc: Unauthenticated) -> JSONResponse:
    logger.info("Unauthenticated request: %s", exc)
    return JSONResponse(status_code=401, content={"error": "Unauthorized"})


# ------------------------------------------------------------------------------
# Collaborators
# ------------------------------------------------------------------------------


def get_backend(settings: config.Settings = Depends(config.get_settings)) -> GenerationBackend:
    return ReplicateBackend.from_settings(settings)


def get_record_store() -> records.SqlRecordStore:
    return records.get_record_store()


def get_storage(settings: config.Settings = Depends(config.get_settings)) -> R2Storage:
    return R2Storage(settings)


def get_sidecar(
    settings: config.Settings = Depends(config.get_settings),
    record_store: records.SqlRecordStore = Depends(get_record_store),
    storage: R2Storage = Depends(get_storage),
) -> PersistenceSidecar:
    return PersistenceSidecar(
        records=record_store,
        storage=storage if settings.storage_configured else None,
        thumbnails=ThumbnailRequester.from_settings(settings),
    )


def _start_stream(
    body: BatchRequest,
    *,
    settings: config.Settings,
    backend: GenerationBackend,
    sidecar: PersistenceSidecar,
    user_id: str,
    wire_format: WireFormat,
    preserve_order: bool,
    require_base_image: bool,
    copy_outputs: bool,
    prefer_request_model: bool,
) -> StreamingResponse:
    base_image_url = body.base_image()
    jobs = normalize_templates(
        body.templates,
        default_model=(body.model or "").strip() or settings.default_model,
        base_image_url=base_image_url,
        require_base_image=require_base_image,
        prefer_request_model=prefer_request_model,
    )
    batch = BatchRun(jobs=jobs)
    logger.info(
        "Starting batch %s user=%s templates=%d collection=%s",
        batch.batch_id,
        user_id,
        batch.total,
        body.collectionId,
    )

    storage_prefix = None
    if copy_outputs and settings.storage_configured:
        storage_prefix = f"{user_id}/collections/{body.collectionId or batch.batch_id}"
    context = PersistContext(
        user_id=user_id,
        batch_id=batch.batch_id,
        collection_id=body.collectionId,
        collection_name=body.collectionName,
        reference_url=base_image_url,
        storage_prefix=storage_prefix,
    )

    orchestrator = BatchOrchestrator(
        GenerationInvoker(backend, base_image_url=base_image_url),
        limiter=ConcurrencyLimiter(settings.max_concurrent_generations),
        sidecar=sidecar,
        persist_context=context,
        preserve_order=preserve_order,
        backend_available=settings.backend_available,
        persistence_policy=settings.persistence_failure_policy,
    )
    emitter = NdjsonEmitter(wire_format)
    orchestrator.start_detached(batch, emitter)
    return StreamingResponse(
        emitter.lines(),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache"},
    )


# ------------------------------------------------------------------------------
# Routes
# ------------------------------------------------------------------------------


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/generate/collection-preview")
async def generate_collection_preview(
    body: BatchRequest,
    user_id: str = Depends(get_current_user_id),
    settings: config.Settings = Depends(config.get_settings),
    backend: GenerationBackend = Depends(get_backend),
    sidecar: PersistenceSidecar = Depends(get_sidecar),
):
    # Shuffled so previews don't always show the same templates first.
    # Every preview job uses the model picked for the request.
    return _start_stream(
        body,
        settings=settings,
        backend=backend,
        sidecar=sidecar,
        user_id=user_id,
        wire_format=PreviewWireFormat(),
        preserve_order=False,
        require_base_image=True,
        copy_outputs=False,
        prefer_request_model=True,
    )


@app.post("/generate/collection")
async def generate_collection(
    body: BatchRequest,
    user_id: str = Depends(get_current_user_id),
    settings: config.Settings = Depends(config.get_settings),
    backend: GenerationBackend = Depends(get_backend),
    sidecar: PersistenceSidecar = Depends(get_sidecar),
):
    # Clients correlate progress by index, so order is preserved.
    return _start_stream(
        body,
        settings=settings,
        backend=backend,
        sidecar=sidecar,
        user_id=user_id,
        wire_format=CollectionWireFormat(body.collectionId),
        preserve_order=True,
        require_base_image=False,
        copy_outputs=True,
        prefer_request_model=False,
    )


@app.post("/generate-thumbnail")
async def create_thumbnail(
    body: ThumbnailRequest,
    settings: config.Settings = Depends(config.get_settings),
    storage: R2Storage = Depends(get_storage),
    record_store: records.SqlRecordStore = Depends(get_record_store),
):
    if not body.imageUrl or not body.imageId:
        return JSONResponse(status_code=400, content={"error": "Missing imageUrl or imageId"})

    try:
        thumb_url = await generate_thumbnail(
            body.imageUrl, body.imageId, storage=storage, records=record_store, settings=settings
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("Thumbnail generation failed for image=%s: %s", body.imageId, exc)
        return JSONResponse(status_code=500, content={"error": str(exc) or "Thumbnail generation failed"})

    return {"success": True, "thumbUrl": thumb_url}
