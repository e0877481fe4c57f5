"""Offline Service - FastAPI application."""

import asyncio
import logging
import sys
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import List, Optional, Set

from fastapi import FastAPI, Request, status, HTTPException, Depends, Header, Query, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException
import httpx

# Add shared module to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))
from shared.analytics import AnalyticsTracker
from shared.config import get_api_keys, get_bible_api_config, get_sync_config
from shared.db_operations import DatabaseOperations
from shared.exceptions import (
    BibleAPIError, DownloadCanceledError, SyncError, TranslationNotFoundError
)
from services.content_cache.bible_client import BibleClient
from services.content_cache.catalog import find_translation
from services.content_cache.downloader import ContentCache
from services.offline_service.annotations import AnnotationStore
from services.offline_service.connectivity import ConnectivityMonitor
from services.offline_service.orchestrator import SyncOrchestrator
from services.offline_service.sync_queue import SyncQueue
from services.offline_service.transport import HttpSyncTransport, LocalTransport

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instances
db_ops: Optional[DatabaseOperations] = None
analytics: Optional[AnalyticsTracker] = None
sync_queue: Optional[SyncQueue] = None
annotations: Optional[AnnotationStore] = None
content_cache: Optional[ContentCache] = None
connectivity: Optional[ConnectivityMonitor] = None
orchestrator: Optional[SyncOrchestrator] = None
bible_client: Optional[BibleClient] = None
sync_client: Optional[httpx.AsyncClient] = None

# Running translation downloads
download_tasks: Set[asyncio.Task] = set()


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, description="API key for authentication"),
    authorization: Optional[str] = Header(None, description="Bearer API key")
):
    """
    Verify the API key sent in X-API-Key or as an Authorization bearer token.

    Raises:
        HTTPException: 401 if the API key is missing or invalid

    Returns:
        str: The validated API key
    """
    api_key = x_api_key
    if not api_key and authorization and authorization.lower().startswith("bearer "):
        api_key = authorization[7:].strip()

    if not api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key. Please provide X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    if api_key not in get_api_keys():
        logger.warning(f"Invalid API key attempted: {api_key[:10]}...")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    return api_key


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global db_ops, analytics, sync_queue, annotations, content_cache
    global connectivity, orchestrator, bible_client, sync_client

    logger.info("Offline Service starting up...")

    sync_config = get_sync_config()
    bible_config = get_bible_api_config()

    # Initialize the local store
    db_ops = DatabaseOperations()
    db_ops.init()

    analytics = AnalyticsTracker(db_ops)
    connectivity = ConnectivityMonitor(
        analytics=analytics,
        reconnect_delay=sync_config["reconnect_delay"],
        probe_url=sync_config["probe_url"]
    )
    analytics.online_status = lambda: connectivity.is_online

    sync_queue = SyncQueue(
        db_ops,
        analytics=analytics,
        max_attempts=sync_config["max_attempts"],
        backoff_base=sync_config["backoff_base"],
        backoff_max=sync_config["backoff_max"]
    )
    annotations = AnnotationStore(db_ops, sync_queue=sync_queue)

    bible_client = BibleClient(
        base_url=bible_config["base_url"],
        api_key=bible_config["api_key"],
        timeout=bible_config["timeout"]
    )
    content_cache = ContentCache(
        db_ops,
        bible_client,
        analytics=analytics,
        chapter_delay=bible_config["chapter_delay"]
    )

    # Push to the remote sync API when one is configured
    if sync_config["remote_url"]:
        sync_client = httpx.AsyncClient(base_url=sync_config["remote_url"], timeout=30.0)
        transport = HttpSyncTransport(sync_client)
        logger.info(f"Syncing to {sync_config['remote_url']}")
    else:
        transport = LocalTransport(delay=sync_config["simulated_delay"])
        logger.info("No SYNC_API_URL set, using local sync transport")

    orchestrator = SyncOrchestrator(
        db_ops,
        sync_queue,
        connectivity,
        analytics=analytics,
        transport=transport,
        lock_ttl=sync_config["lock_ttl"]
    )
    connectivity.set_reconnect_handler(orchestrator.sync_pending_changes)

    orchestrator.reconcile()
    analytics.track("offline_mode_initialized")

    if connectivity.probe_url:
        connectivity.start(sync_config["probe_interval"])

    yield

    # Cleanup
    for task in list(download_tasks):
        task.cancel()
    await asyncio.gather(*download_tasks, return_exceptions=True)
    await connectivity.stop()
    await bible_client.aclose()
    if sync_client is not None:
        await sync_client.aclose()
        sync_client = None
    logger.info("Offline Service shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Offline Service",
    description="Offline Bible content cache with note and highlight sync",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """
    Global error handling middleware.

    Errors with a registered handler never reach this point; anything else
    becomes a 500 whose detail is only logged.
    """
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"}
        )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in errors
    ) or "Invalid request"
    logger.warning(f"Request validation failed: {message}")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.warning(f"Validation error: {exc}")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})


@app.exception_handler(TranslationNotFoundError)
async def translation_not_found_handler(request: Request, exc: TranslationNotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": str(exc)})


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    logger.error(f"Sync request failed: {exc}")
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"error": str(exc)})


@app.exception_handler(BibleAPIError)
async def bible_api_error_handler(request: Request, exc: BibleAPIError):
    logger.error(f"Bible API request failed: {exc}")
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"error": str(exc)})


def not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    db_healthy = False
    try:
        with db_ops.get_session() as session:
            session.execute(text("SELECT 1"))
        db_healthy = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    return {
        "status": "healthy" if db_healthy else "degraded",
        "service": "offline_service",
        "database": "up" if db_healthy else "down",
        "is_online": connectivity.is_online,
    }


@app.get("/", status_code=status.HTTP_200_OK)
async def root():
    """Root endpoint."""
    return {
        "service": "Offline Service",
        "version": "0.1.0",
        "status": "running"
    }


# Translations

async def _run_download(translation_id: str):
    try:
        await content_cache.download_translation(translation_id)
    except DownloadCanceledError:
        logger.info(f"Download of {translation_id} canceled")
    except Exception as e:
        # The failure is already recorded on the progress row
        logger.error(f"Background download of {translation_id} failed: {e}")


class DownloadResponse(BaseModel):
    """Response model for a started download."""
    translation_id: str
    status: str


@app.get("/translations/available", status_code=status.HTTP_200_OK)
async def list_available_translations(api_key: str = Depends(verify_api_key)):
    """List the download catalog with each translation's downloaded flag."""
    return [
        {**translation, "downloaded": content_cache.is_translation_downloaded(translation["id"])}
        for translation in content_cache.get_available_translations()
    ]


@app.get("/translations", status_code=status.HTTP_200_OK)
async def list_downloaded_translations(api_key: str = Depends(verify_api_key)):
    """List translations available offline."""
    return content_cache.get_downloaded_translations()


@app.post(
    "/translations/{translation_id}/download",
    response_model=DownloadResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def start_download(translation_id: str, api_key: str = Depends(verify_api_key)):
    """
    Start downloading a translation.

    Returns immediately; poll /translations/{translation_id}/progress for status.
    """
    if find_translation(translation_id) is None:
        raise TranslationNotFoundError(f"Translation {translation_id} not found")

    task = asyncio.create_task(_run_download(translation_id))
    download_tasks.add(task)
    task.add_done_callback(download_tasks.discard)

    logger.info(f"Queued download of {translation_id}")
    return DownloadResponse(translation_id=translation_id, status="queued")


@app.post("/translations/{translation_id}/cancel", status_code=status.HTTP_200_OK)
async def cancel_download(translation_id: str, api_key: str = Depends(verify_api_key)):
    """Cancel an in-flight download."""
    if not content_cache.cancel_download(translation_id):
        raise not_found(f"No download in progress for {translation_id}")
    return {"translation_id": translation_id, "canceled": True}


@app.delete("/translations/{translation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_translation(translation_id: str, api_key: str = Depends(verify_api_key)):
    """Delete a translation and all of its offline content."""
    result = await content_cache.delete_translation(translation_id)
    if not result["removed"]["translations"]:
        raise not_found(f"Translation {translation_id} is not stored")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/translations/{translation_id}/progress", status_code=status.HTTP_200_OK)
async def get_download_progress(translation_id: str, api_key: str = Depends(verify_api_key)):
    """Get the latest download progress for a translation."""
    progress = content_cache.get_download_progress(translation_id)
    if progress is None:
        raise not_found(f"No download recorded for {translation_id}")
    return progress


@app.get("/verses", status_code=status.HTTP_200_OK)
async def get_verse(
    reference: str = Query(..., min_length=1),
    translation_id: Optional[str] = None,
    api_key: str = Depends(verify_api_key)
):
    """Get a cached passage by reference."""
    verse = content_cache.get_cached_verse(reference, translation_id)
    if verse is None:
        raise not_found(f"Passage {reference} is not cached")
    return verse


@app.get("/storage", status_code=status.HTTP_200_OK)
async def get_storage(api_key: str = Depends(verify_api_key)):
    """Get storage used by offline content."""
    return content_cache.get_storage_info()


# Notes

class NoteRequest(BaseModel):
    """Request model for saving a note."""
    id: Optional[str] = Field(None, description="Existing note ID to update")
    reference: str = Field(..., min_length=1, description="Verse reference, e.g. 'John 3:16'")
    content: str = Field("", description="Note text")
    title: Optional[str] = None
    verse_id: Optional[str] = None


@app.post("/notes", status_code=status.HTTP_201_CREATED)
async def save_note(request: NoteRequest, api_key: str = Depends(verify_api_key)):
    """Create or update a note and queue it for sync."""
    return annotations.save_note(request.model_dump(exclude_none=True))


@app.get("/notes", status_code=status.HTTP_200_OK)
async def list_notes(reference: Optional[str] = None, api_key: str = Depends(verify_api_key)):
    """List notes, optionally for one reference."""
    if reference:
        return annotations.get_notes_by_reference(reference)
    return annotations.get_all_notes()


@app.get("/notes/search", status_code=status.HTTP_200_OK)
async def search_notes(q: str = Query(..., min_length=1), api_key: str = Depends(verify_api_key)):
    """Search notes by content, reference or title."""
    return annotations.search_notes(q)


@app.get("/notes/{note_id}", status_code=status.HTTP_200_OK)
async def get_note(note_id: str, api_key: str = Depends(verify_api_key)):
    note = annotations.get_note(note_id)
    if note is None:
        raise not_found(f"Note {note_id} not found")
    return note


@app.delete("/notes/{note_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_note(note_id: str, api_key: str = Depends(verify_api_key)):
    if not annotations.delete_note(note_id):
        raise not_found(f"Note {note_id} not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Highlights

class HighlightRequest(BaseModel):
    """Request model for saving a highlight."""
    id: Optional[str] = None
    reference: str = Field(..., min_length=1)
    color: Optional[str] = Field(None, description="Palette hex value or name; yellow if omitted")
    verse_id: Optional[str] = None


@app.post("/highlights", status_code=status.HTTP_201_CREATED)
async def save_highlight(request: HighlightRequest, api_key: str = Depends(verify_api_key)):
    """Create or update a highlight and queue it for sync."""
    return annotations.save_highlight(request.model_dump(exclude_none=True))


@app.get("/highlights", status_code=status.HTTP_200_OK)
async def list_highlights(
    reference: Optional[str] = None,
    color: Optional[str] = None,
    api_key: str = Depends(verify_api_key)
):
    """List highlights, optionally filtered by reference and color."""
    if color:
        highlights = annotations.get_highlights_by_color(color)
        if reference:
            highlights = [h for h in highlights if h["reference"] == reference]
        return highlights
    if reference:
        return annotations.get_highlights_by_reference(reference)
    return annotations.get_all_highlights()


@app.get("/highlights/{highlight_id}", status_code=status.HTTP_200_OK)
async def get_highlight(highlight_id: str, api_key: str = Depends(verify_api_key)):
    highlight = annotations.get_highlight(highlight_id)
    if highlight is None:
        raise not_found(f"Highlight {highlight_id} not found")
    return highlight


@app.delete("/highlights/{highlight_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_highlight(highlight_id: str, api_key: str = Depends(verify_api_key)):
    if not annotations.delete_highlight(highlight_id):
        raise not_found(f"Highlight {highlight_id} not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/annotations/stats", status_code=status.HTTP_200_OK)
async def get_annotation_stats(api_key: str = Depends(verify_api_key)):
    return annotations.get_statistics()


# Sync

class SyncStatusResponse(BaseModel):
    """Response model for sync status."""
    is_online: bool
    is_syncing: bool
    pending_count: int
    failed_count: int
    last_sync_time: Optional[str] = None


class RequeueRequest(BaseModel):
    """Request model for requeueing failed sync items."""
    item_id: Optional[int] = Field(None, description="Requeue one item; all failed items if omitted")


class ConnectivityRequest(BaseModel):
    """Request model for reporting connectivity."""
    online: bool


@app.get("/sync/status", response_model=SyncStatusResponse, status_code=status.HTTP_200_OK)
async def get_sync_status(api_key: str = Depends(verify_api_key)):
    last_sync_time = orchestrator.last_sync_time
    return SyncStatusResponse(
        is_online=connectivity.is_online,
        is_syncing=orchestrator.is_syncing,
        pending_count=sync_queue.count_pending(),
        failed_count=len(sync_queue.get_failed()),
        last_sync_time=last_sync_time.isoformat() if last_sync_time else None
    )


@app.get("/sync/queue", status_code=status.HTTP_200_OK)
async def get_sync_queue(
    status_filter: Optional[str] = Query(None, alias="status"),
    api_key: str = Depends(verify_api_key)
):
    """List sync queue items, optionally by status."""
    items: List[dict] = sync_queue.get_all()
    if status_filter:
        items = [item for item in items if item["status"] == status_filter]
    return items


@app.post("/sync", status_code=status.HTTP_200_OK)
async def trigger_sync(api_key: str = Depends(verify_api_key)):
    """
    Sync pending changes now.

    Raises:
        HTTPException: 502 if pushing to the remote failed
    """
    was_syncing = orchestrator.is_syncing
    summary = await orchestrator.sync_pending_changes()

    if summary is None:
        if not connectivity.is_online:
            reason = "offline"
        elif was_syncing:
            reason = "sync_in_progress"
        else:
            reason = "locked_by_another_process"
        return {"synced": False, "reason": reason}

    return {"synced": True, "summary": asdict(summary)}


@app.post("/sync/requeue", status_code=status.HTTP_200_OK)
async def requeue_failed(request: Optional[RequeueRequest] = None, api_key: str = Depends(verify_api_key)):
    """Move failed sync items back to pending."""
    item_id = request.item_id if request else None
    return {"requeued": sync_queue.requeue_failed(item_id)}


@app.post("/connectivity", status_code=status.HTTP_200_OK)
async def report_connectivity(request: ConnectivityRequest, api_key: str = Depends(verify_api_key)):
    """Report the client's connectivity. Going online schedules a sync."""
    changed = connectivity.set_online(request.online)
    return {"is_online": connectivity.is_online, "changed": changed}


@app.get("/analytics", status_code=status.HTTP_200_OK)
async def get_analytics(api_key: str = Depends(verify_api_key)):
    return analytics.get_summary()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
