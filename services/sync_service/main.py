"""Sync Service - FastAPI application."""

import base64
import binascii
import logging
import sys
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request, status, HTTPException
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

# Add shared module to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))
from shared.config import get_sync_config
from shared.encryption import TokenCipher
from shared.local_store import LocalStore
from shared.models import DrainResult, RecordSnapshot
from services.drive_client.auth import DriveAuthenticator
from services.drive_client.drive_client import DriveClient
from services.sync_service.autosave import AutosaveScheduler, restore_current_record
from services.sync_service.connectivity import ConnectivityMonitor
from services.sync_service.notifications import StatusBroadcaster
from services.sync_service.orchestrator import SyncOrchestrator
from services.sync_service.sync_queue import SyncQueue

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instances
store: Optional[LocalStore] = None
cipher: Optional[TokenCipher] = None
authenticator: Optional[DriveAuthenticator] = None
drive_client: Optional[DriveClient] = None
sync_queue: Optional[SyncQueue] = None
connectivity: Optional[ConnectivityMonitor] = None
autosave: Optional[AutosaveScheduler] = None
status_broadcaster: Optional[StatusBroadcaster] = None
orchestrator: Optional[SyncOrchestrator] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global store, cipher, authenticator, drive_client, sync_queue
    global connectivity, autosave, status_broadcaster, orchestrator

    logger.info("Sync Service starting up...")
    sync_config = get_sync_config()

    # Initialize local durable store
    store = LocalStore()
    store.create_tables()
    logger.info(f"Local store initialized at {store.database_url}")

    # Initialize token cipher
    cipher = TokenCipher()
    logger.info("Token cipher initialized")

    authenticator = DriveAuthenticator(store, cipher)
    authenticator.restore()

    drive_client = DriveClient(authenticator)
    sync_queue = SyncQueue(store, max_attempts=sync_config["max_retry_attempts"])
    connectivity = ConnectivityMonitor(
        probe_host=sync_config["probe_host"],
        probe_port=sync_config["probe_port"],
        check_interval=sync_config["check_interval"],
        probe_timeout=sync_config["probe_timeout"]
    )
    autosave = AutosaveScheduler(store, delay=sync_config["autosave_delay"])
    status_broadcaster = StatusBroadcaster()
    orchestrator = SyncOrchestrator(
        drive_client=drive_client,
        sync_queue=sync_queue,
        connectivity=connectivity,
        authenticator=authenticator,
        store=store,
        status=status_broadcaster
    )
    connectivity.start()
    logger.info(
        f"Sync engine ready - {len(sync_queue)} queued, "
        f"authenticated: {authenticator.is_authenticated()}"
    )

    yield

    # Cleanup
    autosave.close()
    await connectivity.stop()
    await drive_client.aclose()
    logger.info("Sync Service shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Sync Service",
    description="Offline-first persistence and Google Drive sync for patient records",
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
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    store_healthy = not sync_queue.degraded and autosave.last_error is None

    return {
        "status": "healthy" if store_healthy else "degraded",
        "service": "sync_service",
        "version": "0.1.0",
        "dependencies": {
            "local_store": "up" if store_healthy else "down",
            "network": "online" if connectivity.is_online() else "offline",
            "google_drive": "signed_in" if authenticator.is_authenticated() else "signed_out"
        }
    }


# Request/Response models
class RecordPayload(BaseModel):
    """A record snapshot as sent by the form layer."""
    record_id: str
    json_content: str
    binary_content_base64: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DrainResponse(BaseModel):
    """Response model for a queue drain."""
    succeeded: int
    failed: int
    total: int
    pending: int
    auth_error: bool
    skipped: bool


class SaveResponse(BaseModel):
    """Response model for a record save."""
    record_id: str
    uploaded: bool
    queue_item_id: Optional[str] = None
    auth_error: bool
    durable: bool
    json_file_id: Optional[str] = None
    binary_file_id: Optional[str] = None


class ConnectivityRequest(BaseModel):
    """Request model for platform online/offline events."""
    online: bool


class SignInRequest(BaseModel):
    """Request model for handing over a Drive access token."""
    access_token: str


def _to_snapshot(payload: RecordPayload) -> RecordSnapshot:
    binary_content = None
    if payload.binary_content_base64:
        try:
            binary_content = base64.b64decode(payload.binary_content_base64, validate=True)
        except binascii.Error:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="binary_content_base64 is not valid base64"
            )

    return RecordSnapshot(
        record_id=payload.record_id,
        json_content=payload.json_content,
        binary_content=binary_content,
        created_at=payload.created_at,
        updated_at=payload.updated_at
    )


def _drain_response(result: Optional[DrainResult]) -> Optional[DrainResponse]:
    if result is None:
        return None
    return DrainResponse(
        succeeded=result.succeeded,
        failed=result.failed,
        total=result.total,
        pending=result.pending,
        auth_error=result.auth_error,
        skipped=result.skipped
    )


@app.post("/records/changed", status_code=status.HTTP_202_ACCEPTED)
async def record_changed(payload: RecordPayload):
    """
    Notify the engine that the record being edited changed.

    The snapshot is written to the local store once edits have been quiet
    for the autosave delay.
    """
    scheduled = autosave.notify_changed(_to_snapshot(payload))
    return {"record_id": payload.record_id, "scheduled": scheduled}


@app.get("/records/current", status_code=status.HTTP_200_OK)
async def get_current_record():
    """
    Get the record saved by the last autosave or save, for session restore.

    Raises:
        HTTPException: If no record is stored on this device
    """
    snapshot = restore_current_record(store)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No record stored on this device"
        )
    return snapshot.to_dict()


@app.post("/records/save", response_model=SaveResponse, status_code=status.HTTP_200_OK)
async def save_record(payload: RecordPayload):
    """
    Save a record to Google Drive, or queue it when that is not possible.

    Args:
        payload: Record snapshot with JSON content and optional base64 chart

    Returns:
        SaveResponse telling whether the record was uploaded or queued

    Raises:
        HTTPException: If the record ID is missing or the chart is not base64
    """
    snapshot = _to_snapshot(payload)
    autosave.close()

    try:
        result = await orchestrator.save(snapshot)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return SaveResponse(
        record_id=result.record_id,
        uploaded=result.uploaded,
        queue_item_id=result.queue_item_id,
        auth_error=result.auth_error,
        durable=result.durable,
        json_file_id=result.files.json_file_id if result.files else None,
        binary_file_id=result.files.binary_file_id if result.files else None
    )


@app.post("/sync/drain", response_model=DrainResponse, status_code=status.HTTP_200_OK)
async def drain_queue():
    """Manually process the sync queue."""
    logger.info("Manual drain requested")
    return _drain_response(await orchestrator.drain())


@app.get("/sync/status", status_code=status.HTTP_200_OK)
async def get_sync_status():
    """Get queue length, connectivity and the latest save status."""
    queue_status = sync_queue.status()
    state = orchestrator.connectivity_state()
    current = status_broadcaster.current
    last_drain = _drain_response(orchestrator.last_drain)

    return {
        "status": current.status.value,
        "message": current.message,
        "timestamp": current.timestamp.isoformat(),
        "queue_length": queue_status.queue_length,
        "oldest_timestamp": (
            queue_status.oldest_timestamp.isoformat() if queue_status.oldest_timestamp else None
        ),
        "is_online": state.is_online,
        "is_authenticated": state.is_authenticated,
        "degraded": sync_queue.degraded,
        "last_drain": last_drain.model_dump() if last_drain else None
    }


@app.post("/connectivity", status_code=status.HTTP_200_OK)
async def report_connectivity(request: ConnectivityRequest):
    """
    Forward a platform online/offline event.

    Going online drains the queue before this call returns.
    """
    changed = await connectivity.set_online(request.online)
    drain = _drain_response(orchestrator.last_drain) if changed and request.online else None

    return {
        "is_online": connectivity.is_online(),
        "changed": changed,
        "drain": drain.model_dump() if drain else None
    }


@app.post("/auth/token", status_code=status.HTTP_200_OK)
async def sign_in(request: SignInRequest):
    """Sign in to Google Drive with an access token and sync anything queued."""
    try:
        authenticator.sign_in(request.access_token)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    drain = _drain_response(await orchestrator.drain())
    return {"is_authenticated": True, "drain": drain.model_dump()}


@app.post("/auth/sign-out", status_code=status.HTTP_200_OK)
async def sign_out():
    """Sign out from Google Drive. Queued records stay on this device."""
    await authenticator.sign_out()
    return {"is_authenticated": False, "queue_length": len(sync_queue)}


@app.post("/session/reset", status_code=status.HTTP_200_OK)
async def reset_session():
    """
    Log out: sign out from Google Drive and drop every record, queued upload
    and cached token held on this device.
    """
    autosave.close()
    await authenticator.sign_out()
    discarded = await orchestrator.reset()
    logger.info(f"Session reset, {discarded} unsynced records discarded")
    return {"discarded": discarded}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("SYNC_SERVICE_PORT", 8005))
    uvicorn.run(app, host="0.0.0.0", port=port)
