"""
Creator Pulse — FastAPI application.

Serves the synchronized creator snapshot and the pulse feed, and exposes the
admin triggers around them:

  GET    /api/clients            Enriched registry snapshot (+ totals, sync state)
  POST   /api/clients/refresh    Run a registry/stats cycle now, at most    (admin)
                                 once per 15 min unless ?force=true
  POST   /api/clients            Create a registry record, then resync      (admin)
  PUT    /api/clients/{id}       Update a registry record, then resync      (admin)
  DELETE /api/clients/bulk       Delete several records, then resync        (admin)
  DELETE /api/clients/{id}       Delete one record, then resync             (admin)
  GET    /api/pulse              Last-24h activity feed, live first
  POST   /api/pulse/refresh      Force a pulse cycle now                    (admin)
  GET    /api/quota              Masked status of the YouTube key pool      (admin)
  GET    /health

Error handling:
  - Background sync failures never surface as HTTP errors: the endpoints
    return the last good snapshot with state="stale" and the error message
  - Backend unreachable during CRUD → 502, backend 4xx → same status
  - Missing/invalid admin bearer token → 401, no ADMIN_TOKEN configured → 503
  - Manual refresh inside the cooldown window → 429
"""

import logging
import math
import secrets
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

import config
from models.schemas import (
    BulkDeleteRequest,
    ClientInput,
    ClientsResponse,
    PulseResponse,
    QuotaResponse,
)
from services.activity import enrich_activities, window_activities
from services.backend import BackendClient, BackendError
from services.credential_pool import CredentialPool
from services.snapshot_store import SnapshotStore
from services.sync import SyncCooldownError, SyncService, SyncView, compute_totals
from services.youtube import StatsFetcher

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def build_service() -> SyncService:
    """Assemble the sync service from config."""
    pool = CredentialPool.from_env(
        config.YOUTUBE_API_KEYS, cooldown_ms=config.KEY_COOLDOWN_SECONDS * 1000
    )
    if not len(pool):
        logger.warning("No YOUTUBE_API_KEYS configured, using backend /clients/stats instead")
    return SyncService(
        backend=BackendClient(),
        fetcher=StatsFetcher(pool),
        store=SnapshotStore(config.CACHE_DIR),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = build_service()
    app.state.service = service
    if config.SCHEDULER_ENABLED:
        service.start()
    else:
        logger.info("Scheduler disabled via config")
    yield
    await service.stop()
    logger.info("Creator Pulse shut down")


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Creator Pulse",
    description="Partner-creator stats synchronization, matching and pulse feed",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ===========================================================================
# Dependencies
# ===========================================================================

def get_service(request: Request) -> SyncService:
    return request.app.state.service


def require_admin(authorization: Optional[str] = Header(default=None)) -> None:
    """Bearer-token gate for admin endpoints."""
    if not config.ADMIN_TOKEN:
        raise HTTPException(
            status_code=503,
            detail={"status": "error", "message": "Admin access is not configured"},
        )
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token, config.ADMIN_TOKEN):
        raise HTTPException(
            status_code=401,
            detail={"status": "error", "message": "Admin bearer token required"},
        )


# ===========================================================================
# Clients
# ===========================================================================

@app.get("/api/clients", response_model=ClientsResponse)
async def list_clients(service: SyncService = Depends(get_service)):
    """Current enriched snapshot; never blocks on a sync cycle."""
    return _clients_response(service.read_clients())


@app.post("/api/clients/refresh", response_model=ClientsResponse, dependencies=[Depends(require_admin)])
async def refresh_clients(force: bool = False, service: SyncService = Depends(get_service)):
    try:
        view = await service.manual_refresh_clients(force=force)
    except SyncCooldownError as e:
        minutes = math.ceil(e.remaining_ms / 60000)
        raise HTTPException(
            status_code=429,
            detail={
                "status": "error",
                "message": f"Sync cooldown active. Please wait {minutes}m or use ?force=true",
            },
        )
    return _clients_response(view)


@app.post("/api/clients", response_model=ClientsResponse, dependencies=[Depends(require_admin)])
async def create_client(payload: ClientInput, service: SyncService = Depends(get_service)):
    await _forward(service.backend.create_client(payload), "create client")
    return _clients_response(await service.refresh_clients())


# Registered before /{client_id} so "bulk" is not taken as an id
@app.delete("/api/clients/bulk", response_model=ClientsResponse, dependencies=[Depends(require_admin)])
async def delete_clients(payload: BulkDeleteRequest, service: SyncService = Depends(get_service)):
    if not payload.ids:
        raise HTTPException(
            status_code=400,
            detail={"status": "error", "message": "ids must not be empty"},
        )
    await _forward(service.backend.delete_clients(payload.ids), "bulk delete clients")
    return _clients_response(await service.refresh_clients())


@app.put("/api/clients/{client_id}", response_model=ClientsResponse, dependencies=[Depends(require_admin)])
async def update_client(client_id: str, payload: ClientInput, service: SyncService = Depends(get_service)):
    await _forward(service.backend.update_client(client_id, payload), "update client")
    return _clients_response(await service.refresh_clients())


@app.delete("/api/clients/{client_id}", response_model=ClientsResponse, dependencies=[Depends(require_admin)])
async def delete_client(client_id: str, service: SyncService = Depends(get_service)):
    await _forward(service.backend.delete_client(client_id), "delete client")
    return _clients_response(await service.refresh_clients())


# ===========================================================================
# Pulse
# ===========================================================================

@app.get("/api/pulse", response_model=PulseResponse)
async def get_pulse(service: SyncService = Depends(get_service)):
    """Windowed pulse feed, re-derived from the latest snapshot on every call."""
    return _pulse_response(service)


@app.post("/api/pulse/refresh", response_model=PulseResponse, dependencies=[Depends(require_admin)])
async def refresh_pulse(service: SyncService = Depends(get_service)):
    await service.refresh_pulse()
    return _pulse_response(service)


# ===========================================================================
# Quota / health
# ===========================================================================

@app.get("/api/quota", response_model=QuotaResponse, dependencies=[Depends(require_admin)])
async def get_quota(include_backend: bool = False, service: SyncService = Depends(get_service)):
    backend_keys = None
    if include_backend:
        backend_keys = await _forward(service.backend.fetch_quota(), "fetch backend quota")
    return QuotaResponse(keys=service.fetcher.pool.list_status(), backend=backend_keys)


@app.get("/health")
async def health_check(service: SyncService = Depends(get_service)):
    return {
        "status": "healthy",
        "service": "creator-pulse",
        "clients": service.read_clients().state.value,
        "pulse": service.read_pulse().state.value,
    }


# ===========================================================================
# Helpers
# ===========================================================================

def _clients_response(view: SyncView) -> ClientsResponse:
    clients = view.snapshot.data if view.snapshot else []
    return ClientsResponse(
        state=view.state,
        fetched_at=view.snapshot.fetched_at if view.snapshot else None,
        quota_exceeded=view.quota_exceeded,
        error=view.error,
        totals=compute_totals(clients),
        clients=clients,
    )


def _pulse_response(service: SyncService) -> PulseResponse:
    view = service.read_pulse()
    feed = view.snapshot.data if view.snapshot else None
    clients_snapshot = service.read_clients().snapshot
    activities = []
    if feed is not None:
        recent = window_activities(
            feed.activities,
            service.clock(),
            window_ms=config.ACTIVITY_WINDOW_HOURS * 60 * 60 * 1000,
        )
        activities = enrich_activities(
            recent, feed.meta, clients_snapshot.data if clients_snapshot else None
        )
    return PulseResponse(
        state=view.state,
        fetched_at=view.snapshot.fetched_at if view.snapshot else None,
        ts=feed.ts if feed else None,
        quota_exceeded=view.quota_exceeded or bool(feed and feed.quota_exceeded),
        error=view.error,
        activities=activities,
        debug=feed.debug if feed else None,
    )


async def _forward(call, action: str):
    """Await a backend call, mapping BackendError onto an HTTP error."""
    try:
        return await call
    except BackendError as e:
        logger.error(f"Failed to {action}: {e}")
        status = e.status_code if 400 <= e.status_code < 500 else 502
        raise HTTPException(
            status_code=status,
            detail={"status": "error", "message": f"Failed to {action}: {e}"},
        )


# ===========================================================================
# Main entry point
# ===========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
