"""
Backend registry store client.

The studio backend owns the creator registry, the pre-synced stats and the
pulse feed. This client wraps its HTTP surface:

  GET    /clients                → {clients: RegistryRecord[]}
  POST   /clients                → create            (bearer)
  PUT    /clients/:id            → update            (bearer)
  DELETE /clients/:id            → delete            (bearer)
  DELETE /clients/bulk {ids}     → bulk delete       (bearer)
  GET    /clients/stats          → {stats: LiveStatsRecord[]}
  GET    /clients/pulse[?debug=1]→ PulseFeed
  GET    /admin/yt-quota         → {keys: [{masked, status}]}   (bearer)

Every failure is raised as BackendError so the sync layer can treat the
whole cycle as failed (and keep serving its last good snapshot).
"""

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

import config
from models.schemas import ActivityEvent, ClientInput, LiveStatsRecord, PulseFeed, RegistryRecord

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Raised when the backend is unreachable or answers with an error."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class BackendClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or config.BACKEND_BASE_URL).rstrip("/")
        self.token = token if token is not None else config.BACKEND_TOKEN
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=config.REQUEST_TIMEOUT)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core request ──

    async def _request(
        self,
        method: str,
        path: str,
        *,
        auth: bool = False,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
    ) -> dict[str, Any]:
        headers = {"accept": "application/json"}
        if auth and self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        client = await self._get_client()
        try:
            resp = await client.request(
                method, f"{self.base_url}{path}", params=params, json=json, headers=headers
            )
        except httpx.RequestError as e:
            raise BackendError(f"Backend unreachable: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code >= 400:
            message = body.get("error") if isinstance(body, dict) else None
            raise BackendError(
                message or f"Backend returned {resp.status_code} for {method} {path}",
                resp.status_code,
            )
        return body if isinstance(body, dict) else {}

    # ── Registry ──

    async def list_clients(self) -> list[RegistryRecord]:
        body = await self._request("GET", "/clients")
        records: list[RegistryRecord] = []
        skipped = 0
        for raw in body.get("clients") or []:
            try:
                records.append(RegistryRecord.model_validate(raw))
            except ValidationError as e:
                skipped += 1
                row_id = raw.get("id") if isinstance(raw, dict) else raw
                logger.warning(f"Skipping invalid registry row {row_id!r}: {e.errors()[0]['msg']}")
        logger.info(f"Registry loaded: {len(records)} records, {skipped} skipped")
        return records

    async def create_client(self, payload: ClientInput) -> dict[str, Any]:
        return await self._request(
            "POST", "/clients", auth=True, json=payload.model_dump(by_alias=True)
        )

    async def update_client(self, client_id: str, payload: ClientInput) -> dict[str, Any]:
        return await self._request(
            "PUT", f"/clients/{client_id}", auth=True, json=payload.model_dump(by_alias=True)
        )

    async def delete_client(self, client_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/clients/{client_id}", auth=True)

    async def delete_clients(self, ids: list[str]) -> dict[str, Any]:
        return await self._request("DELETE", "/clients/bulk", auth=True, json={"ids": ids})

    # ── Stats / pulse / quota ──

    async def fetch_stats(self) -> list[LiveStatsRecord]:
        """Stats already synced by the backend job (used when no local keys exist)."""
        body = await self._request("GET", "/clients/stats")
        stats: list[LiveStatsRecord] = []
        for raw in body.get("stats") or []:
            if not isinstance(raw, dict) or not raw.get("id"):
                continue
            # Backend rows use the raw YouTube-ish names (id/title/logo/subscribers)
            stats.append(LiveStatsRecord(
                external_id=raw["id"],
                handle=raw.get("handle"),
                display_title=raw.get("title") or "",
                logo_url=raw.get("logo"),
                subscriber_count=int(raw.get("subscribers") or 0),
                view_count=int(raw.get("viewCount") or raw.get("views") or 0),
                upload_count=int(raw.get("videoCount") or 0),
                uploads_playlist_id=raw.get("uploadsPlaylistId"),
            ))
        return stats

    async def fetch_pulse(self, debug: bool = False) -> PulseFeed:
        params = {"debug": "1"} if debug else None
        body = await self._request("GET", "/clients/pulse", params=params)
        activities: list[ActivityEvent] = []
        for raw in body.get("activities") or []:
            try:
                activities.append(ActivityEvent.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Dropping malformed pulse activity: {e.errors()[0]['msg']}")
        try:
            return PulseFeed.model_validate({**body, "activities": activities})
        except ValidationError as e:
            raise BackendError(f"Malformed pulse payload: {e.errors()[0]['msg']}") from e

    async def fetch_quota(self) -> list[dict[str, Any]]:
        body = await self._request("GET", "/admin/yt-quota", auth=True)
        return [
            {"masked": k.get("masked"), "status": k.get("status")}
            for k in body.get("keys") or []
            if isinstance(k, dict)
        ]
