"""
Pydantic models for the Creator Pulse sync service.

Models:
  - RegistryRecord: A partner creator from the backend registry (administrator-curated)
  - ClientInput: Body of a create/update request (validated before it reaches the backend)
  - LiveStatsRecord: One channel's live analytics, fetched fresh every cycle
  - EnrichedClient: Registry record joined with its live stats, growth and history
  - CredentialStatus: Masked status of one pooled API key
  - ActivityEvent / ActivityView: Upload or live-session entry of the pulse feed
  - PulseFeed: The backend's pulse payload (activities + channel meta)
  - TraceEntry / FetchResult: Per-identifier outcome of a stats fetch batch
  - ClientsSnapshot / PulseSnapshot: What gets persisted to the local cache
  - ClientsResponse / PulseResponse / QuotaResponse: API response models

All wire models use camelCase aliases (externalId, isLive, fetchedAt, ...) and
accept either camelCase or snake_case on input.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class KeyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXHAUSTED = "EXHAUSTED"


class ActivityType(str, Enum):
    VIDEO = "VIDEO"
    LIVE = "LIVE"


class SyncState(str, Enum):
    COLD = "cold"      # nothing cached yet, first load in flight
    WARM = "warm"      # cache present and the last cycle succeeded
    STALE = "stale"    # last cycle failed, previous snapshot still served


# ---------------------------------------------------------------------------
# RegistryRecord — one creator from the backend registry
#
# external_id is either a canonical channel id ("UC...") or a handle ("@name").
# Older registry rows call it "youtubeId"; rows with only a handle use it.
# ---------------------------------------------------------------------------
class RegistryRecord(WireModel):
    id: str
    name: str
    external_id: str = Field(
        validation_alias=AliasChoices("externalId", "external_id", "youtubeId"),
        serialization_alias="externalId",
    )
    handle: Optional[str] = None
    category: str = "Vlogger"
    logo: Optional[str] = None       # logo override, beats the channel's own logo
    status: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _fallback_to_handle(cls, data: Any) -> Any:
        if isinstance(data, dict):
            has_id = any(data.get(k) for k in ("externalId", "external_id", "youtubeId"))
            if not has_id and data.get("handle"):
                data = {**data, "externalId": data["handle"]}
        return data

    @field_validator("name", "external_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value


# ---------------------------------------------------------------------------
# ClientInput — create/update body for the admin CRUD pass-through
# ---------------------------------------------------------------------------
class ClientInput(WireModel):
    name: str
    external_id: str = Field(
        validation_alias=AliasChoices("externalId", "external_id", "youtubeId"),
        serialization_alias="externalId",
    )
    handle: Optional[str] = None
    category: str = "Vlogger"
    logo: Optional[str] = None
    status: str = "active"

    @field_validator("name", "external_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value


class BulkDeleteRequest(BaseModel):
    ids: list[str]


# ---------------------------------------------------------------------------
# LiveStatsRecord — channel analytics for one cycle (never persisted alone)
# ---------------------------------------------------------------------------
class LiveStatsRecord(WireModel):
    external_id: str
    handle: Optional[str] = None
    display_title: str = ""
    logo_url: Optional[str] = None
    subscriber_count: int = 0
    view_count: int = 0
    upload_count: int = 0
    uploads_playlist_id: Optional[str] = None


# ---------------------------------------------------------------------------
# EnrichedClient — registry record + live stats join
#
# matched=False  → subscribers=0, view_count=0, growth_pct=None, history=[]
# An unmatched record is still part of the snapshot (rendered as "No Data").
# stale=True     → lookup failed this cycle; stats carried over from the
#                  previous snapshot
# ---------------------------------------------------------------------------
class EnrichedClient(RegistryRecord):
    subscribers: int = 0
    view_count: int = 0
    display_title: str = ""
    matched: bool = False
    matched_id: Optional[str] = None
    match_rule: Optional[str] = None   # "id" | "handle" | "name"
    growth_pct: Optional[float] = None
    history: list[int] = Field(default_factory=list)
    sync_error: Optional[str] = None
    stale: bool = False


# ---------------------------------------------------------------------------
# CredentialStatus — what the pool exposes about a key (never the key itself)
# ---------------------------------------------------------------------------
class CredentialStatus(WireModel):
    masked: str
    status: KeyStatus
    exhausted_at: Optional[int] = None
    cooldown_remaining_ms: int = 0


# ---------------------------------------------------------------------------
# Pulse feed
# ---------------------------------------------------------------------------
class ActivityEvent(WireModel):
    id: str
    channel_id: str
    type: ActivityType = ActivityType.VIDEO
    is_live: bool = False
    title: str = ""
    thumbnail: Optional[str] = None
    url: Optional[str] = None
    timestamp: int  # epoch millis of publish / stream start

    @model_validator(mode="before")
    @classmethod
    def _timestamp_from_published_at(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("timestamp") is None and data.get("publishedAt"):
            published = datetime.fromisoformat(str(data["publishedAt"]).replace("Z", "+00:00"))
            data = {**data, "timestamp": int(published.timestamp() * 1000)}
        return data

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> Any:
        # Search-API fallbacks label uploads "upload"; anything not LIVE is a VIDEO
        if isinstance(value, str):
            return ActivityType.LIVE if value.upper() == "LIVE" else ActivityType.VIDEO
        return value


class ActivityView(ActivityEvent):
    client_name: Optional[str] = None
    client_logo: Optional[str] = None


class ChannelMeta(WireModel):
    title: Optional[str] = None
    logo: Optional[str] = None


class PulseFeed(WireModel):
    activities: list[ActivityEvent] = Field(default_factory=list)
    meta: dict[str, ChannelMeta] = Field(default_factory=dict)
    ts: Optional[int] = None
    quota_exceeded: bool = False
    debug: Optional[dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Stats fetch diagnostics
# ---------------------------------------------------------------------------
class TraceEntry(WireModel):
    name: str
    id: str
    status: str  # "success" | "error"
    count: int = 0
    error: Optional[str] = None


class FetchResult(WireModel):
    stats: dict[str, LiveStatsRecord] = Field(default_factory=dict)
    trace: list[TraceEntry] = Field(default_factory=list)
    quota_exceeded: bool = False

    def errors_by_id(self) -> dict[str, str]:
        return {t.id: t.error for t in self.trace if t.status == "error" and t.error}


# ---------------------------------------------------------------------------
# Cache snapshots — always written wholesale
# ---------------------------------------------------------------------------
class ClientsSnapshot(WireModel):
    data: list[EnrichedClient] = Field(default_factory=list)
    fetched_at: int
    quota_exceeded: bool = False


class PulseSnapshot(WireModel):
    data: PulseFeed
    fetched_at: int


# ---------------------------------------------------------------------------
# API response models
# ---------------------------------------------------------------------------
class ClientTotals(WireModel):
    subscribers: int = 0
    views: int = 0
    matched: int = 0
    unmatched: int = 0
    stale: int = 0


class ClientsResponse(WireModel):
    state: SyncState
    fetched_at: Optional[int] = None
    quota_exceeded: bool = False
    error: Optional[str] = None
    totals: ClientTotals
    clients: list[EnrichedClient]


class PulseResponse(WireModel):
    state: SyncState
    fetched_at: Optional[int] = None
    ts: Optional[int] = None
    quota_exceeded: bool = False
    error: Optional[str] = None
    activities: list[ActivityView]
    debug: Optional[dict[str, Any]] = None


class QuotaResponse(WireModel):
    keys: list[CredentialStatus]
    backend: Optional[list[dict[str, Any]]] = None
