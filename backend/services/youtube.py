"""
YouTube Data API stats fetcher.

Looks up live channel analytics for a batch of external identifiers using
keys from the CredentialPool.

API details:
  Endpoint:   GET https://www.googleapis.com/youtube/v3/channels
  Params:     part=snippet,statistics,contentDetails
              id=<UC...>            for canonical channel ids
              forHandle=<handle>    for @handles (sent without the @)
  Quota:      403 with "quota" in the error message → key is exhausted

Batch behavior:
  - Every identifier is looked up independently; one failure never aborts
    the batch, partial results are always returned
  - A 403 quota answer reports the key to the pool; that identifier fails and
    is not retried with another key in the same cycle
  - Once the pool has no active key left, every remaining identifier is
    marked failed with QUOTA_EXCEEDED_ERROR and the result carries
    quota_exceeded=True (also when the quota 403 that emptied the pool hit
    the last identifier of the batch)
  - "UC" ids are sent as id=, anything else as forHandle=; matcher.py uses
    the same is_canonical_id() rule
"""

import logging
from typing import Optional

import httpx

import config
from models.schemas import FetchResult, LiveStatsRecord, TraceEntry
from services.credential_pool import CredentialPool, NoKeyAvailableError

logger = logging.getLogger(__name__)

CANONICAL_PREFIX = "UC"
QUOTA_EXCEEDED_ERROR = "quota exceeded: no YouTube API key available"


class ChannelLookupError(Exception):
    """One identifier's lookup failed; recorded in the trace."""


class QuotaLookupError(ChannelLookupError):
    """The lookup was refused because the key ran out of quota."""


def is_canonical_id(identifier: str) -> bool:
    """Canonical channel ids start with "UC" (compared case-insensitively)."""
    return identifier.strip().upper().startswith(CANONICAL_PREFIX)


class StatsFetcher:
    """Async channel-stats fetcher over httpx."""

    def __init__(
        self,
        pool: CredentialPool,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
    ):
        self.pool = pool
        self.base_url = (base_url or config.YOUTUBE_BASE_URL).rstrip("/")
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

    # ===================================================================
    # Public API
    # ===================================================================

    async def fetch(
        self,
        identifiers: list[str],
        names: Optional[dict[str, str]] = None,
    ) -> FetchResult:
        """
        Fetch live stats for every identifier.

        Args:
            identifiers: External ids or handles (deduplicated here)
            names:       Optional {identifier: registry name}, used to label
                         failed lookups in the trace

        Returns:
            FetchResult with stats keyed by the requested identifier
        """
        names = names or {}
        result = FetchResult()
        pending = _dedupe(identifiers)
        logger.info(f"Fetching channel stats for {len(pending)} identifier(s)")

        for index, identifier in enumerate(pending):
            try:
                key = self.pool.next_active_key()
            except NoKeyAvailableError as e:
                logger.warning(f"{e}; skipping {len(pending) - index} remaining lookup(s)")
                result.quota_exceeded = True
                for skipped in pending[index:]:
                    result.trace.append(TraceEntry(
                        name=names.get(skipped, skipped),
                        id=skipped,
                        status="error",
                        error=QUOTA_EXCEEDED_ERROR,
                    ))
                break

            try:
                record = await self._fetch_channel(identifier, key)
            except ChannelLookupError as e:
                logger.warning(f"Stats lookup failed for {identifier}: {e}")
                result.trace.append(TraceEntry(
                    name=names.get(identifier, identifier),
                    id=identifier,
                    status="error",
                    error=str(e),
                ))
                if isinstance(e, QuotaLookupError) and not self.pool.has_active_key():
                    # Last key just ran dry; nothing later in the batch can succeed
                    result.quota_exceeded = True
                continue

            result.stats[identifier] = record
            result.trace.append(TraceEntry(
                name=record.display_title,
                id=record.external_id,
                status="success",
                count=record.upload_count,
            ))

        failed = sum(1 for t in result.trace if t.status == "error")
        logger.info(
            f"Stats fetch complete: {len(result.stats)} ok, {failed} failed"
            f"{' (quota exceeded)' if result.quota_exceeded else ''}"
        )
        return result

    # ===================================================================
    # Single channel lookup
    # ===================================================================

    async def _fetch_channel(self, identifier: str, key: str) -> LiveStatsRecord:
        is_canonical = is_canonical_id(identifier)
        handle_value = identifier[1:] if identifier.startswith("@") else identifier

        params = {"part": "snippet,statistics,contentDetails", "key": key}
        if is_canonical:
            params["id"] = identifier
        else:
            params["forHandle"] = handle_value

        client = await self._get_client()
        try:
            resp = await client.get(
                f"{self.base_url}/channels",
                params=params,
                headers={"accept": "application/json"},
            )
        except httpx.RequestError as e:
            raise ChannelLookupError(f"Fetch failed: {e}") from e

        if resp.status_code != 200:
            message = _error_message(resp)
            if resp.status_code == 403 and "quota" in message.lower():
                self.pool.report_exhausted(key)
                raise QuotaLookupError(f"YouTube API {resp.status_code}: {message}")
            raise ChannelLookupError(f"YouTube API {resp.status_code}: {message}")

        try:
            body = resp.json()
        except ValueError as e:
            raise ChannelLookupError("YouTube API returned invalid JSON") from e

        items = body.get("items") or []
        if not items:
            raise ChannelLookupError("Channel not found")

        return _parse_channel(items[0], identifier, is_canonical, handle_value)


# ===========================================================================
# Parsing helpers
# ===========================================================================

def _parse_channel(item: dict, identifier: str, is_canonical: bool, handle_value: str) -> LiveStatsRecord:
    snippet = item.get("snippet") or {}
    statistics = item.get("statistics") or {}
    thumbnails = snippet.get("thumbnails") or {}
    related = (item.get("contentDetails") or {}).get("relatedPlaylists") or {}

    if is_canonical:
        handle = snippet.get("customUrl") or None
    else:
        handle = f"@{handle_value}"

    logo = (thumbnails.get("default") or {}).get("url") or (thumbnails.get("medium") or {}).get("url")

    return LiveStatsRecord(
        external_id=item.get("id") or identifier,
        handle=handle,
        display_title=snippet.get("title", ""),
        logo_url=logo,
        subscriber_count=_safe_int(statistics.get("subscriberCount")),
        view_count=_safe_int(statistics.get("viewCount")),
        upload_count=_safe_int(statistics.get("videoCount")),
        uploads_playlist_id=related.get("uploads"),
    )


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or "Unknown error"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or "Unknown error"
    return "Unknown error"


def _dedupe(identifiers: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for raw in identifiers:
        identifier = (raw or "").strip()
        if identifier and identifier not in seen:
            seen.add(identifier)
            ordered.append(identifier)
    return ordered


def _safe_int(value, default: int = 0) -> int:
    # The API sends counts as strings; hidden subscriber counts are omitted
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default
