"""
Pulse feed windowing.

The pulse shows what partner creators published recently. It is re-derived
from the latest pulse snapshot on every read as a pure function of
(events, now), nothing is maintained incrementally.

  Window:  keep events with now - timestamp < window (strict; an event exactly
           window old is already out)
  Order:   live sessions first regardless of age, then newest first
"""

from typing import Optional

from models.schemas import ActivityEvent, ActivityView, ChannelMeta, EnrichedClient

DEFAULT_WINDOW_MS = 24 * 60 * 60 * 1000


def window_activities(
    events: list[ActivityEvent],
    now_ms: int,
    window_ms: int = DEFAULT_WINDOW_MS,
) -> list[ActivityEvent]:
    recent = [e for e in events if now_ms - e.timestamp < window_ms]
    return sorted(recent, key=lambda e: (not e.is_live, -e.timestamp))


def enrich_activities(
    events: list[ActivityEvent],
    meta: Optional[dict[str, ChannelMeta]] = None,
    clients: Optional[list[EnrichedClient]] = None,
) -> list[ActivityView]:
    """
    Attach a display name and logo to each event.

    Pulse meta (keyed by channel id) wins; otherwise the registry client
    matched to that channel supplies its name and logo.
    """
    meta = meta or {}
    by_channel: dict[str, EnrichedClient] = {}
    for client in clients or []:
        if client.matched and client.matched_id:
            by_channel.setdefault(client.matched_id.lower(), client)

    views: list[ActivityView] = []
    for event in events:
        channel_meta = meta.get(event.channel_id)
        client = by_channel.get(event.channel_id.lower())
        name = (channel_meta.title if channel_meta else None) or (client.name if client else None)
        logo = (channel_meta.logo if channel_meta else None) or (client.logo if client else None)
        views.append(ActivityView(**event.model_dump(), client_name=name, client_logo=logo))
    return views
