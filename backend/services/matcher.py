"""
Registry ↔ live-stats matching.

Joins every registry record with at most one LiveStatsRecord from the
current cycle. Rules are evaluated in strict priority order over the whole
live set. The first rule that finds a candidate wins, and within a rule the
first live record in input order wins (no scoring, no backtracking):

  1. Canonical id:  registry external_id starts with "UC" and equals a live
                    external_id (case-insensitive)
  2. Handle:        registry {external_id, handle} vs the live handle (and the
                    live external_id when it is itself a handle), all
                    normalized to "@lowercase"
  3. Name:          lower-cased names are equal, or one contains the other

Rule 3 is a last resort and can produce false positives when one channel
name is a substring of another; it is kept as is. Matches are not
deduplicated: two registry records may join the same live record.

The matched live identifier then keys the GrowthTracker series.
carry_forward() re-applies the previous snapshot's stats to records whose
lookup failed this cycle, flagged stale.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from models.schemas import EnrichedClient, LiveStatsRecord, RegistryRecord
from services.history import GrowthTracker
from services.youtube import is_canonical_id

logger = logging.getLogger(__name__)

RULE_ID = "id"
RULE_HANDLE = "handle"
RULE_NAME = "name"


@dataclass(frozen=True)
class MatchResult:
    live: LiveStatsRecord
    rule: str


# ===========================================================================
# Public API
# ===========================================================================

def match_record(
    record: RegistryRecord,
    live_records: list[LiveStatsRecord],
) -> Optional[MatchResult]:
    """Select the live record for one registry record, or None."""
    for rule, predicate in (
        (RULE_ID, _matches_id),
        (RULE_HANDLE, _matches_handle),
        (RULE_NAME, _matches_name),
    ):
        for live in live_records:
            if predicate(record, live):
                return MatchResult(live=live, rule=rule)
    return None


def enrich_clients(
    registry: list[RegistryRecord],
    live_records: list[LiveStatsRecord],
    tracker: Optional[GrowthTracker] = None,
    errors: Optional[dict[str, str]] = None,
) -> list[EnrichedClient]:
    """
    Build the EnrichedClient list for one cycle.

    Every registry record produces exactly one EnrichedClient, in registry
    order. Unmatched records keep zeroed stats and an empty history.

    Args:
        registry:     Current registry records
        live_records: Live stats fetched this cycle
        tracker:      Growth tracker; when given, each matched live channel
                      gets one sample appended (even when several registry
                      records share it) before growth/history are read back
        errors:       {identifier: error} from the fetch trace, surfaced as
                      sync_error on the records that used that identifier
    """
    errors = errors or {}
    enriched: list[EnrichedClient] = []
    matched_count = 0
    recorded: set[str] = set()  # one sample per live channel per cycle

    for record in registry:
        base = record.model_dump()
        sync_error = errors.get(record.external_id)
        match = match_record(record, live_records)

        if match is None:
            enriched.append(EnrichedClient(
                **base,
                display_title=record.name,
                sync_error=sync_error,
            ))
            continue

        matched_count += 1
        live = match.live
        history_key = live.external_id
        if tracker is not None:
            if history_key.lower() not in recorded:
                recorded.add(history_key.lower())
                tracker.record(history_key, live.subscriber_count)
            history = tracker.history(history_key)
            growth = tracker.growth_pct(history_key)
        else:
            history = [live.subscriber_count]
            growth = 0.0

        enriched.append(EnrichedClient(
            **{**base, "logo": record.logo or live.logo_url},
            subscribers=live.subscriber_count,
            view_count=live.view_count,
            display_title=live.display_title or record.name,
            matched=True,
            matched_id=live.external_id,
            match_rule=match.rule,
            growth_pct=growth,
            history=history,
            sync_error=sync_error,
        ))

    logger.info(
        f"Matching complete: {matched_count}/{len(registry)} registry records matched "
        f"against {len(live_records)} live records"
    )
    return enriched


def carry_forward(
    clients: list[EnrichedClient],
    previous: Optional[list[EnrichedClient]],
    tracker: Optional[GrowthTracker] = None,
) -> list[EnrichedClient]:
    """
    Keep last cycle's stats for records whose lookup failed this cycle.

    A record that is unmatched now, carries a sync_error, and was matched in
    *previous* under the same external id gets the previous live fields back
    with stale=True. Records without a failed lookup are returned unchanged.
    A record whose external id was edited starts over unmatched.
    """
    if not previous:
        return clients
    before = {c.id: c for c in previous if c.matched and c.matched_id}

    result: list[EnrichedClient] = []
    carried = 0
    for client in clients:
        old = before.get(client.id)
        if (
            client.matched
            or not client.sync_error
            or old is None
            or old.external_id.lower() != client.external_id.lower()
        ):
            result.append(client)
            continue

        tracked = tracker.history(old.matched_id) if tracker else []
        history = tracked or old.history
        growth = tracker.growth_pct(old.matched_id) if tracked else old.growth_pct
        carried += 1
        result.append(client.model_copy(update={
            "subscribers": old.subscribers,
            "view_count": old.view_count,
            "display_title": old.display_title,
            "logo": client.logo or old.logo,
            "matched": True,
            "matched_id": old.matched_id,
            "match_rule": old.match_rule,
            "growth_pct": growth,
            "history": history,
            "stale": True,
        }))

    if carried:
        logger.warning(f"Serving last known stats for {carried} record(s) whose lookup failed")
    return result


# ===========================================================================
# Rule predicates
# ===========================================================================

def _matches_id(record: RegistryRecord, live: LiveStatsRecord) -> bool:
    if not is_canonical_id(record.external_id):
        return False
    return record.external_id.strip().lower() == live.external_id.strip().lower()


def _matches_handle(record: RegistryRecord, live: LiveStatsRecord) -> bool:
    registry_handles = {
        h for h in (normalize_handle(record.external_id), normalize_handle(record.handle)) if h
    }
    live_values = [live.handle]
    if live.external_id.startswith("@"):
        live_values.append(live.external_id)
    live_handles = {h for h in map(normalize_handle, live_values) if h}
    return bool(registry_handles & live_handles)


def _matches_name(record: RegistryRecord, live: LiveStatsRecord) -> bool:
    name = (record.name or "").strip().lower()
    title = (live.display_title or "").strip().lower()
    if not name or not title:
        return False
    return name == title or name in title or title in name


def normalize_handle(value: Optional[str]) -> Optional[str]:
    """'Kamz', '@Kamz', ' @kamz ' → '@kamz'; blank → None."""
    if not value:
        return None
    handle = value.strip().lower()
    if handle.startswith("@"):
        handle = handle[1:]
    return f"@{handle}" if handle else None
