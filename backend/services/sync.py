"""
Cache & poll scheduling for the two synchronization targets.

  clients:  registry → stats fetch → match → growth history   (every 10 min)
  pulse:    backend pulse feed                               (every 30 min)

Each target is a SyncTarget with three states:

  COLD   no snapshot yet (first load in flight, or every attempt so far failed)
  WARM   snapshot present, last cycle succeeded
  STALE  last cycle failed, the previous snapshot keeps being served

  COLD  --ok-->   WARM   (snapshot written to the store)
  WARM  --ok-->   WARM   (snapshot overwritten wholesale, never merged)
  WARM  --fail--> STALE  (snapshot kept)
  STALE --ok-->   WARM

A cycle only becomes visible once it has fully completed; until then read()
returns the previous snapshot. refresh() joins an in-flight cycle instead of
starting a second one, so a forced refresh never races a scheduled one.
Failures are caught here and turned into state; refresh() never raises.

PollLoop drives a target through an APScheduler one-shot job that re-adds
itself: the next cycle is scheduled `interval` seconds after the previous one
*completes*, and a forced cycle pushes the pending job back the same way.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from apscheduler.schedulers.asyncio import AsyncIOScheduler

import config
from models.schemas import (
    ClientsSnapshot,
    ClientTotals,
    EnrichedClient,
    LiveStatsRecord,
    PulseSnapshot,
    SyncState,
)
from services.backend import BackendClient
from services.clock import Clock, now_ms
from services.history import GrowthTracker
from services.matcher import carry_forward, enrich_clients
from services.snapshot_store import SnapshotStore
from services.youtube import StatsFetcher

logger = logging.getLogger(__name__)

S = TypeVar("S", ClientsSnapshot, PulseSnapshot)

CLIENTS_KEY = "clients"
PULSE_KEY = "pulse"
HISTORY_KEY = "history"


class QuotaExceededError(Exception):
    """Every lookup of a cycle failed because no API key had quota left."""


class SyncCooldownError(Exception):
    """A manual client refresh was asked for inside the cooldown window."""

    def __init__(self, remaining_ms: int):
        self.remaining_ms = remaining_ms
        super().__init__(f"Sync cooldown active for another {remaining_ms} ms")


@dataclass(frozen=True)
class SyncView(Generic[S]):
    state: SyncState
    snapshot: Optional[S]
    error: Optional[str] = None
    quota_exceeded: bool = False
    last_attempt_at: Optional[int] = None


# ===========================================================================
# SyncTarget — one cached, refreshable snapshot
# ===========================================================================

class SyncTarget(Generic[S]):
    def __init__(
        self,
        name: str,
        loader: Callable[[], Awaitable[S]],
        store: SnapshotStore,
        storage_key: str,
        snapshot_model: type[S],
        timeout_s: Optional[float] = None,
        clock: Clock = now_ms,
    ):
        self.name = name
        self._loader = loader
        self._store = store
        self._storage_key = storage_key
        self._timeout_s = timeout_s
        self._clock = clock
        self._inflight: Optional[asyncio.Future] = None
        self._subscribers: list[Callable[[SyncView[S]], None]] = []

        cached = store.load(storage_key, snapshot_model)
        self._snapshot: Optional[S] = cached
        self._state = SyncState.WARM if cached is not None else SyncState.COLD
        self._error: Optional[str] = None
        self._quota_exceeded = bool(getattr(cached, "quota_exceeded", False))
        self._last_attempt_at: Optional[int] = None
        if cached is not None:
            logger.info(f"[{name}] loaded cached snapshot from {cached.fetched_at}")

    def read(self) -> SyncView[S]:
        return SyncView(
            state=self._state,
            snapshot=self._snapshot,
            error=self._error,
            quota_exceeded=self._quota_exceeded,
            last_attempt_at=self._last_attempt_at,
        )

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def subscribe(self, callback: Callable[[SyncView[S]], None]) -> Callable[[], None]:
        """Call *callback* with the new view after every cycle; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def refresh(self) -> SyncView[S]:
        """Run a cycle now, or join the one already running."""
        if not self.in_flight:
            self._inflight = asyncio.ensure_future(self._cycle())
        await asyncio.shield(self._inflight)
        return self.read()

    async def _cycle(self) -> None:
        self._last_attempt_at = self._clock()
        logger.info(f"[{self.name}] sync cycle starting (state={self._state.value})")
        try:
            if self._timeout_s:
                snapshot = await asyncio.wait_for(self._loader(), timeout=self._timeout_s)
            else:
                snapshot = await self._loader()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fail(e)
        else:
            self._commit(snapshot)
        self._notify()

    def _commit(self, snapshot: S) -> None:
        try:
            self._store.save(self._storage_key, snapshot)
        except OSError as e:
            # The in-memory snapshot is still good; only durability is lost
            logger.error(f"[{self.name}] could not persist snapshot: {e}")
        self._snapshot = snapshot
        self._state = SyncState.WARM
        self._error = None
        self._quota_exceeded = bool(getattr(snapshot, "quota_exceeded", False))
        logger.info(f"[{self.name}] sync cycle committed (fetched_at={snapshot.fetched_at})")

    def _fail(self, exc: Exception) -> None:
        if isinstance(exc, asyncio.TimeoutError):
            message = f"sync cycle timed out after {self._timeout_s}s"
        else:
            message = str(exc) or type(exc).__name__
        self._error = message
        self._quota_exceeded = isinstance(exc, QuotaExceededError)
        self._state = SyncState.STALE if self._snapshot is not None else SyncState.COLD
        logger.error(f"[{self.name}] sync cycle failed, serving {self._state.value}: {message}")

    def _notify(self) -> None:
        view = self.read()
        for callback in list(self._subscribers):
            try:
                callback(view)
            except Exception:
                logger.exception(f"[{self.name}] subscriber raised")


# ===========================================================================
# PollLoop — self-rescheduling scheduler job around a SyncTarget
# ===========================================================================

class PollLoop:
    """
    Keeps one pending "date" job per target on a shared AsyncIOScheduler.

    Each run refreshes the target and then re-adds the job `interval_s`
    seconds out. force() does the same from outside the scheduler.
    """

    def __init__(self, target: SyncTarget, interval_s: float, scheduler: AsyncIOScheduler):
        self.target = target
        self.interval_s = interval_s
        self.scheduler = scheduler
        self.job_id = f"poll-{target.name}"
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    @property
    def next_run_time(self) -> Optional[datetime]:
        job = self.scheduler.get_job(self.job_id)
        return job.next_run_time if job else None

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        # No run_date: the first cycle runs as soon as the scheduler picks it up
        self.scheduler.add_job(
            self._tick,
            "date",
            id=self.job_id,
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.info(f"[{self.target.name}] polling every {self.interval_s:.0f}s")

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        if self.scheduler.get_job(self.job_id):
            self.scheduler.remove_job(self.job_id)
        logger.info(f"[{self.target.name}] polling stopped")

    async def force(self) -> SyncView:
        """Run a cycle now (joining one in flight) and restart the wait."""
        view = await self.target.refresh()
        self._schedule_next()
        return view

    async def _tick(self) -> None:
        try:
            await self.target.refresh()
        finally:
            self._schedule_next()

    def _schedule_next(self) -> None:
        if not self._started:
            return
        self.scheduler.add_job(
            self._tick,
            "date",
            run_date=datetime.now(timezone.utc) + timedelta(seconds=self.interval_s),
            id=self.job_id,
            replace_existing=True,
            misfire_grace_time=None,
        )


# ===========================================================================
# SyncService — explicit, injectable owner of both targets
# ===========================================================================

class SyncService:
    """
    Wires the registry/stats pipeline and the pulse feed into two targets.

    Consumers get read_clients()/read_pulse() views plus refresh and
    subscribe handles; there is no module-level cache.
    """

    def __init__(
        self,
        backend: BackendClient,
        fetcher: StatsFetcher,
        store: SnapshotStore,
        tracker: Optional[GrowthTracker] = None,
        clients_interval_s: float = config.CLIENTS_POLL_INTERVAL,
        pulse_interval_s: float = config.PULSE_POLL_INTERVAL,
        pulse_debug: bool = config.PULSE_DEBUG,
        manual_cooldown_s: float = config.MANUAL_SYNC_COOLDOWN_SECONDS,
        scheduler: Optional[AsyncIOScheduler] = None,
        clock: Clock = now_ms,
    ):
        self.backend = backend
        self.fetcher = fetcher
        self.store = store
        self.clock = clock
        self.pulse_debug = pulse_debug
        self.manual_cooldown_ms = int(manual_cooldown_s * 1000)
        self._last_manual_sync_at: Optional[int] = None
        self.tracker = tracker or GrowthTracker.from_dict(
            store.load_raw(HISTORY_KEY) or {}, max_samples=config.HISTORY_MAX_SAMPLES
        )
        self._history_owners: dict[str, str] = {}

        self.clients = SyncTarget(
            "clients", self._load_clients, store, CLIENTS_KEY, ClientsSnapshot,
            timeout_s=clients_interval_s, clock=clock,
        )
        self.pulse = SyncTarget(
            "pulse", self._load_pulse, store, PULSE_KEY, PulseSnapshot,
            timeout_s=pulse_interval_s, clock=clock,
        )
        self.scheduler = scheduler or AsyncIOScheduler()
        self.clients_loop = PollLoop(self.clients, clients_interval_s, self.scheduler)
        self.pulse_loop = PollLoop(self.pulse, pulse_interval_s, self.scheduler)

        cached = self.clients.read().snapshot
        if cached is not None:
            self._history_owners = {c.id: c.matched_id.lower() for c in cached.data if c.matched_id}

    # ── lifecycle ──

    def start(self) -> None:
        """Start polling both targets; needs a running event loop."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")
        self.clients_loop.start()
        self.pulse_loop.start()

    async def stop(self) -> None:
        self.clients_loop.stop()
        self.pulse_loop.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        await self.fetcher.close()
        await self.backend.close()

    # ── consumer interface ──

    def read_clients(self) -> SyncView[ClientsSnapshot]:
        return self.clients.read()

    def read_pulse(self) -> SyncView[PulseSnapshot]:
        return self.pulse.read()

    async def refresh_clients(self) -> SyncView[ClientsSnapshot]:
        return await self.clients_loop.force()

    async def manual_refresh_clients(self, force: bool = False) -> SyncView[ClientsSnapshot]:
        """
        Operator-triggered refresh, rate limited to one per cooldown window.

        The window starts when a manual refresh commits; failed attempts do not
        start it. force=True skips the check.

        Raises:
            SyncCooldownError: a manual refresh committed less than
                               manual_cooldown_ms ago and force is False
        """
        now = self.clock()
        if not force and self._last_manual_sync_at is not None:
            remaining = self.manual_cooldown_ms - (now - self._last_manual_sync_at)
            if remaining > 0:
                logger.info(f"Manual client refresh refused, cooldown has {remaining} ms left")
                raise SyncCooldownError(remaining)

        view = await self.clients_loop.force()
        if view.state == SyncState.WARM:
            self._last_manual_sync_at = self.clock()
        return view

    async def refresh_pulse(self) -> SyncView[PulseSnapshot]:
        return await self.pulse_loop.force()

    # ── loaders ──

    async def _load_clients(self) -> ClientsSnapshot:
        registry = await self.backend.list_clients()
        errors: dict[str, str] = {}
        quota_exceeded = False

        if len(self.fetcher.pool):
            identifiers = [r.external_id for r in registry]
            names = {r.external_id: r.name for r in registry}
            result = await self.fetcher.fetch(identifiers, names)
            if result.quota_exceeded and not result.stats and identifiers:
                raise QuotaExceededError("YouTube quota exceeded for every lookup this cycle")
            live_records: list[LiveStatsRecord] = list(result.stats.values())
            errors = result.errors_by_id()
            quota_exceeded = result.quota_exceeded
        else:
            live_records = await self.backend.fetch_stats()

        # No awaits below: the tracker is only touched once the fetch is complete
        clients = enrich_clients(registry, live_records, self.tracker, errors)
        previous = self.clients.read().snapshot
        clients = carry_forward(clients, previous.data if previous else None, self.tracker)
        self._prune_history(clients)
        try:
            self.store.save_raw(HISTORY_KEY, self.tracker.to_dict())
        except OSError as e:
            logger.error(f"Could not persist growth history: {e}")

        return ClientsSnapshot(data=clients, fetched_at=self.clock(), quota_exceeded=quota_exceeded)

    async def _load_pulse(self) -> PulseSnapshot:
        feed = await self.backend.fetch_pulse(debug=self.pulse_debug)
        return PulseSnapshot(data=feed, fetched_at=self.clock())

    def _prune_history(self, clients: list[EnrichedClient]) -> None:
        # A registry record that failed its lookup this cycle keeps the series it
        # owned last time; series of deleted records are dropped.
        owners: dict[str, str] = {}
        for client in clients:
            if client.matched_id:
                owners[client.id] = client.matched_id.lower()
            elif client.id in self._history_owners:
                owners[client.id] = self._history_owners[client.id]
        self._history_owners = owners
        self.tracker.prune(owners.values())


def compute_totals(clients: list[EnrichedClient]) -> ClientTotals:
    matched = [c for c in clients if c.matched]
    return ClientTotals(
        subscribers=sum(c.subscribers for c in matched),
        views=sum(c.view_count for c in matched),
        matched=len(matched),
        unmatched=len(clients) - len(matched),
        stale=sum(1 for c in clients if c.stale),
    )
