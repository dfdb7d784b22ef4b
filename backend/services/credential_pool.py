"""
YouTube API key pool with per-key quota cooldown.

The YouTube Data API gives every key its own daily quota. When a key runs
dry the API answers 403 "quotaExceeded"; the fetcher reports that key here
and the pool stops serving it for a fixed cooldown (1 hour by default).

Rules:
  - Keys are served in configured order, first viable key wins
  - A key reported exhausted is skipped until now - exhausted_at >= cooldown,
    then it is ACTIVE again (checked lazily, no background timer)
  - When every key is exhausted, next_active_key() raises NoKeyAvailableError
    immediately; callers surface "quota exceeded" rather than retrying
  - Raw keys never leave the pool; list_status() only shows a masked preview
"""

import logging
from dataclasses import dataclass
from typing import Optional

from models.schemas import CredentialStatus, KeyStatus
from services.clock import Clock, now_ms

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MS = 60 * 60 * 1000


class NoKeyAvailableError(Exception):
    """Raised when every pooled key is inside its exhaustion cooldown."""


@dataclass
class _PoolEntry:
    key: str
    status: KeyStatus = KeyStatus.ACTIVE
    exhausted_at: Optional[int] = None


class CredentialPool:
    def __init__(
        self,
        keys: list[str],
        cooldown_ms: int = DEFAULT_COOLDOWN_MS,
        clock: Clock = now_ms,
    ):
        self._cooldown_ms = cooldown_ms
        self._clock = clock
        self._entries: list[_PoolEntry] = []
        seen: set[str] = set()
        for key in keys:
            key = key.strip()
            if key and key not in seen:
                seen.add(key)
                self._entries.append(_PoolEntry(key=key))

    @classmethod
    def from_env(cls, value: str, cooldown_ms: int = DEFAULT_COOLDOWN_MS, clock: Clock = now_ms) -> "CredentialPool":
        """Build a pool from a comma-separated key list (YOUTUBE_API_KEYS)."""
        return cls(value.split(","), cooldown_ms=cooldown_ms, clock=clock)

    def __len__(self) -> int:
        return len(self._entries)

    def next_active_key(self) -> str:
        """Return the first ACTIVE key, or raise NoKeyAvailableError."""
        now = self._clock()
        for entry in self._entries:
            self._heal(entry, now)
            if entry.status is KeyStatus.ACTIVE:
                return entry.key
        raise NoKeyAvailableError(
            f"All {len(self._entries)} YouTube API key(s) have exhausted their quota"
        )

    def has_active_key(self) -> bool:
        try:
            self.next_active_key()
        except NoKeyAvailableError:
            return False
        return True

    def report_exhausted(self, key: str) -> None:
        """Blacklist a key for the cooldown window."""
        entry = self._find(key)
        if entry is None:
            logger.warning(f"Ignoring exhaustion report for unknown key {mask_key(key)}")
            return
        entry.status = KeyStatus.EXHAUSTED
        entry.exhausted_at = self._clock()
        logger.warning(
            f"API key {mask_key(key)} exhausted, cooling down for "
            f"{self._cooldown_ms // 60000} min"
        )

    def list_status(self) -> list[CredentialStatus]:
        now = self._clock()
        statuses: list[CredentialStatus] = []
        for entry in self._entries:
            self._heal(entry, now)
            remaining = 0
            if entry.status is KeyStatus.EXHAUSTED and entry.exhausted_at is not None:
                remaining = max(0, self._cooldown_ms - (now - entry.exhausted_at))
            statuses.append(CredentialStatus(
                masked=mask_key(entry.key),
                status=entry.status,
                exhausted_at=entry.exhausted_at,
                cooldown_remaining_ms=remaining,
            ))
        return statuses

    # ------------------------------------------------------------------

    def _find(self, key: str) -> Optional[_PoolEntry]:
        for entry in self._entries:
            if entry.key == key:
                return entry
        return None

    def _heal(self, entry: _PoolEntry, now: int) -> None:
        if entry.status is not KeyStatus.EXHAUSTED or entry.exhausted_at is None:
            return
        if now - entry.exhausted_at >= self._cooldown_ms:
            logger.info(f"API key {mask_key(entry.key)} cooldown elapsed, back to ACTIVE")
            entry.status = KeyStatus.ACTIVE
            entry.exhausted_at = None


def mask_key(key: str) -> str:
    """First 4 + '...' + last 4 characters; short keys are fully hidden."""
    if len(key) <= 8:
        return "****"
    return f"{key[:4]}...{key[-4:]}"
