"""
Subscriber-count history and growth per channel.

Each successful registry cycle appends the latest subscriber count of every
matched channel. Samples are kept in a bounded deque (oldest evicted first)
so the history doubles as a sparkline series.

History is keyed by the matched live identifier, not the registry id:
renaming a registry record keeps its series, changing its external id
starts a new one.

growth_pct = (latest - earliest) / max(earliest, 1) * 100, or 0.0 with fewer
than two samples.
"""

from collections import deque
from typing import Iterable


class GrowthTracker:
    def __init__(self, max_samples: int = 30):
        if max_samples < 1:
            raise ValueError("max_samples must be >= 1")
        self.max_samples = max_samples
        self._series: dict[str, deque[int]] = {}

    def record(self, key: str, value: int) -> None:
        key = _normalize_key(key)
        series = self._series.get(key)
        if series is None:
            series = deque(maxlen=self.max_samples)
            self._series[key] = series
        series.append(int(value))

    def history(self, key: str) -> list[int]:
        return list(self._series.get(_normalize_key(key), ()))

    def growth_pct(self, key: str) -> float:
        samples = self._series.get(_normalize_key(key))
        if not samples or len(samples) < 2:
            return 0.0
        earliest, latest = samples[0], samples[-1]
        return (latest - earliest) * 100 / max(earliest, 1)

    def prune(self, keep: Iterable[str]) -> None:
        """Forget every series whose key is not in *keep*."""
        keep_keys = {_normalize_key(k) for k in keep}
        for key in list(self._series):
            if key not in keep_keys:
                del self._series[key]

    def keys(self) -> list[str]:
        return list(self._series)

    def to_dict(self) -> dict[str, list[int]]:
        return {key: list(series) for key, series in self._series.items()}

    @classmethod
    def from_dict(cls, data: dict[str, list[int]], max_samples: int = 30) -> "GrowthTracker":
        tracker = cls(max_samples=max_samples)
        for key, samples in data.items():
            for value in samples:
                tracker.record(key, value)
        return tracker


def _normalize_key(key: str) -> str:
    return key.strip().lower()
