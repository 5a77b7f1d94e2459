"""
Thread-safe accumulation of Counter / Rate / Trend series.

Each series carries its own lock; the table lock is only taken when a name is
seen for the first time. Percentiles use linear interpolation between the
closest ranks: for sorted samples ``x`` of length ``n`` the p-th percentile
sits at position ``p / 100 * (n - 1)``.
"""

from __future__ import annotations

import math
import re
import threading
from typing import Any, Dict, List, Optional

from shortload.models import MetricKind

_PERCENTILE_RE = re.compile(r"^p\((\d+(?:\.\d+)?)\)$")


def percentile(sorted_values: List[float], p: float) -> Optional[float]:
    """Linear-interpolated percentile of already sorted values."""
    n = len(sorted_values)
    if n == 0:
        return None
    if n == 1:
        return float(sorted_values[0])
    pos = p * (n - 1) / 100.0
    lo = int(math.floor(pos))
    hi = min(lo + 1, n - 1)
    frac = pos - lo
    return sorted_values[lo] + (sorted_values[hi] - sorted_values[lo]) * frac


class CounterSeries:
    kind = MetricKind.COUNTER

    def __init__(self, name: str) -> None:
        self.name = name
        self._total = 0
        self._lock = threading.Lock()

    def add(self, value: float = 1) -> None:
        if value < 0:
            raise ValueError(f"counter {self.name!r} cannot decrease")
        with self._lock:
            self._total += value

    @property
    def total(self) -> float:
        with self._lock:
            return self._total

    def values(self, duration_seconds: Optional[float] = None) -> Dict[str, Optional[float]]:
        total = self.total
        rate = None
        if duration_seconds:
            rate = total / duration_seconds
        return {"count": total, "rate": rate}


class RateSeries:
    kind = MetricKind.RATE

    def __init__(self, name: str) -> None:
        self.name = name
        self._passes = 0
        self._total = 0
        self._lock = threading.Lock()

    def add(self, value: Any) -> None:
        with self._lock:
            if value:
                self._passes += 1
            self._total += 1

    @property
    def rate(self) -> Optional[float]:
        with self._lock:
            if self._total == 0:
                return None
            return self._passes / self._total

    def values(self, duration_seconds: Optional[float] = None) -> Dict[str, Optional[float]]:
        with self._lock:
            passes, total = self._passes, self._total
        return {
            "rate": passes / total if total else None,
            "passes": passes,
            "fails": total - passes,
            "count": total,
        }


class TrendSeries:
    kind = MetricKind.TREND

    STANDARD_PERCENTILES = (50, 90, 95, 99)

    def __init__(self, name: str) -> None:
        self.name = name
        self._samples: List[float] = []
        self._lock = threading.Lock()

    def add(self, value: float) -> None:
        with self._lock:
            self._samples.append(float(value))

    def sorted_samples(self) -> List[float]:
        with self._lock:
            return sorted(self._samples)

    def percentile(self, p: float) -> Optional[float]:
        return percentile(self.sorted_samples(), p)

    def values(self, duration_seconds: Optional[float] = None) -> Dict[str, Optional[float]]:
        samples = self.sorted_samples()
        if not samples:
            out = {"count": 0, "avg": None, "min": None, "max": None, "med": None}
            out.update({f"p({p})": None for p in self.STANDARD_PERCENTILES})
            return out
        out = {
            "count": len(samples),
            "avg": sum(samples) / len(samples),
            "min": samples[0],
            "max": samples[-1],
            "med": percentile(samples, 50),
        }
        for p in self.STANDARD_PERCENTILES:
            out[f"p({p})"] = percentile(samples, p)
        return out

    def value(self, aggregation: str) -> Optional[float]:
        match = _PERCENTILE_RE.match(aggregation)
        if match:
            return self.percentile(float(match.group(1)))
        return self.values().get(aggregation)


_SERIES_TYPES = {
    MetricKind.COUNTER: CounterSeries,
    MetricKind.RATE: RateSeries,
    MetricKind.TREND: TrendSeries,
}


class MetricsAggregator:
    """
    Owns every metric series of a run.

    Example:
        agg = MetricsAggregator()
        agg.record("redirect_duration", MetricKind.TREND, 31.2)
        agg.record("cache_hit_rate", MetricKind.RATE, True)
        agg.value("redirect_duration", "p(95)")
    """

    def __init__(self) -> None:
        self._series: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._duration_seconds: Optional[float] = None

    def _get_or_create(self, name: str, kind: str):
        series = self._series.get(name)
        if series is None:
            with self._lock:
                series = self._series.get(name)
                if series is None:
                    if kind not in _SERIES_TYPES:
                        raise ValueError(f"unknown metric kind: {kind!r}")
                    series = _SERIES_TYPES[kind](name)
                    self._series[name] = series
        if series.kind != kind:
            raise ValueError(
                f"metric {name!r} is a {series.kind}, cannot record it as {kind}"
            )
        return series

    def record(self, name: str, kind: str, value: Any = 1) -> None:
        """Update the named series, creating it on first write."""
        self._get_or_create(name, kind).add(value)

    def get(self, name: str):
        return self._series.get(name)

    def has(self, name: str) -> bool:
        return name in self._series

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._series)

    def set_duration(self, seconds: float) -> None:
        """Run duration used for per-second counter rates."""
        self._duration_seconds = seconds

    def value(self, name: str, aggregation: str) -> Optional[float]:
        """Observed value of ``aggregation`` on a series, or None if undefined."""
        series = self._series.get(name)
        if series is None:
            return None
        if isinstance(series, TrendSeries):
            return series.value(aggregation)
        return series.values(self._duration_seconds).get(aggregation)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Per-series values; each series is read under its own lock."""
        out = {}
        for name in self.names():
            series = self._series[name]
            out[name] = {
                "type": series.kind,
                "values": series.values(self._duration_seconds),
            }
        return out
