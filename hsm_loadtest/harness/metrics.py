from __future__ import annotations

import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Union

import numpy as np
import pandas as pd

COUNTER = "counter"
RATE = "rate"
TREND = "trend"

SUMMARY_PERCENTILES = (90.0, 95.0, 99.0)


def nearest_rank_percentile(samples: Any, percentile: float) -> float:
    """Smallest sample with at least ``percentile`` percent of the data at or below it."""
    if not 0.0 <= percentile <= 100.0:
        raise ValueError(f"percentile must be within [0, 100], got {percentile}")
    values = np.asarray(samples, dtype=float)
    if values.size == 0:
        raise ValueError("percentile of an empty sample set")
    return float(np.percentile(values, percentile, method="inverted_cdf"))


def _format_percentile(percentile: float) -> str:
    return f"p({percentile:g})"


class Counter:
    kind = COUNTER

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._total = 0.0

    def add(self, value: float = 1) -> None:
        if value < 0:
            raise ValueError(f"counter {self.name!r} cannot decrease (got {value})")
        with self._lock:
            self._total += value

    def snapshot(self) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(name=self.name, count=self._total)


class Rate:
    kind = RATE

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._passes = 0
        self._total = 0

    def add(self, value: bool) -> None:
        with self._lock:
            self._total += 1
            if value:
                self._passes += 1

    def snapshot(self) -> RateSnapshot:
        with self._lock:
            return RateSnapshot(name=self.name, passes=self._passes, total=self._total)


class Trend:
    """Keeps every sample so percentiles stay exact."""

    kind = TREND

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._samples: list[float] = []

    def add(self, value: float) -> None:
        sample = float(value)
        with self._lock:
            self._samples.append(sample)

    def snapshot(self) -> TrendSnapshot:
        with self._lock:
            samples = tuple(self._samples)
        return TrendSnapshot(name=self.name, samples=samples)


Metric = Union[Counter, Rate, Trend]


@dataclass(frozen=True)
class CounterSnapshot:
    name: str
    count: float
    kind: str = COUNTER

    @property
    def has_samples(self) -> bool:
        # A declared counter is observed even at zero.
        return True

    def stat(self, selector: str, arg: float | None = None) -> float:
        if selector == "count":
            return self.count
        raise ValueError(f"selector {selector!r} is not defined for counter {self.name!r}")

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "values": {"count": self.count}}


@dataclass(frozen=True)
class RateSnapshot:
    name: str
    passes: int
    total: int
    kind: str = RATE

    @property
    def fails(self) -> int:
        return self.total - self.passes

    @property
    def rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.passes / self.total

    @property
    def has_samples(self) -> bool:
        return self.total > 0

    def stat(self, selector: str, arg: float | None = None) -> float:
        if selector == "rate":
            return self.rate
        if selector == "count":
            return float(self.total)
        raise ValueError(f"selector {selector!r} is not defined for rate {self.name!r}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "values": {
                "rate": self.rate,
                "passes": self.passes,
                "fails": self.fails,
                "total": self.total,
            },
        }


@dataclass(frozen=True)
class TrendSnapshot:
    name: str
    samples: tuple[float, ...]
    kind: str = TREND

    @property
    def count(self) -> int:
        return len(self.samples)

    @property
    def has_samples(self) -> bool:
        return bool(self.samples)

    @property
    def avg(self) -> float:
        return float(np.mean(self.samples)) if self.samples else 0.0

    @property
    def min(self) -> float:
        return float(np.min(self.samples)) if self.samples else 0.0

    @property
    def max(self) -> float:
        return float(np.max(self.samples)) if self.samples else 0.0

    @property
    def med(self) -> float:
        return self.percentile(50.0)

    def percentile(self, percentile: float) -> float:
        if not self.samples:
            return 0.0
        return nearest_rank_percentile(self.samples, percentile)

    def stat(self, selector: str, arg: float | None = None) -> float:
        if selector == "p":
            if arg is None:
                raise ValueError("percentile selector needs an argument")
            return self.percentile(arg)
        if selector in ("avg", "min", "max", "med"):
            return getattr(self, selector)
        if selector == "count":
            return float(self.count)
        raise ValueError(f"selector {selector!r} is not defined for trend {self.name!r}")

    def to_dict(self) -> dict[str, Any]:
        values: dict[str, float] = {
            "count": self.count,
            "avg": self.avg,
            "min": self.min,
            "med": self.med,
            "max": self.max,
        }
        for percentile in SUMMARY_PERCENTILES:
            values[_format_percentile(percentile)] = self.percentile(percentile)
        return {"type": self.kind, "values": values}


MetricSnapshot = Union[CounterSnapshot, RateSnapshot, TrendSnapshot]


class MetricsSnapshot(Mapping):
    """Read-only view of every metric at one point in time."""

    def __init__(self, metrics: Mapping[str, MetricSnapshot]) -> None:
        self._metrics = dict(metrics)

    def __getitem__(self, name: str) -> MetricSnapshot:
        return self._metrics[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._metrics)

    def __len__(self) -> int:
        return len(self._metrics)

    def to_dict(self) -> dict[str, Any]:
        return {name: self._metrics[name].to_dict() for name in sorted(self._metrics)}

    def trend_frame(self) -> pd.DataFrame:
        rows = [
            {"metric": name, "value": value}
            for name, metric in sorted(self._metrics.items())
            if isinstance(metric, TrendSnapshot)
            for value in metric.samples
        ]
        if not rows:
            return pd.DataFrame(columns=["metric", "value"])
        return pd.DataFrame(rows)


class MetricsRegistry:
    """Named metrics shared by every virtual user.

    The registry lock only guards declaration; each metric serialises its own
    updates, so writers to different metrics never contend.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics: dict[str, Metric] = {}

    def counter(self, name: str) -> Counter:
        return self._declare(name, Counter)

    def rate(self, name: str) -> Rate:
        return self._declare(name, Rate)

    def trend(self, name: str) -> Trend:
        return self._declare(name, Trend)

    def get(self, name: str) -> Metric | None:
        with self._lock:
            return self._metrics.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._metrics)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            metrics = list(self._metrics.values())
        return MetricsSnapshot({metric.name: metric.snapshot() for metric in metrics})

    def _declare(self, name: str, factory: type) -> Any:
        with self._lock:
            existing = self._metrics.get(name)
            if existing is None:
                metric = factory(name)
                self._metrics[name] = metric
                return metric
        if not isinstance(existing, factory):
            raise ValueError(
                f"metric {name!r} is already declared as a {existing.kind}, not a {factory.kind}"
            )
        return existing


__all__ = [
    "COUNTER",
    "RATE",
    "TREND",
    "Counter",
    "CounterSnapshot",
    "MetricsRegistry",
    "MetricsSnapshot",
    "Rate",
    "RateSnapshot",
    "Trend",
    "TrendSnapshot",
    "nearest_rank_percentile",
]
