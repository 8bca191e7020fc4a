from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from typing import Any, Callable

from ..client import EncryptionServiceClient, TransportSettings
from .config import LoadTestConfig
from .cycle import CycleSettings, RequestCycle, declare_metrics
from .load import LoadStatistics, Pacing, RampScheduler, TimelinePoint, VirtualUser
from .metrics import MetricsRegistry, MetricsSnapshot
from .thresholds import ThresholdResult, evaluate_thresholds, validate_thresholds

LOGGER = logging.getLogger("hsm_loadtest.harness")

ClientFactory = Callable[[], EncryptionServiceClient]


@dataclass(frozen=True)
class TestResult:
    """Everything a reporter needs once the run is over."""

    __test__ = False

    profile_name: str
    started_at: float
    finished_at: float
    metrics: MetricsSnapshot
    thresholds: tuple[ThresholdResult, ...]
    timeline: tuple[TimelinePoint, ...] = ()

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.thresholds)

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile": self.profile_name,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_s": self.duration_s,
            "passed": self.passed,
            "metrics": self.metrics.to_dict(),
            "thresholds": [result.to_dict() for result in self.thresholds],
            "timeline": [
                {"elapsed_s": point.elapsed_s, "target": point.target, "live": point.live}
                for point in self.timeline
            ],
        }


def client_factory_for(settings: TransportSettings) -> ClientFactory:
    return lambda: EncryptionServiceClient(settings)


class LoadTestRunner:
    """Builds one virtual user per slot, runs the ramp and judges the outcome."""

    def __init__(
        self,
        config: LoadTestConfig,
        client_factory: ClientFactory,
        registry: MetricsRegistry | None = None,
        tick_seconds: float = 1.0,
        seed: int | None = None,
    ) -> None:
        self._config = config
        self._client_factory = client_factory
        self._registry = registry or MetricsRegistry()
        self._seed_source = random.Random(seed)
        self._pacing = Pacing(config.sleep_min_s, config.sleep_max_s)
        self._cycle_settings = CycleSettings.from_config(config)
        self._clients: list[EncryptionServiceClient] = []
        self._clients_lock = threading.Lock()

        declare_metrics(self._registry)
        validate_thresholds(config.thresholds, self._registry)

        self.scheduler = RampScheduler(
            config.profile, self._create_user, tick_seconds=tick_seconds
        )

    @property
    def registry(self) -> MetricsRegistry:
        return self._registry

    def run(self) -> TestResult:
        try:
            stats = self.scheduler.run()
        finally:
            with self._clients_lock:
                remaining = list(self._clients)
                self._clients.clear()
            for client in remaining:
                client.close()
        return self.evaluate(stats)

    def stop(self) -> None:
        self.scheduler.stop()

    def evaluate(self, stats: LoadStatistics) -> TestResult:
        snapshot = self._registry.snapshot()
        report = evaluate_thresholds(snapshot, self._config.thresholds)
        for failure in report.failures:
            LOGGER.warning(
                "Threshold failed: %s %s (observed %s%s)",
                failure.spec.metric,
                failure.spec.expression,
                "n/a" if failure.observed is None else f"{failure.observed:.4g}",
                f", {failure.note}" if failure.note else "",
            )
        return TestResult(
            profile_name=self._config.profile.name,
            started_at=stats.started_at,
            finished_at=stats.finished_at,
            metrics=snapshot,
            thresholds=report.results,
            timeline=tuple(stats.timeline),
        )

    def _create_user(self, slot: int) -> VirtualUser:
        client = self._client_factory()
        with self._clients_lock:
            self._clients.append(client)
        rng = random.Random(self._seed_source.random())
        cycle = RequestCycle(client, self._registry, self._cycle_settings, rng=rng)
        return VirtualUser(
            slot, cycle, self._pacing, rng=rng, on_exit=lambda: self._release(client)
        )

    def _release(self, client: EncryptionServiceClient) -> None:
        with self._clients_lock:
            if client not in self._clients:
                return
            self._clients.remove(client)
        client.close()


__all__ = ["LoadTestRunner", "TestResult", "client_factory_for"]
