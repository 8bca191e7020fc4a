from __future__ import annotations

import collections
import itertools
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from .config import RampProfile

LOGGER = logging.getLogger("hsm_loadtest.harness.load")


class Cycle(Protocol):
    def run(self) -> object:
        ...


@dataclass(frozen=True)
class Pacing:
    """Uniform think time between two cycles of one user."""

    min_seconds: float
    max_seconds: float

    def draw(self, rng: random.Random) -> float:
        return rng.uniform(self.min_seconds, self.max_seconds)


@dataclass(frozen=True)
class TimelinePoint:
    elapsed_s: float
    target: int
    live: int


@dataclass
class LoadStatistics:
    started_at: float
    finished_at: float
    spawned: int
    peak_live: int
    timeline: list[TimelinePoint] = field(default_factory=list)

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)


class VirtualUser:
    """Thread running request cycles until cancelled.

    Cancellation is checked between cycles only; a cycle that already started
    always finishes, so its metrics are recorded completely.
    """

    def __init__(
        self,
        slot: int,
        cycle: Cycle,
        pacing: Pacing,
        rng: random.Random | None = None,
        on_exit: Callable[[], None] | None = None,
    ) -> None:
        self.slot = slot
        self._cycle = cycle
        self._pacing = pacing
        self._rng = rng or random.Random()
        self._on_exit = on_exit
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"virtual-user-{slot}", daemon=True
        )
        self.iterations = 0

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._stop_event.set()

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    self._cycle.run()
                except Exception:  # noqa: BLE001
                    LOGGER.exception("virtual user %d: request cycle raised", self.slot)
                self.iterations += 1
                if self._stop_event.wait(timeout=self._pacing.draw(self._rng)):
                    return
        finally:
            if self._on_exit is not None:
                self._on_exit()


UserFactory = Callable[[int], VirtualUser]


class RampScheduler:
    """Keeps the number of running virtual users on the profile's interpolated target."""

    def __init__(
        self,
        profile: RampProfile,
        user_factory: UserFactory,
        tick_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if tick_seconds <= 0:
            raise ValueError("tick_seconds must be > 0")
        self._profile = profile
        self._user_factory = user_factory
        self._tick_seconds = tick_seconds
        self._clock = clock
        self._slots = itertools.count(start=1)
        self._active: collections.deque[VirtualUser] = collections.deque()
        self._draining: list[VirtualUser] = []
        self._stop_event = threading.Event()
        self._spawned = 0
        self._peak_live = 0
        self.timeline: list[TimelinePoint] = []

    @property
    def live_count(self) -> int:
        return len(self._active)

    @property
    def draining_count(self) -> int:
        return len(self._draining)

    def target_concurrency(self, elapsed: float) -> int:
        return self._profile.target_at(elapsed)

    def reconcile(self, target: int) -> int:
        """Spawn or cancel users so ``live_count == target``; returns the delta applied."""
        self._draining = [user for user in self._draining if user.is_alive()]
        delta = target - len(self._active)
        if delta > 0:
            for _ in range(delta):
                user = self._user_factory(next(self._slots))
                user.start()
                self._active.append(user)
                self._spawned += 1
            LOGGER.debug("spawned %d user(s), %d live", delta, len(self._active))
        elif delta < 0:
            for _ in range(-delta):
                user = self._active.popleft()
                user.cancel()
                self._draining.append(user)
            LOGGER.debug("cancelled %d user(s), %d live", -delta, len(self._active))
        self._peak_live = max(self._peak_live, len(self._active))
        return delta

    def run(self) -> LoadStatistics:
        total = self._profile.total_duration
        started_at = time.time()
        start = self._clock()
        current_stage: int | None = None
        LOGGER.info(
            "Starting ramp %r: %d stage(s), %.0fs total, peak %d users",
            self._profile.name,
            len(self._profile.stages),
            total,
            self._profile.peak_target,
        )

        try:
            while not self._stop_event.is_set():
                elapsed = self._clock() - start
                if elapsed >= total:
                    break
                stage = self._profile.stage_index_at(elapsed)
                if stage != current_stage and stage is not None:
                    current_stage = stage
                    LOGGER.info(
                        "Stage %d/%d: ramping to %d users over %.0fs",
                        stage + 1,
                        len(self._profile.stages),
                        self._profile.stages[stage].target,
                        self._profile.stages[stage].duration_seconds,
                    )
                target = self.target_concurrency(elapsed)
                self.reconcile(target)
                self.timeline.append(TimelinePoint(elapsed, target, self.live_count))
                self._stop_event.wait(
                    timeout=min(self._tick_seconds, max(total - elapsed, 0.0))
                )
        finally:
            self._shutdown(start)

        return LoadStatistics(
            started_at=started_at,
            finished_at=time.time(),
            spawned=self._spawned,
            peak_live=self._peak_live,
            timeline=list(self.timeline),
        )

    def stop(self) -> None:
        self._stop_event.set()

    def _shutdown(self, start: float) -> None:
        self.reconcile(0)
        self.timeline.append(TimelinePoint(self._clock() - start, 0, 0))
        LOGGER.info("Waiting for %d user(s) to finish their current cycle", len(self._draining))
        for user in self._draining:
            user.join()
        self._draining.clear()
        LOGGER.info("Ramp %r finished, %d user(s) spawned in total", self._profile.name, self._spawned)


__all__ = [
    "LoadStatistics",
    "Pacing",
    "RampScheduler",
    "TimelinePoint",
    "VirtualUser",
]
