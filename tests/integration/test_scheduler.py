"""
Scheduler tests that run real virtual-user threads on sub-second profiles.
"""

import threading
import time

import pytest

from hsm_loadtest.harness.config import RampProfile, Stage
from hsm_loadtest.harness.load import Pacing, RampScheduler, VirtualUser


pytestmark = pytest.mark.integration

FAST_PACING = Pacing(0.005, 0.01)


class FakeUser:
    def __init__(self, slot):
        self.slot = slot
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def is_alive(self):
        return not self.cancelled

    def join(self, timeout=None):
        pass


class SlowCycle:
    """Cycle that takes a while so cancellation lands mid-flight."""

    def __init__(self, duration_s=0.0):
        self._duration_s = duration_s
        self._lock = threading.Lock()
        self.started = 0
        self.finished = 0

    def run(self):
        with self._lock:
            self.started += 1
        time.sleep(self._duration_s)
        with self._lock:
            self.finished += 1


def _scheduler(profile, cycle, tick=0.02):
    users = []

    def factory(slot):
        user = VirtualUser(slot, cycle, FAST_PACING)
        users.append(user)
        return user

    return RampScheduler(profile, factory, tick_seconds=tick), users


def test_reconcile_spawns_and_cancels_oldest_first():
    created = []

    def factory(slot):
        user = FakeUser(slot)
        created.append(user)
        return user

    scheduler = RampScheduler(RampProfile("p", (Stage(1, 1),)), factory)

    assert scheduler.reconcile(3) == 3
    assert scheduler.live_count == 3
    assert all(user.started for user in created)

    assert scheduler.reconcile(1) == -2
    assert scheduler.live_count == 1
    assert [user.slot for user in created if user.cancelled] == [1, 2]

    assert scheduler.reconcile(4) == 3
    assert [user.slot for user in created] == [1, 2, 3, 4, 5, 6]
    assert scheduler.live_count == 4

    assert scheduler.reconcile(4) == 0


def test_run_drains_every_user_and_tracks_target():
    profile = RampProfile("tiny", (Stage(0.2, 4), Stage(0.2, 4), Stage(0.2, 0)))
    cycle = SlowCycle()
    scheduler, users = _scheduler(profile, cycle)

    stats = scheduler.run()

    assert users, "no virtual user was spawned"
    assert not any(user.is_alive() for user in users)
    assert scheduler.live_count == 0
    assert scheduler.draining_count == 0
    assert stats.peak_live == 4
    assert stats.spawned == len(users)
    assert cycle.started == cycle.finished > 0
    assert all(point.live == point.target for point in stats.timeline)
    assert stats.timeline[-1].live == 0
    assert 4 in {point.target for point in stats.timeline}


def test_run_lasts_for_the_profile_duration():
    profile = RampProfile("timed", (Stage(0.15, 2), Stage(0.15, 2), Stage(0.1, 0)))
    scheduler, _ = _scheduler(profile, SlowCycle())

    started = time.monotonic()
    stats = scheduler.run()
    elapsed = time.monotonic() - started

    assert elapsed >= 0.4
    assert elapsed < 3.0
    assert stats.duration_s >= 0.4


def test_cancelled_user_finishes_its_inflight_cycle():
    profile = RampProfile("drain", (Stage(0.05, 3), Stage(0.05, 3)))
    cycle = SlowCycle(duration_s=0.3)
    scheduler, users = _scheduler(profile, cycle)

    scheduler.run()

    assert cycle.started > 0
    assert cycle.started == cycle.finished
    assert not any(user.is_alive() for user in users)


def test_stop_ends_a_long_ramp_early():
    profile = RampProfile("long", (Stage(30, 5), Stage(30, 5)))
    scheduler, users = _scheduler(profile, SlowCycle())
    result = {}

    thread = threading.Thread(target=lambda: result.setdefault("stats", scheduler.run()))
    thread.start()
    time.sleep(0.2)
    scheduler.stop()
    thread.join(timeout=5.0)

    assert not thread.is_alive()
    assert result["stats"].duration_s < 5.0
    assert not any(user.is_alive() for user in users)


def test_virtual_user_survives_a_raising_cycle():
    class FlakyCycle:
        def __init__(self):
            self.calls = 0

        def run(self):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("boom")

    cycle = FlakyCycle()
    user = VirtualUser(1, cycle, FAST_PACING)
    user.start()
    deadline = time.monotonic() + 2.0
    while cycle.calls < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    user.cancel()
    user.join(timeout=2.0)

    assert cycle.calls >= 3
    assert not user.is_alive()


def test_cancel_interrupts_pacing_sleep():
    cycle = SlowCycle()
    user = VirtualUser(1, cycle, Pacing(10.0, 10.0))
    user.start()
    deadline = time.monotonic() + 2.0
    while cycle.finished == 0 and time.monotonic() < deadline:
        time.sleep(0.01)

    started = time.monotonic()
    user.cancel()
    user.join(timeout=2.0)

    assert time.monotonic() - started < 1.0
    assert not user.is_alive()
    assert cycle.finished == 1


def test_exit_callback_runs_once_the_user_stops():
    exited = threading.Event()
    user = VirtualUser(1, SlowCycle(), FAST_PACING, on_exit=exited.set)
    user.start()

    assert not exited.wait(timeout=0.05)
    user.cancel()
    user.join(timeout=2.0)

    assert exited.is_set()


def test_tick_must_be_positive():
    with pytest.raises(ValueError):
        RampScheduler(RampProfile("p", (Stage(1, 1),)), FakeUser, tick_seconds=0)
