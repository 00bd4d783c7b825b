#!/usr/bin/env python3
"""
DedupTracker tests — TTL, lazy expiry, sweep, background lifecycle.

Time is driven by a fake clock; nothing here sleeps for real except the
background sweep test, which uses a tiny interval.

Usage:
    python3 -m pytest test_dedup.py
"""

import asyncio

from mahilo.dedup import DedupTracker


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_tracker(**kwargs) -> tuple[DedupTracker, FakeClock]:
    clock = FakeClock()
    return DedupTracker(clock=clock, **kwargs), clock


# ---------------------------------------------------------------------------
# has / mark
# ---------------------------------------------------------------------------


def test_unknown_id_is_absent() -> None:
    tracker, _ = make_tracker()
    assert not tracker.has("m-1")


def test_marked_id_is_present() -> None:
    tracker, _ = make_tracker()
    tracker.mark("m-1")
    assert tracker.has("m-1")
    assert not tracker.has("m-2")


def test_mark_is_idempotent() -> None:
    tracker, _ = make_tracker()
    tracker.mark("m-1")
    tracker.mark("m-1")
    assert tracker.has("m-1")
    assert len(tracker) == 1


def test_present_until_ttl_elapses() -> None:
    tracker, clock = make_tracker(ttl=3600)
    tracker.mark("m-1")
    clock.advance(3600)
    assert tracker.has("m-1")


def test_expired_entry_is_absent_and_removed_on_lookup() -> None:
    tracker, clock = make_tracker(ttl=3600)
    tracker.mark("m-1")
    clock.advance(3601)
    assert len(tracker) == 1
    assert not tracker.has("m-1")
    assert len(tracker) == 0


def test_check_and_mark() -> None:
    tracker, _ = make_tracker()
    assert tracker.check_and_mark("m-1") is False
    assert tracker.check_and_mark("m-1") is True


def test_default_ttl_is_one_hour() -> None:
    tracker = DedupTracker()
    assert tracker.ttl == 3600
    assert tracker.sweep_interval == 300


# ---------------------------------------------------------------------------
# sweep
# ---------------------------------------------------------------------------


def test_sweep_removes_only_expired() -> None:
    tracker, clock = make_tracker(ttl=100)
    tracker.mark("old-1")
    tracker.mark("old-2")
    clock.advance(60)
    tracker.mark("fresh")
    clock.advance(50)
    assert tracker.sweep() == 2
    assert len(tracker) == 1
    assert tracker.has("fresh")


def test_clear() -> None:
    tracker, _ = make_tracker()
    tracker.mark("m-1")
    tracker.clear()
    assert len(tracker) == 0


# ---------------------------------------------------------------------------
# Background sweep lifecycle
# ---------------------------------------------------------------------------


def test_background_sweep_runs_and_stops() -> None:
    async def scenario() -> None:
        tracker, clock = make_tracker(ttl=10, sweep_interval=0.01)
        tracker.mark("m-1")
        clock.advance(11)
        tracker.start()
        assert tracker.running
        for _ in range(50):
            if len(tracker) == 0:
                break
            await asyncio.sleep(0.01)
        assert len(tracker) == 0
        await tracker.stop()
        assert not tracker.running

    asyncio.run(scenario())


def test_start_is_idempotent_and_stop_without_start_is_noop() -> None:
    async def scenario() -> None:
        tracker, _ = make_tracker(sweep_interval=60)
        await tracker.stop()
        tracker.start()
        first = tracker._sweep_task
        tracker.start()
        assert tracker._sweep_task is first
        await tracker.stop()
        assert first.done()

    asyncio.run(scenario())


def test_instances_are_independent() -> None:
    a, _ = make_tracker()
    b, _ = make_tracker()
    a.mark("m-1")
    assert not b.has("m-1")
