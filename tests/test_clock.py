import pytest
from datetime import timezone

from murmur.services.clock import ClockService

from conftest import ManualClock, START_MS


class FakeTimeDAO:
    def __init__(self, server_time: int):
        self.server_time = server_time
        self.calls = 0

    async def get_server_time(self) -> int:
        self.calls += 1
        return self.server_time


def test_now_without_anchor_is_local_time():
    clock = ClockService(local_clock=ManualClock())
    assert clock.offset == 0
    assert clock.now_ms() == START_MS


def test_offset_applies_to_every_timestamp():
    local = ManualClock()
    clock = ClockService(local_clock=local)

    assert clock.update_offset(START_MS + 1500) == 1500
    assert clock.now_ms() == START_MS + 1500

    local.advance(250)
    assert clock.now_ms() == START_MS + 1750
    assert clock.now().tzinfo == timezone.utc


def test_last_sample_wins():
    clock = ClockService(local_clock=ManualClock())
    clock.update_offset(START_MS + 9000)
    clock.update_offset(START_MS - 200)
    assert clock.offset == -200


def test_drift_listener_fires_only_above_threshold():
    seen = []
    clock = ClockService(local_clock=ManualClock(), drift_threshold_ms=5000)
    clock.add_drift_listener(seen.append)

    clock.update_offset(START_MS + 4000)
    assert not clock.has_drift
    assert seen == []

    clock.update_offset(START_MS - 7000)
    assert clock.has_drift
    assert seen == [-7000]


def test_failing_drift_listener_does_not_break_anchor():
    def broken(offset):
        raise RuntimeError("listener down")

    clock = ClockService(local_clock=ManualClock(), drift_threshold_ms=10)
    clock.add_drift_listener(broken)
    assert clock.update_offset(START_MS + 100) == 100
    assert clock.now_ms() == START_MS + 100


@pytest.mark.asyncio
async def test_sync_uses_trusted_source():
    dao = FakeTimeDAO(START_MS + 42)
    clock = ClockService(local_clock=ManualClock())

    assert await clock.sync(dao) == 42
    assert dao.calls == 1
    assert clock.now_ms() == START_MS + 42
