from __future__ import annotations

import asyncio

import pytest

from callguard.circuit_breaker import (
    GuardConfig,
    GuardPolicy,
    GuardStatus,
    InMemoryGuardStorage,
)
from callguard.circuit_breaker.policy import is_open_expired, next_status, retry_after
from tests.callguard.support.fakes import FakeClock, FakeLogger

_CONFIG = GuardConfig(
    window_seconds=5,
    failure_threshold=3,
    call_timeout_seconds=1.0,
    open_duration_seconds=10.0,
)


@pytest.mark.parametrize(
    ("status", "failed", "failure_count", "expected"),
    [
        (GuardStatus.CLOSED, True, 2, None),
        (GuardStatus.CLOSED, True, 3, GuardStatus.OPEN),
        (GuardStatus.CLOSED, True, 7, GuardStatus.OPEN),
        (GuardStatus.CLOSED, False, 9, None),
        (GuardStatus.HALF_OPEN, True, 0, GuardStatus.OPEN),
        (GuardStatus.HALF_OPEN, False, 0, GuardStatus.CLOSED),
        (GuardStatus.OPEN, True, 9, None),
        (GuardStatus.OPEN, False, 0, None),
    ],
)
def test_next_status_follows_transition_table(
    status: GuardStatus,
    failed: bool,
    failure_count: int,
    expected: GuardStatus | None,
) -> None:
    assert (
        next_status(status, failed=failed, failure_count=failure_count, config=_CONFIG)
        == expected
    )


def test_open_expiry_is_strictly_after_duration() -> None:
    assert is_open_expired(10.0, _CONFIG) is False
    assert is_open_expired(10.5, _CONFIG) is True


def test_retry_after_counts_down_to_zero() -> None:
    assert retry_after(4.0, _CONFIG) == 6.0
    assert retry_after(12.0, _CONFIG) == 0.0


async def _policy(
    fake_logger: FakeLogger, config: GuardConfig = _CONFIG
) -> tuple[GuardPolicy, InMemoryGuardStorage]:
    storage = InMemoryGuardStorage()
    await storage.create("svc", config)
    return GuardPolicy(storage, logger=fake_logger), storage


async def _trip(policy: GuardPolicy) -> None:
    for _ in range(_CONFIG.failure_threshold):
        await policy.process_result("svc", RuntimeError("x"), GuardStatus.CLOSED)


@pytest.mark.asyncio
async def test_failures_below_threshold_stay_closed(
    fake_logger: FakeLogger,
) -> None:
    policy, storage = await _policy(fake_logger)

    for _ in range(_CONFIG.failure_threshold - 1):
        status = await policy.process_result(
            "svc", RuntimeError("x"), GuardStatus.CLOSED
        )

    assert status == GuardStatus.CLOSED
    assert await storage.count_failures_in_window("svc") == 2
    assert "guard.transition" not in fake_logger.events


@pytest.mark.asyncio
async def test_threshold_failures_open_and_log_transition(
    fake_logger: FakeLogger,
) -> None:
    policy, storage = await _policy(fake_logger)

    await _trip(policy)

    assert await storage.get_status("svc") == GuardStatus.OPEN
    assert fake_logger.fields_for("guard.transition") == [
        {"guard": "svc", "old": "closed", "new": "open"}
    ]


@pytest.mark.asyncio
async def test_concurrent_failures_trip_exactly_once(
    fake_logger: FakeLogger,
) -> None:
    policy, storage = await _policy(fake_logger)

    await asyncio.gather(
        *(
            policy.process_result("svc", RuntimeError("x"), GuardStatus.CLOSED)
            for _ in range(_CONFIG.failure_threshold + 2)
        )
    )

    assert await storage.get_status("svc") == GuardStatus.OPEN
    assert len(fake_logger.fields_for("guard.transition")) == 1


@pytest.mark.asyncio
async def test_success_while_closed_changes_nothing(fake_logger: FakeLogger) -> None:
    policy, storage = await _policy(fake_logger)
    await policy.process_result("svc", RuntimeError("x"), GuardStatus.CLOSED)

    status = await policy.process_result("svc", None, GuardStatus.CLOSED)

    assert status == GuardStatus.CLOSED
    assert await storage.count_failures_in_window("svc") == 1


@pytest.mark.asyncio
async def test_admit_rejects_open_before_duration(
    fake_logger: FakeLogger, clock: FakeClock
) -> None:
    policy, _ = await _policy(fake_logger)
    await _trip(policy)
    clock.advance(4.0)

    admission = await policy.admit("svc")

    assert admission.status == GuardStatus.OPEN
    assert admission.admitted is False
    assert admission.retry_after == 6.0


@pytest.mark.asyncio
async def test_admit_after_duration_admits_single_probe(
    fake_logger: FakeLogger, clock: FakeClock
) -> None:
    policy, storage = await _policy(fake_logger)
    await _trip(policy)
    clock.advance(_CONFIG.open_duration_seconds + 1)

    admissions = await asyncio.gather(*(policy.admit("svc") for _ in range(5)))

    assert [a.admitted for a in admissions].count(True) == 1
    assert all(a.status == GuardStatus.HALF_OPEN for a in admissions)
    assert await storage.get_probe_calls("svc") == 1


@pytest.mark.asyncio
async def test_half_open_with_empty_probe_slot_admits_once(
    fake_logger: FakeLogger,
) -> None:
    policy, storage = await _policy(fake_logger)
    await storage.set_status("svc", GuardStatus.HALF_OPEN)

    first = await policy.admit("svc")
    second = await policy.admit("svc")

    assert first.admitted is True
    assert second.admitted is False
    assert second.retry_after == 0.0


@pytest.mark.asyncio
async def test_probe_success_closes_and_resets_probe_counter(
    fake_logger: FakeLogger, clock: FakeClock
) -> None:
    policy, storage = await _policy(fake_logger)
    await _trip(policy)
    clock.advance(_CONFIG.open_duration_seconds + 1)
    await policy.admit("svc")

    status = await policy.process_result("svc", None, GuardStatus.HALF_OPEN)

    assert status == GuardStatus.CLOSED
    assert await storage.get_probe_calls("svc") == 0


@pytest.mark.asyncio
async def test_probe_failure_reopens(
    fake_logger: FakeLogger, clock: FakeClock
) -> None:
    policy, storage = await _policy(fake_logger)
    await _trip(policy)
    clock.advance(_CONFIG.open_duration_seconds + 1)
    await policy.admit("svc")

    status = await policy.process_result(
        "svc", RuntimeError("still down"), GuardStatus.HALF_OPEN
    )

    assert status == GuardStatus.OPEN
    assert await storage.seconds_since_last_transition("svc") == 0.0
    assert (await policy.admit("svc")).admitted is False


@pytest.mark.asyncio
async def test_second_cycle_after_failed_probe_admits_one_probe(
    fake_logger: FakeLogger, clock: FakeClock
) -> None:
    policy, _ = await _policy(fake_logger)
    await _trip(policy)
    clock.advance(_CONFIG.open_duration_seconds + 1)
    await policy.admit("svc")
    await policy.process_result("svc", RuntimeError("x"), GuardStatus.HALF_OPEN)
    clock.advance(_CONFIG.open_duration_seconds + 1)

    admissions = await asyncio.gather(*(policy.admit("svc") for _ in range(3)))

    assert [a.admitted for a in admissions].count(True) == 1


class _YieldingStorage(InMemoryGuardStorage):
    async def get_status(self, name: str) -> GuardStatus:
        await asyncio.sleep(0)
        return await super().get_status(name)


class _TrialCountFailingStorage(InMemoryGuardStorage):
    async def increment_probe_calls(self, name: str) -> int:
        raise RuntimeError("store down")


@pytest.mark.asyncio
async def test_concurrent_admits_complete_when_gil_disabled(
    fake_logger: FakeLogger, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(
        "callguard.circuit_breaker.locks.sys._is_gil_enabled",
        lambda: False,
        raising=False,
    )
    storage = _YieldingStorage()
    await storage.create("svc", _CONFIG)
    policy = GuardPolicy(storage, logger=fake_logger)

    admissions = await asyncio.wait_for(
        asyncio.gather(policy.admit("svc"), policy.admit("svc")), timeout=1.0
    )

    assert all(a.admitted for a in admissions)
    assert dict(policy._locks._thread_locks) == {}


@pytest.mark.asyncio
async def test_admit_store_failure_after_half_open_transition_reverts_to_open(
    fake_logger: FakeLogger, clock: FakeClock
) -> None:
    storage = _TrialCountFailingStorage()
    await storage.create("svc", _CONFIG)
    policy = GuardPolicy(storage, logger=fake_logger)
    await _trip(policy)
    clock.advance(_CONFIG.open_duration_seconds + 1)

    with pytest.raises(RuntimeError, match="store down"):
        await policy.admit("svc")

    assert await storage.get_status("svc") == GuardStatus.OPEN
    transitions = fake_logger.fields_for("guard.transition")
    assert transitions[-2:] == [
        {"guard": "svc", "old": "open", "new": "half_open"},
        {"guard": "svc", "old": "half_open", "new": "open"},
    ]
