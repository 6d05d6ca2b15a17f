from __future__ import annotations

import pytest

import callguard.circuit_breaker.storage as storage_mod
from tests.callguard.support.fakes import FakeClock, FakeLogger


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Freeze the storage clock; tests advance it explicitly."""
    fake_clock = FakeClock()
    monkeypatch.setattr(storage_mod, "_utcnow", fake_clock.now)
    return fake_clock
