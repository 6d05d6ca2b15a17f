"""State storage for guards.

Storage is intentionally decoupled from policy logic. Custom backends (for
example Redis) can implement the interface; every method must be atomic for
concurrent callers on the same name and must not block the event loop.

Failures are counted in whole-second buckets. Buckets older than the guard's
window are purged lazily whenever the count is read.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime

from callguard.circuit_breaker.exceptions import GuardNotFoundError
from callguard.circuit_breaker.locks import KeyedLock
from callguard.circuit_breaker.state import GuardConfig, GuardSnapshot, GuardStatus


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _current_second() -> int:
    return int(_utcnow().timestamp())


class AbstractGuardStorage(ABC):
    """Abstract guard storage interface."""

    @abstractmethod
    async def create(self, name: str, config: GuardConfig) -> bool:
        """Create a ``CLOSED`` record for ``name`` unless one exists.

        Returns:
            ``True`` when a record was created, ``False`` when one already existed.
        """

    @abstractmethod
    async def exists(self, name: str) -> bool:
        """Return whether a record exists for ``name``."""

    @abstractmethod
    async def names(self) -> list[str]:
        """Return all stored guard names."""

    @abstractmethod
    async def get_config(self, name: str) -> GuardConfig:
        """Return the configuration fixed at first registration."""

    @abstractmethod
    async def get_status(self, name: str) -> GuardStatus:
        """Return the current status."""

    @abstractmethod
    async def set_status(self, name: str, status: GuardStatus) -> None:
        """Write a new status and stamp the transition time.

        Entering ``CLOSED`` from any other status also resets the probe counter.
        """

    @abstractmethod
    async def record_failure(self, name: str) -> None:
        """Increment the failure bucket for the current second."""

    @abstractmethod
    async def count_failures_in_window(self, name: str) -> int:
        """Purge stale buckets and return the failures left in the window."""

    @abstractmethod
    async def increment_probe_calls(self, name: str) -> int:
        """Increment the probe counter and return the new value."""

    @abstractmethod
    async def get_probe_calls(self, name: str) -> int:
        """Return the probe counter."""

    @abstractmethod
    async def reset_probe_calls(self, name: str) -> None:
        """Reset the probe counter to zero."""

    @abstractmethod
    async def seconds_since_last_transition(self, name: str) -> float:
        """Return seconds elapsed since the last status change."""

    @abstractmethod
    async def snapshot(self, name: str) -> GuardSnapshot:
        """Return a read-only snapshot of the record for ``name``."""


@dataclass(slots=True)
class _GuardRecord:
    config: GuardConfig
    last_transition_at: datetime
    status: GuardStatus = GuardStatus.CLOSED
    probe_call_count: int = 0
    failure_buckets: dict[int, int] = field(default_factory=dict)


class InMemoryGuardStorage(AbstractGuardStorage):
    """In-memory storage with per-guard cooperative + optional thread locks."""

    def __init__(self) -> None:
        """Initialize in-memory record and lock registries."""
        self._records: dict[str, _GuardRecord] = {}
        self._locks = KeyedLock()

    def _record(self, name: str) -> _GuardRecord:
        record = self._records.get(name)
        if record is None:
            raise GuardNotFoundError(name)
        return record

    @staticmethod
    def _purge(record: _GuardRecord) -> int:
        oldest = _current_second() - record.config.window_seconds
        stale = [second for second in record.failure_buckets if second < oldest]
        for second in stale:
            del record.failure_buckets[second]
        return sum(record.failure_buckets.values())

    async def create(self, name: str, config: GuardConfig) -> bool:
        """Create a record for ``name``; the first registration wins."""
        async with self._locks.locked(name):
            if name in self._records:
                return False
            self._records[name] = _GuardRecord(
                config=config,
                last_transition_at=_utcnow(),
            )
            return True

    async def exists(self, name: str) -> bool:
        async with self._locks.locked(name):
            return name in self._records

    async def names(self) -> list[str]:
        return sorted(self._records)

    async def get_config(self, name: str) -> GuardConfig:
        async with self._locks.locked(name):
            return self._record(name).config

    async def get_status(self, name: str) -> GuardStatus:
        async with self._locks.locked(name):
            return self._record(name).status

    async def set_status(self, name: str, status: GuardStatus) -> None:
        async with self._locks.locked(name):
            record = self._record(name)
            # A CLOSED guard never holds a counted trial call.
            if status == GuardStatus.CLOSED and record.status != GuardStatus.CLOSED:
                record.probe_call_count = 0
            record.status = status
            record.last_transition_at = _utcnow()

    async def record_failure(self, name: str) -> None:
        async with self._locks.locked(name):
            buckets = self._record(name).failure_buckets
            second = _current_second()
            buckets[second] = buckets.get(second, 0) + 1

    async def count_failures_in_window(self, name: str) -> int:
        async with self._locks.locked(name):
            return self._purge(self._record(name))

    async def increment_probe_calls(self, name: str) -> int:
        async with self._locks.locked(name):
            record = self._record(name)
            record.probe_call_count += 1
            return record.probe_call_count

    async def get_probe_calls(self, name: str) -> int:
        async with self._locks.locked(name):
            return self._record(name).probe_call_count

    async def reset_probe_calls(self, name: str) -> None:
        async with self._locks.locked(name):
            self._record(name).probe_call_count = 0

    async def seconds_since_last_transition(self, name: str) -> float:
        async with self._locks.locked(name):
            elapsed = _utcnow() - self._record(name).last_transition_at
            return max(elapsed.total_seconds(), 0.0)

    async def snapshot(self, name: str) -> GuardSnapshot:
        """Return a consistent snapshot, purging stale failure buckets first."""
        async with self._locks.locked(name):
            record = self._record(name)
            return GuardSnapshot(
                name=name,
                status=record.status,
                failure_count=self._purge(record),
                probe_call_count=record.probe_call_count,
                last_transition_at=record.last_transition_at,
                config=record.config,
            )
