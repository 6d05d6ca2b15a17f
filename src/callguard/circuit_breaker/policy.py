"""Guard state machine.

The module-level functions are pure transition rules. ``GuardPolicy`` applies
them against a storage backend, running every decision that reads and then
writes state under a per-name lock.
"""

from dataclasses import dataclass

from callguard.circuit_breaker.locks import KeyedLock
from callguard.circuit_breaker.state import GuardConfig, GuardStatus
from callguard.circuit_breaker.storage import AbstractGuardStorage
from callguard.logging import StructuredLogger, get_logger, log_info


def is_open_expired(elapsed: float, config: GuardConfig) -> bool:
    """Return whether an ``OPEN`` guard may admit a probe."""
    return elapsed > config.open_duration_seconds


def retry_after(elapsed: float, config: GuardConfig) -> float:
    """Return seconds left before an ``OPEN`` guard admits a probe."""
    return max(config.open_duration_seconds - elapsed, 0.0)


def next_status(
    status_at_call_time: GuardStatus,
    *,
    failed: bool,
    failure_count: int,
    config: GuardConfig,
) -> GuardStatus | None:
    """Return the status a call outcome leads to, or ``None`` for no change.

    Args:
        status_at_call_time: Status captured when the call was admitted.
        failed: Whether the call ended with an error or timeout.
        failure_count: Failures in the window, including this one when failed.
        config: Guard configuration.
    """
    if failed:
        if status_at_call_time == GuardStatus.HALF_OPEN:
            return GuardStatus.OPEN
        if (
            status_at_call_time == GuardStatus.CLOSED
            and failure_count >= config.failure_threshold
        ):
            return GuardStatus.OPEN
        return None
    if status_at_call_time == GuardStatus.HALF_OPEN:
        return GuardStatus.CLOSED
    return None


@dataclass(frozen=True, slots=True)
class Admission:
    """Admission decision for one call.

    Attributes:
        status: Status observed at call time, after any probe transition.
        admitted: Whether the wrapped operation may run.
        config: Guard configuration read in the same critical section.
        retry_after: Seconds until a probe may be attempted when rejected.
    """

    status: GuardStatus
    admitted: bool
    config: GuardConfig
    retry_after: float = 0.0

    @property
    def holds_trial_slot(self) -> bool:
        return self.admitted and self.status == GuardStatus.HALF_OPEN


class GuardPolicy:
    """Apply transition rules to stored guard state."""

    def __init__(
        self,
        storage: AbstractGuardStorage,
        *,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._storage = storage
        self._logger = get_logger(__name__) if logger is None else logger
        # Async-only: critical sections await backend calls.
        self._locks = KeyedLock(thread_locks=False)

    async def _transition(
        self, name: str, old: GuardStatus, new: GuardStatus
    ) -> GuardStatus:
        await self._storage.set_status(name, new)
        log_info(
            self._logger,
            "guard.transition",
            guard=name,
            old=str(old),
            new=str(new),
        )
        return new

    async def admit(self, name: str) -> Admission:
        """Decide whether a call arriving now may invoke the operation.

        An expired ``OPEN`` guard moves to ``HALF_OPEN`` and counts this call as
        the probe in the same critical section, so concurrent arrivals observe
        the probe slot as taken. If the store fails after that transition the
        guard is put back to ``OPEN`` before the error propagates.
        """
        async with self._locks.locked(name):
            config = await self._storage.get_config(name)
            status = await self._storage.get_status(name)
            if status == GuardStatus.CLOSED:
                return Admission(status=status, admitted=True, config=config)

            if status == GuardStatus.OPEN:
                elapsed = await self._storage.seconds_since_last_transition(name)
                if not is_open_expired(elapsed, config):
                    return Admission(
                        status=status,
                        admitted=False,
                        config=config,
                        retry_after=retry_after(elapsed, config),
                    )
                await self._transition(name, status, GuardStatus.HALF_OPEN)
                try:
                    await self._storage.increment_probe_calls(name)
                    status = await self._storage.get_status(name)
                except Exception:
                    await self._transition(
                        name, GuardStatus.HALF_OPEN, GuardStatus.OPEN
                    )
                    raise
                return Admission(status=status, admitted=True, config=config)

            if await self._storage.get_probe_calls(name) == 0:
                await self._storage.increment_probe_calls(name)
                return Admission(status=status, admitted=True, config=config)
            return Admission(status=status, admitted=False, config=config)

    async def process_result(
        self,
        name: str,
        error: BaseException | None,
        status_at_call_time: GuardStatus,
    ) -> GuardStatus:
        """Record a call outcome and apply any resulting transition.

        Returns:
            The guard status after the outcome has been applied.
        """
        async with self._locks.locked(name):
            failure_count = 0
            if error is not None:
                await self._storage.record_failure(name)
                if status_at_call_time == GuardStatus.CLOSED:
                    failure_count = await self._storage.count_failures_in_window(name)

            config = await self._storage.get_config(name)
            current = await self._storage.get_status(name)
            target = next_status(
                status_at_call_time,
                failed=error is not None,
                failure_count=failure_count,
                config=config,
            )
            if target is None or target == current:
                return current
            return await self._transition(name, current, target)
