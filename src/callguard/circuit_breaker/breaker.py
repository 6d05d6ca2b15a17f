"""Guard registry and invocation wrapper."""

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Generator
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from callguard.circuit_breaker.exceptions import (
    BreakerOpenError,
    ConfigurationError,
    GuardStorageError,
    GuardTimeoutError,
)
from callguard.circuit_breaker.policy import GuardPolicy
from callguard.circuit_breaker.state import GuardConfig, GuardSnapshot, GuardStatus
from callguard.circuit_breaker.storage import (
    AbstractGuardStorage,
    InMemoryGuardStorage,
)
from callguard.logging import (
    StructuredLogger,
    get_logger,
    log_exception,
    log_info,
    log_warning,
)

T = TypeVar("T")


def _is_async_callable(operation: object) -> bool:
    if not callable(operation):
        return False
    if inspect.iscoroutinefunction(operation):
        return True
    return inspect.iscoroutinefunction(getattr(operation, "__call__", None))


def _callable_name(operation: object) -> str:
    callable_name = getattr(operation, "__qualname__", None)
    if callable_name is None:
        callable_name = getattr(operation, "__name__", None)
    if callable_name is None:
        callable_name = operation.__class__.__qualname__
    return str(callable_name)


@dataclass(frozen=True, slots=True)
class Invocation(Generic[T]):
    """Handle for one dispatched call.

    Attributes:
        name: Guard name.
        status: Guard status captured at call time.
        outcome: Future resolved with the result, or with the failure that
            ended the call.
    """

    name: str
    status: GuardStatus
    outcome: "asyncio.Future[T]"

    @property
    def admitted(self) -> bool:
        """Whether the call was allowed to reach the wrapped operation."""
        if not self.outcome.done() or self.outcome.cancelled():
            return True
        return not isinstance(self.outcome.exception(), BreakerOpenError)

    def __await__(self) -> Generator[Any, None, T]:
        return self.outcome.__await__()


class _PendingCall:
    """Settle-once bookkeeping shared by the completion path and the timeout."""

    __slots__ = ("settled", "timeout_handle")

    def __init__(self) -> None:
        self.settled = False
        self.timeout_handle: asyncio.TimerHandle | None = None

    def claim(self) -> bool:
        if self.settled:
            return False
        self.settled = True
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
        return True


class Guard(Generic[T]):
    """Handle that runs one async operation under guard protection.

    Obtain instances from ``GuardRegistry.register``; several handles may share
    the state of one name.
    """

    def __init__(
        self,
        name: str,
        operation: Callable[..., Awaitable[T]],
        *,
        storage: AbstractGuardStorage,
        policy: GuardPolicy,
        logger: StructuredLogger,
    ) -> None:
        self.name = name
        self._operation = operation
        self._storage = storage
        self._policy = policy
        self._logger = logger
        self._tasks: set[asyncio.Task[Any]] = set()

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _settle(
        self,
        outcome: "asyncio.Future[T]",
        status_at_call_time: GuardStatus,
        *,
        error: BaseException | None,
        result: T | None,
    ) -> None:
        try:
            await self._policy.process_result(self.name, error, status_at_call_time)
        except Exception as exc:
            log_exception(self._logger, "guard.storage_failed", guard=self.name)
            if not outcome.done():
                storage_error = GuardStorageError(self.name, "process_result")
                storage_error.__cause__ = exc
                outcome.set_exception(storage_error)
            return
        if outcome.done():
            return
        if error is not None:
            outcome.set_exception(error)
        else:
            outcome.set_result(result)  # type: ignore[arg-type]

    async def _release_trial(self, error: BaseException) -> None:
        """Count an abandoned ``HALF_OPEN`` call as failed, reopening the guard."""
        log_warning(
            self._logger,
            "guard.trial_abandoned",
            guard=self.name,
            error=error.__class__.__name__,
        )
        try:
            await self._policy.process_result(self.name, error, GuardStatus.HALF_OPEN)
        except Exception:
            log_exception(self._logger, "guard.storage_failed", guard=self.name)

    def _on_timeout(
        self,
        pending: _PendingCall,
        outcome: "asyncio.Future[T]",
        status_at_call_time: GuardStatus,
        timeout_seconds: float,
    ) -> None:
        pending.timeout_handle = None
        if not pending.claim():
            return
        log_warning(
            self._logger,
            "guard.timeout",
            guard=self.name,
            timeout_seconds=timeout_seconds,
        )
        error = GuardTimeoutError(self.name, timeout_seconds)
        self._track(
            asyncio.create_task(
                self._settle(outcome, status_at_call_time, error=error, result=None),
                name=f"callguard:{self.name}:timeout",
            )
        )

    async def _run(
        self,
        pending: _PendingCall,
        outcome: "asyncio.Future[T]",
        status_at_call_time: GuardStatus,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> None:
        try:
            result = await self._operation(*args, **kwargs)
        except asyncio.CancelledError as exc:
            if pending.claim():
                outcome.cancel()
                if status_at_call_time == GuardStatus.HALF_OPEN:
                    self._track(
                        asyncio.create_task(
                            self._release_trial(exc),
                            name=f"callguard:{self.name}:release",
                        )
                    )
            raise
        except Exception as exc:
            if pending.claim():
                await self._settle(outcome, status_at_call_time, error=exc, result=None)
            return
        if pending.claim():
            await self._settle(outcome, status_at_call_time, error=None, result=result)

    async def execute(self, *args: Any, **kwargs: Any) -> Invocation[T]:
        """Dispatch the wrapped operation if the guard admits the call.

        Returns as soon as the call is admitted and dispatched, or rejected.
        The returned ``Invocation`` carries the call-time status and a future
        for the outcome.

        Raises:
            GuardStorageError: When the state store fails during admission.
        """
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[T] = loop.create_future()

        try:
            admission = await self._policy.admit(self.name)
        except Exception as exc:
            log_exception(self._logger, "guard.storage_failed", guard=self.name)
            raise GuardStorageError(self.name, "admit") from exc

        status_at_call_time = admission.status
        if not admission.admitted:
            log_info(
                self._logger,
                "guard.rejected",
                guard=self.name,
                status=str(status_at_call_time),
                retry_after=admission.retry_after,
            )
            outcome.set_exception(
                BreakerOpenError(
                    self.name,
                    str(status_at_call_time),
                    retry_after=admission.retry_after,
                )
            )
            return Invocation(self.name, status_at_call_time, outcome)

        timeout_seconds = admission.config.call_timeout_seconds
        pending = _PendingCall()
        try:
            pending.timeout_handle = loop.call_later(
                timeout_seconds,
                self._on_timeout,
                pending,
                outcome,
                status_at_call_time,
                timeout_seconds,
            )
            self._track(
                asyncio.create_task(
                    self._run(pending, outcome, status_at_call_time, args, kwargs),
                    name=f"callguard:{self.name}:{_callable_name(self._operation)}",
                )
            )
        except Exception as exc:
            pending.claim()
            if admission.holds_trial_slot:
                await self._release_trial(exc)
            raise
        return Invocation(self.name, status_at_call_time, outcome)

    async def call(self, *args: Any, **kwargs: Any) -> T:
        """Invoke the wrapped operation under guard protection and await it.

        Returns:
            The operation's result when admitted and successful.

        Raises:
            BreakerOpenError: When the call is rejected.
            GuardTimeoutError: When the operation does not answer in time.
            Exception: The operation's own exception when it fails.
        """
        invocation = await self.execute(*args, **kwargs)
        return await invocation


class GuardRegistry:
    """Application-owned registry of guards sharing one state store."""

    def __init__(
        self,
        *,
        storage: AbstractGuardStorage | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Build a registry with optional custom dependencies.

        Args:
            storage: State storage backend. Defaults to in-memory storage.
            logger: Structured logger. Defaults to this module's structlog logger.
        """
        self._storage = InMemoryGuardStorage() if storage is None else storage
        self._logger = get_logger(__name__) if logger is None else logger
        self._policy = GuardPolicy(self._storage, logger=self._logger)

    @property
    def storage(self) -> AbstractGuardStorage:
        return self._storage

    async def register(
        self,
        name: str,
        operation: Callable[..., Awaitable[T]],
        config: GuardConfig | None = None,
    ) -> Guard[T]:
        """Bind ``operation`` to the guard state stored under ``name``.

        The first registration of a name fixes its configuration; later
        registrations reuse the stored state and ignore ``config``.

        Raises:
            ConfigurationError: When ``name`` is empty, ``operation`` is not an
                async callable, or ``config`` is not a ``GuardConfig``.
        """
        if not isinstance(name, str) or not name.strip():
            raise ConfigurationError("guard name must be a non-empty string")
        if not _is_async_callable(operation):
            raise ConfigurationError(
                f"operation for guard {name!r} must be an async callable"
            )
        if config is not None and not isinstance(config, GuardConfig):
            raise ConfigurationError(f"config for guard {name!r} must be GuardConfig")

        effective = GuardConfig() if config is None else config
        if await self._storage.create(name, effective):
            log_info(
                self._logger,
                "guard.registered",
                guard=name,
                **effective.as_options(),
            )
        elif config is not None:
            stored = await self._storage.get_config(name)
            if stored != config:
                log_info(
                    self._logger,
                    "guard.config_ignored",
                    guard=name,
                    stored=stored.as_options(),
                    supplied=config.as_options(),
                )

        return Guard(
            name,
            operation,
            storage=self._storage,
            policy=self._policy,
            logger=self._logger,
        )

    async def get_status(self, name: str) -> GuardStatus:
        """Return the current status of ``name``."""
        return await self._storage.get_status(name)

    async def get_error_count(self, name: str) -> int:
        """Return failures recorded for ``name`` inside its window."""
        return await self._storage.count_failures_in_window(name)

    async def snapshot(self, name: str) -> GuardSnapshot:
        """Return a read-only view of the state stored for ``name``."""
        return await self._storage.snapshot(name)

    async def names(self) -> list[str]:
        """Return all registered guard names."""
        return await self._storage.names()
