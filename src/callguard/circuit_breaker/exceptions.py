"""Guard exceptions.

Callers can distinguish between:
  - A call being rejected because the guard is open or probing.
  - A call that timed out before the wrapped operation answered.
  - Invalid registration input.

Exceptions raised by the wrapped operation itself are delivered unchanged.
"""


class GuardError(Exception):
    """Base exception for the guard package."""


class ConfigurationError(GuardError, ValueError):
    """Raised for invalid registration input or configuration values."""


class GuardNotFoundError(GuardError, LookupError):
    """Raised when no state exists for a guard name.

    Attributes:
        guard_name: Name that was looked up.
    """

    def __init__(self, guard_name: str) -> None:
        self.guard_name = guard_name
        super().__init__(f"guard_not_found: {guard_name}")


class GuardStorageError(GuardError):
    """Raised when the state store fails while serving a guard call."""

    def __init__(self, guard_name: str, operation: str) -> None:
        self.guard_name = guard_name
        self.operation = operation
        super().__init__(f"guard_storage_failed: {guard_name} during {operation}")


class BreakerOpenError(GuardError):
    """Raised when a call is rejected without invoking the operation.

    Attributes:
        guard_name: Name of the guard rejecting the call.
        status: Guard status observed at call time.
        retry_after: Seconds until a probe may be attempted. ``0.0`` when the
            rejection is due to an occupied probe slot.
    """

    def __init__(self, guard_name: str, status: str, retry_after: float) -> None:
        """Initialize a rejection payload.

        Args:
            guard_name: Guard rejecting the call.
            status: Status observed at call time.
            retry_after: Seconds until the next probe window opens.
        """
        self.guard_name = guard_name
        self.status = status
        self.retry_after = retry_after
        super().__init__(
            f"breaker_open: {guard_name} status={status} retry_after={retry_after:g}s"
        )


class GuardTimeoutError(GuardError, TimeoutError):
    """Raised when the wrapped operation does not answer in time.

    Attributes:
        guard_name: Name of the guard that stopped waiting.
        timeout_seconds: Configured call timeout.
    """

    def __init__(self, guard_name: str, timeout_seconds: float) -> None:
        self.guard_name = guard_name
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"guard_timeout: {guard_name} timeout_seconds={timeout_seconds:g}"
        )
