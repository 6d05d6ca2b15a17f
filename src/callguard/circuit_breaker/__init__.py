"""Framework-agnostic async call guard.

This package implements the circuit breaker pattern with a sliding failure
window.

Key behavior notes:
  - Failures are tallied per whole second. Buckets older than the configured
    window are purged lazily when the count is read; nothing runs in the
    background.
  - ``OPEN`` turns into ``HALF_OPEN`` only when a call arrives after the open
    duration has elapsed. That call becomes the single probe; others arriving
    while it is in flight are rejected. A trial call that is cancelled counts
    as failed and reopens the guard.
  - Every call is bounded by a timeout. Whichever of completion or timeout
    happens first decides the outcome; the wrapped operation is never
    cancelled.
  - The first registration of a name fixes its configuration.
"""

from callguard.circuit_breaker.breaker import Guard, GuardRegistry, Invocation
from callguard.circuit_breaker.exceptions import (
    BreakerOpenError,
    ConfigurationError,
    GuardError,
    GuardNotFoundError,
    GuardStorageError,
    GuardTimeoutError,
)
from callguard.circuit_breaker.policy import Admission, GuardPolicy
from callguard.circuit_breaker.state import GuardConfig, GuardSnapshot, GuardStatus
from callguard.circuit_breaker.storage import (
    AbstractGuardStorage,
    InMemoryGuardStorage,
)

__all__ = [
    "AbstractGuardStorage",
    "Admission",
    "BreakerOpenError",
    "ConfigurationError",
    "Guard",
    "GuardConfig",
    "GuardError",
    "GuardNotFoundError",
    "GuardPolicy",
    "GuardRegistry",
    "GuardSnapshot",
    "GuardStatus",
    "GuardStorageError",
    "GuardTimeoutError",
    "InMemoryGuardStorage",
    "Invocation",
]
