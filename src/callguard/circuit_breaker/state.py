"""Guard state primitives."""

import math
from collections.abc import Mapping
from dataclasses import dataclass, fields
from datetime import datetime
from enum import StrEnum

from callguard.circuit_breaker.exceptions import ConfigurationError


class GuardStatus(StrEnum):
    """Guard status values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_OPTION_FIELDS = {
    "window": "window_seconds",
    "threshold": "failure_threshold",
    "request_timeout": "call_timeout_seconds",
    "cb_timeout": "open_duration_seconds",
}


def _check_seconds(field_name: str, value: object) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{field_name} must be a number")
    if not math.isfinite(value):
        raise ConfigurationError(f"{field_name} must be finite")


@dataclass(frozen=True, slots=True)
class GuardConfig:
    """Guard configuration values, fixed at first registration.

    Attributes:
        window_seconds: Width of the sliding failure-count window.
        failure_threshold: Failures within the window required to open.
        call_timeout_seconds: Seconds before an unanswered call counts as failed.
        open_duration_seconds: Seconds to stay ``OPEN`` before a probe is allowed.
    """

    window_seconds: int = 5
    failure_threshold: int = 10
    call_timeout_seconds: float = 30.0
    open_duration_seconds: float = 60.0

    def __post_init__(self) -> None:
        if isinstance(self.window_seconds, bool) or not isinstance(
            self.window_seconds, int
        ):
            raise ConfigurationError("window_seconds must be an int")
        if self.window_seconds < 1:
            raise ConfigurationError("window_seconds must be >= 1")
        if isinstance(self.failure_threshold, bool) or not isinstance(
            self.failure_threshold, int
        ):
            raise ConfigurationError("failure_threshold must be an int")
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be >= 1")
        _check_seconds("call_timeout_seconds", self.call_timeout_seconds)
        if self.call_timeout_seconds <= 0:
            raise ConfigurationError("call_timeout_seconds must be > 0")
        _check_seconds("open_duration_seconds", self.open_duration_seconds)
        if self.open_duration_seconds < 0:
            raise ConfigurationError("open_duration_seconds must be >= 0")

    @classmethod
    def from_options(
        cls,
        options: Mapping[str, object] | None = None,
        /,
        **kwargs: object,
    ) -> "GuardConfig":
        """Build a config from the external option names.

        Accepts ``window``, ``threshold``, ``request_timeout`` and ``cb_timeout``.
        Omitted options keep their defaults.

        Raises:
            ConfigurationError: On unknown option names or invalid values.
        """
        merged: dict[str, object] = dict(options or {})
        merged.update(kwargs)
        unknown = sorted(set(merged) - set(_OPTION_FIELDS))
        if unknown:
            raise ConfigurationError(f"unknown guard options: {', '.join(unknown)}")
        values = {_OPTION_FIELDS[key]: value for key, value in merged.items()}
        return cls(**values)  # type: ignore[arg-type]

    def as_options(self) -> dict[str, object]:
        """Return the config keyed by the external option names."""
        by_field = {field.name: getattr(self, field.name) for field in fields(self)}
        return {option: by_field[name] for option, name in _OPTION_FIELDS.items()}


@dataclass(frozen=True)
class GuardSnapshot:
    """Point-in-time view of one guard's stored state.

    Attributes:
        name: Guard name.
        status: Current guard status.
        failure_count: Failures inside the current window.
        probe_call_count: Probe calls admitted since entering ``HALF_OPEN``.
        last_transition_at: Timestamp of the most recent status change.
        config: Effective configuration.
    """

    name: str
    status: GuardStatus
    failure_count: int
    probe_call_count: int
    last_transition_at: datetime
    config: GuardConfig
