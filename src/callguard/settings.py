from __future__ import annotations

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from callguard.circuit_breaker.state import GuardConfig
from callguard.logging import get_log_level_value


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class GuardSettings(BaseSettings):
    """Default guard configuration read from ``CALLGUARD_*`` variables."""

    model_config = prefixed_settings_config("CALLGUARD_")

    window: int = 5
    threshold: int = 10
    request_timeout: float = 30.0
    cb_timeout: float = 60.0
    log_level: str = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip().upper()
            get_log_level_value(normalized)
            return normalized
        return value

    @model_validator(mode="after")
    def _validate_guard_settings(self) -> GuardSettings:
        if self.window < 1:
            raise ValueError("window must be >= 1")
        if self.threshold < 1:
            raise ValueError("threshold must be >= 1")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")
        if self.cb_timeout < 0:
            raise ValueError("cb_timeout must be >= 0")
        return self

    def to_guard_config(self) -> GuardConfig:
        """Build the ``GuardConfig`` these settings describe."""
        return GuardConfig.from_options(
            window=self.window,
            threshold=self.threshold,
            request_timeout=self.request_timeout,
            cb_timeout=self.cb_timeout,
        )
