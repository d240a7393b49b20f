"""Settings loaded from ``TASKGATE_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from taskgate.dispatcher import DispatcherConfig
from taskgate.errors import ConfigError
from taskgate.models import RateLimit
from taskgate.ratelimit import parse_rate

ENV_PREFIX = "TASKGATE"


def _k(suffix: str) -> str:
    return f"{ENV_PREFIX}_{suffix}"


def _get(env: Mapping[str, str], suffix: str) -> str | None:
    raw = env.get(_k(suffix))
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


def _int(env: Mapping[str, str], suffix: str, default: int) -> int:
    raw = _get(env, suffix)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{_k(suffix)} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], suffix: str, default: float) -> float:
    raw = _get(env, suffix)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{_k(suffix)} must be a number, got {raw!r}") from None


@dataclass
class Settings:
    """Process-wide settings for a taskgate deployment."""

    db_path: str = "taskgate.db"
    batch_size: int = 10
    concurrency: int = 10
    max_attempts: int = 3
    task_timeout: float = 60.0
    stale_after: float = 600.0
    poll_interval: float = 120.0
    rate_limit: str | None = "30/hour"  # None disables the cycle limit
    rate_limit_resource: str = "task_executor"
    escalation_handler: str = "human-review"
    alert_webhook_url: str | None = None
    alert_throttle_minutes: float = 60.0

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        """
        Build settings from the environment.

        Raises:
            ConfigError: If a variable is set but malformed.
        """
        env = os.environ if env is None else env
        defaults = cls()

        rate_limit = defaults.rate_limit
        raw_rate = _get(env, "RATE_LIMIT")
        if raw_rate is not None:
            rate_limit = None if raw_rate.lower() in {"off", "none", "0"} else raw_rate

        settings = cls(
            db_path=_get(env, "DB_PATH") or defaults.db_path,
            batch_size=_int(env, "BATCH_SIZE", defaults.batch_size),
            concurrency=_int(env, "CONCURRENCY", defaults.concurrency),
            max_attempts=_int(env, "MAX_ATTEMPTS", defaults.max_attempts),
            task_timeout=_float(env, "TASK_TIMEOUT", defaults.task_timeout),
            stale_after=_float(env, "STALE_AFTER", defaults.stale_after),
            poll_interval=_float(env, "POLL_INTERVAL", defaults.poll_interval),
            rate_limit=rate_limit,
            rate_limit_resource=_get(env, "RATE_LIMIT_RESOURCE") or defaults.rate_limit_resource,
            escalation_handler=_get(env, "ESCALATION_HANDLER") or defaults.escalation_handler,
            alert_webhook_url=_get(env, "ALERT_WEBHOOK_URL"),
            alert_throttle_minutes=_float(env, "ALERT_THROTTLE_MINUTES", defaults.alert_throttle_minutes),
        )
        # Fail at startup rather than on the first cycle
        settings.cycle_rate_limit()
        return settings

    def cycle_rate_limit(self) -> RateLimit | None:
        if self.rate_limit is None:
            return None
        count, window = parse_rate(self.rate_limit)
        return RateLimit(self.rate_limit_resource, count, window)

    def dispatcher_config(self) -> DispatcherConfig:
        """Build the dispatcher configuration these settings describe."""
        try:
            return DispatcherConfig(
                batch_size=self.batch_size,
                concurrency=self.concurrency,
                max_attempts=self.max_attempts,
                task_timeout=self.task_timeout,
                stale_after=self.stale_after,
                escalation_handler=self.escalation_handler,
                rate_limit=self.cycle_rate_limit(),
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e
