"""Dispatch configuration, built once and passed to every component."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .commands.envelope import EventStatus
from .commands.families import CommandFamily
from .exceptions import ConfigurationError


@dataclass(frozen=True)
class KafkaSettings:
    """Broker connection settings.

    Attributes:
        bootstrap_servers: Kafka bootstrap servers.
        group_id: Base consumer group; the retry and DLQ consumers append
            ``.retry`` and ``.dlq``.
        client_options: Extra kwargs passed to aiokafka clients.
    """

    bootstrap_servers: str | list[str] = "localhost:9092"
    group_id: str = "libsys-group"
    client_options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetrySettings:
    """Backoff: ``min(2 ** retry_count * base_delay, max_delay)`` seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    retry_unexpected_errors: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("base_delay and max_delay must be >= 0")
        if self.base_delay > self.max_delay:
            raise ConfigurationError("base_delay must be <= max_delay")


@dataclass(frozen=True)
class ReaperSettings:
    """Stale in-flight sweep (hourly, 2h cutoff by default).

    ``RETRY`` records are measured from their last transition, so a retry
    whose message was lost is failed once it has been idle past the cutoff.
    """

    interval_seconds: float = 3600.0
    stale_after_seconds: float = 7200.0
    statuses: tuple[EventStatus, ...] = (
        EventStatus.PENDING,
        EventStatus.PROCESSING,
        EventStatus.RETRY,
    )

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0 or self.stale_after_seconds <= 0:
            raise ConfigurationError("reaper interval and cutoff must be > 0")
        if any(s.is_terminal for s in self.statuses):
            raise ConfigurationError("reaper can only sweep non-terminal statuses")


@dataclass(frozen=True)
class HealthSettings:
    """Ledger health thresholds and the window of ``GET /events/recent``."""

    interval_seconds: float = 900.0
    min_success_rate: float = 0.8
    max_in_flight: int = 100
    recent_window_seconds: float = 86400.0

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0 or self.recent_window_seconds <= 0:
            raise ConfigurationError("health interval and recent window must be > 0")

    @property
    def recent_window(self) -> timedelta:
        return timedelta(seconds=self.recent_window_seconds)


@dataclass(frozen=True)
class DispatchConfig:
    """Root configuration for producers, dispatchers and background workers.

    Attributes:
        families: Families served by this process.
        concurrency: Parallel workers (partitions) per family.
        topic_overrides: Optional base topic name per family; the default is
            ``<family>-topic``.
    """

    kafka: KafkaSettings = field(default_factory=KafkaSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    reaper: ReaperSettings = field(default_factory=ReaperSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    families: tuple[CommandFamily, ...] = tuple(CommandFamily)
    concurrency: int = 3
    topic_overrides: Mapping[CommandFamily, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ConfigurationError("concurrency must be >= 1")
        if not self.families:
            raise ConfigurationError("at least one command family is required")

    # -- topic naming -----------------------------------------------------

    def topic_for(self, family: CommandFamily | str) -> str:
        resolved = CommandFamily(family)
        return self.topic_overrides.get(resolved, f"{resolved.value}-topic")

    def retry_topic_for(self, family: CommandFamily | str) -> str:
        return f"{self.topic_for(family)}.retry"

    def dlq_topic_for(self, family: CommandFamily | str) -> str:
        return f"{self.topic_for(family)}.dlq"

    # -- environment ------------------------------------------------------

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> DispatchConfig:
        """Build a config from ``DISPATCH_*`` variables; unset keys keep defaults.

        Recognised: ``DISPATCH_BOOTSTRAP_SERVERS``, ``DISPATCH_GROUP_ID``,
        ``DISPATCH_CONCURRENCY``, ``DISPATCH_MAX_RETRIES``,
        ``DISPATCH_BASE_DELAY``, ``DISPATCH_MAX_DELAY``,
        ``DISPATCH_REAPER_INTERVAL``, ``DISPATCH_STALE_AFTER``,
        ``DISPATCH_RECENT_WINDOW``,
        ``DISPATCH_FAMILIES`` (comma separated family values).
        """
        env = os.environ if environ is None else environ

        def _get(name: str, cast: Any, default: Any) -> Any:
            raw = env.get(f"DISPATCH_{name}")
            if raw is None or raw == "":
                return default
            try:
                return cast(raw)
            except ValueError as e:
                raise ConfigurationError(f"DISPATCH_{name}={raw!r}: {e}") from e

        kafka = KafkaSettings(
            bootstrap_servers=_get(
                "BOOTSTRAP_SERVERS", str, KafkaSettings.bootstrap_servers
            ),
            group_id=_get("GROUP_ID", str, KafkaSettings.group_id),
        )
        retry = RetrySettings(
            max_retries=_get("MAX_RETRIES", int, RetrySettings.max_retries),
            base_delay=_get("BASE_DELAY", float, RetrySettings.base_delay),
            max_delay=_get("MAX_DELAY", float, RetrySettings.max_delay),
        )
        reaper = ReaperSettings(
            interval_seconds=_get(
                "REAPER_INTERVAL", float, ReaperSettings.interval_seconds
            ),
            stale_after_seconds=_get(
                "STALE_AFTER", float, ReaperSettings.stale_after_seconds
            ),
        )
        health = HealthSettings(
            recent_window_seconds=_get(
                "RECENT_WINDOW", float, HealthSettings.recent_window_seconds
            ),
        )
        families_raw = env.get("DISPATCH_FAMILIES")
        if families_raw:
            try:
                families = tuple(
                    CommandFamily(name.strip())
                    for name in families_raw.split(",")
                    if name.strip()
                )
            except ValueError as e:
                raise ConfigurationError(f"DISPATCH_FAMILIES: {e}") from e
        else:
            families = tuple(CommandFamily)
        return cls(
            kafka=kafka,
            retry=retry,
            reaper=reaper,
            health=health,
            families=families,
            concurrency=_get("CONCURRENCY", int, 3),
        )
