"""Tests for DispatchConfig and its settings."""

from __future__ import annotations

from datetime import timedelta

import pytest

from cqrs_ddd_dispatch import (
    CommandFamily,
    ConfigurationError,
    DispatchConfig,
    EventStatus,
    HealthSettings,
    ReaperSettings,
    RetrySettings,
)


def test_default_topics() -> None:
    config = DispatchConfig()
    topic = config.topic_for(CommandFamily.USER_REGISTRATION)
    assert topic == "user-registration-topic"
    assert config.retry_topic_for("stock-order") == "stock-order-topic.retry"
    assert config.dlq_topic_for("invoice") == "invoice-topic.dlq"


def test_topic_overrides() -> None:
    config = DispatchConfig(topic_overrides={CommandFamily.INVOICE: "billing"})
    assert config.topic_for("invoice") == "billing"
    assert config.dlq_topic_for(CommandFamily.INVOICE) == "billing.dlq"
    assert config.topic_for("stock-control") == "stock-control-topic"


def test_defaults() -> None:
    config = DispatchConfig()
    assert config.families == tuple(CommandFamily)
    assert config.concurrency == 3
    assert config.retry.max_retries == 3
    assert config.retry.base_delay == 1.0
    assert config.retry.max_delay == 30.0
    assert config.reaper.interval_seconds == 3600.0
    assert config.reaper.stale_after_seconds == 7200.0
    assert config.kafka.group_id == "libsys-group"


def test_from_env() -> None:
    config = DispatchConfig.from_env(
        {
            "DISPATCH_BOOTSTRAP_SERVERS": "kafka:29092",
            "DISPATCH_GROUP_ID": "orders",
            "DISPATCH_CONCURRENCY": "5",
            "DISPATCH_MAX_RETRIES": "4",
            "DISPATCH_BASE_DELAY": "0.5",
            "DISPATCH_STALE_AFTER": "60",
            "DISPATCH_FAMILIES": "invoice, stock-order",
        }
    )
    assert config.kafka.bootstrap_servers == "kafka:29092"
    assert config.kafka.group_id == "orders"
    assert config.concurrency == 5
    assert config.retry.max_retries == 4
    assert config.retry.base_delay == 0.5
    assert config.retry.max_delay == 30.0
    assert config.reaper.stale_after_seconds == 60.0
    assert config.families == (CommandFamily.INVOICE, CommandFamily.STOCK_ORDER)


def test_from_env_empty_keeps_defaults() -> None:
    assert DispatchConfig.from_env({"DISPATCH_CONCURRENCY": ""}) == DispatchConfig()


def test_from_env_rejects_bad_values() -> None:
    with pytest.raises(ConfigurationError, match="DISPATCH_MAX_RETRIES"):
        DispatchConfig.from_env({"DISPATCH_MAX_RETRIES": "three"})
    with pytest.raises(ConfigurationError, match="DISPATCH_FAMILIES"):
        DispatchConfig.from_env({"DISPATCH_FAMILIES": "payroll"})


def test_invalid_settings() -> None:
    with pytest.raises(ConfigurationError):
        RetrySettings(base_delay=10.0, max_delay=1.0)
    with pytest.raises(ConfigurationError):
        RetrySettings(max_retries=-1)
    with pytest.raises(ConfigurationError):
        ReaperSettings(statuses=(EventStatus.COMPLETED,))
    with pytest.raises(ConfigurationError):
        ReaperSettings(interval_seconds=0)
    with pytest.raises(ConfigurationError):
        DispatchConfig(concurrency=0)
    with pytest.raises(ConfigurationError):
        DispatchConfig(families=())


def test_health_recent_window() -> None:
    assert DispatchConfig().health.recent_window == timedelta(days=1)
    config = DispatchConfig.from_env({"DISPATCH_RECENT_WINDOW": "3600"})
    assert config.health.recent_window == timedelta(hours=1)
    with pytest.raises(ConfigurationError):
        HealthSettings(recent_window_seconds=0)
