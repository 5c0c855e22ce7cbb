"""
Configuration validation, structured logging and UTC helpers.
"""
import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from charachat.core.clock import (
    end_of_month,
    ensure_utc,
    start_of_next_day,
    start_of_next_month,
    start_of_previous_month,
    whole_days_between,
)
from charachat.core.config import Settings, validate_config
from charachat.core.logging import (
    ContextFilter,
    JsonFormatter,
    PrettyFormatter,
    account_id_ctx_var,
    bind_account_id,
    latency_bucket_ms,
    request_id_ctx_var,
)


def _settings(**overrides):
    values = {
        "DATABASE_URL": "sqlite://",
        "JWT_SECRET": "secret",
        "STRIPE_SECRET_KEY": "sk_test",
        "STRIPE_WEBHOOK_SECRET": "whsec",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _record(msg="hello %s", args=("world",), **extra):
    record = logging.LogRecord("charachat.test", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_complete_config_passes_strict_validation():
    assert validate_config(strict=True, settings_obj=_settings()) is True


def test_missing_config_raises_in_strict_mode():
    with pytest.raises(RuntimeError, match="STRIPE_WEBHOOK_SECRET"):
        validate_config(strict=True, settings_obj=_settings(STRIPE_WEBHOOK_SECRET=None))


def test_missing_config_only_warns_by_default(caplog):
    cfg = _settings(JWT_SECRET=None)
    with caplog.at_level(logging.WARNING, logger="charachat.test.config"):
        assert validate_config(settings_obj=cfg, logger=logging.getLogger("charachat.test.config")) is True
    assert "Missing required configuration: JWT_SECRET" in caplog.text


def test_reward_and_cycle_defaults():
    cfg = Settings(_env_file=None)
    assert cfg.DAILY_REWARD_CREDITS == 50
    assert cfg.DAILY_REWARD_PREMIUM_CREDITS == 100
    assert cfg.DAILY_FIRST_CHAT_REWARD_CREDITS == 25
    assert cfg.CREDIT_CYCLE_DAYS == 30


def test_json_formatter_includes_extras_and_request_id():
    record = _record(account_id="acct_1", amount=-5, request_id="rid-1")

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "hello world"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "charachat.test"
    assert payload["request_id"] == "rid-1"
    assert payload["account_id"] == "acct_1"
    assert payload["amount"] == -5
    assert payload["timestamp"].endswith("Z")


def test_pretty_formatter_appends_fields():
    line = PrettyFormatter().format(_record(account_id="acct_2", request_id="rid-2"))
    assert "[rid=rid-2]" in line
    assert "hello world" in line
    assert "account_id=acct_2" in line


def test_context_filter_fills_request_and_account_ids():
    rid_token = request_id_ctx_var.set("rid-ctx")
    account_token = account_id_ctx_var.set(None)
    try:
        bind_account_id("acct_ctx")
        record = _record()
        explicit = _record(account_id="acct_explicit")
        ContextFilter().filter(record)
        ContextFilter().filter(explicit)
    finally:
        account_id_ctx_var.reset(account_token)
        request_id_ctx_var.reset(rid_token)

    assert record.request_id == "rid-ctx"
    assert record.account_id == "acct_ctx"
    assert explicit.account_id == "acct_explicit"


@pytest.mark.parametrize(
    "latency,bucket",
    [(None, "unknown"), (5, "<10ms"), (50, "10-100ms"), (250, "100-500ms"), (750, "500-1000ms"), (1500, ">=1000ms")],
)
def test_latency_buckets(latency, bucket):
    assert latency_bucket_ms(latency) == bucket


def test_ensure_utc_attaches_timezone():
    naive = datetime(2025, 3, 15, 12, 0)
    assert ensure_utc(naive) == datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
    assert ensure_utc(None) is None


def test_month_boundaries_roll_over_years():
    december = datetime(2024, 12, 20, 8, 30, tzinfo=timezone.utc)
    january = datetime(2025, 1, 5, tzinfo=timezone.utc)

    assert start_of_next_month(december) == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert start_of_previous_month(january) == datetime(2024, 12, 1, tzinfo=timezone.utc)
    assert end_of_month(datetime(2024, 2, 10, tzinfo=timezone.utc)) == datetime(
        2024, 2, 29, 23, 59, 59, 999999, tzinfo=timezone.utc
    )
    assert start_of_next_day(december) == datetime(2024, 12, 21, tzinfo=timezone.utc)


def test_whole_days_between_truncates_partial_days():
    start = datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert whole_days_between(start + timedelta(days=29, hours=23), start) == 29
    assert whole_days_between(start + timedelta(days=30), start) == 30
    assert whole_days_between(start, start + timedelta(days=2)) == -2
