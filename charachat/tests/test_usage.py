"""
Usage pricing and the log-then-charge pipeline.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from charachat.core.database import credit_transactions, service_credit_costs
from charachat.features.credits.ledger import create_transaction, get_current_balance
from charachat.features.usage import service as usage_service
from charachat.features.usage.pricing import DEFAULT_SERVICE_COSTS, PRICING, calculate_credits
from charachat.features.usage.service import (
    estimate_service_cost,
    get_service_costs,
    get_usage_log,
    get_user_monthly_usage,
    log_service_usage,
    process_usage_log,
    process_usage_logs,
)
from charachat.models.credits import TransactionKind
from charachat.models.usage import ServiceKind, UsageMetrics


def test_every_service_has_pricing_and_default_rate():
    assert set(PRICING) == set(ServiceKind)
    assert set(DEFAULT_SERVICE_COSTS) == set(ServiceKind)


@pytest.mark.parametrize(
    "service_type,metrics,rate,expected",
    [
        (ServiceKind.LLM_CHAT_SAFE, UsageMetrics(input_tokens=1000, output_tokens=500), "1", 2),
        (ServiceKind.LLM_CHAT_SAFE, UsageMetrics(input_tokens=0, output_tokens=0), "1", 0),
        (ServiceKind.LLM_CHAT_NSFW, UsageMetrics(input_tokens=600, output_tokens=400), "2", 2),
        (ServiceKind.LLM_STORY_GENERATION_SFW, UsageMetrics(), "5", 5),
        (ServiceKind.IMAGE_GENERATION, UsageMetrics(images_processed=3), "10", 30),
        (ServiceKind.IMAGE_GENERATION, UsageMetrics(), "10", 10),
        (ServiceKind.TTS_DEFAULT, UsageMetrics(characters_processed=2500), "1", 3),
        (ServiceKind.STT_DEFAULT, UsageMetrics(additional_metadata={"duration_minutes": 2.5}), "1", 3),
    ],
)
def test_calculate_credits(service_type, metrics, rate, expected):
    assert calculate_credits(service_type, metrics, Decimal(rate)) == expected


def test_service_costs_are_seeded(db):
    costs = get_service_costs(db)
    assert {cost.service_type for cost in costs} == set(ServiceKind)


def test_estimate_uses_configured_rate(db):
    assert estimate_service_cost(db, ServiceKind.IMAGE_GENERATION, UsageMetrics(images_processed=2)) == 20
    assert estimate_service_cost(db, "LLM_CHAT_NSFW", UsageMetrics(input_tokens=1000)) == 2


def test_log_then_process_charges_once(db, now):
    create_transaction(db, "acct_use", TransactionKind.GRANT_INITIAL, 50, now=now)

    log = log_service_usage(
        db,
        "acct_use",
        ServiceKind.LLM_CHAT_SAFE,
        UsageMetrics(input_tokens=1200, output_tokens=300),
        conversation_id="conv_1",
        model_name="test-model",
        now=now,
    )
    assert log.processed is False
    assert get_current_balance(db, "acct_use", now=now) == 50

    assert process_usage_log(db, log.id, now=now) == 2
    assert process_usage_log(db, log.id, now=now) is None

    assert get_current_balance(db, "acct_use", now=now) == 48
    charged = get_usage_log(db, log.id)
    assert charged.processed is True
    assert charged.credits_consumed == 2

    consumption = db.execute(
        select(credit_transactions).where(
            credit_transactions.c.account_id == "acct_use",
            credit_transactions.c.transaction_type == TransactionKind.CONSUMPTION.value,
        )
    ).fetchall()
    assert len(consumption) == 1
    assert consumption[0].amount_credits == -2
    assert consumption[0].related_usage_log_id == log.id


def test_insufficient_credits_marks_log_without_charging(db, now):
    create_transaction(db, "acct_poor", TransactionKind.GRANT_INITIAL, 5, now=now)
    log = log_service_usage(db, "acct_poor", ServiceKind.IMAGE_GENERATION, UsageMetrics(images_processed=1), now=now)

    assert process_usage_log(db, log.id, now=now) == 0

    marked = get_usage_log(db, log.id)
    assert marked.processed is True
    assert marked.credits_consumed == 0
    assert marked.additional_metadata["error"] == "insufficient_credits"
    assert get_current_balance(db, "acct_poor", now=now) == 5


def test_inactive_service_is_processed_for_free(db, now):
    db.execute(
        update(service_credit_costs)
        .where(service_credit_costs.c.service_type == ServiceKind.TTS_DEFAULT.value)
        .values(is_active=False)
    )
    db.commit()
    create_transaction(db, "acct_tts", TransactionKind.GRANT_INITIAL, 10, now=now)
    log = log_service_usage(db, "acct_tts", ServiceKind.TTS_DEFAULT, UsageMetrics(characters_processed=5000), now=now)

    assert estimate_service_cost(db, ServiceKind.TTS_DEFAULT, UsageMetrics(characters_processed=5000)) == 0
    assert process_usage_log(db, log.id, now=now) == 0
    assert get_usage_log(db, log.id).processed is True
    assert get_current_balance(db, "acct_tts", now=now) == 10


def test_batch_continues_after_failure(db, now, monkeypatch):
    create_transaction(db, "acct_batch", TransactionKind.GRANT_INITIAL, 100, now=now)
    first = log_service_usage(db, "acct_batch", ServiceKind.IMAGE_GENERATION, UsageMetrics(), now=now)
    second = log_service_usage(
        db, "acct_batch", ServiceKind.IMAGE_GENERATION, UsageMetrics(), now=now + timedelta(seconds=1)
    )

    real_process = usage_service.process_usage_log

    def flaky_process(db, usage_log_id, *, now=None):
        if usage_log_id == first.id:
            raise RuntimeError("provider outage")
        return real_process(db, usage_log_id, now=now)

    monkeypatch.setattr(usage_service, "process_usage_log", flaky_process)

    assert process_usage_logs(db, now=now) == 1
    assert get_usage_log(db, first.id).processed is False
    assert get_usage_log(db, second.id).processed is True
    assert get_current_balance(db, "acct_batch", now=now) == 90


def test_monthly_usage_aggregates_processed_logs(db, now):
    create_transaction(db, "acct_month", TransactionKind.GRANT_INITIAL, 100, now=now)
    for _ in range(2):
        log_service_usage(db, "acct_month", ServiceKind.IMAGE_GENERATION, UsageMetrics(), now=now)
    log_service_usage(db, "acct_month", ServiceKind.LLM_STORY_GENERATION_SFW, UsageMetrics(), now=now)
    # Last month's usage is excluded
    log_service_usage(db, "acct_month", ServiceKind.IMAGE_GENERATION, UsageMetrics(), now=now - timedelta(days=30))

    assert process_usage_logs(db, now=now) == 4

    usage = get_user_monthly_usage(db, "acct_month", now=now)
    assert usage["total_logs"] == 3
    assert usage["total_credits_spent"] == 25
    assert usage["usage_by_service"] == {
        "IMAGE_GENERATION": {"count": 2, "credits_spent": 20},
        "LLM_STORY_GENERATION_SFW": {"count": 1, "credits_spent": 5},
    }
