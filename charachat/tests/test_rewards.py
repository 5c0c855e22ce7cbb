"""
Daily login and first-chat rewards.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from charachat.core.database import credit_transactions, reward_claims
from charachat.core.errors import AlreadyClaimedError
from charachat.features.credits import rewards
from charachat.features.credits.ledger import get_current_balance
from charachat.features.credits.rewards import (
    claim_daily_reward,
    claim_first_chat_reward,
    get_daily_reward_status,
    get_first_chat_reward_status,
)
from charachat.features.subscriptions.service import activate_subscription
from charachat.models.credits import ClaimKind, TransactionKind


def _reward_rows(db, account_id):
    return db.execute(
        select(credit_transactions).where(
            credit_transactions.c.account_id == account_id,
            credit_transactions.c.transaction_type == TransactionKind.SYSTEM_REWARD.value,
        )
    ).fetchall()


def test_daily_reward_granted_once_per_day(db, now):
    grant = claim_daily_reward(db, "acct_daily", now=now)
    assert grant.credits_granted == 50
    assert grant.new_balance == 50

    with pytest.raises(AlreadyClaimedError) as exc_info:
        claim_daily_reward(db, "acct_daily", now=now + timedelta(hours=3))

    assert exc_info.value.can_claim_at == datetime(2025, 3, 16, tzinfo=timezone.utc)
    assert exc_info.value.details == {"can_claim_at": "2025-03-16T00:00:00+00:00"}
    assert get_current_balance(db, "acct_daily", now=now) == 50
    rows = _reward_rows(db, "acct_daily")
    assert len(rows) == 1
    assert rows[0].notes == ClaimKind.DAILY_LOGIN.value


def test_daily_reward_available_again_after_utc_midnight(db, now):
    claim_daily_reward(db, "acct_next", now=now)
    grant = claim_daily_reward(db, "acct_next", now=datetime(2025, 3, 16, 0, 0, 1, tzinfo=timezone.utc))

    assert grant.new_balance == 100


def test_premium_accounts_get_larger_daily_reward(db, now):
    activate_subscription(
        db,
        "acct_premium",
        "premium",
        "sub_premium",
        next_billing_at=now + timedelta(days=30),
        now=now,
    )

    grant = claim_daily_reward(db, "acct_premium", now=now)

    assert grant.credits_granted == 100
    assert grant.new_balance == 600
    with pytest.raises(AlreadyClaimedError):
        claim_daily_reward(db, "acct_premium", now=now)


def test_concurrent_daily_claim_loses_on_unique_constraint(db, now, monkeypatch):
    claim_daily_reward(db, "acct_race", now=now)

    # Second claimant passed the existence check before the first committed
    monkeypatch.setattr(rewards, "_has_claim", lambda db, account_id, kind, now: False)

    with pytest.raises(AlreadyClaimedError):
        claim_daily_reward(db, "acct_race", now=now)

    assert get_current_balance(db, "acct_race", now=now) == 50
    assert len(_reward_rows(db, "acct_race")) == 1


def test_first_chat_reward_returns_none_second_time(db, now):
    first = claim_first_chat_reward(db, "acct_chat", now=now)
    second = claim_first_chat_reward(db, "acct_chat", now=now + timedelta(minutes=5))

    assert first.credits_granted == 25
    assert first.new_balance == 25
    assert second is None
    rows = _reward_rows(db, "acct_chat")
    assert len(rows) == 1
    assert rows[0].notes == ClaimKind.DAILY_FIRST_CHAT.value


def test_first_chat_and_daily_rewards_are_independent(db, now):
    claim_daily_reward(db, "acct_both", now=now)
    assert claim_first_chat_reward(db, "acct_both", now=now) is not None
    assert get_current_balance(db, "acct_both", now=now) == 75

    claims = db.execute(
        select(func.count()).select_from(reward_claims).where(reward_claims.c.account_id == "acct_both")
    ).scalar()
    assert claims == 2


def test_reward_status_reports_claim_and_next_boundary(db, now):
    before = get_daily_reward_status(db, "acct_status", now=now)
    assert before.claimed is False
    assert before.can_claim_at == datetime(2025, 3, 16, tzinfo=timezone.utc)

    claim_daily_reward(db, "acct_status", now=now)

    after = get_daily_reward_status(db, "acct_status", now=now)
    assert after.claimed is True
    assert after.can_claim_at == before.can_claim_at
    assert get_first_chat_reward_status(db, "acct_status", now=now).claimed is False
