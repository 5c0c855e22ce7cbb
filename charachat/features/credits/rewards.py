"""
Once-per-day credit rewards.

Day boundaries are UTC midnight. Each claim writes a reward_claims row in the
same database transaction as its ledger entry; the unique
(account_id, claim_kind, claim_date) constraint makes a second grant on the
same day impossible even when two claims race.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from charachat.core.clock import ensure_utc, start_of_day, start_of_next_day, utc_now
from charachat.core.config import settings
from charachat.core.database import reward_claims, transactional
from charachat.core.errors import AlreadyClaimedError
from charachat.features.credits.ledger import append_transaction
from charachat.features.plans.service import is_user_premium
from charachat.models.credits import ClaimKind, RewardGrant, RewardStatus, TransactionKind

logger = logging.getLogger("charachat.credits.rewards")


def _has_claim(db: Session, account_id: str, kind: ClaimKind, now: datetime) -> bool:
    row = db.execute(
        select(reward_claims.c.id).where(
            reward_claims.c.account_id == account_id,
            reward_claims.c.claim_kind == kind.value,
            reward_claims.c.claim_date == start_of_day(now).date(),
        )
    ).first()
    return row is not None


def _grant(db: Session, account_id: str, kind: ClaimKind, amount: int, now: datetime) -> RewardGrant:
    """Write the ledger entry and the claim row as one unit. IntegrityError means claimed."""
    with transactional(db):
        result = append_transaction(
            db,
            account_id,
            TransactionKind.SYSTEM_REWARD,
            amount,
            notes=kind.value,
            now=now,
        )
        db.execute(
            insert(reward_claims).values(
                account_id=account_id,
                claim_kind=kind.value,
                claim_date=start_of_day(now).date(),
                transaction_id=result.transaction.id,
                created_at=now,
            )
        )
    return RewardGrant(credits_granted=amount, new_balance=result.new_balance)


def claim_daily_reward(db: Session, account_id: str, *, now: Optional[datetime] = None) -> RewardGrant:
    """
    Grant the daily login reward.

    Premium accounts receive DAILY_REWARD_PREMIUM_CREDITS, everyone else
    DAILY_REWARD_CREDITS.

    Raises:
        AlreadyClaimedError: the reward was already granted this UTC day
    """
    now = ensure_utc(now) if now is not None else utc_now()
    can_claim_at = start_of_next_day(now)

    if _has_claim(db, account_id, ClaimKind.DAILY_LOGIN, now):
        logger.info("[rewards] daily reward already claimed", extra={"account_id": account_id})
        raise AlreadyClaimedError("Daily reward already claimed today", can_claim_at=can_claim_at)

    amount = (
        settings.DAILY_REWARD_PREMIUM_CREDITS
        if is_user_premium(db, account_id, now=now)
        else settings.DAILY_REWARD_CREDITS
    )

    try:
        grant = _grant(db, account_id, ClaimKind.DAILY_LOGIN, amount, now)
    except IntegrityError as e:
        logger.info("[rewards] daily reward claimed concurrently", extra={"account_id": account_id})
        raise AlreadyClaimedError("Daily reward already claimed today", can_claim_at=can_claim_at) from e

    logger.info(
        "[rewards] daily reward granted",
        extra={"account_id": account_id, "amount": amount, "balance_after": grant.new_balance},
    )
    return grant


def claim_first_chat_reward(db: Session, account_id: str, *, now: Optional[datetime] = None) -> Optional[RewardGrant]:
    """
    Grant the first-chat-of-the-day reward.

    Called as a side effect of sending a message, so an existing claim
    returns None instead of raising.
    """
    now = ensure_utc(now) if now is not None else utc_now()

    if _has_claim(db, account_id, ClaimKind.DAILY_FIRST_CHAT, now):
        return None

    amount = settings.DAILY_FIRST_CHAT_REWARD_CREDITS
    try:
        grant = _grant(db, account_id, ClaimKind.DAILY_FIRST_CHAT, amount, now)
    except IntegrityError:
        logger.debug("[rewards] first chat reward claimed concurrently", extra={"account_id": account_id})
        return None

    logger.info(
        "[rewards] first chat reward granted",
        extra={"account_id": account_id, "amount": amount, "balance_after": grant.new_balance},
    )
    return grant


def get_daily_reward_status(db: Session, account_id: str, *, now: Optional[datetime] = None) -> RewardStatus:
    now = ensure_utc(now) if now is not None else utc_now()
    return RewardStatus(
        claimed=_has_claim(db, account_id, ClaimKind.DAILY_LOGIN, now),
        can_claim_at=start_of_next_day(now),
    )


def get_first_chat_reward_status(db: Session, account_id: str, *, now: Optional[datetime] = None) -> RewardStatus:
    now = ensure_utc(now) if now is not None else utc_now()
    return RewardStatus(
        claimed=_has_claim(db, account_id, ClaimKind.DAILY_FIRST_CHAT, now),
        can_claim_at=start_of_next_day(now),
    )
