"""
charachat/features/usage/service.py

Usage metering: record service calls now, charge credits later.

Callers log usage synchronously; a background job drains pending logs and
writes one CONSUMPTION transaction per log. A log and its charge commit
together, so a log is never charged twice.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from charachat.core.clock import ensure_utc, start_of_month, utc_now
from charachat.core.config import settings
from charachat.core.database import service_credit_costs, transactional, usage_logs
from charachat.core.errors import InsufficientCreditsError
from charachat.features.credits.ledger import append_transaction
from charachat.features.usage.pricing import DEFAULT_SERVICE_COSTS, calculate_credits
from charachat.models.credits import TransactionKind
from charachat.models.usage import ServiceCost, ServiceKind, UsageLog, UsageMetrics

logger = logging.getLogger("charachat.usage")


def _row_to_usage_log(row) -> UsageLog:
    return UsageLog(
        id=row.id,
        account_id=row.account_id,
        service_type=ServiceKind(row.service_type),
        conversation_id=row.conversation_id,
        provider_name=row.provider_name,
        model_name=row.model_name,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        characters_processed=row.characters_processed,
        images_processed=row.images_processed,
        additional_metadata=row.additional_metadata or {},
        processed=bool(row.processed),
        processed_at=ensure_utc(row.processed_at),
        credits_consumed=row.credits_consumed,
        created_at=ensure_utc(row.created_at),
    )


def _row_to_service_cost(row) -> ServiceCost:
    return ServiceCost(
        service_type=ServiceKind(row.service_type),
        credits_per_unit=Decimal(str(row.credits_per_unit)),
        unit_description=row.unit_description,
        is_active=bool(row.is_active),
    )


def _metrics_of(log: UsageLog) -> UsageMetrics:
    return UsageMetrics(
        input_tokens=log.input_tokens,
        output_tokens=log.output_tokens,
        characters_processed=log.characters_processed,
        images_processed=log.images_processed,
        additional_metadata=log.additional_metadata,
    )


def seed_service_costs(db: Session) -> None:
    """Insert default per-unit rates for services that have none (idempotent)."""
    now = utc_now()
    for service_type, (credits_per_unit, description) in DEFAULT_SERVICE_COSTS.items():
        existing = db.execute(
            select(service_credit_costs.c.service_type).where(
                service_credit_costs.c.service_type == service_type.value
            )
        ).first()
        if existing:
            continue
        db.execute(
            insert(service_credit_costs).values(
                service_type=service_type.value,
                credits_per_unit=credits_per_unit,
                unit_description=description,
                is_active=True,
                updated_at=now,
            )
        )
    db.commit()


def get_service_cost(db: Session, service_type: Union[ServiceKind, str]) -> Optional[ServiceCost]:
    """Active rate for a service, or None when it is not configured."""
    row = db.execute(
        select(service_credit_costs).where(
            service_credit_costs.c.service_type == ServiceKind(service_type).value,
            service_credit_costs.c.is_active == True,  # noqa: E712
        )
    ).first()
    return _row_to_service_cost(row) if row else None


def get_service_costs(db: Session) -> List[ServiceCost]:
    rows = db.execute(
        select(service_credit_costs)
        .where(service_credit_costs.c.is_active == True)  # noqa: E712
        .order_by(service_credit_costs.c.service_type)
    ).fetchall()
    return [_row_to_service_cost(row) for row in rows]


def estimate_service_cost(db: Session, service_type: Union[ServiceKind, str], metrics: UsageMetrics) -> int:
    """Credits a call with these metrics would cost; 0 for unpriced services."""
    cost = get_service_cost(db, service_type)
    if not cost:
        return 0
    return calculate_credits(cost.service_type, metrics, cost.credits_per_unit)


def log_service_usage(
    db: Session,
    account_id: str,
    service_type: Union[ServiceKind, str],
    metrics: UsageMetrics,
    *,
    conversation_id: Optional[str] = None,
    provider_name: Optional[str] = None,
    model_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> UsageLog:
    """Record a pending usage log. Credits are charged by process_usage_logs."""
    service_type = ServiceKind(service_type)
    now = ensure_utc(now) if now is not None else utc_now()
    log_id = str(uuid4())

    with transactional(db):
        db.execute(
            insert(usage_logs).values(
                id=log_id,
                account_id=account_id,
                service_type=service_type.value,
                conversation_id=conversation_id,
                provider_name=provider_name,
                model_name=model_name,
                input_tokens=metrics.input_tokens,
                output_tokens=metrics.output_tokens,
                characters_processed=metrics.characters_processed,
                images_processed=metrics.images_processed,
                additional_metadata=metrics.additional_metadata,
                processed=False,
                created_at=now,
            )
        )

    return get_usage_log(db, log_id)


def get_usage_log(db: Session, usage_log_id: str) -> Optional[UsageLog]:
    row = db.execute(select(usage_logs).where(usage_logs.c.id == usage_log_id)).first()
    return _row_to_usage_log(row) if row else None


def _mark_processed(db: Session, usage_log_id: str, credits: int, now: datetime, metadata: Optional[Dict[str, Any]] = None) -> None:
    values: Dict[str, Any] = {"processed": True, "processed_at": now, "credits_consumed": credits}
    if metadata is not None:
        values["additional_metadata"] = metadata
    db.execute(update(usage_logs).where(usage_logs.c.id == usage_log_id).values(**values))


def process_usage_log(db: Session, usage_log_id: str, *, now: Optional[datetime] = None) -> Optional[int]:
    """
    Charge one pending usage log.

    Returns credits charged, or None if the log is missing or already processed.
    Unpriced services and accounts without enough credits are marked processed
    with 0 credits; the latter also get an insufficient_credits marker.
    Any other failure leaves the log pending for the next run.
    """
    now = ensure_utc(now) if now is not None else utc_now()

    with transactional(db):
        row = db.execute(
            select(usage_logs).where(usage_logs.c.id == usage_log_id).with_for_update()
        ).first()
        if not row or row.processed:
            return None
        log = _row_to_usage_log(row)

        cost = get_service_cost(db, log.service_type)
        if not cost:
            logger.warning("[usage] no active cost configuration", extra={"service_type": log.service_type.value})
            _mark_processed(db, log.id, 0, now)
            return 0

        credits = calculate_credits(log.service_type, _metrics_of(log), cost.credits_per_unit)
        if credits <= 0:
            _mark_processed(db, log.id, 0, now)
            return 0

    try:
        with transactional(db):
            locked = db.execute(
                select(usage_logs.c.processed).where(usage_logs.c.id == log.id).with_for_update()
            ).first()
            if not locked or locked.processed:
                return None
            append_transaction(
                db,
                log.account_id,
                TransactionKind.CONSUMPTION,
                -credits,
                notes=f"Service usage: {log.service_type.value}",
                related_usage_log_id=log.id,
                now=now,
            )
            _mark_processed(db, log.id, credits, now)
    except InsufficientCreditsError:
        logger.info(
            "[usage] insufficient credits for usage log",
            extra={"account_id": log.account_id, "usage_log_id": log.id, "amount": -credits},
        )
        with transactional(db):
            _mark_processed(db, log.id, 0, now, {**log.additional_metadata, "error": "insufficient_credits"})
        return 0

    return credits


def process_usage_logs(db: Session, limit: Optional[int] = None, *, now: Optional[datetime] = None) -> int:
    """
    Drain pending usage logs, oldest first.

    A failing log is logged and skipped; the batch continues.
    Returns number of logs processed.
    """
    limit = limit or settings.USAGE_BATCH_SIZE
    pending_ids = db.execute(
        select(usage_logs.c.id)
        .where(usage_logs.c.processed == False)  # noqa: E712
        .order_by(usage_logs.c.created_at.asc())
        .limit(limit)
    ).scalars().all()

    processed = 0
    for usage_log_id in pending_ids:
        try:
            if process_usage_log(db, usage_log_id, now=now) is not None:
                processed += 1
        except Exception:
            logger.error("[usage] failed to process usage log", exc_info=True, extra={"usage_log_id": usage_log_id})

    logger.info("[usage] batch processed", extra={"pending": len(pending_ids), "processed": processed})
    return processed


def get_user_monthly_usage(db: Session, account_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Processed usage for the current UTC month, aggregated per service."""
    now = ensure_utc(now) if now is not None else utc_now()
    month_start = start_of_month(now)
    rows = db.execute(
        select(usage_logs.c.service_type, usage_logs.c.credits_consumed).where(
            usage_logs.c.account_id == account_id,
            usage_logs.c.created_at >= month_start,
            usage_logs.c.processed == True,  # noqa: E712
        )
    ).fetchall()

    by_service: Dict[str, Dict[str, int]] = {}
    for row in rows:
        entry = by_service.setdefault(row.service_type, {"count": 0, "credits_spent": 0})
        entry["count"] += 1
        entry["credits_spent"] += row.credits_consumed or 0

    return {
        "month_start": month_start,
        "total_logs": len(rows),
        "total_credits_spent": sum(entry["credits_spent"] for entry in by_service.values()),
        "usage_by_service": by_service,
    }
