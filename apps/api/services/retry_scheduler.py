"""
Retry scheduler for stored webhook notifications.

State lives entirely on ``webhook_notification`` rows:
- eligibility is a query (unprocessed, due failed rows, abandoned claims)
- a claim is one conditional UPDATE, so two workers can never both own a row
- outcomes are conditional on still holding the claim

Poison rows (attempt_count >= RETRY_MAX_ATTEMPTS) and permanent failures stay
``failed`` and are only picked up again after a manual requeue.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional
from uuid import UUID

from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.orm import Session

from core.config import settings
from models import WebhookNotification

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


class ClaimLostError(Exception):
    """The row was reclaimed by another worker before the outcome was recorded."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_next_retry_at(
    attempt_count: int,
    now: datetime,
    base_delay_s: Optional[int] = None,
    max_delay_s: Optional[int] = None,
) -> datetime:
    """
    ``now + min(base * 2**attempt_count, max)``.

    ``attempt_count`` is the count including the failure being recorded, so
    the first failure waits 2x base, the second 4x base, and so on.
    """
    base = settings.RETRY_BASE_DELAY_S if base_delay_s is None else base_delay_s
    cap = settings.RETRY_MAX_DELAY_S if max_delay_s is None else max_delay_s
    # Cap the exponent before multiplying so huge counts cannot overflow timedelta.
    exponent = min(max(attempt_count, 0), 62)
    delay_s = min(base * (2 ** exponent), cap)
    return now + timedelta(seconds=delay_s)


def _expire_cached(db: Session, notification_id: UUID) -> None:
    """Conditional UPDATEs bypass the identity map; drop any stale copy."""
    cached = db.identity_map.get(db.identity_key(WebhookNotification, notification_id))
    if cached is not None:
        db.expire(cached)


def _eligible_clause(now: datetime, max_attempts: int, claim_timeout_s: int):
    stale_before = now - timedelta(seconds=claim_timeout_s)
    return or_(
        WebhookNotification.status == "unprocessed",
        and_(
            WebhookNotification.status == "failed",
            WebhookNotification.is_permanent_failure.is_(False),
            WebhookNotification.next_retry_at.is_not(None),
            WebhookNotification.next_retry_at <= now,
            WebhookNotification.attempt_count < max_attempts,
        ),
        and_(
            WebhookNotification.status == "in_flight",
            WebhookNotification.claimed_at < stale_before,
            WebhookNotification.attempt_count < max_attempts,
        ),
    )


def select_eligible_notification_ids(
    db: Session,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> List[UUID]:
    now = now or _utcnow()
    limit = settings.RETRY_SCAN_BATCH_SIZE if limit is None else limit
    stmt = (
        select(WebhookNotification.id)
        .where(_eligible_clause(now, settings.RETRY_MAX_ATTEMPTS, settings.CLAIM_TIMEOUT_S))
        .order_by(WebhookNotification.received_at.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def iter_eligible_notification_batches(
    db: Session,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> Iterator[List[UUID]]:
    """
    Every eligible notification, one batch at a time.

    Pages on (received_at, id) rather than re-running the first page: rows
    handed to the pool stay eligible until a worker claims them.
    """
    now = now or _utcnow()
    batch_size = settings.RETRY_SCAN_BATCH_SIZE if batch_size is None else batch_size
    eligible = _eligible_clause(now, settings.RETRY_MAX_ATTEMPTS, settings.CLAIM_TIMEOUT_S)
    after = None
    while True:
        stmt = select(WebhookNotification.id, WebhookNotification.received_at).where(eligible)
        if after is not None:
            last_received, last_id = after
            stmt = stmt.where(
                or_(
                    WebhookNotification.received_at > last_received,
                    and_(WebhookNotification.received_at == last_received, WebhookNotification.id > last_id),
                )
            )
        stmt = stmt.order_by(WebhookNotification.received_at.asc(), WebhookNotification.id.asc()).limit(batch_size)
        rows = db.execute(stmt).all()
        if not rows:
            return
        yield [r.id for r in rows]
        if len(rows) < batch_size:
            return
        after = (rows[-1].received_at, rows[-1].id)


def fail_abandoned_claims(db: Session, now: Optional[datetime] = None) -> int:
    """
    Turn abandoned claims with no attempts left into poison rows.

    A payload that kills its worker every time is reclaimed (and counted)
    until the attempts run out; after that nothing would ever claim it again.
    """
    now = now or _utcnow()
    stale_before = now - timedelta(seconds=settings.CLAIM_TIMEOUT_S)
    stmt = (
        update(WebhookNotification)
        .where(
            WebhookNotification.status == "in_flight",
            WebhookNotification.claimed_at < stale_before,
            WebhookNotification.attempt_count >= settings.RETRY_MAX_ATTEMPTS,
        )
        .values(
            status="failed",
            claimed_at=None,
            next_retry_at=None,
            last_error="Worker never reported an outcome; attempts exhausted",
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    if result.rowcount:
        logger.error(f"Marked {result.rowcount} abandoned notifications as poison; they need manual reprocessing")
    return result.rowcount


def claim_notification(db: Session, notification_id: UUID, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Try to take exclusive ownership of a notification.

    Returns the claim timestamp (the token later outcome writes are
    conditional on) or ``None`` when the row is not eligible or another
    worker won. Commits either way.

    Taking over an abandoned ``in_flight`` row counts the lost run as an
    attempt, so a payload that crashes its worker still reaches poison.
    """
    now = now or _utcnow()
    stmt = (
        update(WebhookNotification)
        .where(
            WebhookNotification.id == notification_id,
            _eligible_clause(now, settings.RETRY_MAX_ATTEMPTS, settings.CLAIM_TIMEOUT_S),
        )
        .values(
            status="in_flight",
            claimed_at=now,
            attempt_count=WebhookNotification.attempt_count
            + case((WebhookNotification.status == "in_flight", 1), else_=0),
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    _expire_cached(db, notification_id)
    if result.rowcount != 1:
        logger.info(f"Notification {notification_id} not claimable (already owned, processed or not due)")
        return None
    return now


def _finish(db: Session, notification_id: UUID, claimed_at: datetime, **values) -> None:
    stmt = (
        update(WebhookNotification)
        .where(
            WebhookNotification.id == notification_id,
            WebhookNotification.status == "in_flight",
            WebhookNotification.claimed_at == claimed_at,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    _expire_cached(db, notification_id)
    if result.rowcount != 1:
        raise ClaimLostError(f"Lost claim on notification {notification_id}")


def record_success(db: Session, notification: WebhookNotification, claimed_at: datetime, now: Optional[datetime] = None) -> None:
    """Mark processed. Does not commit: the caller commits together with the created activities."""
    now = now or _utcnow()
    _finish(
        db,
        notification.id,
        claimed_at,
        status="processed",
        processed_at=now,
        claimed_at=None,
        next_retry_at=None,
        last_error=None,
    )


def record_transient_failure(
    db: Session,
    notification: WebhookNotification,
    claimed_at: datetime,
    error: str,
    now: Optional[datetime] = None,
) -> int:
    """Count the attempt and schedule the next one. Returns the new attempt count."""
    now = now or _utcnow()
    attempts = (notification.attempt_count or 0) + 1
    poisoned = attempts >= settings.RETRY_MAX_ATTEMPTS
    _finish(
        db,
        notification.id,
        claimed_at,
        status="failed",
        attempt_count=attempts,
        next_retry_at=None if poisoned else compute_next_retry_at(attempts, now),
        claimed_at=None,
        last_error=(error or "")[:MAX_ERROR_LENGTH],
    )
    if poisoned:
        logger.error(
            f"Notification {notification.id} exhausted {attempts} attempts; needs manual reprocessing",
            extra={"notification_id": str(notification.id), "attempt_count": attempts, "error": error},
        )
    else:
        logger.warning(
            f"Notification {notification.id} failed (attempt {attempts}), will retry",
            extra={"notification_id": str(notification.id), "attempt_count": attempts, "error": error},
        )
    return attempts


def record_permanent_failure(
    db: Session,
    notification: WebhookNotification,
    claimed_at: datetime,
    error: str,
) -> None:
    attempts = (notification.attempt_count or 0) + 1
    _finish(
        db,
        notification.id,
        claimed_at,
        status="failed",
        attempt_count=attempts,
        is_permanent_failure=True,
        next_retry_at=None,
        claimed_at=None,
        last_error=(error or "")[:MAX_ERROR_LENGTH],
    )
    logger.error(
        f"Notification {notification.id} failed permanently: {error}",
        extra={"notification_id": str(notification.id), "kind": notification.kind},
    )


def release_claim(db: Session, notification_id: UUID, claimed_at: datetime) -> bool:
    """Hand an in-flight row back without counting an attempt (shutdown / cancellation)."""
    stmt = (
        update(WebhookNotification)
        .where(
            WebhookNotification.id == notification_id,
            WebhookNotification.status == "in_flight",
            WebhookNotification.claimed_at == claimed_at,
        )
        .values(status="unprocessed", claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    _expire_cached(db, notification_id)
    released = result.rowcount == 1
    if released:
        logger.info(f"Released claim on notification {notification_id}")
    return released


def _needs_attention_clause(include_permanent: bool):
    conditions = [WebhookNotification.attempt_count >= settings.RETRY_MAX_ATTEMPTS]
    if include_permanent:
        conditions.append(WebhookNotification.is_permanent_failure.is_(True))
    return and_(WebhookNotification.status == "failed", or_(*conditions))


def list_failed_notifications(db: Session, limit: int = 100) -> List[WebhookNotification]:
    """Poison and permanently failed rows, oldest first, for manual inspection."""
    return (
        db.query(WebhookNotification)
        .filter(_needs_attention_clause(include_permanent=True))
        .order_by(WebhookNotification.received_at.asc())
        .limit(limit)
        .all()
    )


def requeue_failed_notifications(db: Session, include_permanent: bool = False) -> int:
    """
    Manual reprocessing trigger: reset failed rows to unprocessed.

    Covers poison rows and rows still waiting out a backoff; permanent
    failures only when ``include_permanent`` is set (e.g. after a parser fix).
    """
    conditions = [
        and_(
            WebhookNotification.status == "failed",
            WebhookNotification.is_permanent_failure.is_(False),
        )
    ]
    if include_permanent:
        conditions.append(_needs_attention_clause(include_permanent=True))
    stmt = (
        update(WebhookNotification)
        .where(or_(*conditions))
        .values(
            status="unprocessed",
            attempt_count=0,
            next_retry_at=None,
            is_permanent_failure=False,
            claimed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    logger.info(f"Requeued {result.rowcount} failed webhook notifications (include_permanent={include_permanent})")
    return result.rowcount
