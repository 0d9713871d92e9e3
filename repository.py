"""
repository.py
=============
Loading stored promotions for evaluation, and persisting their usage ledgers.

The rule definition (promotions row) and the usage ledger are kept apart:
aggregate counters sit on the promotions row, per-user counters in
promotion_user_usage keyed by (promotion_id, user_id).

record_usage never read-modify-writes a counter in Python. Each counter is
bumped with a conditional UPDATE whose WHERE clause re-checks the cap, so
when two checkouts race for the last use of a capped promotion only one of
them matches a row; the other gets ``False`` back and must roll back.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

import models
from money import CurrencyMismatchError, Money
from schemas import Promotion, PromotionKind, PromotionUsage, utcnow

logger = logging.getLogger(__name__)


def load_usage(db: Session, row: models.Promotion, user_id: Optional[str] = None) -> PromotionUsage:
    """Usage ledger of ``row``; per-user counts limited to ``user_id`` when given."""
    query = db.query(models.PromotionUserUsage).filter(models.PromotionUserUsage.promotion_id == row.id)
    if user_id is not None:
        query = query.filter(models.PromotionUserUsage.user_id == user_id)

    return PromotionUsage(
        total_uses=row.total_uses,
        uses_by_user={usage.user_id: usage.uses for usage in query.all()},
        last_used_at=row.last_used_at,
        attributed_revenue=Money.from_cents(row.attributed_revenue_cents, row.revenue_currency),
    )


def to_domain(db: Session, row: models.Promotion, user_id: Optional[str] = None) -> Promotion:
    """Build the engine's Promotion from a row. Raises ValidationError on malformed rules."""
    return Promotion(
        id=row.id,
        name=row.name,
        description=row.description,
        code=row.code,
        kind=row.kind,
        conditions=row.conditions,
        actions=row.actions,
        priority=row.priority,
        start_at=row.start_at,
        end_at=row.end_at,
        max_uses=row.max_uses,
        max_uses_per_user=row.max_uses_per_user,
        stackable=row.stackable,
        is_active=row.is_active,
        metadata=row.extra or {},
        usage=load_usage(db, row, user_id),
    )


def load_candidate_promotions(
    db: Session,
    codes: Sequence[str] = (),
    user_id: Optional[str] = None,
) -> List[Promotion]:
    """
    Active promotions to evaluate against a cart: every automatic and campaign
    promotion, plus the coupons whose code the customer entered.
    Rows whose stored rules no longer parse are logged and skipped.
    """
    entered = [code.strip().upper() for code in codes if code.strip()]
    rows = (
        db.query(models.Promotion)
        .filter(models.Promotion.is_active == True)
        .filter(or_(
            models.Promotion.kind != PromotionKind.coupon.value,
            models.Promotion.code.in_(entered),
        ))
        .order_by(models.Promotion.priority.desc(), models.Promotion.created_at)
        .all()
    )

    promotions = []
    for row in rows:
        try:
            promotions.append(to_domain(db, row, user_id))
        except ValidationError as exc:
            logger.warning("Skipping promotion %s with malformed rules: %s", row.id, exc)
    return promotions


def record_usage(
    db: Session,
    promotion_id: str,
    user_id: str,
    order_value: Money,
    now: Optional[datetime] = None,
) -> bool:
    """
    Count one use of a promotion by ``user_id`` and attribute ``order_value``
    to it. Returns False, leaving the caller to roll back, when a usage cap
    has been reached in the meantime. Does not commit.
    """
    now = now or utcnow()
    row = db.get(models.Promotion, promotion_id)
    if row is None:
        logger.warning("Usage not recorded: promotion %s does not exist", promotion_id)
        return False
    if row.attributed_revenue_cents and row.revenue_currency not in (None, order_value.currency):
        raise CurrencyMismatchError(row.revenue_currency, order_value.currency)

    # ── Per-user counter ──
    user_update = (
        update(models.PromotionUserUsage)
        .where(
            models.PromotionUserUsage.promotion_id == promotion_id,
            models.PromotionUserUsage.user_id == user_id,
        )
        .values(uses=models.PromotionUserUsage.uses + 1, last_used_at=now)
        .execution_options(synchronize_session=False)
    )
    if row.max_uses_per_user != -1:
        user_update = user_update.where(models.PromotionUserUsage.uses < row.max_uses_per_user)

    if db.execute(user_update).rowcount == 0:
        if db.get(models.PromotionUserUsage, (promotion_id, user_id)) is not None:
            logger.warning("Promotion %s: per-user limit reached for %s", promotion_id, user_id)
            return False
        db.add(models.PromotionUserUsage(
            promotion_id=promotion_id,
            user_id=user_id,
            uses=1,
            last_used_at=now,
        ))

    # ── Aggregate counter ──
    promotion_update = (
        update(models.Promotion)
        .where(models.Promotion.id == promotion_id)
        .where(or_(
            models.Promotion.max_uses == -1,
            models.Promotion.total_uses < models.Promotion.max_uses,
        ))
        .values(
            total_uses=models.Promotion.total_uses + 1,
            attributed_revenue_cents=models.Promotion.attributed_revenue_cents + order_value.to_cents(),
            revenue_currency=order_value.currency,
            last_used_at=now,
            version_id=models.Promotion.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if db.execute(promotion_update).rowcount == 0:
        logger.warning("Promotion %s: usage limit reached", promotion_id)
        return False

    logger.info("Recorded use of promotion %s by %s (%s)", promotion_id, user_id, order_value)
    return True
