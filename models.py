from uuid import uuid4

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Boolean, ForeignKey
from sqlalchemy.sql import func
from database import Base


def _promotion_id() -> str:
    return f"promo_{uuid4().hex[:12]}"


class Promotion(Base):
    """
    Database model for promotion rule definitions.

    kind: 'coupon' | 'automatic' | 'campaign'
    conditions: JSON list, each item tagged by "type":
        { "type": "min_purchase", "operator": "gte", "value": 50 }
    actions: JSON list, each item tagged by "type":
        { "type": "percentage_discount", "value": 10, "target": "cart_total" }
        { "type": "buy_x_get_y", "buy_quantity": 2, "get_quantity": 1, "product_ids": ["p1"] }
        { "type": "bundle_discount", "value": 15, "bundle_products": ["p1", "p2"], "discount_type": "percentage" }
    max_uses / max_uses_per_user: -1 = unlimited.

    The aggregate usage counters live on this row and are only changed through
    repository.record_usage; per-user counts live in PromotionUserUsage.
    """
    __tablename__ = "promotions"

    id = Column(String, primary_key=True, default=_promotion_id)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    code = Column(String, index=True, nullable=False, default="")
    kind = Column(String, nullable=False, default="coupon")
    conditions = Column(JSON, nullable=False, default=list)
    actions = Column(JSON, nullable=False, default=list)
    priority = Column(Integer, nullable=False, default=0)
    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    max_uses = Column(Integer, nullable=False, default=-1)
    max_uses_per_user = Column(Integer, nullable=False, default=-1)
    stackable = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    # "metadata" is reserved on declarative classes
    extra = Column("metadata", JSON, nullable=False, default=dict)

    # Usage ledger (aggregate)
    total_uses = Column(Integer, nullable=False, default=0)
    attributed_revenue_cents = Column(Integer, nullable=False, default=0)
    revenue_currency = Column(String(3), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version_id}


class PromotionUserUsage(Base):
    """Per-user usage counter, keyed by (promotion_id, user_id)."""
    __tablename__ = "promotion_user_usage"

    promotion_id = Column(String, ForeignKey("promotions.id"), primary_key=True)
    user_id = Column(String, primary_key=True)
    uses = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
