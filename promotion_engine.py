"""
promotion_engine.py
===================
Promotion selection and application for a cart.

Flow:
-----
1. find_applicable_promotions:
   - One result per candidate promotion: applied with its discount, or not
     applied with a reason (expired | usage_limit | conditions_not_met).
   - Read-only: never touches usage ledgers.

2. select_optimal_promotions / find_optimal_promotions:
   - Applicable results are split into stackable and exclusive
     (non-stackable) groups.
   - Candidate A = best exclusive (highest discount, then priority) + all
     stackable. Candidate B = all stackable only.
   - With no exclusive promotions B is used; with no stackable ones A is used;
     otherwise the larger total wins and a tie keeps A.
   - final_price = max(cart total - total discount, 0).

3. apply_promotions_to_cart:
   - Returns a discounted copy of the cart and, given a user id, bumps the
     in-memory usage ledger of every applied promotion. Only to be called for
     confirmed orders.

Noted Limitations:
------------------
- Selection is a two-candidate heuristic, not an exhaustive search over
  subsets of exclusive promotions.
- In-memory usage increments are not atomic; persistent accounting goes
  through repository.record_usage.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from config import settings
from money import Money
from promotion_rules import analyze_cart, calculate_discount
from schemas import (
    BundleDiscountAction,
    BuyXGetYAction,
    Cart,
    CategoryPurchaseCondition,
    FixedDiscountAction,
    FreeShippingAction,
    MinPurchaseCondition,
    OptimalPromotionSet,
    Operator,
    PercentageDiscountAction,
    ActionTarget,
    Promotion,
    PromotionCreate,
    PromotionKind,
    PromotionResult,
    ResultReason,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)


# ─────────────────────────── Applicability ───────────────────────────

def describe_discount(promotion: Promotion, discount: Money) -> str:
    action = promotion.actions[0] if promotion.actions else None
    saved = discount.format()

    if isinstance(action, PercentageDiscountAction):
        return f"{action.value:g}% off - you save {saved}"
    if isinstance(action, FixedDiscountAction):
        return f"{saved} off your order"
    if isinstance(action, FreeShippingAction):
        return f"Free shipping - you save {saved}"
    if isinstance(action, BuyXGetYAction):
        return f"Buy {action.buy_quantity} get {action.get_quantity} free - you save {saved}"
    if isinstance(action, BundleDiscountAction):
        return f"Bundle deal - you save {saved}"
    return f"Discount applied - you save {saved}"


def find_applicable_promotions(
    cart: Cart,
    user: Optional[User],
    promotions: Sequence[Promotion],
    now: Optional[datetime] = None,
) -> List[PromotionResult]:
    analysis = analyze_cart(cart, user)
    zero = Money.zero(analysis.currency)
    results = []

    for promotion in promotions:
        if not promotion.is_valid_now(now):
            results.append(PromotionResult(
                promotion=promotion,
                discount=zero,
                description="Promotion expired or inactive",
                applied=False,
                reason=ResultReason.expired,
            ))
            continue

        if user is not None and not promotion.can_user_use(user.id, now):
            results.append(PromotionResult(
                promotion=promotion,
                discount=zero,
                description="User has exceeded usage limit",
                applied=False,
                reason=ResultReason.usage_limit,
            ))
            continue

        discount = calculate_discount(promotion, analysis, now)
        if discount.is_positive():
            results.append(PromotionResult(
                promotion=promotion,
                discount=discount,
                description=describe_discount(promotion, discount),
                applied=True,
            ))
        else:
            results.append(PromotionResult(
                promotion=promotion,
                discount=zero,
                description="Conditions not met",
                applied=False,
                reason=ResultReason.conditions_not_met,
            ))

    for result in results:
        logger.debug(
            "Cart %s: promotion %s %s (%s)",
            cart.id, result.promotion.id,
            "applies" if result.applied else "skipped", result.reason or result.discount,
        )
    return results


# ─────────────────────────── Optimal selection ───────────────────────────

def _sum_discounts(results: Sequence[PromotionResult], currency: str) -> Money:
    return Money.total((r.discount for r in results), currency)


def select_optimal_promotions(results: Sequence[PromotionResult], cart_total: Money) -> OptimalPromotionSet:
    currency = cart_total.currency
    applicable = [r for r in results if r.applied]
    stackable = [r for r in applicable if r.promotion.stackable]
    # Highest discount first; priority breaks ties, then input order (stable sort)
    exclusive = sorted(
        (r for r in applicable if not r.promotion.stackable),
        key=lambda r: (r.discount.amount, r.promotion.priority),
        reverse=True,
    )

    stackable_discount = _sum_discounts(stackable, currency)
    if exclusive:
        selected = [exclusive[0]] + stackable
        total_discount = exclusive[0].discount.add(stackable_discount)
        if stackable and stackable_discount.is_greater_than(total_discount):
            selected, total_discount = stackable, stackable_discount
    else:
        selected, total_discount = stackable, stackable_discount

    zero = Money.zero(currency)
    final_price = Money.max(cart_total.subtract(total_discount), zero)
    if cart_total.is_positive():
        savings_percentage = float(round(total_discount.amount / cart_total.amount * 100, 2))
    else:
        savings_percentage = 0.0

    return OptimalPromotionSet(
        promotions=selected,
        total_discount=total_discount,
        final_price=final_price,
        savings=total_discount,
        savings_percentage=savings_percentage,
    )


def find_optimal_promotions(
    cart: Cart,
    user: Optional[User],
    promotions: Sequence[Promotion],
    now: Optional[datetime] = None,
) -> OptimalPromotionSet:
    results = find_applicable_promotions(cart, user, promotions, now)
    selection = select_optimal_promotions(results, cart.pricing.total)
    logger.debug(
        "Cart %s: selected %s for a total discount of %s",
        cart.id, [r.promotion.id for r in selection.promotions], selection.total_discount,
    )
    return selection


# ─────────────────────────── Application ───────────────────────────

def apply_promotions_to_cart(
    cart: Cart,
    selection: OptimalPromotionSet,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Cart:
    """
    Return a copy of ``cart`` with the selection's discount applied. With a
    ``user_id`` the usage of each applied promotion is incremented, the
    discount being the revenue attributed to it.
    """
    applied = [r for r in selection.promotions if r.applied]
    currency = cart.pricing.total.currency
    total_discount = _sum_discounts(applied, currency)
    new_total = Money.max(cart.pricing.total.subtract(total_discount), Money.zero(currency))

    pricing = cart.pricing.model_copy(update={"total": new_total, "discount": total_discount})
    discounted = cart.model_copy(
        update={
            "pricing": pricing,
            "applied_promotion_ids": [r.promotion.id for r in applied],
        },
        deep=True,
    )

    if user_id:
        for result in applied:
            result.promotion.increment_usage(user_id, result.discount, now)
            logger.info("Promotion %s used by %s (discount %s)", result.promotion.id, user_id, result.discount)

    return discounted


# ─────────────────────────── Validation ───────────────────────────

def _condition_errors(condition) -> List[str]:
    errors = []
    is_list = isinstance(condition.value, list)
    if condition.operator in (Operator.in_, Operator.not_in) and not is_list:
        errors.append(f"Condition '{condition.type}' with operator '{condition.operator.value}' requires a list value")
    if condition.operator not in (Operator.in_, Operator.not_in) and is_list:
        errors.append(f"Condition '{condition.type}' with operator '{condition.operator.value}' requires a single value")
    return errors


def _action_errors(action) -> List[str]:
    errors = []
    if isinstance(action, PercentageDiscountAction) and not 0 <= action.value <= 100:
        errors.append("Percentage discount must be between 0 and 100")
    if isinstance(action, FixedDiscountAction) and action.value < 0:
        errors.append("Fixed discount must be non-negative")
    if isinstance(action, BuyXGetYAction):
        if action.buy_quantity <= 0:
            errors.append("Buy quantity must be positive")
        if action.get_quantity <= 0:
            errors.append("Get quantity must be positive")
        if not action.product_ids:
            errors.append("Buy X get Y requires at least one product")
    if isinstance(action, BundleDiscountAction):
        if not action.bundle_products:
            errors.append("Bundle discount requires at least one product")
        if action.discount_type == "percentage" and not 0 <= action.value <= 100:
            errors.append("Bundle percentage must be between 0 and 100")
        if action.discount_type == "fixed" and action.value < 0:
            errors.append("Bundle fixed discount must be non-negative")
    return errors


def validate_promotion(promotion: Promotion) -> List[str]:
    """Human-readable rule violations; an empty list means the promotion may be activated."""
    errors = promotion.business_rule_errors()
    if promotion.priority < 0:
        errors.append("Priority must be non-negative")
    for condition in promotion.conditions:
        errors.extend(_condition_errors(condition))
    for action in promotion.actions:
        errors.extend(_action_errors(action))
    return errors


# ─────────────────────────── Suggestions ───────────────────────────

def _suggestion_code(label: str, suffix: str) -> str:
    return re.sub(r"[^A-Z0-9]", "", label.upper())[:12] + suffix


def _build_suggestions(
    sales_data: Dict[str, Any],
    seasonal_data: Dict[str, Any],
    now: datetime,
) -> List[PromotionCreate]:
    end_at = now + timedelta(days=settings.SUGGESTION_WINDOW_DAYS)
    suggestions = []

    low_performing = sales_data.get("low_performing_categories") or []
    if low_performing:
        category = str(low_performing[0])
        suggestions.append(PromotionCreate(
            name=f"{category} Category Boost",
            description="Increase sales in underperforming category",
            code=_suggestion_code(category, "BOOST"),
            kind=PromotionKind.automatic,
            conditions=[CategoryPurchaseCondition(operator=Operator.eq, value=category)],
            actions=[PercentageDiscountAction(
                value=settings.SUGGESTION_CATEGORY_DISCOUNT,
                target=ActionTarget.category,
                category_ids=[category],
            )],
            priority=1,
            start_at=now,
            end_at=end_at,
            is_active=False,
        ))

    holiday = seasonal_data.get("upcoming_holiday")
    if holiday:
        suggestions.append(PromotionCreate(
            name=f"{holiday} Special",
            description="Holiday seasonal promotion",
            code=_suggestion_code(str(holiday), "SPECIAL"),
            kind=PromotionKind.campaign,
            conditions=[MinPurchaseCondition(
                operator=Operator.gte,
                value=settings.SUGGESTION_HOLIDAY_MIN_PURCHASE,
            )],
            actions=[PercentageDiscountAction(
                value=settings.SUGGESTION_HOLIDAY_DISCOUNT,
                target=ActionTarget.cart_total,
            )],
            priority=2,
            start_at=now,
            end_at=end_at,
            is_active=False,
        ))

    return suggestions


def generate_promotion_suggestions(
    sales_data: Dict[str, Any],
    seasonal_data: Dict[str, Any],
    now: Optional[datetime] = None,
) -> List[PromotionCreate]:
    """
    Draft (inactive) promotions derived from aggregated sales and seasonal
    data, for human review. Best-effort: any failure yields no suggestions.
    """
    try:
        return _build_suggestions(sales_data, seasonal_data, now or utcnow())
    except Exception:
        logger.warning("Promotion suggestion generation failed", exc_info=True)
        return []
