"""
promotion_rules.py
==================
Condition evaluation and discount calculation for a single promotion.

Condition context (looked up by condition type):
------------------------------------------------
- min_purchase:        cart subtotal amount
- category_purchase:   distinct categories in the cart
- product_specific:    distinct product ids in the cart
- quantity_threshold:  total units across all line items
- user_segment:        user's segment label ("regular" when unknown)
- first_purchase:      True when the user has no previous orders
- location_based:      country code (user, then cart, then configured default)

Operators:
----------
- gt / gte / lt / lte: both sides coerced to numbers; anything that is not a
  number makes the condition false.
- eq:                  strict equality (booleans only equal booleans).
- in / not_in:         the condition value must be a list; tests membership
  of the context value.
For collection contexts (categories, product ids), ``eq`` tests that the
value is contained in the collection and ``in`` / ``not_in`` test whether
the collection intersects the listed values.

A promotion is eligible only if all of its conditions hold.

Action strategies:
------------------
- percentage_discount: subtotal * value / 100 for the default
  ``target=cart_total``. ``target=product`` / ``category`` with ids narrows
  the base to those lines, ``target=shipping`` uses the shipping cost; with
  no ids the base stays the subtotal.
- fixed_discount:      flat value
- free_shipping:       the cart's shipping cost
- buy_x_get_y:         per listed product, min(floor(Q / buy) * get, Q) free units
- bundle_discount:     only when every bundle product is in the cart; either a
  percentage of the bundle value or min(value, bundle value)

Each contribution is clamped at zero; a promotion's discount is the sum of
its actions' contributions.
"""

import logging
import operator as op
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict

from config import settings
from money import InvalidAmountError, Money, to_decimal
from schemas import (
    ActionTarget,
    BundleDiscountAction,
    BuyXGetYAction,
    Cart,
    CartItem,
    CategoryPurchaseCondition,
    FirstPurchaseCondition,
    FixedDiscountAction,
    FreeShippingAction,
    LocationBasedCondition,
    MinPurchaseCondition,
    Operator,
    PercentageDiscountAction,
    ProductSpecificCondition,
    Promotion,
    QuantityThresholdCondition,
    User,
    UserSegmentCondition,
)

logger = logging.getLogger(__name__)

_NUMERIC_OPERATORS: Dict[Operator, Callable[[Decimal, Decimal], bool]] = {
    Operator.gt: op.gt,
    Operator.gte: op.ge,
    Operator.lt: op.lt,
    Operator.lte: op.le,
}


# ─────────────────────────── Cart analysis ───────────────────────────

class CartAnalysis(BaseModel):
    """Evaluation context derived from a cart and an optional user. Never cached."""
    model_config = ConfigDict(frozen=True)

    subtotal: Money
    items: List[CartItem]
    categories: List[str]
    product_ids: List[str]
    quantities: Dict[str, int]
    shipping_cost: Money
    user_segment: str
    is_first_purchase: bool
    country: str

    @property
    def currency(self) -> str:
        return self.subtotal.currency

    @property
    def total_quantity(self) -> int:
        return sum(self.quantities.values())

    def unit_price(self, product_id: str) -> Optional[Money]:
        for item in self.items:
            if item.product_id == product_id:
                return item.price
        return None

    def lines_value(self, predicate: Callable[[CartItem], bool]) -> Money:
        return Money.total(
            (item.line_total() for item in self.items if predicate(item)),
            self.currency,
        )


def analyze_cart(cart: Cart, user: Optional[User] = None) -> CartAnalysis:
    pricing = cart.pricing
    currency = pricing.subtotal.currency

    categories = list(dict.fromkeys(item.category_id for item in cart.items if item.category_id))
    product_ids = list(dict.fromkeys(item.product_id for item in cart.items))

    quantities: Dict[str, int] = {}
    for item in cart.items:
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity

    metadata = user.metadata if user is not None else None
    segment = (metadata.segment if metadata else None) or settings.DEFAULT_USER_SEGMENT
    country = (metadata.country if metadata else None) or cart.shipping_country or settings.DEFAULT_COUNTRY

    return CartAnalysis(
        subtotal=pricing.subtotal,
        items=list(cart.items),
        categories=categories,
        product_ids=product_ids,
        quantities=quantities,
        shipping_cost=pricing.shipping or Money.zero(currency),
        user_segment=segment,
        is_first_purchase=user is not None and (metadata.order_count or 0) == 0,
        country=country.upper(),
    )


# ─────────────────────────── Conditions ───────────────────────────

def condition_context(condition, analysis: CartAnalysis) -> Any:
    if isinstance(condition, MinPurchaseCondition):
        return analysis.subtotal.amount
    if isinstance(condition, CategoryPurchaseCondition):
        return analysis.categories
    if isinstance(condition, ProductSpecificCondition):
        return analysis.product_ids
    if isinstance(condition, QuantityThresholdCondition):
        return analysis.total_quantity
    if isinstance(condition, UserSegmentCondition):
        return analysis.user_segment
    if isinstance(condition, FirstPurchaseCondition):
        return analysis.is_first_purchase
    if isinstance(condition, LocationBasedCondition):
        return analysis.country
    raise TypeError(f"Unsupported condition: {type(condition).__name__}")


def _as_number(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, list):
        return None
    try:
        return to_decimal(value)
    except InvalidAmountError:
        return None


def _strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, (int, float, Decimal)) and isinstance(right, (int, float, Decimal)):
        a, b = _as_number(left), _as_number(right)
        return a is not None and a == b
    return type(left) is type(right) and left == right


def _contains(values: Iterable[Any], candidate: Any) -> bool:
    return any(_strict_equals(candidate, value) for value in values)


def compare(operator: Operator, actual: Any, expected: Any) -> bool:
    """Apply ``operator`` to a context value and a condition value."""
    if operator in _NUMERIC_OPERATORS:
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        return _NUMERIC_OPERATORS[operator](left, right)

    if isinstance(actual, list):
        if operator == Operator.eq:
            return not isinstance(expected, list) and _contains(actual, expected)
        if operator == Operator.in_:
            return isinstance(expected, list) and any(_contains(expected, a) for a in actual)
        if operator == Operator.not_in:
            return isinstance(expected, list) and not any(_contains(expected, a) for a in actual)
        return False

    if operator == Operator.eq:
        return _strict_equals(actual, expected)
    if operator == Operator.in_:
        return isinstance(expected, list) and _contains(expected, actual)
    if operator == Operator.not_in:
        return isinstance(expected, list) and not _contains(expected, actual)
    return False


def evaluate_condition(condition, analysis: CartAnalysis) -> bool:
    return compare(condition.operator, condition_context(condition, analysis), condition.value)


def conditions_met(conditions: Iterable, analysis: CartAnalysis) -> bool:
    return all(evaluate_condition(condition, analysis) for condition in conditions)


# ─────────────────────────── Actions ───────────────────────────

def _percentage_base(action: PercentageDiscountAction, analysis: CartAnalysis) -> Money:
    if action.target == ActionTarget.shipping:
        return analysis.shipping_cost
    if action.target == ActionTarget.product and action.product_ids:
        return analysis.lines_value(lambda item: item.product_id in action.product_ids)
    if action.target == ActionTarget.category and action.category_ids:
        return analysis.lines_value(lambda item: item.category_id in action.category_ids)
    return analysis.subtotal


def _percentage_of(base: Money, percent: float) -> Money:
    return base.multiply(to_decimal(percent) / 100)


def compute_buy_x_get_y(action: BuyXGetYAction, analysis: CartAnalysis) -> Money:
    """
    For every listed product in the cart:
        eligible_sets = floor(quantity / buy_quantity)
        free_units    = min(eligible_sets * get_quantity, quantity)
    and the contribution is free_units * unit price.
    """
    discount = Money.zero(analysis.currency)
    if action.buy_quantity <= 0 or action.get_quantity <= 0:
        return discount

    for product_id in dict.fromkeys(action.product_ids):
        quantity = analysis.quantities.get(product_id, 0)
        if quantity == 0:
            continue
        eligible_sets = quantity // action.buy_quantity
        free_units = min(eligible_sets * action.get_quantity, quantity)
        discount = discount.add(analysis.unit_price(product_id).multiply(free_units))
    return discount


def compute_bundle_discount(action: BundleDiscountAction, analysis: CartAnalysis) -> Money:
    products = list(dict.fromkeys(action.bundle_products))
    if not products or any(pid not in analysis.quantities for pid in products):
        return Money.zero(analysis.currency)

    bundle_value = analysis.lines_value(lambda item: item.product_id in products)
    if action.discount_type == "percentage":
        return _percentage_of(bundle_value, action.value)
    return Money.min(Money(action.value, analysis.currency), bundle_value)


def calculate_action_discount(action, analysis: CartAnalysis) -> Money:
    """Discount contributed by one action; never negative."""
    if isinstance(action, PercentageDiscountAction):
        amount = _percentage_of(_percentage_base(action, analysis), action.value)
    elif isinstance(action, FixedDiscountAction):
        amount = Money(action.value, analysis.currency)
    elif isinstance(action, FreeShippingAction):
        amount = analysis.shipping_cost
    elif isinstance(action, BuyXGetYAction):
        amount = compute_buy_x_get_y(action, analysis)
    elif isinstance(action, BundleDiscountAction):
        amount = compute_bundle_discount(action, analysis)
    else:
        raise TypeError(f"Unsupported action: {type(action).__name__}")

    return Money.max(amount, Money.zero(analysis.currency))


def calculate_discount(
    promotion: Promotion,
    analysis: CartAnalysis,
    now: Optional[datetime] = None,
) -> Money:
    """
    Total discount granted by ``promotion`` for this cart: the sum of its
    action contributions when it is valid and every condition holds, else zero.
    """
    zero = Money.zero(analysis.currency)
    if not promotion.is_valid_now(now):
        return zero
    if not conditions_met(promotion.conditions, analysis):
        logger.debug("Promotion %s: conditions not met", promotion.id)
        return zero
    return Money.total(
        (calculate_action_discount(action, analysis) for action in promotion.actions),
        analysis.currency,
    )
