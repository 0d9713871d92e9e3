"""
test_promotion_engine.py
========================
Unit tests for the promotion record state machine and the engine.

Covers:
- Validity states, per-user limits and remaining uses
- Applicability scan results and reasons
- Optimal selection between exclusive and stackable promotions
- Discount application and usage ledger updates
- Validation and suggestion drafts
"""

from datetime import datetime, timedelta, timezone

from money import Money
from promotion_engine import (
    apply_promotions_to_cart,
    find_applicable_promotions,
    find_optimal_promotions,
    generate_promotion_suggestions,
    select_optimal_promotions,
    validate_promotion,
)
from schemas import (
    BuyXGetYAction,
    Cart,
    CartItem,
    CartPricing,
    CategoryPurchaseCondition,
    FixedDiscountAction,
    FreeShippingAction,
    MinPurchaseCondition,
    Operator,
    PercentageDiscountAction,
    Promotion,
    PromotionStatus,
    PromotionUsage,
    ResultReason,
    User,
    UserMetadata,
    UserSegmentCondition,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


# ══════════════════════════════════════════════
#  Helper functions
# ══════════════════════════════════════════════

def usd(amount):
    return Money(amount, "USD")


def make_cart(subtotal, shipping=None, items=None):
    items = items or [CartItem(product_id="p1", quantity=1, price=usd(subtotal))]
    return Cart(
        id="cart-1",
        items=items,
        pricing=CartPricing(
            subtotal=usd(subtotal),
            total=usd(subtotal),
            shipping=usd(shipping) if shipping is not None else None,
            currency="USD",
        ),
    )


def make_promotion(id="promo-1", actions=None, conditions=None, **overrides):
    fields = dict(
        id=id,
        name=f"Promotion {id}",
        code=id.upper(),
        conditions=conditions if conditions is not None else [
            MinPurchaseCondition(operator=Operator.gte, value=0),
        ],
        actions=actions if actions is not None else [FixedDiscountAction(value=5)],
        start_at=NOW - timedelta(days=1),
        end_at=NOW + timedelta(days=7),
    )
    fields.update(overrides)
    return Promotion(**fields)


def fixed(id, value, stackable=False, **overrides):
    return make_promotion(id, actions=[FixedDiscountAction(value=value)], stackable=stackable, **overrides)


USER = User(id="u1", metadata=UserMetadata(order_count=2))


# ══════════════════════════════════════════════
#  Promotion Record
# ══════════════════════════════════════════════

class TestPromotionValidity:

    def test_active(self):
        promotion = make_promotion()
        assert promotion.status(NOW) == PromotionStatus.active
        assert promotion.is_valid_now(NOW)

    def test_inactive_regardless_of_dates_or_usage(self):
        promotion = make_promotion(is_active=False)
        assert promotion.status(NOW) == PromotionStatus.inactive
        assert not promotion.is_valid_now(NOW)

    def test_scheduled_and_expired(self):
        promotion = make_promotion()
        assert promotion.status(NOW - timedelta(days=2)) == PromotionStatus.scheduled
        assert promotion.status(NOW + timedelta(days=8)) == PromotionStatus.expired
        assert not promotion.is_valid_now(NOW + timedelta(days=8))

    def test_window_bounds_are_inclusive(self):
        promotion = make_promotion()
        assert promotion.is_valid_now(promotion.start_at)
        assert promotion.is_valid_now(promotion.end_at)

    def test_naive_datetimes_are_utc(self):
        promotion = make_promotion(start_at=datetime(2026, 5, 31), end_at=datetime(2026, 6, 2))
        assert promotion.is_valid_now(NOW)

    def test_exhausted_once_cap_reached(self):
        promotion = make_promotion(max_uses=2)
        promotion.increment_usage("a", usd(5), NOW)
        assert promotion.is_valid_now(NOW)
        promotion.increment_usage("b", usd(5), NOW)
        assert promotion.status(NOW) == PromotionStatus.exhausted
        assert not promotion.is_valid_now(NOW)
        assert promotion.remaining_uses() == 0

    def test_per_user_limit(self):
        """A coupon limited to one use per user, already used by u1."""
        promotion = make_promotion(max_uses_per_user=1, usage=PromotionUsage(total_uses=1, uses_by_user={"u1": 1}))
        assert not promotion.can_user_use("u1", NOW)
        assert promotion.can_user_use("u2", NOW)
        assert promotion.user_remaining_uses("u1") == 0
        assert promotion.user_remaining_uses("u2") == 1

    def test_unlimited_remaining_uses(self):
        promotion = make_promotion()
        assert promotion.remaining_uses() == -1
        assert promotion.user_remaining_uses("u1") == -1

    def test_increment_usage(self):
        promotion = make_promotion()
        promotion.increment_usage("u1", usd(12.5), NOW)
        promotion.increment_usage("u1", usd(7.5), NOW)
        assert promotion.usage.total_uses == 2
        assert promotion.usage.uses_by_user == {"u1": 2}
        assert promotion.usage.last_used_at == NOW
        assert promotion.usage.attributed_revenue == usd(20)

    def test_revenue_takes_order_currency(self):
        promotion = make_promotion()
        promotion.increment_usage("u1", Money(1000, "CLP"), NOW)
        assert promotion.usage.attributed_revenue == Money(1000, "CLP")


# ══════════════════════════════════════════════
#  Applicability Scan
# ══════════════════════════════════════════════

class TestApplicability:

    def test_one_result_per_promotion(self):
        promotions = [
            make_promotion("expired", end_at=NOW - timedelta(hours=1)),
            make_promotion("limited", max_uses_per_user=1, usage=PromotionUsage(total_uses=1, uses_by_user={"u1": 1})),
            make_promotion("unmet", conditions=[MinPurchaseCondition(operator=Operator.gte, value=500)]),
            make_promotion("ok", actions=[PercentageDiscountAction(value=10)]),
        ]
        results = find_applicable_promotions(make_cart(100), USER, promotions, NOW)

        assert [r.promotion.id for r in results] == ["expired", "limited", "unmet", "ok"]
        assert [r.reason for r in results] == [
            ResultReason.expired,
            ResultReason.usage_limit,
            ResultReason.conditions_not_met,
            None,
        ]
        assert [r.applied for r in results] == [False, False, False, True]
        assert all(r.discount == usd(0) for r in results[:3])
        assert results[3].discount == usd(10)
        assert results[3].description == "10% off - you save $10.00"

    def test_usage_limit_forces_zero_discount(self):
        promotion = make_promotion(
            actions=[PercentageDiscountAction(value=50)],
            max_uses_per_user=1,
            usage=PromotionUsage(total_uses=1, uses_by_user={"u1": 1}),
        )
        [result] = find_applicable_promotions(make_cart(1000), USER, [promotion], NOW)
        assert result.discount == usd(0)
        assert result.reason == ResultReason.usage_limit

    def test_anonymous_user_skips_per_user_limit(self):
        promotion = make_promotion(max_uses_per_user=1, usage=PromotionUsage(total_uses=1, uses_by_user={"u1": 1}))
        [result] = find_applicable_promotions(make_cart(100), None, [promotion], NOW)
        assert result.applied

    def test_scan_is_read_only(self):
        promotion = make_promotion()
        find_applicable_promotions(make_cart(100), USER, [promotion], NOW)
        assert promotion.usage.total_uses == 0

    def test_segment_condition_uses_user(self):
        promotion = make_promotion(conditions=[UserSegmentCondition(operator=Operator.eq, value="vip")])
        vip = User(id="u2", metadata=UserMetadata(segment="vip"))
        assert find_applicable_promotions(make_cart(100), vip, [promotion], NOW)[0].applied
        assert not find_applicable_promotions(make_cart(100), USER, [promotion], NOW)[0].applied


# ══════════════════════════════════════════════
#  Optimal Selection
# ══════════════════════════════════════════════

class TestOptimalSelection:

    def test_single_exclusive_percentage(self):
        """Subtotal $100 with one exclusive 10% promotion: discount $10, final $90."""
        promotion = make_promotion(actions=[PercentageDiscountAction(value=10)])
        selection = find_optimal_promotions(make_cart(100), None, [promotion], NOW)
        assert selection.total_discount == usd(10)
        assert selection.final_price == usd(90)
        assert selection.savings == usd(10)
        assert selection.savings_percentage == 10.0

    def test_stackable_fixed_and_free_shipping(self):
        """Total $50, $5 off + free shipping worth $5, both stackable: discount $10, final $40."""
        promotions = [
            fixed("five-off", 5, stackable=True),
            make_promotion("ship", actions=[FreeShippingAction()], stackable=True),
        ]
        selection = find_optimal_promotions(make_cart(50, shipping=5), None, promotions, NOW)
        assert selection.total_discount == usd(10)
        assert selection.final_price == usd(40)
        assert [r.promotion.id for r in selection.promotions] == ["five-off", "ship"]

    def test_best_exclusive_wins_over_other_exclusive(self):
        """An exclusive $20 off against an exclusive $15 off: only the $20 one is applied."""
        promotions = [fixed("fifteen", 15), fixed("twenty", 20)]
        selection = find_optimal_promotions(make_cart(100), None, promotions, NOW)
        assert [r.promotion.id for r in selection.promotions] == ["twenty"]
        assert selection.total_discount == usd(20)
        assert selection.final_price == usd(80)

    def test_exclusive_combined_with_stackables(self):
        """Candidate A (best exclusive + stackables) = 35 beats candidate B (stackables) = 15."""
        promotions = [
            fixed("twenty", 20),
            fixed("ten", 10, stackable=True),
            fixed("five", 5, stackable=True),
        ]
        selection = find_optimal_promotions(make_cart(100), None, promotions, NOW)
        assert {r.promotion.id for r in selection.promotions} == {"twenty", "ten", "five"}
        assert selection.total_discount == usd(35)
        assert selection.final_price == usd(65)

    def test_only_stackables(self):
        promotions = [fixed("ten", 10, stackable=True), fixed("five", 5, stackable=True)]
        selection = find_optimal_promotions(make_cart(100), None, promotions, NOW)
        assert selection.total_discount == usd(15)

    def test_only_exclusives(self):
        promotions = [fixed("ten", 10), fixed("five", 5)]
        selection = find_optimal_promotions(make_cart(100), None, promotions, NOW)
        assert [r.promotion.id for r in selection.promotions] == ["ten"]

    def test_no_promotions(self):
        selection = find_optimal_promotions(make_cart(100), None, [], NOW)
        assert selection.promotions == []
        assert selection.total_discount == usd(0)
        assert selection.final_price == usd(100)
        assert selection.savings_percentage == 0.0

    def test_unapplied_results_are_ignored(self):
        promotions = [fixed("expired", 50, end_at=NOW - timedelta(days=1)), fixed("five", 5)]
        selection = find_optimal_promotions(make_cart(100), None, promotions, NOW)
        assert [r.promotion.id for r in selection.promotions] == ["five"]

    def test_final_price_never_negative(self):
        selection = find_optimal_promotions(make_cart(50), None, [fixed("big", 80)], NOW)
        assert selection.total_discount == usd(80)
        assert selection.final_price == usd(0)

    def test_zero_total_cart(self):
        cart = make_cart(0, items=[CartItem(product_id="gift", quantity=1, price=usd(0))])
        selection = find_optimal_promotions(cart, None, [fixed("five", 5)], NOW)
        assert selection.final_price == usd(0)
        assert selection.savings_percentage == 0.0

    def test_equal_exclusives_prefer_priority(self):
        promotions = [fixed("low", 10, priority=1), fixed("high", 10, priority=5)]
        selection = find_optimal_promotions(make_cart(100), None, promotions, NOW)
        assert [r.promotion.id for r in selection.promotions] == ["high"]

    def test_total_is_max_of_candidates(self):
        promotions = [fixed("a", 7), fixed("b", 12), fixed("c", 3, stackable=True), fixed("d", 4, stackable=True)]
        results = find_applicable_promotions(make_cart(100), None, promotions, NOW)
        selection = select_optimal_promotions(results, usd(100))
        candidate_a = 12 + 3 + 4
        candidate_b = 3 + 4
        assert selection.total_discount == usd(max(candidate_a, candidate_b))


# ══════════════════════════════════════════════
#  Cart Discount Application
# ══════════════════════════════════════════════

class TestApplyPromotions:

    def test_discounted_copy(self):
        cart = make_cart(100)
        promotion = make_promotion(actions=[PercentageDiscountAction(value=10)])
        selection = find_optimal_promotions(cart, USER, [promotion], NOW)

        discounted = apply_promotions_to_cart(cart, selection, now=NOW)

        assert discounted.pricing.total == usd(90)
        assert discounted.pricing.discount == usd(10)
        assert discounted.applied_promotion_ids == ["promo-1"]
        assert cart.pricing.total == usd(100)
        assert cart.pricing.discount is None

    def test_usage_incremented_for_user(self):
        promotion = make_promotion(actions=[FixedDiscountAction(value=5)], max_uses_per_user=1)
        selection = find_optimal_promotions(make_cart(100), USER, [promotion], NOW)

        apply_promotions_to_cart(make_cart(100), selection, user_id="u1", now=NOW)

        assert promotion.usage.total_uses == 1
        assert promotion.usage.uses_by_user == {"u1": 1}
        assert promotion.usage.attributed_revenue == usd(5)
        assert not promotion.can_user_use("u1", NOW)

    def test_usage_untouched_without_user(self):
        promotion = make_promotion()
        selection = find_optimal_promotions(make_cart(100), None, [promotion], NOW)
        apply_promotions_to_cart(make_cart(100), selection, now=NOW)
        assert promotion.usage.total_uses == 0

    def test_total_clamped_at_zero(self):
        cart = make_cart(30)
        selection = find_optimal_promotions(cart, None, [fixed("big", 50)], NOW)
        assert apply_promotions_to_cart(cart, selection).pricing.total == usd(0)


# ══════════════════════════════════════════════
#  End-to-end: buy X get Y
# ══════════════════════════════════════════════

class TestBuyXGetYScenario:

    def test_buy_two_get_one(self):
        """5 units of p1 at $10, buy 2 get 1: 2 free units, $20 off."""
        cart = make_cart(50, items=[CartItem(product_id="p1", quantity=5, price=usd(10))])
        promotion = make_promotion(actions=[BuyXGetYAction(buy_quantity=2, get_quantity=1, product_ids=["p1"])])
        selection = find_optimal_promotions(cart, None, [promotion], NOW)
        assert selection.total_discount == usd(20)
        assert selection.final_price == usd(30)
        assert selection.promotions[0].description == "Buy 2 get 1 free - you save $20.00"


# ══════════════════════════════════════════════
#  Validation
# ══════════════════════════════════════════════

class TestValidation:

    def test_valid_promotion(self):
        assert validate_promotion(make_promotion()) == []

    def test_record_rules(self):
        promotion = make_promotion(
            name=" ",
            code="",
            conditions=[],
            actions=[],
            start_at=NOW,
            end_at=NOW,
            max_uses=0,
            max_uses_per_user=-3,
            priority=-1,
        )
        assert validate_promotion(promotion) == [
            "Promotion name is required",
            "Promotion code is required",
            "Start date must be before end date",
            "At least one condition is required",
            "At least one action is required",
            "Max uses must be positive or -1 for unlimited",
            "Max uses per user must be positive or -1 for unlimited",
            "Priority must be non-negative",
        ]

    def test_action_rules(self):
        promotion = make_promotion(actions=[
            PercentageDiscountAction(value=150),
            FixedDiscountAction(value=-1),
            BuyXGetYAction(buy_quantity=0, get_quantity=1),
        ])
        errors = validate_promotion(promotion)
        assert "Percentage discount must be between 0 and 100" in errors
        assert "Fixed discount must be non-negative" in errors
        assert "Buy quantity must be positive" in errors
        assert "Buy X get Y requires at least one product" in errors

    def test_condition_value_shape(self):
        promotion = make_promotion(conditions=[
            CategoryPurchaseCondition(operator=Operator.in_, value="shoes"),
            MinPurchaseCondition(operator=Operator.gte, value=[1, 2]),
        ])
        errors = validate_promotion(promotion)
        assert "Condition 'category_purchase' with operator 'in' requires a list value" in errors
        assert "Condition 'min_purchase' with operator 'gte' requires a single value" in errors


# ══════════════════════════════════════════════
#  Suggestions
# ══════════════════════════════════════════════

class TestSuggestions:

    def test_drafts_from_sales_and_seasonal_data(self):
        drafts = generate_promotion_suggestions(
            {"low_performing_categories": ["Garden", "Toys"]},
            {"upcoming_holiday": "Christmas"},
            now=NOW,
        )
        assert [d.name for d in drafts] == ["Garden Category Boost", "Christmas Special"]
        assert all(not d.is_active for d in drafts)
        for draft in drafts:
            promotion = Promotion(id="draft", **draft.model_dump())
            assert validate_promotion(promotion) == []

    def test_category_boost_targets_category(self):
        [draft] = generate_promotion_suggestions({"low_performing_categories": ["Garden"]}, {}, now=NOW)
        promotion = Promotion(id="draft", **{**draft.model_dump(), "is_active": True})
        cart = make_cart(100, items=[
            CartItem(product_id="rake", quantity=1, price=usd(40), category_id="Garden"),
            CartItem(product_id="ball", quantity=1, price=usd(60), category_id="Toys"),
        ])
        [result] = find_applicable_promotions(cart, None, [promotion], NOW)
        assert result.discount == usd(6)  # 15% of the Garden line

    def test_no_data_no_suggestions(self):
        assert generate_promotion_suggestions({}, {}, now=NOW) == []

    def test_failures_yield_no_suggestions(self):
        assert generate_promotion_suggestions(None, None, now=NOW) == []
