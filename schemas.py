from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any, Union, Literal, Annotated
from datetime import datetime, timezone
from enum import Enum

from config import settings
from money import Money


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes (e.g. read back from SQLite) are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ─────────────── Enums ───────────────

class PromotionKind(str, Enum):
    coupon = "coupon"
    automatic = "automatic"
    campaign = "campaign"


class PromotionStatus(str, Enum):
    inactive = "inactive"
    scheduled = "scheduled"
    active = "active"
    exhausted = "exhausted"
    expired = "expired"


class Operator(str, Enum):
    gt = "gt"
    gte = "gte"
    lt = "lt"
    lte = "lte"
    eq = "eq"
    in_ = "in"
    not_in = "not_in"


class ActionTarget(str, Enum):
    cart_total = "cart_total"
    product = "product"
    category = "category"
    shipping = "shipping"


class ResultReason(str, Enum):
    expired = "expired"
    usage_limit = "usage_limit"
    conditions_not_met = "conditions_not_met"


# ─────────────── Conditions ───────────────
#
# One model per condition type; ``value`` is either a scalar (for comparison
# operators and ``eq``) or a list (for ``in`` / ``not_in``).

class _ConditionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    operator: Operator


class MinPurchaseCondition(_ConditionBase):
    type: Literal["min_purchase"] = "min_purchase"
    value: Union[float, List[float]]


class CategoryPurchaseCondition(_ConditionBase):
    type: Literal["category_purchase"] = "category_purchase"
    value: Union[str, List[str]]


class ProductSpecificCondition(_ConditionBase):
    type: Literal["product_specific"] = "product_specific"
    value: Union[str, List[str]]


class QuantityThresholdCondition(_ConditionBase):
    type: Literal["quantity_threshold"] = "quantity_threshold"
    value: Union[int, List[int]]


class UserSegmentCondition(_ConditionBase):
    type: Literal["user_segment"] = "user_segment"
    value: Union[str, List[str]]


class FirstPurchaseCondition(_ConditionBase):
    type: Literal["first_purchase"] = "first_purchase"
    operator: Operator = Operator.eq
    value: Union[bool, List[bool]] = True


class LocationBasedCondition(_ConditionBase):
    type: Literal["location_based"] = "location_based"
    value: Union[str, List[str]]  # ISO country code(s)


Condition = Annotated[
    Union[
        MinPurchaseCondition,
        CategoryPurchaseCondition,
        ProductSpecificCondition,
        QuantityThresholdCondition,
        UserSegmentCondition,
        FirstPurchaseCondition,
        LocationBasedCondition,
    ],
    Field(discriminator="type"),
]


# ─────────────── Actions ───────────────

class _ActionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: float = 0.0


class PercentageDiscountAction(_ActionBase):
    type: Literal["percentage_discount"] = "percentage_discount"
    target: ActionTarget = ActionTarget.cart_total
    product_ids: List[str] = Field(default_factory=list)   # narrows the base when target=product
    category_ids: List[str] = Field(default_factory=list)  # narrows the base when target=category


class FixedDiscountAction(_ActionBase):
    type: Literal["fixed_discount"] = "fixed_discount"


class FreeShippingAction(_ActionBase):
    type: Literal["free_shipping"] = "free_shipping"


class BuyXGetYAction(_ActionBase):
    type: Literal["buy_x_get_y"] = "buy_x_get_y"
    buy_quantity: int = 1
    get_quantity: int = 1
    product_ids: List[str] = Field(default_factory=list)


class BundleDiscountAction(_ActionBase):
    type: Literal["bundle_discount"] = "bundle_discount"
    bundle_products: List[str] = Field(default_factory=list)
    discount_type: Literal["percentage", "fixed"] = "percentage"


Action = Annotated[
    Union[
        PercentageDiscountAction,
        FixedDiscountAction,
        FreeShippingAction,
        BuyXGetYAction,
        BundleDiscountAction,
    ],
    Field(discriminator="type"),
]


# ─────────────── Promotion Record ───────────────

class PromotionUsage(BaseModel):
    """
    Usage ledger of a promotion. Mutable, unlike the rule definition it
    accompanies; persisted separately (see repository.py).
    """
    total_uses: int = 0
    uses_by_user: Dict[str, int] = Field(default_factory=dict)
    last_used_at: Optional[datetime] = None
    attributed_revenue: Money = Field(default_factory=lambda: Money.zero())


class Promotion(BaseModel):
    """
    Promotion rule bundle.

    max_uses / max_uses_per_user: -1 means unlimited.
    Well-formedness (start_at < end_at, non-empty conditions/actions, ...) is
    reported by ``business_rule_errors`` rather than enforced here, so stored
    promotions can always be loaded and evaluated.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    code: str = ""
    kind: PromotionKind = PromotionKind.coupon
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)
    priority: int = 0
    start_at: datetime
    end_at: datetime
    max_uses: int = -1
    max_uses_per_user: int = -1
    stackable: bool = False
    is_active: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)
    usage: PromotionUsage = Field(default_factory=PromotionUsage)

    # ── Validity state ──

    def status(self, now: Optional[datetime] = None) -> PromotionStatus:
        now = as_utc(now or utcnow())
        if not self.is_active:
            return PromotionStatus.inactive
        if now < as_utc(self.start_at):
            return PromotionStatus.scheduled
        if now > as_utc(self.end_at):
            return PromotionStatus.expired
        if self.max_uses != -1 and self.usage.total_uses >= self.max_uses:
            return PromotionStatus.exhausted
        return PromotionStatus.active

    def is_valid_now(self, now: Optional[datetime] = None) -> bool:
        return self.status(now) == PromotionStatus.active

    def can_user_use(self, user_id: str, now: Optional[datetime] = None) -> bool:
        if not self.is_valid_now(now):
            return False
        used = self.usage.uses_by_user.get(user_id, 0)
        return self.max_uses_per_user == -1 or used < self.max_uses_per_user

    def remaining_uses(self) -> int:
        if self.max_uses == -1:
            return -1
        return max(0, self.max_uses - self.usage.total_uses)

    def user_remaining_uses(self, user_id: str) -> int:
        if self.max_uses_per_user == -1:
            return -1
        used = self.usage.uses_by_user.get(user_id, 0)
        return max(0, self.max_uses_per_user - used)

    # ── Usage ──

    def increment_usage(self, user_id: str, order_value: Money, now: Optional[datetime] = None) -> None:
        """
        Record one consumption of this promotion. In-memory only: callers that
        persist usage must serialize it through repository.record_usage.
        """
        usage = self.usage
        usage.total_uses += 1
        usage.uses_by_user[user_id] = usage.uses_by_user.get(user_id, 0) + 1
        usage.last_used_at = now or utcnow()

        revenue = usage.attributed_revenue
        if revenue.is_zero() and revenue.currency != order_value.currency:
            revenue = Money.zero(order_value.currency)
        usage.attributed_revenue = revenue.add(order_value)

    def business_rule_errors(self) -> List[str]:
        errors = []
        if not self.name.strip():
            errors.append("Promotion name is required")
        if not self.code.strip():
            errors.append("Promotion code is required")
        if as_utc(self.start_at) >= as_utc(self.end_at):
            errors.append("Start date must be before end date")
        if not self.conditions:
            errors.append("At least one condition is required")
        if not self.actions:
            errors.append("At least one action is required")
        if self.max_uses != -1 and self.max_uses <= 0:
            errors.append("Max uses must be positive or -1 for unlimited")
        if self.max_uses_per_user != -1 and self.max_uses_per_user <= 0:
            errors.append("Max uses per user must be positive or -1 for unlimited")
        return errors


# ─────────────── Cart / User ───────────────

class CartItem(BaseModel):
    product_id: str
    quantity: int
    price: Money  # Price per unit
    category_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("quantity")
    @classmethod
    def qty_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be positive")
        return v

    def line_total(self) -> Money:
        return self.price.multiply(self.quantity)


class CartPricing(BaseModel):
    subtotal: Money
    total: Money
    shipping: Optional[Money] = None
    discount: Optional[Money] = None
    currency: str = Field(default_factory=lambda: settings.DEFAULT_CURRENCY)


class Cart(BaseModel):
    """
    Cart snapshot handed in by the checkout flow. When ``pricing`` is omitted
    it is derived from the items (subtotal = total = sum of line totals).
    """
    id: str
    items: List[CartItem] = Field(default_factory=list)
    pricing: Optional[CartPricing] = None
    shipping_country: Optional[str] = None
    applied_promotion_ids: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def derive_pricing(self) -> "Cart":
        if self.pricing is None:
            currency = self.items[0].price.currency if self.items else settings.DEFAULT_CURRENCY
            subtotal = Money.total((item.line_total() for item in self.items), currency)
            self.pricing = CartPricing(subtotal=subtotal, total=subtotal, currency=currency)
        return self


class UserMetadata(BaseModel):
    segment: Optional[str] = None
    order_count: Optional[int] = None
    country: Optional[str] = None


class User(BaseModel):
    id: str
    metadata: UserMetadata = Field(default_factory=UserMetadata)


# ─────────────── Evaluation results ───────────────

class PromotionResult(BaseModel):
    promotion: Promotion
    discount: Money
    description: str
    applied: bool
    reason: Optional[ResultReason] = None


class OptimalPromotionSet(BaseModel):
    promotions: List[PromotionResult]
    total_discount: Money
    final_price: Money
    savings: Money
    savings_percentage: float


# ─────────────── Promotion Request / Response ───────────────

class PromotionCreate(BaseModel):
    name: str
    description: str = ""
    code: str = ""
    kind: PromotionKind = PromotionKind.coupon
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)
    priority: int = 0
    start_at: datetime
    end_at: datetime
    max_uses: int = -1
    max_uses_per_user: int = -1
    stackable: bool = False
    is_active: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("start_at", "end_at")
    @classmethod
    def to_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class PromotionUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    code: Optional[str] = None
    kind: Optional[PromotionKind] = None
    conditions: Optional[List[Condition]] = None
    actions: Optional[List[Action]] = None
    priority: Optional[int] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    max_uses: Optional[int] = None
    max_uses_per_user: Optional[int] = None
    stackable: Optional[bool] = None
    is_active: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v is not None else v

    @field_validator("start_at", "end_at")
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else v


class PromotionResponse(Promotion):
    current_status: PromotionStatus
    uses_left: int


class PromotionValidationResponse(BaseModel):
    promotion_id: str
    valid: bool
    errors: List[str]


# ─────────────── Evaluation Request / Response ───────────────

class EvaluationRequest(BaseModel):
    cart: Cart
    user: Optional[User] = None
    promotion_codes: List[str] = Field(default_factory=list)  # coupon codes entered by the customer


class CheckoutRequest(EvaluationRequest):
    order_id: str


class PromotionResultSummary(BaseModel):
    promotion_id: str
    name: str
    code: str
    stackable: bool
    discount: Money
    description: str
    applied: bool
    reason: Optional[ResultReason] = None


class ApplicablePromotionsResponse(BaseModel):
    results: List[PromotionResultSummary]


class OptimalPromotionsResponse(BaseModel):
    promotions: List[PromotionResultSummary]
    total_discount: Money
    final_price: Money
    savings: Money
    savings_percentage: float


class CheckoutResponse(BaseModel):
    order_id: str
    cart: Cart
    selection: OptimalPromotionsResponse


class SuggestionRequest(BaseModel):
    sales_data: Dict[str, Any] = Field(default_factory=dict)
    seasonal_data: Dict[str, Any] = Field(default_factory=dict)


class SuggestionsResponse(BaseModel):
    suggestions: List[PromotionCreate]
