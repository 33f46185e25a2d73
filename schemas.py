from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Set, Union, Literal, Annotated
from datetime import datetime, timezone as dt_timezone
from enum import Enum

from config import settings


# ─────────────── Enums ───────────────

class CouponType(str, Enum):
    percentage = "percentage"
    fixed_amount = "fixed_amount"
    free_shipping = "free_shipping"
    buy_x_get_y = "buy_x_get_y"


class TargetType(str, Enum):
    all = "all"
    new_customers = "new_customers"
    returning_customers = "returning_customers"
    loyalty_tier = "loyalty_tier"
    specific_users = "specific_users"


class LoyaltyTier(str, Enum):
    bronze = "bronze"
    silver = "silver"
    gold = "gold"
    platinum = "platinum"


class Weekday(str, Enum):
    monday = "monday"
    tuesday = "tuesday"
    wednesday = "wednesday"
    thursday = "thursday"
    friday = "friday"
    saturday = "saturday"
    sunday = "sunday"


class PaymentMethod(str, Enum):
    cash_on_delivery = "cash_on_delivery"
    bkash = "bkash"
    nagad = "nagad"
    rocket = "rocket"
    card = "card"
    bank_transfer = "bank_transfer"


# ─────────────── Discount variants ───────────────

class PercentageDiscount(BaseModel):
    type: Literal["percentage"] = "percentage"
    value: float                          # Percentage points (10 => 10%)
    max_discount: Optional[float] = None  # Absolute cap on the computed amount

    @field_validator("value")
    @classmethod
    def percent_range(cls, v: float) -> float:
        if v < 0 or v > 100:
            raise ValueError("Percentage must be between 0 and 100")
        return v

    @field_validator("max_discount")
    @classmethod
    def cap_not_negative(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("Maximum discount cannot be negative")
        return v


class FixedAmountDiscount(BaseModel):
    type: Literal["fixed_amount"] = "fixed_amount"
    value: float  # Currency amount

    @field_validator("value")
    @classmethod
    def not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Must not be negative")
        return v


class FreeShippingDiscount(BaseModel):
    type: Literal["free_shipping"] = "free_shipping"
    value: float = 0.0


class BuyXGetYDiscount(BaseModel):
    type: Literal["buy_x_get_y"] = "buy_x_get_y"
    value: float = 0.0
    buy_quantity: int
    get_quantity: int
    get_products: List[str] = []
    auto_apply: bool = True

    @field_validator("buy_quantity", "get_quantity")
    @classmethod
    def qty_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be positive")
        return v


Discount = Annotated[
    Union[PercentageDiscount, FixedAmountDiscount, FreeShippingDiscount, BuyXGetYDiscount],
    Field(discriminator="type"),
]


# ─────────────── Target customers ───────────────

class AllCustomers(BaseModel):
    type: Literal["all"] = "all"


class NewCustomers(BaseModel):
    type: Literal["new_customers"] = "new_customers"
    new_customer_days: int = Field(default_factory=lambda: settings.default_new_customer_days)


class ReturningCustomers(BaseModel):
    type: Literal["returning_customers"] = "returning_customers"


class LoyaltyTierCustomers(BaseModel):
    type: Literal["loyalty_tier"] = "loyalty_tier"
    loyalty_tier: LoyaltyTier


class SpecificUsers(BaseModel):
    type: Literal["specific_users"] = "specific_users"
    specific_users: Set[str]


TargetCustomers = Annotated[
    Union[AllCustomers, NewCustomers, ReturningCustomers, LoyaltyTierCustomers, SpecificUsers],
    Field(discriminator="type"),
]


# ─────────────── Usage, validity, conditions, stats ───────────────

class UserUsage(BaseModel):
    count: int = 1
    last_used: datetime


class CouponUsage(BaseModel):
    total_limit: Optional[int] = None  # None means unlimited
    used_count: int = 0
    per_user_limit: int = 1
    per_user_used: Dict[str, UserUsage] = {}  # user id -> usage

    @field_validator("total_limit")
    @classmethod
    def limit_positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("Total limit must be at least 1")
        return v

    @field_validator("per_user_limit")
    @classmethod
    def per_user_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Per-user limit must be at least 1")
        return v

    @model_validator(mode="after")
    def used_within_limit(self) -> "CouponUsage":
        if self.total_limit is not None and self.used_count > self.total_limit:
            raise ValueError(
                f"Total limit cannot be lower than the {self.used_count} redemptions already recorded"
            )
        return self


class Validity(BaseModel):
    start_date: datetime
    end_date: datetime
    timezone: str = Field(default_factory=lambda: settings.default_timezone)

    @model_validator(mode="after")
    def end_after_start(self) -> "Validity":
        start, end = self.start_date, self.end_date
        # Mixed naive/aware input: naive values are UTC
        if (start.tzinfo is None) != (end.tzinfo is None):
            start = start if start.tzinfo else start.replace(tzinfo=dt_timezone.utc)
            end = end if end.tzinfo else end.replace(tzinfo=dt_timezone.utc)
        if end < start:
            raise ValueError("end_date must not be before start_date")
        return self


class TimeRange(BaseModel):
    start: Optional[str] = None  # "HH:MM"
    end: Optional[str] = None

    @field_validator("start", "end")
    @classmethod
    def hh_mm(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        hours, sep, minutes = v.partition(":")
        if not sep or len(hours) != 2 or len(minutes) != 2 or not (hours + minutes).isdigit():
            raise ValueError("Time must be formatted as HH:MM")
        if int(hours) > 23 or int(minutes) > 59:
            raise ValueError("Time must be formatted as HH:MM")
        return v


class Conditions(BaseModel):
    first_order_only: bool = False
    min_item_quantity: Optional[int] = None
    max_item_quantity: Optional[int] = None
    day_of_week: List[Weekday] = []
    time_range: Optional[TimeRange] = None
    payment_methods: List[PaymentMethod] = []

    @field_validator("min_item_quantity", "max_item_quantity")
    @classmethod
    def qty_positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("Quantity must be at least 1")
        return v


class CouponStats(BaseModel):
    total_usage: int = 0
    total_discount_given: float = 0.0
    total_revenue: float = 0.0
    average_order_value: float = 0.0
    conversion_rate: float = 0.0


# ─────────────── Coupon ───────────────

class CouponBase(BaseModel):
    code: str
    name: str
    description: Optional[str] = None
    discount: Discount
    minimum_purchase: float = 0.0
    applicable_products: Set[str] = set()
    applicable_categories: Set[str] = set()
    exclude_products: Set[str] = set()
    exclude_categories: Set[str] = set()
    target_customers: TargetCustomers = Field(default_factory=AllCustomers)
    validity: Validity
    conditions: Conditions = Field(default_factory=Conditions)
    stackable: bool = False
    priority: int = 1  # 1-10, higher wins
    is_active: bool = True
    auto_apply: bool = False

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        v = v.strip().upper()
        if not 3 <= len(v) <= 20:
            raise ValueError("Coupon code must be between 3 and 20 characters")
        return v

    @field_validator("name")
    @classmethod
    def name_length(cls, v: str) -> str:
        v = v.strip()
        if not v or len(v) > 100:
            raise ValueError("Name must be between 1 and 100 characters")
        return v

    @field_validator("description")
    @classmethod
    def description_length(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v) > 500:
            raise ValueError("Description cannot exceed 500 characters")
        return v

    @field_validator("minimum_purchase")
    @classmethod
    def minimum_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Minimum purchase cannot be negative")
        return v

    @field_validator("priority")
    @classmethod
    def priority_range(cls, v: int) -> int:
        if not 1 <= v <= 10:
            raise ValueError("Priority must be between 1 and 10")
        return v

    @property
    def type(self) -> str:
        return self.discount.type


class Coupon(CouponBase):
    """A coupon record as evaluated by coupon_engine."""

    usage: CouponUsage = Field(default_factory=CouponUsage)
    stats: CouponStats = Field(default_factory=CouponStats)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ─────────────── Cart & user ───────────────

class CartItem(BaseModel):
    product_id: str
    category_id: Optional[str] = None
    quantity: int
    price: float  # Price per unit
    subtotal: Optional[float] = None

    @field_validator("quantity")
    @classmethod
    def qty_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be positive")
        return v

    @field_validator("price")
    @classmethod
    def price_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Price cannot be negative")
        return v

    @model_validator(mode="after")
    def fill_subtotal(self) -> "CartItem":
        if self.subtotal is None:
            self.subtotal = round(self.price * self.quantity, 2)
        return self


class Cart(BaseModel):
    items: List[CartItem]
    total: Optional[float] = None
    shipping_cost: float = 0.0

    @model_validator(mode="after")
    def fill_total(self) -> "Cart":
        if self.total is None:
            self.total = round(sum(item.subtotal for item in self.items), 2)
        return self


class UserProfile(BaseModel):
    user_id: str
    created_at: datetime
    loyalty_tier: Optional[LoyaltyTier] = None
    total_orders: int = 0  # Completed orders


# ─────────────── Engine results ───────────────

class Decision(BaseModel):
    eligible: bool
    reason: Optional[str] = None
    code: Optional[str] = None


class CartValidation(BaseModel):
    valid: bool
    errors: List[str] = []


class DiscountPreview(BaseModel):
    code: str
    type: CouponType
    discount: float
    applicable_amount: float
    cart_total: float
    final_total: float  # cart total + shipping - discount
    stackable: bool


class Redemption(DiscountPreview):
    user_id: str
    order_value: float
    used_count: int
    remaining_uses: Optional[int] = None


# ─────────────── Coupon Request / Response ───────────────

class CouponCreate(CouponBase):
    total_limit: Optional[int] = None
    per_user_limit: int = 1

    @field_validator("total_limit")
    @classmethod
    def limit_positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("Total limit must be at least 1")
        return v

    @field_validator("per_user_limit")
    @classmethod
    def per_user_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Per-user limit must be at least 1")
        return v


class CouponUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    discount: Optional[Discount] = None
    minimum_purchase: Optional[float] = None
    applicable_products: Optional[Set[str]] = None
    applicable_categories: Optional[Set[str]] = None
    exclude_products: Optional[Set[str]] = None
    exclude_categories: Optional[Set[str]] = None
    target_customers: Optional[TargetCustomers] = None
    total_limit: Optional[int] = None
    per_user_limit: Optional[int] = None
    validity: Optional[Validity] = None
    conditions: Optional[Conditions] = None
    stackable: Optional[bool] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None
    auto_apply: Optional[bool] = None


class CouponResponse(Coupon):
    is_currently_valid: bool
    is_expired: bool
    remaining_uses: Optional[int] = None  # None means unlimited


class CouponCheckRequest(BaseModel):
    user_id: str
    cart: Cart
    payment_method: Optional[PaymentMethod] = None


class AvailableCoupon(BaseModel):
    code: str
    name: str
    type: CouponType
    priority: int
    discount: float
    stackable: bool
    auto_apply: bool


class AvailableCouponsResponse(BaseModel):
    coupons: List[AvailableCoupon]
    best: Optional[str] = None  # code of the coupon with the largest discount


class AppliedCoupon(BaseModel):
    code: str
    discount: float


class AutoApplyResponse(BaseModel):
    """Auto-apply candidates plus the stacked selection actually applied to the cart."""
    coupons: List[AvailableCoupon]
    applied: List[AppliedCoupon]
    total_discount: float


class CouponStatsResponse(BaseModel):
    code: str
    used_count: int
    remaining_uses: Optional[int] = None
    unique_users: int
    stats: CouponStats
