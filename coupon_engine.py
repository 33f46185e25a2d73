"""
coupon_engine.py
================
Core business logic for evaluating coupons against a user and a cart.

Everything here is a pure function over already-fetched data: the coupon
record, the user profile, and a cart snapshot. Collaborators that need a
store (order counts) are passed in as callables, and every time-dependent
check takes an explicit `now` so tests can pin the clock.

Operations:
-----------
1. can_user_use:
   - Eligibility of a user for a coupon. Stops at the first failing rule and
     reports exactly one reason.

2. validate_cart:
   - Cart-level conditions (minimum purchase, item counts, allow/deny lists,
     day of week, time of day, payment method). Reports every failing rule.

3. compute_discount:
   - percentage, fixed_amount, free_shipping and buy_x_get_y amounts over the
     applicable subset of the cart. Never more than the applicable amount.

4. record_usage:
   - Returns a copy of the coupon with usage counters and stats advanced.
     Not idempotent: each call counts one more redemption.

5. select_available / select_auto_apply:
   - Coupons a user may use for a given cart total, highest priority first.

Noted behaviour:
----------------
- Day-of-week and time-of-day conditions use the wall clock of `now` as given.
  The coupon's `validity.timezone` is stored but not used for conversion.
- A single excluded line makes the whole cart fail validation, while
  compute_discount simply drops excluded lines from the discount base.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from schemas import (
    Cart,
    CartItem,
    CartValidation,
    Coupon,
    CouponStats,
    Decision,
    PaymentMethod,
    UserProfile,
    UserUsage,
)

logger = logging.getLogger(__name__)

OrderCounter = Callable[[str], int]

SECONDS_PER_DAY = 24 * 60 * 60

# datetime.weekday() order, Monday first
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


# ─────────────────────────── Clock ───────────────────────────

def local_now() -> datetime:
    """Current time in the process timezone, timezone-aware."""
    return datetime.now().astimezone()


def _instant(value: datetime) -> datetime:
    # Naive datetimes (e.g. read back from SQLite) are taken as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ─────────────────────────── Validity ───────────────────────────

def is_expired(coupon: Coupon, now: Optional[datetime] = None) -> bool:
    now = now or local_now()
    return _instant(now) > _instant(coupon.validity.end_date)


def has_remaining_uses(coupon: Coupon) -> bool:
    limit = coupon.usage.total_limit
    return limit is None or coupon.usage.used_count < limit


def remaining_uses(coupon: Coupon) -> Optional[int]:
    """None for unlimited coupons."""
    if coupon.usage.total_limit is None:
        return None
    return max(0, coupon.usage.total_limit - coupon.usage.used_count)


def is_currently_valid(coupon: Coupon, now: Optional[datetime] = None) -> bool:
    now = _instant(now or local_now())
    return (
        coupon.is_active
        and _instant(coupon.validity.start_date) <= now <= _instant(coupon.validity.end_date)
        and has_remaining_uses(coupon)
    )


def user_usage_count(coupon: Coupon, user_id: str) -> int:
    entry = coupon.usage.per_user_used.get(user_id)
    return entry.count if entry else 0


# ─────────────────────────── Eligibility ───────────────────────────

def _rejected(code: str, reason: str) -> Decision:
    return Decision(eligible=False, reason=reason, code=code)


def _invalid_decision(coupon: Coupon, now: datetime) -> Decision:
    if is_expired(coupon, now):
        return _rejected("expired", "Coupon has expired")
    if coupon.is_active and not has_remaining_uses(coupon):
        return _rejected("usage_limit_exceeded", "Coupon usage limit exceeded")
    return _rejected("not_valid", "Coupon is not valid or expired")


def _target_decision(coupon: Coupon, user: UserProfile, now: datetime) -> Optional[Decision]:
    target = coupon.target_customers

    if target.type == "new_customers":
        age = (_instant(now) - _instant(user.created_at)).total_seconds() / SECONDS_PER_DAY
        if age > target.new_customer_days:
            return _rejected("not_eligible", "Coupon is only for new customers")

    elif target.type == "returning_customers":
        if user.total_orders < 2:
            return _rejected("not_eligible", "Coupon is only for returning customers")

    elif target.type == "loyalty_tier":
        if user.loyalty_tier != target.loyalty_tier:
            return _rejected("not_eligible", "Coupon is not available for your loyalty tier")

    elif target.type == "specific_users":
        if user.user_id not in target.specific_users:
            return _rejected("not_eligible", "Coupon is not available for your account")

    return None


def can_user_use(
    coupon: Coupon,
    user: UserProfile,
    count_orders: OrderCounter,
    now: Optional[datetime] = None,
) -> Decision:
    """
    Decide whether `user` may use `coupon`.

    Rules are checked in order and the first failure is returned:
    validity window / active flag / global limit, the per-user limit,
    the target-customer group, then the first-order-only condition.
    `count_orders(user_id)` must return the user's non-cancelled order count;
    it is only called when the coupon is restricted to first orders.
    """
    now = now or local_now()

    if not is_currently_valid(coupon, now):
        return _invalid_decision(coupon, now)

    if user_usage_count(coupon, user.user_id) >= coupon.usage.per_user_limit:
        return _rejected("usage_limit_exceeded", "Usage limit exceeded for this user")

    rejected = _target_decision(coupon, user, now)
    if rejected is not None:
        return rejected

    if coupon.conditions.first_order_only and count_orders(user.user_id) > 0:
        return _rejected("not_eligible", "Coupon is only valid for first orders")

    return Decision(eligible=True)


# ─────────────────────────── Cart validation ───────────────────────────

def _in_allow_list(coupon: Coupon, item: CartItem) -> bool:
    return (
        item.product_id in coupon.applicable_products
        or (item.category_id is not None and item.category_id in coupon.applicable_categories)
    )


def _in_deny_list(coupon: Coupon, item: CartItem) -> bool:
    return (
        item.product_id in coupon.exclude_products
        or (item.category_id is not None and item.category_id in coupon.exclude_categories)
    )


def _has_allow_list(coupon: Coupon) -> bool:
    return bool(coupon.applicable_products or coupon.applicable_categories)


def _format_amount(amount: float) -> str:
    return f"{amount:g}"


def validate_cart(
    coupon: Coupon,
    cart: Cart,
    now: Optional[datetime] = None,
    payment_method: Optional[PaymentMethod] = None,
) -> CartValidation:
    """Check every cart-level condition and collect all the failures."""
    now = now or local_now()
    conditions = coupon.conditions
    errors: List[str] = []

    if cart.total < coupon.minimum_purchase:
        errors.append(f"Minimum purchase amount of {_format_amount(coupon.minimum_purchase)} required")

    total_quantity = sum(item.quantity for item in cart.items)
    if conditions.min_item_quantity and total_quantity < conditions.min_item_quantity:
        errors.append(f"Minimum {conditions.min_item_quantity} items required")
    if conditions.max_item_quantity and total_quantity > conditions.max_item_quantity:
        errors.append(f"Maximum {conditions.max_item_quantity} items allowed")

    if _has_allow_list(coupon) and not any(_in_allow_list(coupon, item) for item in cart.items):
        errors.append("Coupon is not applicable to items in your cart")

    if any(_in_deny_list(coupon, item) for item in cart.items):
        errors.append("Some items in your cart are excluded from this coupon")

    if conditions.day_of_week:
        today = WEEKDAYS[now.weekday()]
        if today not in {day.value for day in conditions.day_of_week}:
            errors.append("Coupon is not valid on this day")

    time_range = conditions.time_range
    if time_range is not None and time_range.start and time_range.end:
        current = now.strftime("%H:%M")
        if current < time_range.start or current > time_range.end:
            errors.append(f"Coupon is only valid between {time_range.start} and {time_range.end}")

    if conditions.payment_methods and payment_method is not None:
        accepted = {method.value for method in conditions.payment_methods}
        method = PaymentMethod(payment_method).value
        if method not in accepted:
            errors.append(f"Payment method {method} is not accepted for this coupon")

    return CartValidation(valid=not errors, errors=errors)


# ─────────────────────────── Discount ───────────────────────────

def applicable_items(coupon: Coupon, cart: Cart) -> List[CartItem]:
    items = list(cart.items)
    if _has_allow_list(coupon):
        items = [item for item in items if _in_allow_list(coupon, item)]
    return [item for item in items if not _in_deny_list(coupon, item)]


def applicable_amount(coupon: Coupon, cart: Cart) -> float:
    return round(sum(item.subtotal for item in applicable_items(coupon, cart)), 2)


def _buy_x_get_y_discount(buy_quantity: int, get_quantity: int, items: List[CartItem]) -> float:
    """
    Free units = floor(total quantity / buy_quantity) * get_quantity, taken from
    the cheapest units first. A line may be only partly consumed.
    """
    total_quantity = sum(item.quantity for item in items)
    free_units = (total_quantity // buy_quantity) * get_quantity

    discount = 0.0
    # sorted() is stable, so equal prices keep cart order
    for item in sorted(items, key=lambda i: i.price):
        if free_units <= 0:
            break
        units = min(free_units, item.quantity)
        discount += item.price * units
        free_units -= units
    return discount


def compute_discount(coupon: Coupon, cart: Cart) -> float:
    """Discount amount for `coupon` on `cart`, between 0 and the applicable amount."""
    items = applicable_items(coupon, cart)
    base = sum(item.subtotal for item in items)
    rule = coupon.discount

    if rule.type == "percentage":
        discount = base * rule.value / 100
        if rule.max_discount is not None and discount > rule.max_discount:
            discount = rule.max_discount

    elif rule.type == "fixed_amount":
        discount = min(rule.value, base)

    elif rule.type == "free_shipping":
        discount = cart.shipping_cost or 0.0

    elif rule.type == "buy_x_get_y":
        discount = _buy_x_get_y_discount(rule.buy_quantity, rule.get_quantity, items)

    else:
        raise ValueError(f"Unknown coupon type: {rule.type}")

    return round(max(0.0, min(discount, base)), 2)


# ─────────────────────────── Usage ───────────────────────────

def record_usage(
    coupon: Coupon,
    user_id: str,
    order_value: float,
    discount_given: float,
    now: Optional[datetime] = None,
) -> Coupon:
    """
    Return a copy of `coupon` with one more redemption by `user_id` counted.

    Calling this twice for the same order counts it twice; callers record a
    confirmed order exactly once.
    """
    now = now or local_now()
    updated = coupon.model_copy(deep=True)
    usage = updated.usage

    usage.used_count += 1
    entry = usage.per_user_used.get(user_id)
    if entry is None:
        usage.per_user_used[user_id] = UserUsage(count=1, last_used=now)
    else:
        entry.count += 1
        entry.last_used = now

    stats = updated.stats
    total_usage = stats.total_usage + 1
    total_revenue = stats.total_revenue + order_value
    updated.stats = CouponStats(
        total_usage=total_usage,
        total_discount_given=round(stats.total_discount_given + discount_given, 2),
        total_revenue=round(total_revenue, 2),
        average_order_value=round(total_revenue / total_usage, 2),
        conversion_rate=stats.conversion_rate,
    )
    return updated


# ─────────────────────────── Selection ───────────────────────────

def select_available(
    coupons: Iterable[Coupon],
    user: UserProfile,
    cart_total: float,
    count_orders: OrderCounter,
    now: Optional[datetime] = None,
) -> List[Coupon]:
    """Coupons the user can use for this cart total, highest priority first."""
    now = now or local_now()
    candidates = [
        c for c in coupons
        if is_currently_valid(c, now) and c.minimum_purchase <= cart_total
    ]
    available = []
    for coupon in candidates:
        decision = can_user_use(coupon, user, count_orders, now)
        if decision.eligible:
            available.append(coupon)
        else:
            logger.debug("Coupon %s unavailable for %s: %s", coupon.code, user.user_id, decision.code)
    return sorted(available, key=lambda c: c.priority, reverse=True)


def select_auto_apply(
    coupons: Iterable[Coupon],
    user: UserProfile,
    cart_total: float,
    count_orders: OrderCounter,
    now: Optional[datetime] = None,
) -> List[Coupon]:
    return [
        c for c in select_available(coupons, user, cart_total, count_orders, now)
        if c.auto_apply
    ]


def best_coupon(coupons: Iterable[Coupon], cart: Cart) -> Optional[Coupon]:
    """
    The coupon giving the largest discount on `cart`.
    Ties: higher priority first, then the lexicographically smaller code.
    """
    scored = [(compute_discount(c, cart), c) for c in coupons]
    if not scored:
        return None
    scored.sort(key=lambda dc: (-dc[0], -dc[1].priority, dc[1].code))
    return scored[0][1]


def combine_discounts(coupons: Iterable[Coupon], cart: Cart) -> List[tuple]:
    """
    Stack coupons on one cart. Returns [(coupon, discount), ...].

    The highest priority coupon is always taken; further coupons join only
    while every chosen coupon is stackable. The combined discount never
    exceeds cart total + shipping.
    """
    ordered = sorted(coupons, key=lambda c: c.priority, reverse=True)
    ceiling = cart.total + (cart.shipping_cost or 0.0)

    chosen = []
    given = 0.0
    for coupon in ordered:
        if chosen and not (coupon.stackable and all(c.stackable for c, _ in chosen)):
            continue
        amount = min(compute_discount(coupon, cart), round(ceiling - given, 2))
        if amount <= 0 and chosen:
            continue
        chosen.append((coupon, amount))
        given += amount
    return chosen
