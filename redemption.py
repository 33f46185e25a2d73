"""
redemption.py
=============
Order-placement workflow around the coupon engine.

preview(): look the coupon up, check the user, check the cart, compute the
discount. Nothing is written.

redeem(): preview, then count the redemption in the coupon store with the
store's atomic conditional increment. If the limit was reached in the
meantime the caller gets ConcurrentRedemptionConflict; no other coupon is
tried in its place.
"""

import logging
from datetime import datetime
from typing import Optional

import coupon_engine
import schemas
from exceptions import CartValidationFailed, CouponError, DECISION_ERRORS

logger = logging.getLogger(__name__)


class RedemptionService:

    def __init__(self, coupons, users, orders) -> None:
        """
        coupons: CouponStore / InMemoryCouponStore
        users:   object with get(user_id) -> UserProfile
        orders:  object with count_active_orders(user_id) -> int
        """
        self.coupons = coupons
        self.users = users
        self.orders = orders

    def _check(
        self,
        coupon: schemas.Coupon,
        user: schemas.UserProfile,
        cart: schemas.Cart,
        payment_method: Optional[schemas.PaymentMethod],
        now: datetime,
    ) -> schemas.DiscountPreview:
        decision = coupon_engine.can_user_use(coupon, user, self.orders.count_active_orders, now)
        if not decision.eligible:
            logger.info("Coupon %s rejected for %s: %s", coupon.code, user.user_id, decision.code)
            error = DECISION_ERRORS.get(decision.code, CouponError)
            raise error(decision.reason, code=decision.code)

        validation = coupon_engine.validate_cart(coupon, cart, now, payment_method)
        if not validation.valid:
            logger.info("Coupon %s cart validation failed: %s", coupon.code, validation.errors)
            raise CartValidationFailed(validation.errors)

        discount = coupon_engine.compute_discount(coupon, cart)
        shipping = cart.shipping_cost or 0.0
        return schemas.DiscountPreview(
            code=coupon.code,
            type=coupon.type,
            discount=discount,
            applicable_amount=coupon_engine.applicable_amount(coupon, cart),
            cart_total=cart.total,
            final_total=round(max(0.0, cart.total + shipping - discount), 2),
            stackable=coupon.stackable,
        )

    def preview(
        self,
        code: str,
        user_id: str,
        cart: schemas.Cart,
        payment_method: Optional[schemas.PaymentMethod] = None,
        now: Optional[datetime] = None,
    ) -> schemas.DiscountPreview:
        now = now or coupon_engine.local_now()
        coupon = self.coupons.require(code)
        user = self.users.get(user_id)
        return self._check(coupon, user, cart, payment_method, now)

    def redeem(
        self,
        code: str,
        user_id: str,
        cart: schemas.Cart,
        payment_method: Optional[schemas.PaymentMethod] = None,
        now: Optional[datetime] = None,
    ) -> schemas.Redemption:
        now = now or coupon_engine.local_now()
        result = self.preview(code, user_id, cart, payment_method, now)
        order_value = result.final_total

        updated = self.coupons.record_usage_if_below_limit(
            result.code, user_id, order_value, result.discount, now
        )
        logger.info(
            "Redeemed coupon %s for %s: discount=%.2f order_value=%.2f (%d used)",
            updated.code, user_id, result.discount, order_value, updated.usage.used_count,
        )
        return schemas.Redemption(
            **result.model_dump(),
            user_id=user_id,
            order_value=order_value,
            used_count=updated.usage.used_count,
            remaining_uses=coupon_engine.remaining_uses(updated),
        )

    def _user_candidates(self, user_id: str, cart: schemas.Cart, now: datetime, auto_only: bool):
        user = self.users.get(user_id)
        select = coupon_engine.select_auto_apply if auto_only else coupon_engine.select_available
        return select(self.coupons.list_active(), user, cart.total, self.orders.count_active_orders, now)

    def available(
        self, user_id: str, cart: schemas.Cart, now: Optional[datetime] = None
    ) -> schemas.AvailableCouponsResponse:
        """Eligible coupons, highest priority first, and the one giving the largest discount."""
        now = now or coupon_engine.local_now()
        candidates = self._user_candidates(user_id, cart, now, auto_only=False)
        best = coupon_engine.best_coupon(candidates, cart)
        return schemas.AvailableCouponsResponse(
            coupons=[_summary(c, cart) for c in candidates],
            best=best.code if best else None,
        )

    def auto_apply(
        self, user_id: str, cart: schemas.Cart, now: Optional[datetime] = None
    ) -> schemas.AutoApplyResponse:
        """
        Eligible auto-apply coupons, and the stacked selection applied to the cart:
        the highest priority coupon, plus further ones while all are stackable.
        """
        now = now or coupon_engine.local_now()
        candidates = self._user_candidates(user_id, cart, now, auto_only=True)
        applied = coupon_engine.combine_discounts(candidates, cart)
        return schemas.AutoApplyResponse(
            coupons=[_summary(c, cart) for c in candidates],
            applied=[schemas.AppliedCoupon(code=c.code, discount=amount) for c, amount in applied],
            total_discount=round(sum(amount for _, amount in applied), 2),
        )


def _summary(coupon: schemas.Coupon, cart: schemas.Cart) -> schemas.AvailableCoupon:
    return schemas.AvailableCoupon(
        code=coupon.code,
        name=coupon.name,
        type=coupon.type,
        priority=coupon.priority,
        discount=coupon_engine.compute_discount(coupon, cart),
        stackable=coupon.stackable,
        auto_apply=coupon.auto_apply,
    )
