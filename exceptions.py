"""
exceptions.py
=============
Errors raised while looking up, validating and redeeming coupons.

Evaluation failures (not valid, limits, eligibility, cart conditions) are
recoverable: they are reported back to the customer. Only StoreUnavailable
means the request itself could not be served.
"""

from typing import List, Optional


class CouponError(Exception):
    code = "coupon_error"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class CouponNotFound(CouponError):
    code = "not_found"

    def __init__(self, coupon_code: str) -> None:
        super().__init__(f"Invalid coupon code: {coupon_code}")
        self.coupon_code = coupon_code


class CouponNotValid(CouponError):
    code = "not_valid"


class CouponExpired(CouponNotValid):
    code = "expired"


class UsageLimitExceeded(CouponError):
    code = "usage_limit_exceeded"


class NotEligible(CouponError):
    code = "not_eligible"


class CartValidationFailed(CouponError):
    code = "cart_validation_failed"

    def __init__(self, errors: List[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = list(errors)


class ConcurrentRedemptionConflict(CouponError):
    """The usage limit was reached between validation and recording."""

    code = "concurrent_redemption_conflict"


class UserNotFound(CouponError):
    code = "user_not_found"

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class StoreUnavailable(CouponError):
    code = "store_unavailable"


# Decision codes produced by coupon_engine.can_user_use -> exception to raise
DECISION_ERRORS = {
    CouponNotValid.code: CouponNotValid,
    CouponExpired.code: CouponExpired,
    UsageLimitExceeded.code: UsageLimitExceeded,
    NotEligible.code: NotEligible,
}
