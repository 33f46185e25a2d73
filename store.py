"""
store.py
========
Coupon, user and order stores used by the redemption workflow.

CouponStore keeps coupons in the database. Usage is recorded with conditional
UPDATE statements, so two orders racing for the last redemption cannot both
succeed: the loser updates zero rows and gets ConcurrentRedemptionConflict.

InMemoryCouponStore offers the same interface over a dict, with one lock per
coupon code around the check-and-record step.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

import coupon_engine
import models
import schemas
from config import settings
from exceptions import ConcurrentRedemptionConflict, CouponNotFound, StoreUnavailable, UserNotFound

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


# ─────────────────────────── Row <-> record ───────────────────────────

def coupon_from_row(row: models.Coupon) -> schemas.Coupon:
    return schemas.Coupon(
        code=row.code,
        name=row.name,
        description=row.description,
        discount=row.discount,
        minimum_purchase=row.minimum_purchase,
        applicable_products=set(row.applicable_products or []),
        applicable_categories=set(row.applicable_categories or []),
        exclude_products=set(row.exclude_products or []),
        exclude_categories=set(row.exclude_categories or []),
        target_customers=row.target_customers,
        validity=schemas.Validity(start_date=row.start_date, end_date=row.end_date, timezone=row.timezone),
        conditions=row.conditions or {},
        stackable=row.stackable,
        priority=row.priority,
        is_active=row.is_active,
        auto_apply=row.auto_apply,
        usage=schemas.CouponUsage(
            total_limit=row.total_limit,
            used_count=row.used_count,
            per_user_limit=row.per_user_limit,
            per_user_used={
                u.user_id: schemas.UserUsage(count=u.count, last_used=u.last_used)
                for u in row.user_usages
            },
        ),
        stats=schemas.CouponStats(
            total_usage=row.total_usage,
            total_discount_given=row.total_discount_given,
            total_revenue=row.total_revenue,
            average_order_value=row.average_order_value,
            conversion_rate=row.conversion_rate,
        ),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _write_definition(
    row: models.Coupon, coupon: schemas.CouponBase, total_limit: Optional[int], per_user_limit: int
) -> None:
    row.code = coupon.code
    row.name = coupon.name
    row.description = coupon.description
    row.type = coupon.discount.type
    row.discount = coupon.discount.model_dump(mode="json")
    row.minimum_purchase = coupon.minimum_purchase
    row.applicable_products = sorted(coupon.applicable_products)
    row.applicable_categories = sorted(coupon.applicable_categories)
    row.exclude_products = sorted(coupon.exclude_products)
    row.exclude_categories = sorted(coupon.exclude_categories)
    row.target_customers = coupon.target_customers.model_dump(mode="json")
    row.conditions = coupon.conditions.model_dump(mode="json")
    row.total_limit = total_limit
    row.per_user_limit = per_user_limit
    row.start_date = coupon.validity.start_date
    row.end_date = coupon.validity.end_date
    row.timezone = coupon.validity.timezone
    row.stackable = coupon.stackable
    row.priority = coupon.priority
    row.is_active = coupon.is_active
    row.auto_apply = coupon.auto_apply


# ─────────────────────────── SQL coupon store ───────────────────────────

class CouponStore:

    def __init__(self, db: Session, retries: Optional[int] = None) -> None:
        self.db = db
        self.retries = retries if retries is not None else settings.redemption_retries

    def _row(self, code: str) -> Optional[models.Coupon]:
        return self.db.query(models.Coupon).filter(models.Coupon.code == normalize_code(code)).first()

    def _require_row(self, code: str) -> models.Coupon:
        row = self._row(code)
        if row is None:
            raise CouponNotFound(normalize_code(code))
        return row

    def get_by_code(self, code: str) -> Optional[schemas.Coupon]:
        row = self._row(code)
        return coupon_from_row(row) if row else None

    def require(self, code: str) -> schemas.Coupon:
        return coupon_from_row(self._require_row(code))

    def list_all(self) -> List[schemas.Coupon]:
        return [coupon_from_row(r) for r in self.db.query(models.Coupon).order_by(models.Coupon.id).all()]

    def list_active(self) -> List[schemas.Coupon]:
        rows = (
            self.db.query(models.Coupon)
            .filter(models.Coupon.is_active == True)  # noqa: E712
            .order_by(models.Coupon.priority.desc(), models.Coupon.id)
            .all()
        )
        return [coupon_from_row(r) for r in rows]

    def exists(self, code: str) -> bool:
        return self._row(code) is not None

    def add(self, coupon: schemas.CouponCreate) -> schemas.Coupon:
        row = models.Coupon()
        _write_definition(row, coupon, coupon.total_limit, coupon.per_user_limit)
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        logger.info("Created coupon %s (%s)", row.code, row.type)
        return coupon_from_row(row)

    def update(self, code: str, changes: schemas.CouponUpdate) -> schemas.Coupon:
        """Apply a partial update; the merged coupon is validated as a whole."""
        row = self._require_row(code)
        merged = coupon_from_row(row).model_dump()
        fields = changes.model_dump(exclude_unset=True)
        for key in ("total_limit", "per_user_limit"):
            if key in fields:
                merged["usage"][key] = fields.pop(key)
        merged.update(fields)
        coupon = schemas.Coupon.model_validate(merged)

        _write_definition(row, coupon, coupon.usage.total_limit, coupon.usage.per_user_limit)
        self.db.commit()
        self.db.refresh(row)
        logger.info("Updated coupon %s: %s", row.code, sorted(changes.model_fields_set))
        return coupon_from_row(row)

    def deactivate(self, code: str) -> schemas.Coupon:
        row = self._require_row(code)
        row.is_active = False
        self.db.commit()
        self.db.refresh(row)
        logger.info("Deactivated coupon %s", row.code)
        return coupon_from_row(row)

    # ── Usage recording ──

    def _increment_user_usage(self, coupon_id: int, user_id: str, now: datetime) -> bool:
        per_user_limit = (
            select(models.Coupon.per_user_limit)
            .where(models.Coupon.id == coupon_id)
            .scalar_subquery()
        )
        result = self.db.execute(
            update(models.CouponUserUsage)
            .where(
                models.CouponUserUsage.coupon_id == coupon_id,
                models.CouponUserUsage.user_id == user_id,
                models.CouponUserUsage.count < per_user_limit,
            )
            .values(count=models.CouponUserUsage.count + 1, last_used=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return True

        existing = self.db.execute(
            select(models.CouponUserUsage.id).where(
                models.CouponUserUsage.coupon_id == coupon_id,
                models.CouponUserUsage.user_id == user_id,
            )
        ).first()
        if existing is not None:
            return False  # per-user limit already reached

        self.db.add(models.CouponUserUsage(coupon_id=coupon_id, user_id=user_id, count=1, last_used=now))
        try:
            self.db.flush()
        except IntegrityError:
            # Another redemption inserted the row first
            return False
        return True

    def _increment_coupon_usage(self, coupon_id: int, order_value: float, discount: float) -> bool:
        c = models.Coupon
        result = self.db.execute(
            update(c)
            .where(
                c.id == coupon_id,
                c.is_active == True,  # noqa: E712
                or_(c.total_limit.is_(None), c.used_count < c.total_limit),
            )
            .values(
                used_count=c.used_count + 1,
                total_usage=c.total_usage + 1,
                total_discount_given=c.total_discount_given + discount,
                total_revenue=c.total_revenue + order_value,
                average_order_value=(c.total_revenue + order_value) / (c.total_usage + 1),
            )
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    def record_usage_if_below_limit(
        self,
        code: str,
        user_id: str,
        order_value: float,
        discount: float,
        now: Optional[datetime] = None,
    ) -> schemas.Coupon:
        """
        Count one redemption of `code` by `user_id`, atomically.

        Raises ConcurrentRedemptionConflict when the global or per-user limit
        was reached since the coupon was validated. Transient database errors
        are retried; when retries run out, StoreUnavailable is raised.
        """
        now = now or coupon_engine.local_now()
        coupon_id = self._require_row(code).id

        attempt = 0
        while True:
            attempt += 1
            try:
                if not self._increment_user_usage(coupon_id, user_id, now):
                    self.db.rollback()
                    raise ConcurrentRedemptionConflict(
                        f"Coupon {normalize_code(code)} has reached its usage limit for this user"
                    )
                if not self._increment_coupon_usage(coupon_id, order_value, discount):
                    self.db.rollback()
                    raise ConcurrentRedemptionConflict(
                        f"Coupon {normalize_code(code)} is no longer available"
                    )
                self.db.commit()
                break
            except OperationalError as e:
                self.db.rollback()
                if attempt > self.retries:
                    logger.error("Recording usage of %s failed after %d attempts: %s", code, attempt, e)
                    raise StoreUnavailable("Coupon store is unavailable") from e
                logger.warning("Transient error recording usage of %s (attempt %d): %s", code, attempt, e)

        self.db.expire_all()
        return self.require(code)


# ─────────────────────────── In-memory coupon store ───────────────────────────

class InMemoryCouponStore:

    def __init__(self, coupons: Optional[List[schemas.Coupon]] = None) -> None:
        self._coupons: Dict[str, schemas.Coupon] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        for coupon in coupons or []:
            self.add(coupon)

    def _lock_for(self, code: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(code, threading.Lock())

    def add(self, coupon: schemas.Coupon) -> schemas.Coupon:
        with self._lock_for(coupon.code):
            self._coupons[coupon.code] = coupon
        return coupon

    def get_by_code(self, code: str) -> Optional[schemas.Coupon]:
        return self._coupons.get(normalize_code(code))

    def require(self, code: str) -> schemas.Coupon:
        coupon = self.get_by_code(code)
        if coupon is None:
            raise CouponNotFound(normalize_code(code))
        return coupon

    def list_active(self) -> List[schemas.Coupon]:
        return [c for c in self._coupons.values() if c.is_active]

    def record_usage_if_below_limit(
        self,
        code: str,
        user_id: str,
        order_value: float,
        discount: float,
        now: Optional[datetime] = None,
    ) -> schemas.Coupon:
        code = normalize_code(code)
        with self._lock_for(code):
            coupon = self._coupons.get(code)
            if coupon is None:
                raise CouponNotFound(code)
            if not coupon.is_active or not coupon_engine.has_remaining_uses(coupon):
                raise ConcurrentRedemptionConflict(f"Coupon {code} is no longer available")
            if coupon_engine.user_usage_count(coupon, user_id) >= coupon.usage.per_user_limit:
                raise ConcurrentRedemptionConflict(
                    f"Coupon {code} has reached its usage limit for this user"
                )
            updated = coupon_engine.record_usage(coupon, user_id, order_value, discount, now)
            self._coupons[code] = updated
            return updated


# ─────────────────────────── Users & orders ───────────────────────────

class UserStore:

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, user_id: str) -> schemas.UserProfile:
        row = self.db.get(models.Customer, user_id)
        if row is None:
            raise UserNotFound(user_id)
        return schemas.UserProfile(
            user_id=row.id,
            created_at=row.created_at,
            loyalty_tier=row.loyalty_tier,
            total_orders=row.total_orders,
        )


class OrderStore:

    def __init__(self, db: Session) -> None:
        self.db = db

    def count_active_orders(self, user_id: str) -> int:
        return (
            self.db.query(models.Order)
            .filter(models.Order.user_id == user_id, models.Order.status != "cancelled")
            .count()
        )
