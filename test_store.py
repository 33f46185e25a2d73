"""
test_store.py
=============
Tests for the coupon, user and order stores.

Covers:
- Coupon persistence (create, read, partial update, deactivate)
- Atomic usage recording against global and per-user limits
- Stale reads: two orders validated against the same last redemption
- Retry of transient database errors
- Thread race on the in-memory store
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

import coupon_engine
import models
import schemas
from database import Base
from exceptions import ConcurrentRedemptionConflict, CouponNotFound, StoreUnavailable, UserNotFound
from store import CouponStore, InMemoryCouponStore, OrderStore, UserStore

TEST_DATABASE_URL = "sqlite:///./test_store.db"

test_engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

NOW = datetime(2025, 6, 11, 14, 30, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def setup_db():
    """Create fresh tables before each test and drop them after."""
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


# ══════════════════════════════════════════════
#  Helper functions
# ══════════════════════════════════════════════

def coupon_create(**overrides):
    data = {
        "code": "SAVE20",
        "name": "Save 20%",
        "discount": {"type": "percentage", "value": 20, "max_discount": 50},
        "validity": {
            "start_date": datetime(2025, 1, 1, tzinfo=timezone.utc),
            "end_date": datetime(2025, 12, 31, tzinfo=timezone.utc),
        },
    }
    data.update(overrides)
    return schemas.CouponCreate(**data)


def operational_error():
    return OperationalError("UPDATE coupons", {}, Exception("database is locked"))


# ══════════════════════════════════════════════
#  Coupon persistence
# ══════════════════════════════════════════════

class TestCouponStore:

    def test_add_and_read_back(self, db):
        store = CouponStore(db)
        store.add(coupon_create(
            applicable_categories={"c1", "c2"},
            target_customers={"type": "loyalty_tier", "loyalty_tier": "gold"},
            conditions={"day_of_week": ["friday"], "time_range": {"start": "09:00", "end": "18:00"}},
            total_limit=100,
        ))
        coupon = store.require("save20")
        assert coupon.code == "SAVE20"
        assert coupon.discount.type == "percentage"
        assert coupon.discount.max_discount == 50
        assert coupon.applicable_categories == {"c1", "c2"}
        assert coupon.target_customers.loyalty_tier == "gold"
        assert coupon.conditions.time_range.end == "18:00"
        assert coupon.usage.total_limit == 100
        assert coupon.usage.per_user_limit == 1
        assert coupon.usage.used_count == 0

    def test_missing_coupon(self, db):
        store = CouponStore(db)
        assert store.get_by_code("NOPE") is None
        with pytest.raises(CouponNotFound):
            store.require("NOPE")

    def test_list_active(self, db):
        store = CouponStore(db)
        store.add(coupon_create(code="ONE", priority=2))
        store.add(coupon_create(code="TWO", priority=8))
        store.add(coupon_create(code="OFF", is_active=False))
        assert [c.code for c in store.list_active()] == ["TWO", "ONE"]

    def test_partial_update(self, db):
        store = CouponStore(db)
        store.add(coupon_create(total_limit=10))
        updated = store.update("SAVE20", schemas.CouponUpdate(priority=7, total_limit=None))
        assert updated.priority == 7
        assert updated.usage.total_limit is None
        assert updated.name == "Save 20%"

    def test_update_is_validated(self, db):
        store = CouponStore(db)
        store.add(coupon_create())
        with pytest.raises(ValidationError):
            store.update("SAVE20", schemas.CouponUpdate(priority=11))

    def test_total_limit_not_below_used_count(self, db):
        store = CouponStore(db)
        store.add(coupon_create(total_limit=5, per_user_limit=3))
        for _ in range(3):
            store.record_usage_if_below_limit("SAVE20", "u1", 100.0, 10.0, NOW)
        with pytest.raises(ValidationError):
            store.update("SAVE20", schemas.CouponUpdate(total_limit=2))
        coupon = store.require("SAVE20")
        assert coupon.usage.total_limit == 5
        assert store.update("SAVE20", schemas.CouponUpdate(total_limit=3)).usage.total_limit == 3

    def test_offset_dates_keep_their_instant(self, db):
        dhaka = timezone(timedelta(hours=6))
        store = CouponStore(db)
        store.add(coupon_create(validity={
            "start_date": datetime(2025, 6, 1, 9, 0, tzinfo=dhaka),
            "end_date": datetime(2025, 6, 11, 18, 0, tzinfo=dhaka),
        }))
        coupon = store.require("SAVE20")
        assert coupon.validity.end_date == datetime(2025, 6, 11, 12, 0, tzinfo=timezone.utc)
        assert coupon.validity.end_date.tzinfo is not None
        # 18:00 in Dhaka is 12:00 UTC, well before NOW (14:30 UTC)
        assert coupon_engine.is_expired(coupon, NOW)
        assert not coupon_engine.is_currently_valid(coupon, NOW)

    def test_last_used_offset_kept(self, db):
        dhaka = timezone(timedelta(hours=6))
        store = CouponStore(db)
        store.add(coupon_create())
        store.record_usage_if_below_limit("SAVE20", "u1", 100.0, 10.0, NOW.astimezone(dhaka))
        assert store.require("SAVE20").usage.per_user_used["u1"].last_used == NOW

    def test_timestamps_carried_on_record(self, db):
        store = CouponStore(db)
        store.add(coupon_create())
        assert [c.created_at is not None for c in store.list_all()] == [True]

    def test_deactivate(self, db):
        store = CouponStore(db)
        store.add(coupon_create())
        assert store.deactivate("SAVE20").is_active is False
        assert store.list_active() == []


# ══════════════════════════════════════════════
#  Usage recording
# ══════════════════════════════════════════════

class TestRecordUsage:

    def test_records_usage_and_stats(self, db):
        store = CouponStore(db)
        store.add(coupon_create(per_user_limit=3))
        store.record_usage_if_below_limit("SAVE20", "u1", 300.0, 30.0, NOW)
        coupon = store.record_usage_if_below_limit("SAVE20", "u1", 100.0, 10.0, NOW)
        assert coupon.usage.used_count == 2
        assert coupon.usage.per_user_used["u1"].count == 2
        assert coupon.stats.total_usage == 2
        assert coupon.stats.total_discount_given == pytest.approx(40.0)
        assert coupon.stats.total_revenue == pytest.approx(400.0)
        assert coupon.stats.average_order_value == pytest.approx(200.0)

    def test_total_limit_never_exceeded(self, db):
        store = CouponStore(db)
        store.add(coupon_create(total_limit=2))
        store.record_usage_if_below_limit("SAVE20", "u1", 100.0, 10.0, NOW)
        store.record_usage_if_below_limit("SAVE20", "u2", 100.0, 10.0, NOW)
        with pytest.raises(ConcurrentRedemptionConflict):
            store.record_usage_if_below_limit("SAVE20", "u3", 100.0, 10.0, NOW)
        coupon = store.require("SAVE20")
        assert coupon.usage.used_count == 2
        assert "u3" not in coupon.usage.per_user_used

    def test_per_user_limit_never_exceeded(self, db):
        store = CouponStore(db)
        store.add(coupon_create())
        store.record_usage_if_below_limit("SAVE20", "u1", 100.0, 10.0, NOW)
        with pytest.raises(ConcurrentRedemptionConflict):
            store.record_usage_if_below_limit("SAVE20", "u1", 100.0, 10.0, NOW)
        coupon = store.require("SAVE20")
        assert coupon.usage.used_count == 1
        assert coupon.usage.per_user_used["u1"].count == 1

    def test_stale_read_loses_the_race(self):
        """Both orders see one redemption left; only the first to record gets it."""
        first, second = TestingSessionLocal(), TestingSessionLocal()
        try:
            CouponStore(first).add(coupon_create(total_limit=1))
            store_a, store_b = CouponStore(first), CouponStore(second)
            seen_a = store_a.require("SAVE20")
            seen_b = store_b.require("SAVE20")
            assert coupon_engine.is_currently_valid(seen_a, NOW)
            assert coupon_engine.is_currently_valid(seen_b, NOW)

            store_a.record_usage_if_below_limit("SAVE20", "u1", 100.0, 10.0, NOW)
            with pytest.raises(ConcurrentRedemptionConflict):
                store_b.record_usage_if_below_limit("SAVE20", "u2", 100.0, 10.0, NOW)
            assert store_b.require("SAVE20").usage.used_count == 1
        finally:
            first.close()
            second.close()

    def test_transient_error_is_retried(self, db, monkeypatch):
        store = CouponStore(db, retries=2)
        store.add(coupon_create())
        real = store._increment_coupon_usage
        calls = []

        def flaky(*args):
            calls.append(args)
            if len(calls) == 1:
                raise operational_error()
            return real(*args)

        monkeypatch.setattr(store, "_increment_coupon_usage", flaky)
        coupon = store.record_usage_if_below_limit("SAVE20", "u1", 100.0, 10.0, NOW)
        assert len(calls) == 2
        assert coupon.usage.used_count == 1
        assert coupon.usage.per_user_used["u1"].count == 1

    def test_retries_exhausted(self, db, monkeypatch):
        store = CouponStore(db, retries=1)
        store.add(coupon_create())

        def broken(*args):
            raise operational_error()

        monkeypatch.setattr(store, "_increment_coupon_usage", broken)
        with pytest.raises(StoreUnavailable):
            store.record_usage_if_below_limit("SAVE20", "u1", 100.0, 10.0, NOW)
        assert store.require("SAVE20").usage.used_count == 0


# ══════════════════════════════════════════════
#  In-memory store under concurrency
# ══════════════════════════════════════════════

def memory_coupon(**usage):
    return schemas.Coupon(
        code="RACE",
        name="Race",
        discount={"type": "fixed_amount", "value": 5},
        validity={"start_date": NOW - timedelta(days=1), "end_date": NOW + timedelta(days=1)},
        usage=usage,
    )


def _attempt(store, user_id):
    try:
        store.record_usage_if_below_limit("RACE", user_id, 50.0, 5.0, NOW)
        return True
    except ConcurrentRedemptionConflict:
        return False


class TestInMemoryCouponStore:

    def test_concurrent_redemptions_stop_at_total_limit(self):
        store = InMemoryCouponStore([memory_coupon(total_limit=10)])
        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda i: _attempt(store, f"u{i}"), range(50)))
        coupon = store.require("RACE")
        assert results.count(True) == 10
        assert coupon.usage.used_count == 10
        assert coupon.stats.total_usage == 10
        assert len(coupon.usage.per_user_used) == 10

    def test_concurrent_redemptions_by_one_user(self):
        store = InMemoryCouponStore([memory_coupon(per_user_limit=1)])
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: _attempt(store, "u1"), range(20)))
        assert results.count(True) == 1
        assert store.require("RACE").usage.per_user_used["u1"].count == 1

    def test_inactive_coupon_rejected(self):
        coupon = memory_coupon().model_copy(update={"is_active": False})
        store = InMemoryCouponStore([coupon])
        assert _attempt(store, "u1") is False


# ══════════════════════════════════════════════
#  Users & orders
# ══════════════════════════════════════════════

class TestUserAndOrderStores:

    def test_user_profile(self, db):
        db.add(models.Customer(id="u1", created_at=NOW, loyalty_tier="gold", total_orders=4))
        db.commit()
        user = UserStore(db).get("u1")
        assert user.loyalty_tier == "gold"
        assert user.total_orders == 4

    def test_unknown_user(self, db):
        with pytest.raises(UserNotFound):
            UserStore(db).get("ghost")

    def test_cancelled_orders_not_counted(self, db):
        db.add_all([
            models.Order(user_id="u1", status="delivered", total=100),
            models.Order(user_id="u1", status="cancelled", total=100),
            models.Order(user_id="u2", status="pending", total=100),
        ])
        db.commit()
        orders = OrderStore(db)
        assert orders.count_active_orders("u1") == 1
        assert orders.count_active_orders("u3") == 0
