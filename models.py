from datetime import timezone as dt_timezone

from sqlalchemy import (
    Column, Integer, String, Float, JSON, DateTime, Boolean, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator
from database import Base


class UTCDateTime(TypeDecorator):
    """
    DateTime stored as UTC and read back timezone-aware.

    SQLite keeps only the wall-clock part of a datetime, so offsets are
    converted away before writing. Naive values are taken as UTC.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(dt_timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=dt_timezone.utc)
        return value


class Coupon(Base):
    """
    Database model for coupons.

    discount: JSON holding the type-specific rule, tagged by "type".
        - percentage:    { "type": "percentage", "value": <float>, "max_discount": <float|null> }
        - fixed_amount:  { "type": "fixed_amount", "value": <float> }
        - free_shipping: { "type": "free_shipping", "value": <float> }
        - buy_x_get_y:   {
                             "type": "buy_x_get_y", "value": <float>,
                             "buy_quantity": <int>, "get_quantity": <int>,
                             "get_products": [<str>, ...], "auto_apply": <bool>
                         }
    target_customers: JSON tagged by "type" (all, new_customers, returning_customers,
        loyalty_tier, specific_users).

    used_count is only ever advanced with a conditional UPDATE (see store.CouponStore),
    so it cannot pass total_limit.
    """
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String(20), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    type = Column(String, nullable=False)
    discount = Column(JSON, nullable=False)
    minimum_purchase = Column(Float, default=0.0, nullable=False)

    applicable_products = Column(JSON, default=list, nullable=False)
    applicable_categories = Column(JSON, default=list, nullable=False)
    exclude_products = Column(JSON, default=list, nullable=False)
    exclude_categories = Column(JSON, default=list, nullable=False)
    target_customers = Column(JSON, nullable=False)
    conditions = Column(JSON, default=dict, nullable=False)

    total_limit = Column(Integer, nullable=True)  # NULL means unlimited
    used_count = Column(Integer, default=0, nullable=False)
    per_user_limit = Column(Integer, default=1, nullable=False)

    start_date = Column(UTCDateTime(timezone=True), nullable=False)
    end_date = Column(UTCDateTime(timezone=True), nullable=False)
    timezone = Column(String, default="Asia/Dhaka", nullable=False)

    stackable = Column(Boolean, default=False, nullable=False)
    priority = Column(Integer, default=1, index=True, nullable=False)
    is_active = Column(Boolean, default=True, index=True, nullable=False)
    auto_apply = Column(Boolean, default=False, index=True, nullable=False)

    total_usage = Column(Integer, default=0, nullable=False)
    total_discount_given = Column(Float, default=0.0, nullable=False)
    total_revenue = Column(Float, default=0.0, nullable=False)
    average_order_value = Column(Float, default=0.0, nullable=False)
    conversion_rate = Column(Float, default=0.0, nullable=False)

    created_at = Column(UTCDateTime(timezone=True), server_default=func.now())
    updated_at = Column(UTCDateTime(timezone=True), onupdate=func.now())

    user_usages = relationship(
        "CouponUserUsage", back_populates="coupon", cascade="all, delete-orphan", lazy="selectin"
    )


class CouponUserUsage(Base):
    """How many times one user has redeemed one coupon."""
    __tablename__ = "coupon_user_usage"
    __table_args__ = (UniqueConstraint("coupon_id", "user_id", name="uq_coupon_user"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    count = Column(Integer, default=1, nullable=False)
    last_used = Column(UTCDateTime(timezone=True), nullable=False)

    coupon = relationship("Coupon", back_populates="user_usages")


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String, primary_key=True)
    created_at = Column(UTCDateTime(timezone=True), nullable=False)
    loyalty_tier = Column(String, nullable=True)  # bronze | silver | gold | platinum
    total_orders = Column(Integer, default=0, nullable=False)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, index=True, nullable=False)
    status = Column(String, default="pending", nullable=False)  # "cancelled" orders are ignored
    total = Column(Float, default=0.0, nullable=False)
    coupon_code = Column(String(20), nullable=True)
    created_at = Column(UTCDateTime(timezone=True), server_default=func.now())
