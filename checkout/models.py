from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Integer, JSON, Numeric, String, Text, UniqueConstraint
)
from checkout.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    key = Column(String(255), primary_key=True)    # <provider>:<order id> or <provider>:event:<id>
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Course(Base):
    __tablename__ = "courses"

    id = Column(String, primary_key=True)
    slug = Column(String, unique=True, index=True)
    title = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="ARS")
    access_months = Column(Integer, default=12)
    is_active = Column(Boolean, default=True)


class Plan(Base):
    __tablename__ = "plans"

    id = Column(String, primary_key=True)
    slug = Column(String, unique=True, index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="ARS")
    billing_interval = Column(String, default="month")     # month | year
    is_active = Column(Boolean, default=True)


class Coupon(Base):
    __tablename__ = "coupons"

    code = Column(String, primary_key=True)                 # stored upper-case
    discount_percent = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    max_redemptions = Column(Integer, nullable=True)
    redemptions = Column(Integer, default=0, nullable=False)
    subject_type = Column(String, nullable=True)            # restricts the coupon when set
    subject_id = Column(String, nullable=True)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (UniqueConstraint("provider", "provider_order_id", name="uq_payments_provider_order"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String, nullable=False)
    provider_order_id = Column(String, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    subject_type = Column(String, nullable=False)
    subject_id = Column(String, nullable=False)
    amount = Column(Numeric(12, 2))
    currency = Column(String(3))
    coupon_code = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_enrollments_user_course"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, index=True, nullable=False)
    course_id = Column(String, nullable=False)
    status = Column(String, default="active")
    started_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    provider = Column(String)
    provider_order_id = Column(String)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, unique=True, index=True, nullable=False)
    plan_id = Column(String, nullable=False)
    status = Column(String, default="active")
    current_period_end = Column(DateTime(timezone=True))
    provider = Column(String)
    provider_order_id = Column(String)


class ReconciliationException(Base):
    __tablename__ = "reconciliation_exceptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String, nullable=False)
    provider_order_id = Column(String, nullable=False, index=True)
    event_key = Column(String, nullable=False)
    payload = Column(JSON)
    error = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
