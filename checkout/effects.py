"""Effects of a confirmed payment: course enrollment and subscription activation.

`SqlEffectApplier.apply` is idempotent per (provider, provider_order_id): the
`payments` row is inserted in the same transaction as the enrollment or
activation, and a uniqueness conflict on it means the effect was already
applied.
"""
import calendar
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from checkout.domain import ProviderCapture, SubjectType
from checkout.models import Coupon, Course, Enrollment, Payment, Plan, Subscription

logger = logging.getLogger(__name__)


class EffectApplier(Protocol):

    def apply(self, capture: ProviderCapture) -> bool:
        """Applies the effect of `capture`; False if it was already applied."""
        ...

    def is_applied(self, provider: str, provider_order_id: str) -> bool:
        ...


def add_months(dt: datetime, months: int) -> datetime:
    month = dt.month - 1 + months
    year = dt.year + month // 12
    month = month % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def interval_months(interval: Optional[str]) -> int:
    return 12 if (interval or "").lower() in {"year", "annual", "yearly"} else 1


class SqlEffectApplier:

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def is_applied(self, provider: str, provider_order_id: str) -> bool:
        db = self.session_factory()
        try:
            return db.query(Payment.id).filter_by(
                provider=provider, provider_order_id=provider_order_id,
            ).first() is not None
        finally:
            db.close()

    def apply(self, capture: ProviderCapture) -> bool:
        ref = capture.reference
        if ref is None:
            raise ValueError(f"Capture {capture.provider}:{capture.provider_order_id} carries no checkout reference")

        db = self.session_factory()
        try:
            db.add(Payment(
                provider=capture.provider,
                provider_order_id=capture.provider_order_id,
                user_id=ref.user_id,
                subject_type=ref.subject_type.value,
                subject_id=ref.subject_id,
                amount=capture.amount if capture.amount is not None else Decimal("0"),
                currency=capture.currency,
                coupon_code=ref.coupon_code,
            ))
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                logger.info("Effect for %s:%s already applied", capture.provider, capture.provider_order_id)
                return False

            now = datetime.now(timezone.utc)
            if ref.subject_type is SubjectType.COURSE:
                self._enroll(db, capture, now)
            else:
                self._activate(db, capture, now)

            if ref.coupon_code:
                db.execute(
                    update(Coupon)
                    .where(Coupon.code == ref.coupon_code)
                    .values(redemptions=Coupon.redemptions + 1)
                )

            db.commit()
            logger.info(
                "Applied %s %s for user %s (%s:%s)",
                ref.subject_type.value, ref.subject_id, ref.user_id,
                capture.provider, capture.provider_order_id,
            )
            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _enroll(db, capture: ProviderCapture, now: datetime) -> None:
        ref = capture.reference
        course = db.query(Course).filter(or_(Course.id == ref.subject_id, Course.slug == ref.subject_id)).first()
        if course is None:
            raise LookupError(f"Course {ref.subject_id!r} not found")

        expires_at = add_months(now, course.access_months or 12)
        enrollment = db.query(Enrollment).filter_by(user_id=ref.user_id, course_id=course.id).first()
        if enrollment is None:
            enrollment = Enrollment(user_id=ref.user_id, course_id=course.id)
            db.add(enrollment)
        enrollment.status = "active"
        enrollment.started_at = now
        enrollment.expires_at = expires_at
        enrollment.provider = capture.provider
        enrollment.provider_order_id = capture.provider_order_id

    @staticmethod
    def _activate(db, capture: ProviderCapture, now: datetime) -> None:
        ref = capture.reference
        plan = db.query(Plan).filter(or_(Plan.id == ref.subject_id, Plan.slug == ref.subject_id)).first()
        if plan is None:
            raise LookupError(f"Plan {ref.subject_id!r} not found")

        subscription = db.query(Subscription).filter_by(user_id=ref.user_id).first()
        if subscription is None:
            subscription = Subscription(user_id=ref.user_id)
            db.add(subscription)
        subscription.plan_id = plan.id
        subscription.status = "active"
        subscription.current_period_end = add_months(now, interval_months(plan.billing_interval))
        subscription.provider = capture.provider
        subscription.provider_order_id = capture.provider_order_id
