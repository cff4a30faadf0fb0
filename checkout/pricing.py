"""Price and coupon resolution.

Read-only: an invalid, expired or unreadable coupon degrades to the base price
and never blocks checkout. Coupon consumption happens in the effect applier,
after the enrollment is confirmed.
"""
import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from checkout.domain import CouponEvaluation, PriceQuote, SubjectRef, SubjectType
from checkout.exceptions import StoreUnavailable, SubjectNotFound
from checkout.models import Coupon, Course, Plan

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
INVALID_COUPON = "invalid_coupon"


def normalize_code(code: Optional[str]) -> Optional[str]:
    code = (code or "").strip().upper()
    return code or None


def _aware(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class PricingResolver:

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def resolve(self, subject: SubjectRef, coupon_code: Optional[str] = None) -> PriceQuote:
        db = self.session_factory()
        try:
            item = self._get_subject(db, subject)
            if item is None:
                raise SubjectNotFound(f"{subject.subject_type.value} {subject.subject_id!r} not found or inactive")
            base = Decimal(item.price).quantize(CENTS)
            currency = (item.currency or "ARS").upper()
            title = item.title if isinstance(item, Course) else item.name
            interval = item.billing_interval if isinstance(item, Plan) else None
            subject_id = item.id
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Catalog unavailable: {e}") from e
        finally:
            db.close()

        code = normalize_code(coupon_code)
        if not code:
            return PriceQuote(amount=base, currency=currency, title=title, interval=interval, subject_id=subject_id)

        evaluation = self.evaluate_coupon(code, SubjectRef(subject.subject_type, subject_id))
        if not evaluation.valid:
            logger.warning("Coupon %s ignored for %s: %s", code, subject_id, evaluation.reason)
            return PriceQuote(
                amount=base, currency=currency, reason=INVALID_COUPON,
                coupon=evaluation, title=title, interval=interval, subject_id=subject_id,
            )

        amount = (base * (100 - evaluation.discount_percent) / 100).quantize(CENTS, rounding=ROUND_HALF_UP)
        free = evaluation.free_enrollment or amount <= 0
        return PriceQuote(
            amount=max(amount, Decimal("0.00")),
            currency=currency,
            free_enrollment=free,
            coupon=evaluation,
            title=title,
            interval=interval,
            subject_id=subject_id,
        )

    def evaluate_coupon(self, code: str, subject: SubjectRef) -> CouponEvaluation:
        db = self.session_factory()
        try:
            coupon = db.get(Coupon, code)
        except SQLAlchemyError:
            logger.warning("Coupon lookup failed for %s", code, exc_info=True)
            return CouponEvaluation(code=code, valid=False, reason="coupon_lookup_failed")
        finally:
            db.close()

        if coupon is None:
            return CouponEvaluation(code=code, valid=False, reason="not_found")
        if not coupon.is_active:
            return CouponEvaluation(code=code, valid=False, reason="inactive")
        if coupon.expires_at and _aware(coupon.expires_at) <= datetime.now(timezone.utc):
            return CouponEvaluation(code=code, valid=False, reason="expired")
        if coupon.max_redemptions is not None and (coupon.redemptions or 0) >= coupon.max_redemptions:
            return CouponEvaluation(code=code, valid=False, reason="exhausted")
        if coupon.subject_type and coupon.subject_type != subject.subject_type.value:
            return CouponEvaluation(code=code, valid=False, reason="not_applicable")
        if coupon.subject_id and coupon.subject_id != subject.subject_id:
            return CouponEvaluation(code=code, valid=False, reason="not_applicable")

        pct = min(max(int(coupon.discount_percent), 0), 100)
        return CouponEvaluation(code=code, valid=True, discount_percent=pct, free_enrollment=pct >= 100)

    @staticmethod
    def _get_subject(db, subject: SubjectRef) -> Union[Course, Plan, None]:
        model = Course if subject.subject_type is SubjectType.COURSE else Plan
        return (
            db.query(model)
            .filter(or_(model.id == subject.subject_id, model.slug == subject.subject_id))
            .filter(model.is_active.is_(True))
            .first()
        )
