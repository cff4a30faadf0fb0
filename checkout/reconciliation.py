"""Reconciliation exceptions: captured payments whose effect could not be applied."""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy.orm import sessionmaker

from checkout.domain import CheckoutReference, OrderStatus, ProviderCapture
from checkout.models import ReconciliationException


def capture_to_payload(capture: ProviderCapture) -> Dict[str, Any]:
    return {
        "provider": capture.provider,
        "provider_order_id": capture.provider_order_id,
        "status": capture.status.value,
        "amount": str(capture.amount) if capture.amount is not None else None,
        "currency": capture.currency,
        "reference": capture.reference.to_metadata() if capture.reference else None,
    }


def capture_from_payload(payload: Dict[str, Any]) -> ProviderCapture:
    amount = payload.get("amount")
    return ProviderCapture(
        provider_order_id=payload["provider_order_id"],
        status=OrderStatus(payload.get("status", OrderStatus.APPROVED.value)),
        amount=Decimal(amount) if amount is not None else None,
        currency=payload.get("currency"),
        reference=CheckoutReference.from_metadata(payload.get("reference")),
        provider=payload.get("provider", ""),
    )


class ReconciliationLog:

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def record(self, event_key: str, capture: ProviderCapture, error: str) -> int:
        db = self.session_factory()
        try:
            row = ReconciliationException(
                provider=capture.provider,
                provider_order_id=capture.provider_order_id,
                event_key=event_key,
                payload=capture_to_payload(capture),
                error=error,
            )
            db.add(row)
            db.commit()
            return row.id
        finally:
            db.close()

    def unresolved(self) -> List[ReconciliationException]:
        db = self.session_factory()
        try:
            return (
                db.query(ReconciliationException)
                .filter(ReconciliationException.resolved_at.is_(None))
                .order_by(ReconciliationException.id)
                .all()
            )
        finally:
            db.close()

    def resolve(self, exception_id: int) -> None:
        db = self.session_factory()
        try:
            row = db.get(ReconciliationException, exception_id)
            if row is not None and row.resolved_at is None:
                row.resolved_at = datetime.now(timezone.utc)
                db.commit()
        finally:
            db.close()
