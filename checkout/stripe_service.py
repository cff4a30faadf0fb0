"""Stripe adapter.

Courses are paid through a PaymentIntent confirmed client-side (the client
token is its `client_secret`); subscriptions go through a Checkout Session in
`subscription` mode, whose first successful charge is the capture event.
"""
import hashlib
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import stripe

from checkout.domain import (
    CheckoutIntent, CheckoutReference, OrderStatus, ProviderCapture, ProviderOrder,
    SubjectType, WebhookEvent, WebhookRequest,
)
from checkout.effects import interval_months
from checkout.exceptions import InvalidIntent, InvalidSignature, OrderNotFound, ProviderUnavailable
from checkout.providers import frontend_url
from checkout.settings import Settings

logger = logging.getLogger(__name__)

HANDLED_EVENT_PREFIXES = ("payment_intent.", "checkout.session.")


def _as_dict(obj: Any) -> Dict[str, Any]:
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def idempotency_key(intent: CheckoutIntent) -> str:
    raw = f"{intent.reference.to_pipe()}|{intent.amount_cents}|{intent.currency}"
    return "checkout-" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def map_intent_status(pi: Dict[str, Any]) -> OrderStatus:
    status = pi.get("status")
    if status == "succeeded":
        return OrderStatus.APPROVED
    if status == "canceled":
        return OrderStatus.REJECTED
    if status == "requires_payment_method" and pi.get("last_payment_error"):
        return OrderStatus.REJECTED
    return OrderStatus.PENDING


def map_session_status(session: Dict[str, Any]) -> OrderStatus:
    if session.get("payment_status") == "paid":
        return OrderStatus.APPROVED
    if session.get("status") == "expired":
        return OrderStatus.REJECTED
    return OrderStatus.PENDING


class StripeProvider:
    name = "stripe"

    def __init__(self, settings: Settings):
        if not settings.stripe_secret_key:
            raise RuntimeError("STRIPE_SECRET_KEY not configured")
        self.settings = settings
        stripe.api_key = settings.stripe_secret_key
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.http_timeout)

    def create_order(self, intent: CheckoutIntent) -> ProviderOrder:
        if intent.amount_cents <= 0:
            raise InvalidIntent("Stripe payments need a positive amount")
        try:
            if intent.subject_type is SubjectType.SUBSCRIPTION:
                return self._create_subscription_session(intent)
            return self._create_payment_intent(intent)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise ProviderUnavailable(f"stripe: {e}") from e
        except stripe.StripeError as e:
            if (e.http_status or 0) >= 500:
                raise ProviderUnavailable(f"stripe: {e}") from e
            raise InvalidIntent(f"stripe rejected the order: {e.user_message or e}") from e

    def _create_payment_intent(self, intent: CheckoutIntent) -> ProviderOrder:
        pi = stripe.PaymentIntent.create(
            amount=intent.amount_cents,
            currency=intent.currency.lower(),
            automatic_payment_methods={"enabled": True},
            description=intent.title or None,
            metadata=intent.reference.to_metadata(),
            idempotency_key=idempotency_key(intent),
        )
        payload = _as_dict(pi)
        logger.info("Stripe PaymentIntent %s created for %s", payload["id"], intent.subject_id)
        return ProviderOrder(
            provider_order_id=payload["id"],
            provider=self.name,
            raw_payload=payload,
            client_token=payload.get("client_secret"),
        )

    def _create_subscription_session(self, intent: CheckoutIntent) -> ProviderOrder:
        metadata = intent.reference.to_metadata()
        session = stripe.checkout.Session.create(
            mode="subscription",
            line_items=[{
                "quantity": 1,
                "price_data": {
                    "currency": intent.currency.lower(),
                    "unit_amount": intent.amount_cents,
                    "recurring": {"interval": "year" if interval_months(intent.interval) == 12 else "month"},
                    "product_data": {"name": intent.title or intent.subject_id},
                },
            }],
            client_reference_id=intent.user_id,
            metadata=metadata,
            subscription_data={"metadata": metadata},
            success_url=f"{self.settings.public_base_url}/checkout/{self.name}/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=frontend_url(self.settings, intent.subject_type, intent.subject_id, "failed"),
            idempotency_key=idempotency_key(intent),
        )
        payload = _as_dict(session)
        logger.info("Stripe Checkout Session %s created for %s", payload["id"], intent.subject_id)
        return ProviderOrder(
            provider_order_id=payload["id"],
            provider=self.name,
            raw_payload=payload,
            redirect_url=payload.get("url"),
        )

    def capture_order(self, provider_order_id: str) -> ProviderCapture:
        try:
            if provider_order_id.startswith("cs_"):
                obj = _as_dict(stripe.checkout.Session.retrieve(provider_order_id))
                status = map_session_status(obj)
                amount = obj.get("amount_total")
            else:
                obj = _as_dict(stripe.PaymentIntent.retrieve(provider_order_id))
                status = map_intent_status(obj)
                amount = obj.get("amount_received") or obj.get("amount")
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                raise OrderNotFound(f"stripe order {provider_order_id} not found") from e
            raise ProviderUnavailable(f"stripe: {e}") from e
        except stripe.StripeError as e:
            raise ProviderUnavailable(f"stripe: {e}") from e

        currency = obj.get("currency")
        return ProviderCapture(
            provider_order_id=obj.get("id") or provider_order_id,
            status=status,
            amount=(Decimal(amount) / 100).quantize(Decimal("0.01")) if amount is not None else None,
            currency=currency.upper() if currency else None,
            raw_payload=obj,
            reference=CheckoutReference.from_metadata(obj.get("metadata")),
            provider=self.name,
        )

    def parse_webhook(self, request: WebhookRequest) -> Optional[WebhookEvent]:
        signature = request.headers.get("stripe-signature")
        try:
            event = stripe.Webhook.construct_event(request.body, signature, self.settings.stripe_webhook_secret)
        except ValueError as e:
            raise InvalidSignature("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature("Invalid signature") from e

        event = _as_dict(event)
        event_type = event.get("type") or ""
        obj = (event.get("data") or {}).get("object") or {}
        if not event_type.startswith(HANDLED_EVENT_PREFIXES) or not obj.get("id"):
            logger.info("Ignoring Stripe event %s", event_type)
            return None
        if event_type.startswith("payment_intent.") and not (obj.get("metadata") or {}).get("user_id"):
            # subscription invoices raise their own intents; the session event covers them
            logger.info("Ignoring Stripe event %s for foreign PaymentIntent %s", event_type, obj["id"])
            return None

        return WebhookEvent(
            provider=self.name,
            provider_order_id=obj["id"],
            event_type=event_type,
            event_id=event.get("id"),
        )

    def order_id_from_redirect(self, query: Mapping[str, str]) -> Optional[str]:
        return query.get("session_id") or query.get("payment_intent") or None
