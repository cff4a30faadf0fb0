"""Checkout orchestration: start a checkout, confirm it exactly once.

Both confirmation paths (the browser returning from the provider and the
provider's webhook) end in `confirm`, which always re-reads the payment from
the provider before anything is applied. The idempotency ledger is the only
coordination point between concurrent requests.
"""
import hashlib
import logging
from typing import Dict, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from checkout.domain import (
    CheckoutIntent, CheckoutReference, CheckoutStart, CheckoutState, ConfirmOutcome,
    Confirmation, OrderStatus, ProviderCapture, SubjectRef, WebhookRequest,
)
from checkout.effects import EffectApplier
from checkout.exceptions import EffectApplierFailure, InvalidIntent
from checkout.ledger import IdempotencyLedger, make_key, webhook_key
from checkout.pricing import PricingResolver
from checkout.providers import PaymentProvider
from checkout.reconciliation import ReconciliationLog, capture_from_payload, capture_to_payload

logger = logging.getLogger(__name__)

FREE_PROVIDER = "coupon"


def free_order_id(coupon_code: str, reference: CheckoutReference) -> str:
    raw = f"{coupon_code}|{reference.user_id}|{reference.subject_type.value}|{reference.subject_id}"
    return "free-" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]


class CheckoutOrchestrator:

    def __init__(
        self,
        pricing: PricingResolver,
        providers: Dict[str, PaymentProvider],
        ledger: IdempotencyLedger,
        effects: EffectApplier,
        reconciliations: ReconciliationLog,
    ):
        self.pricing = pricing
        self.providers = providers
        self.ledger = ledger
        self.effects = effects
        self.reconciliations = reconciliations

    def provider(self, name: str) -> PaymentProvider:
        adapter = self.providers.get(name)
        if adapter is None:
            raise InvalidIntent(f"Unknown or unconfigured provider: {name}")
        return adapter

    def start_checkout(
        self,
        subject: SubjectRef,
        user_id: str,
        provider: str,
        coupon_code: Optional[str] = None,
    ) -> CheckoutStart:
        adapter = self.provider(provider)
        if not user_id:
            raise InvalidIntent("Missing user")
        if not subject.subject_id:
            raise InvalidIntent("Missing subjectId")

        quote = self.pricing.resolve(subject, coupon_code)
        coupon = quote.coupon.code if quote.coupon and quote.coupon.valid else None

        if quote.free_enrollment:
            logger.info("Checkout for %s by %s is free with coupon %s", quote.subject_id, user_id, coupon)
            return CheckoutStart(state=CheckoutState.FREE_ENROLLMENT, provider=provider, coupon_code=coupon)

        if quote.amount <= 0:
            raise InvalidIntent(f"Invalid amount for {subject.subject_id}")

        intent = CheckoutIntent(
            subject_type=subject.subject_type,
            subject_id=quote.subject_id or subject.subject_id,
            user_id=user_id,
            amount=quote.amount,
            currency=quote.currency,
            provider=provider,
            title=quote.title,
            coupon_code=coupon,
            interval=quote.interval,
        )
        order = adapter.create_order(intent)
        logger.info(
            "Checkout %s:%s created for %s %s (user %s, %s %s)",
            provider, order.provider_order_id, intent.subject_type.value, intent.subject_id,
            user_id, intent.amount, intent.currency,
        )
        return CheckoutStart(
            state=CheckoutState.PROVIDER_ORDER_CREATED,
            provider=provider,
            redirect_url=order.redirect_url,
            client_token=order.client_token,
            provider_order_id=order.provider_order_id,
            coupon_code=coupon,
        )

    def confirm(self, provider: str, provider_order_id: str, event_key: Optional[str] = None) -> Confirmation:
        adapter = self.provider(provider)
        key = event_key or make_key(provider, provider_order_id)

        if self.ledger.is_claimed(key):
            logger.info("Event %s already processed", key)
            return Confirmation(ConfirmOutcome.ALREADY_PROCESSED, None, provider, provider_order_id, key)

        # an unclaimed key stays retryable if the capture times out
        capture = adapter.capture_order(provider_order_id)
        capture.provider = capture.provider or provider

        if not self.ledger.try_claim(key):
            logger.info("Event %s claimed concurrently", key)
            return Confirmation(ConfirmOutcome.ALREADY_PROCESSED, None, provider, provider_order_id, key)

        if capture.status is OrderStatus.REJECTED:
            logger.info("Payment %s:%s rejected", provider, capture.provider_order_id)
            return Confirmation(
                ConfirmOutcome.REJECTED, CheckoutState.REJECTED, provider,
                capture.provider_order_id, key, capture.reference,
            )
        if capture.status is not OrderStatus.APPROVED:
            logger.info("Payment %s:%s still pending (event %s)", provider, capture.provider_order_id, key)
            return Confirmation(
                ConfirmOutcome.PENDING, CheckoutState.PENDING, provider,
                capture.provider_order_id, key, capture.reference,
            )

        logger.info("Payment %s:%s confirmed", provider, capture.provider_order_id)
        applied = self._apply(key, capture)
        return Confirmation(
            ConfirmOutcome.APPLIED if applied else ConfirmOutcome.ALREADY_PROCESSED, CheckoutState.APPLIED, provider,
            capture.provider_order_id, key, capture.reference,
        )

    def _apply(self, key: str, capture: ProviderCapture) -> bool:
        try:
            return self.effects.apply(capture)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            # carries the whole capture so it can be reconciled by hand
            logger.error(
                "Effect failed for captured payment %s:%s (event %s): %s payload=%s",
                capture.provider, capture.provider_order_id, key, error, capture_to_payload(capture),
                exc_info=True,
            )
            reconciliation_id = None
            try:
                reconciliation_id = self.reconciliations.record(key, capture, error)
            except SQLAlchemyError:
                logger.error(
                    "Could not record reconciliation for %s:%s", capture.provider, capture.provider_order_id,
                    exc_info=True,
                )
            else:
                logger.error("Reconciliation #%s opened for event %s", reconciliation_id, key)
            raise EffectApplierFailure(
                f"Payment {capture.provider}:{capture.provider_order_id} captured but not applied",
                reconciliation_id=reconciliation_id,
            ) from e

    def handle_webhook(self, provider: str, request: WebhookRequest) -> Optional[Confirmation]:
        """None when the notification is not a payment event we act on."""
        event = self.provider(provider).parse_webhook(request)
        if event is None:
            return None
        key = webhook_key(provider, event.event_id, event.provider_order_id)
        logger.info("Webhook %s %s for %s", provider, event.event_type, event.provider_order_id)
        return self.confirm(provider, event.provider_order_id, key)

    def confirm_redirect(self, provider: str, query: Mapping[str, str]) -> Optional[Confirmation]:
        adapter = self.provider(provider)
        provider_order_id = adapter.order_id_from_redirect(query)
        if not provider_order_id:
            return None
        confirmation = self.confirm(provider, provider_order_id)
        if confirmation.outcome is not ConfirmOutcome.ALREADY_PROCESSED:
            return confirmation
        return self._settled(adapter, confirmation)

    def _settled(self, adapter: PaymentProvider, confirmation: Confirmation) -> Confirmation:
        """Current state of an order whose redirect was already handled (e.g. a page reload)."""
        provider, order_id, key = confirmation.provider, confirmation.provider_order_id, confirmation.event_key
        if self.effects.is_applied(provider, order_id):
            return Confirmation(ConfirmOutcome.ALREADY_PROCESSED, CheckoutState.APPLIED, provider, order_id, key)

        capture = adapter.capture_order(order_id)
        if capture.status is OrderStatus.REJECTED:
            return Confirmation(ConfirmOutcome.REJECTED, CheckoutState.REJECTED, provider, order_id, key, capture.reference)
        # approved but not applied yet: a concurrent delivery or a reconciliation still owns it
        state = CheckoutState.CONFIRMED if capture.status is OrderStatus.APPROVED else CheckoutState.PENDING
        return Confirmation(ConfirmOutcome.PENDING, state, provider, order_id, key, capture.reference)

    def enroll_free(self, subject: SubjectRef, user_id: str, coupon_code: Optional[str]) -> str:
        """Applies a 100% coupon without any provider. Returns the resolved subject id."""
        if not user_id:
            raise InvalidIntent("Missing user")
        quote = self.pricing.resolve(subject, coupon_code)
        if not quote.free_enrollment or quote.coupon is None:
            raise InvalidIntent("Coupon does not grant free enrollment")

        reference = CheckoutReference(user_id, subject.subject_type, quote.subject_id, quote.coupon.code)
        capture = ProviderCapture(
            provider_order_id=free_order_id(quote.coupon.code, reference),
            status=OrderStatus.APPROVED,
            amount=quote.amount,
            currency=quote.currency,
            reference=reference,
            provider=FREE_PROVIDER,
        )
        key = make_key(FREE_PROVIDER, capture.provider_order_id)
        # no provider event to claim; the effect applier is idempotent on the order id
        if not self._apply(key, capture):
            logger.info("Free enrollment %s already applied", key)
        return quote.subject_id

    def retry_reconciliations(self) -> Dict[str, int]:
        retried = resolved = 0
        for row in self.reconciliations.unresolved():
            retried += 1
            try:
                self.effects.apply(capture_from_payload(row.payload or {}))
            except Exception:
                logger.warning("Reconciliation #%s still failing", row.id, exc_info=True)
                continue
            self.reconciliations.resolve(row.id)
            resolved += 1
            logger.info("Reconciliation #%s resolved", row.id)
        return {"retried": retried, "resolved": resolved}
