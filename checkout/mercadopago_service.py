"""Mercado Pago adapter: Checkout Pro preferences, confirmed through /v1/payments.

The preference id returned on creation only identifies the checkout page; the
payable transaction Mercado Pago reports back (redirect `payment_id`, webhook
`data.id`) is the payment id, and that is what `capture_order` receives.
"""
import json
import logging
import re
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl

from checkout.domain import (
    CheckoutIntent, CheckoutReference, OrderStatus, ProviderCapture, ProviderOrder,
    WebhookEvent, WebhookRequest,
)
from checkout.exceptions import InvalidIntent
from checkout.providers import frontend_url, make_session, raise_for_capture, raise_for_create, send
from checkout.settings import Settings

logger = logging.getLogger(__name__)

REJECTED_STATUSES = {"rejected", "cancelled", "canceled", "refunded", "charged_back"}


def map_status(status: Optional[str]) -> OrderStatus:
    s = (status or "").strip().lower()
    if s == "approved":
        return OrderStatus.APPROVED
    if s in REJECTED_STATUSES:
        return OrderStatus.REJECTED
    # pending, in_process, authorized, in_mediation...
    return OrderStatus.PENDING


def normalize_type(raw: Optional[str]) -> str:
    t = (raw or "").strip().lower()
    if t.startswith("topic_"):
        t = t[len("topic_"):]
    if t.endswith("_wh"):
        t = t[:-3]
    if "merchant_order" in t:
        return "merchant_order"
    if "payment" in t:
        return "payment"
    return ""


def parse_body(body: bytes) -> Dict[str, Any]:
    """Mercado Pago sends JSON or x-www-form-urlencoded notifications."""
    text = (body or b"").decode("utf-8", errors="replace").strip()
    if not text:
        return {}
    try:
        data = json.loads(text)
        return data if isinstance(data, dict) else {}
    except ValueError:
        pass
    data: Dict[str, Any] = dict(parse_qsl(text))
    data_id = data.get("data.id")
    if data_id and "data" not in data:
        data["data"] = {"id": data_id}
    return data


class MercadoPagoProvider:
    name = "mercadopago"
    API_BASE = "https://api.mercadopago.com"

    def __init__(self, settings: Settings, session=None):
        if not settings.mp_access_token:
            raise RuntimeError("MP_ACCESS_TOKEN not configured")
        self.settings = settings
        self.token = settings.mp_access_token
        self.timeout = settings.http_timeout
        self.session = session or make_session()

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}

    def _notification_url(self) -> str:
        url = f"{self.settings.public_base_url}/webhooks/{self.name}"
        if self.settings.mp_webhook_secret:
            url += f"?secret={self.settings.mp_webhook_secret}"
        return url

    def create_order(self, intent: CheckoutIntent) -> ProviderOrder:
        if intent.amount <= 0:
            raise InvalidIntent("Mercado Pago preferences need a positive amount")

        success_url = f"{self.settings.public_base_url}/checkout/{self.name}/success"
        body = {
            "items": [{
                "id": intent.subject_id,
                "category_id": "services",
                "title": (intent.title or intent.subject_id)[:120],
                "quantity": 1,
                "unit_price": float(intent.amount),
                "currency_id": intent.currency,
            }],
            "external_reference": intent.reference.to_base64(),
            "metadata": intent.reference.to_metadata(),
            "notification_url": self._notification_url(),
            "back_urls": {
                "success": success_url,
                "pending": success_url,
                "failure": frontend_url(self.settings, intent.subject_type, intent.subject_id, "failed"),
            },
            "auto_return": "approved",
            "binary_mode": True,
        }

        resp = send(
            self.session, "POST", f"{self.API_BASE}/checkout/preferences", self.name,
            timeout=self.timeout, json=body, headers=self._headers(),
        )
        raise_for_create(resp, self.name)
        js = resp.json()

        checkout_url = js.get("init_point") or js.get("sandbox_init_point")
        if not checkout_url or not js.get("id"):
            raise InvalidIntent(f"Mercado Pago returned no checkout URL: {js}")

        logger.info("Mercado Pago preference %s created for %s", js["id"], intent.subject_id)
        return ProviderOrder(
            provider_order_id=str(js["id"]),
            provider=self.name,
            raw_payload=js,
            redirect_url=checkout_url,
        )

    def capture_order(self, provider_order_id: str) -> ProviderCapture:
        url = f"{self.API_BASE}/v1/payments/{provider_order_id}"
        resp = send(self.session, "GET", url, self.name, timeout=self.timeout, headers=self._headers())
        raise_for_capture(resp, self.name, provider_order_id)
        pay = resp.json()

        reference = (
            CheckoutReference.from_base64(pay.get("external_reference"))
            or CheckoutReference.from_metadata(pay.get("metadata"))
        )
        amount = pay.get("transaction_amount")
        return ProviderCapture(
            provider_order_id=str(pay.get("id") or provider_order_id),
            status=map_status(pay.get("status")),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=pay.get("currency_id"),
            raw_payload=pay,
            reference=reference,
            provider=self.name,
        )

    def parse_webhook(self, request: WebhookRequest) -> Optional[WebhookEvent]:
        secret = self.settings.mp_webhook_secret
        if secret and request.query.get("secret") != secret:
            logger.warning("Mercado Pago webhook secret mismatch")
            return None

        body = parse_body(request.body)
        raw_type = (
            body.get("type") or body.get("topic")
            or (str(body["action"]).split(".")[0] if body.get("action") else None)
            or request.query.get("type") or request.query.get("topic")
        )
        data = body.get("data") if isinstance(body.get("data"), dict) else {}

        payment_id = data.get("id") or request.query.get("data.id")
        event_id = body.get("id") if payment_id else None
        if not payment_id:
            # legacy IPN: ?topic=payment&id=123
            payment_id = body.get("id") or request.query.get("id")

        event_type = normalize_type(raw_type) or ("payment" if data.get("id") else "")
        if event_type != "payment" or not payment_id:
            logger.info("Ignoring Mercado Pago notification type=%r id=%r", raw_type, payment_id)
            return None
        if not re.fullmatch(r"\d+", str(payment_id)):
            logger.warning("Ignoring Mercado Pago notification with odd payment id %r", payment_id)
            return None

        return WebhookEvent(
            provider=self.name,
            provider_order_id=str(payment_id),
            event_type=event_type,
            event_id=str(event_id) if event_id else None,
        )

    def order_id_from_redirect(self, query: Mapping[str, str]) -> Optional[str]:
        payment_id = query.get("payment_id") or query.get("collection_id")
        if not payment_id or payment_id == "null":
            return None
        return payment_id
