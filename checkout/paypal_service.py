"""PayPal adapter (Orders v2, intent CAPTURE)."""
import json
import logging
import re
import time
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from checkout.domain import (
    CheckoutIntent, CheckoutReference, OrderStatus, ProviderCapture, ProviderOrder,
    WebhookEvent, WebhookRequest,
)
from checkout.exceptions import ProviderUnavailable
from checkout.providers import frontend_url, make_session, raise_for_capture, raise_for_create, send
from checkout.settings import Settings

logger = logging.getLogger(__name__)

ORDER_LINK = re.compile(r"/v2/checkout/orders/([^/?]+)")


def map_capture_status(order: Dict[str, Any]) -> OrderStatus:
    captures = _first_unit(order).get("payments", {}).get("captures") or []
    status = str((captures[0] if captures else {}).get("status") or order.get("status") or "").upper()
    if status == "COMPLETED":
        return OrderStatus.APPROVED
    if status in {"DECLINED", "FAILED", "VOIDED", "REFUNDED"}:
        return OrderStatus.REJECTED
    return OrderStatus.PENDING


def _first_unit(order: Dict[str, Any]) -> Dict[str, Any]:
    units = order.get("purchase_units") or [{}]
    return units[0] or {}


def _issue(resp) -> str:
    try:
        details = resp.json().get("details") or [{}]
        return str(details[0].get("issue") or "")
    except ValueError:
        return ""


class PayPalProvider:
    name = "paypal"

    def __init__(self, settings: Settings, session=None):
        if not (settings.paypal_client_id and settings.paypal_client_secret):
            raise RuntimeError("PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET are required")
        self.settings = settings
        self.base_url = settings.paypal_base_url
        self.timeout = settings.http_timeout
        self.session = session or make_session()
        self._token: Optional[str] = None
        self._token_expires = 0.0

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires:
            return self._token
        resp = send(
            self.session, "POST", f"{self.base_url}/v1/oauth2/token", self.name,
            timeout=self.timeout,
            auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
            data={"grant_type": "client_credentials"},
        )
        if resp.status_code >= 400:
            raise ProviderUnavailable(f"PayPal token error: HTTP {resp.status_code}")
        js = resp.json()
        self._token = js["access_token"]
        # refresh a minute early
        self._token_expires = time.monotonic() + max(int(js.get("expires_in", 300)) - 60, 0)
        return self._token

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token()}", "Content-Type": "application/json"}

    def create_order(self, intent: CheckoutIntent) -> ProviderOrder:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": intent.subject_id,
                "description": (intent.title or intent.subject_id)[:127],
                "custom_id": intent.reference.to_pipe(),
                "amount": {"currency_code": intent.currency, "value": f"{intent.amount:.2f}"},
            }],
            "application_context": {
                "return_url": f"{self.settings.public_base_url}/checkout/{self.name}/success",
                "cancel_url": frontend_url(self.settings, intent.subject_type, intent.subject_id, "failed"),
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
            },
        }
        resp = send(
            self.session, "POST", f"{self.base_url}/v2/checkout/orders", self.name,
            timeout=self.timeout, json=body, headers=self._headers(),
        )
        raise_for_create(resp, self.name)
        js = resp.json()

        approve = next(
            (link["href"] for link in js.get("links", []) if link.get("rel") in {"approve", "payer-action"}),
            None,
        )
        logger.info("PayPal order %s created for %s", js.get("id"), intent.subject_id)
        return ProviderOrder(
            provider_order_id=js["id"],
            provider=self.name,
            raw_payload=js,
            redirect_url=approve,
        )

    def capture_order(self, provider_order_id: str) -> ProviderCapture:
        url = f"{self.base_url}/v2/checkout/orders/{provider_order_id}"
        resp = send(
            self.session, "POST", f"{url}/capture", self.name,
            timeout=self.timeout, headers=self._headers(), data="{}",
        )
        if resp.status_code == 422:
            issue = _issue(resp)
            if issue in {"ORDER_ALREADY_CAPTURED", "ORDER_NOT_APPROVED"}:
                # already captured or the payer has not approved yet: read the order instead
                resp = send(self.session, "GET", url, self.name, timeout=self.timeout, headers=self._headers())
            else:
                logger.warning("PayPal declined capture of %s: %s", provider_order_id, issue)
                return ProviderCapture(
                    provider_order_id=provider_order_id,
                    status=OrderStatus.REJECTED,
                    amount=None,
                    currency=None,
                    raw_payload=resp.json(),
                    provider=self.name,
                )
        raise_for_capture(resp, self.name, provider_order_id)
        return self._to_capture(provider_order_id, resp.json())

    def _to_capture(self, provider_order_id: str, order: Dict[str, Any]) -> ProviderCapture:
        unit = _first_unit(order)
        captures = unit.get("payments", {}).get("captures") or []
        first = captures[0] if captures else {}
        amount = first.get("amount") or unit.get("amount") or {}
        custom_id = unit.get("custom_id") or first.get("custom_id")
        return ProviderCapture(
            provider_order_id=order.get("id") or provider_order_id,
            status=map_capture_status(order),
            amount=Decimal(str(amount["value"])) if amount.get("value") else None,
            currency=amount.get("currency_code"),
            raw_payload=order,
            reference=CheckoutReference.from_pipe(custom_id),
            provider=self.name,
        )

    def parse_webhook(self, request: WebhookRequest) -> Optional[WebhookEvent]:
        try:
            evt = json.loads(request.body or b"{}")
        except ValueError:
            logger.warning("Ignoring PayPal webhook with a non-JSON body")
            return None
        event_type = str(evt.get("event_type") or "")
        resource = evt.get("resource") or {}

        order_id = None
        if event_type.startswith("CHECKOUT.ORDER."):
            order_id = resource.get("id")
        elif event_type.startswith("PAYMENT.CAPTURE."):
            order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
            if not order_id:
                for link in resource.get("links") or []:
                    m = ORDER_LINK.search(link.get("href") or "") if link.get("rel") == "up" else None
                    if m:
                        order_id = m.group(1)
                        break
        if not order_id:
            logger.info("Ignoring PayPal event %s", event_type or "UNKNOWN")
            return None
        return WebhookEvent(
            provider=self.name,
            provider_order_id=str(order_id),
            event_type=event_type,
            event_id=evt.get("id"),
        )

    def order_id_from_redirect(self, query: Mapping[str, str]) -> Optional[str]:
        return query.get("token") or None
