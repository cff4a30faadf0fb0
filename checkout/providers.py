"""Payment provider adapters: the uniform create/capture contract and the registry.

Adapters are plain classes satisfying `PaymentProvider` structurally; the
orchestrator picks one from a dict keyed by provider name.
"""
import logging
from typing import Dict, Mapping, Optional, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from checkout.domain import CheckoutIntent, ProviderCapture, ProviderOrder, SubjectType, WebhookEvent, WebhookRequest
from checkout.exceptions import InvalidIntent, OrderNotFound, ProviderUnavailable
from checkout.settings import Settings

logger = logging.getLogger(__name__)


class PaymentProvider(Protocol):
    name: str

    def create_order(self, intent: CheckoutIntent) -> ProviderOrder:
        ...

    def capture_order(self, provider_order_id: str) -> ProviderCapture:
        ...

    def parse_webhook(self, request: WebhookRequest) -> Optional[WebhookEvent]:
        ...

    def order_id_from_redirect(self, query: Mapping[str, str]) -> Optional[str]:
        ...


def make_session(methods=("GET",)) -> requests.Session:
    """requests session with basic retry; POSTs are only retried when listed."""
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=0.3,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(methods),
        raise_on_status=False,
    )
    session.mount("https://", HTTPAdapter(max_retries=retries))
    session.mount("http://", HTTPAdapter(max_retries=retries))
    return session


def send(session: requests.Session, method: str, url: str, provider: str, *, timeout: float, **kwargs) -> requests.Response:
    """Performs the request, turning transport failures into ProviderUnavailable."""
    try:
        resp = session.request(method, url, timeout=timeout, **kwargs)
    except requests.Timeout as e:
        raise ProviderUnavailable(f"{provider}: timeout calling {url}") from e
    except requests.RequestException as e:
        raise ProviderUnavailable(f"{provider}: {e}") from e
    if resp.status_code >= 500 or resp.status_code == 429:
        raise ProviderUnavailable(f"{provider}: HTTP {resp.status_code} from {url}")
    return resp


def raise_for_create(resp: requests.Response, provider: str) -> None:
    if resp.status_code >= 400:
        raise InvalidIntent(f"{provider} rejected the order: HTTP {resp.status_code} {resp.text[:300]}")


def raise_for_capture(resp: requests.Response, provider: str, provider_order_id: str) -> None:
    if resp.status_code == 404:
        raise OrderNotFound(f"{provider} order {provider_order_id} not found")
    if resp.status_code >= 400:
        raise ProviderUnavailable(f"{provider}: HTTP {resp.status_code} capturing {provider_order_id}")


def build_providers(settings: Settings) -> Dict[str, PaymentProvider]:
    """Instantiates every provider whose credentials are configured."""
    from checkout.mercadopago_service import MercadoPagoProvider
    from checkout.paypal_service import PayPalProvider
    from checkout.stripe_service import StripeProvider

    providers: Dict[str, PaymentProvider] = {}
    if settings.mp_access_token:
        providers["mercadopago"] = MercadoPagoProvider(settings)
    else:
        logger.warning("Mercado Pago disabled: MP_ACCESS_TOKEN not set")
    if settings.paypal_client_id and settings.paypal_client_secret:
        providers["paypal"] = PayPalProvider(settings)
    else:
        logger.warning("PayPal disabled: PAYPAL_CLIENT_ID/PAYPAL_CLIENT_SECRET not set")
    if settings.stripe_secret_key:
        providers["stripe"] = StripeProvider(settings)
    else:
        logger.warning("Stripe disabled: STRIPE_SECRET_KEY not set")
    return providers


def frontend_url(settings: Settings, subject_type, subject_id: Optional[str], flag: str) -> str:
    """Frontend page the browser lands on after a provider redirect."""
    base = settings.frontend_base_url
    if subject_type is SubjectType.SUBSCRIPTION:
        return f"{base}/organization/billing?payment={flag}"
    if subject_id:
        return f"{base}/learning/courses/{subject_id}?payment={flag}"
    return f"{base}/learning/courses?payment={flag}"
