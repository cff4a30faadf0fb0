"""Error taxonomy of the checkout core.

Each error carries the HTTP status it maps to; the FastAPI exception handler
in `checkout.main` renders them as `{"error", "code", "status"}`.
"""
from checkout.domain import CheckoutState


class CheckoutError(Exception):
    """Base class for checkout errors."""

    def __init__(self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(self.message)


class InvalidIntent(CheckoutError):
    """Bad subject, amount or provider supplied by the caller."""

    def __init__(self, message: str):
        super().__init__(message, code="INVALID_INTENT", status_code=400)


class SubjectNotFound(CheckoutError):
    def __init__(self, message: str):
        super().__init__(message, code="SUBJECT_NOT_FOUND", status_code=404)


class OrderNotFound(CheckoutError):
    """The provider has no record of the order."""

    def __init__(self, message: str):
        super().__init__(message, code="ORDER_NOT_FOUND", status_code=404)


class ProviderUnavailable(CheckoutError):
    """Transient provider or network failure; the caller should retry."""

    def __init__(self, message: str):
        super().__init__(message, code="PROVIDER_UNAVAILABLE", status_code=503)


class StoreUnavailable(CheckoutError):
    def __init__(self, message: str):
        super().__init__(message, code="STORE_UNAVAILABLE", status_code=503)


class EffectApplierFailure(CheckoutError):
    """Payment was captured but the enrollment/activation could not be applied."""

    def __init__(self, message: str, reconciliation_id=None):
        super().__init__(message, code="EFFECT_APPLIER_FAILURE", status_code=500)
        self.reconciliation_id = reconciliation_id
        # captured at the provider, not applied here
        self.state = CheckoutState.CONFIRMED


class InvalidSignature(CheckoutError):
    """Webhook payload whose provider signature does not verify."""

    def __init__(self, message: str):
        super().__init__(message, code="INVALID_SIGNATURE", status_code=400)
