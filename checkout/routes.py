import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from checkout.auth import current_user_id, require_admin
from checkout.domain import ConfirmOutcome, SubjectRef, SubjectType
from checkout.exceptions import CheckoutError
from checkout.orchestrator import CheckoutOrchestrator
from checkout.providers import frontend_url
from checkout.settings import Settings

logger = logging.getLogger(__name__)

router = APIRouter()


def get_orchestrator(request: Request) -> CheckoutOrchestrator:
    return request.app.state.orchestrator


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


class CheckoutRequest(BaseModel):
    subjectId: str = Field(..., min_length=1)
    subjectType: SubjectType = SubjectType.COURSE
    couponCode: Optional[str] = None

    def subject(self) -> SubjectRef:
        return SubjectRef(self.subjectType, self.subjectId.strip())


@router.post("/checkout/free-enroll")
def free_enroll(
    body: CheckoutRequest,
    user_id: str = Depends(current_user_id),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    subject_id = orchestrator.enroll_free(body.subject(), user_id, body.couponCode)
    return {"enrolled": True, "subjectId": subject_id}


@router.post("/checkout/{provider}/create")
def create_checkout(
    provider: str,
    body: CheckoutRequest,
    user_id: str = Depends(current_user_id),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    start = orchestrator.start_checkout(body.subject(), user_id, provider.lower(), body.couponCode)

    if start.free_enrollment:
        return {"freeEnrollment": True, "couponCode": start.coupon_code}
    if start.client_token:
        return {"clientToken": start.client_token, "providerOrderId": start.provider_order_id}
    return {"redirectUrl": start.redirect_url, "providerOrderId": start.provider_order_id}


@router.get("/checkout/{provider}/success")
def checkout_success(
    provider: str,
    request: Request,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
):
    """Browser lands here from the provider; always answers with a redirect."""
    query = dict(request.query_params)
    subject_type, subject_id, flag = None, None, "error"
    try:
        confirmation = orchestrator.confirm_redirect(provider.lower(), query)
        if confirmation is None:
            flag = "failed"
        else:
            if confirmation.reference:
                subject_type = confirmation.reference.subject_type
                subject_id = confirmation.reference.subject_id
            flag = {
                ConfirmOutcome.APPLIED: "success",
                ConfirmOutcome.ALREADY_PROCESSED: "success",
                ConfirmOutcome.REJECTED: "failed",
                ConfirmOutcome.PENDING: "pending",
            }[confirmation.outcome]
    except CheckoutError as e:
        logger.warning("Redirect confirmation for %s failed: %s", provider, e.message)
    except Exception:
        logger.exception("Redirect confirmation for %s crashed", provider)

    return RedirectResponse(frontend_url(settings, subject_type, subject_id, flag), status_code=303)


@router.post("/reconciliations/retry")
def retry_reconciliations(
    user_id: str = Depends(require_admin),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    logger.info("Reconciliation retry requested by %s", user_id)
    return orchestrator.retry_reconciliations()
