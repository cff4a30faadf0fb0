import contextlib
import logging

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from checkout.database import Base, SessionLocal, engine
from checkout.domain import WebhookRequest
from checkout.effects import SqlEffectApplier
from checkout.exceptions import CheckoutError, OrderNotFound
from checkout.ledger import IdempotencyLedger
from checkout.orchestrator import CheckoutOrchestrator
from checkout.pricing import PricingResolver
from checkout.providers import build_providers
from checkout.reconciliation import ReconciliationLog
from checkout.routes import get_orchestrator, router
from checkout.settings import Settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_orchestrator(settings: Settings, session_factory=SessionLocal) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        pricing=PricingResolver(session_factory),
        providers=build_providers(settings),
        ledger=IdempotencyLedger(session_factory),
        effects=SqlEffectApplier(session_factory),
        reconciliations=ReconciliationLog(session_factory),
    )


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    settings = Settings.from_env()
    app.state.settings = settings
    app.state.orchestrator = build_orchestrator(settings)
    logger.info("Checkout service ready (providers: %s)", ", ".join(app.state.orchestrator.providers) or "none")
    yield


app = FastAPI(title="Checkout Microservice", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    max_age=86400,
)

app.include_router(router)


def error_response(message: str, status_code: int, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "code": code, "status": status_code},
    )


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    return error_response(exc.message, exc.status_code, exc.code)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(str(exc.detail), exc.status_code, "HTTP_ERROR")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return error_response("Invalid request body", 400, "INVALID_INTENT")


@app.post("/webhooks/{provider}")
async def provider_webhook(
    provider: str,
    request: Request,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    """200 unless the provider should retry (5xx) or the payload is bad (4xx)."""
    event = WebhookRequest(
        body=await request.body(),
        query=dict(request.query_params),
        headers=dict(request.headers),
    )
    try:
        confirmation = await run_in_threadpool(orchestrator.handle_webhook, provider.lower(), event)
    except OrderNotFound as e:
        # retrying will not make the order appear
        logger.warning("Webhook for unknown %s order: %s", provider, e.message)
        return {"received": True, "status": "order_not_found"}

    if confirmation is None:
        return {"received": True, "status": "ignored"}
    return {"received": True, "status": confirmation.outcome.value}
