from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import httpx
import redis.asyncio as redis
import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from .config import RateLimit, Settings
from .errors import (
    InternalError, PaymentError, RateLimitError, ValidationError
)
from .gateways.abacatepay import AbacatePayClient, AbacatePayWebhook
from .gateways.asaas import AsaasClient, AsaasWebhookAdapter
from .gateways.base import WebhookAdapter
from .helpers import client_identifier, is_valid_email
from .infra import timings
from .infra.cors import install_cors
from .infra.logs import configure_logging
from .infra.sql import Database
from .model.ledger import PurchaseLedger
from .model.orm import Base
from .model.ratelimit import new_store
from .payments import BillingService, PaymentService
from .reconcile import WebhookReconciler
from .validation import (
    describe_errors, parse_billing_request, parse_payment_request,
    parse_status_request,
)

log = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    gateway_transport: Optional[httpx.AsyncBaseTransport] = None,
    ratelimit_store=None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_json)

    db = Database(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        gate_limit=settings.db_gate_limit,
    )
    ledger = PurchaseLedger(db)

    # ---
    # startup / shutdown
    # ---
    async def _http_client_start(app: FastAPI):
        app.state.http = httpx.AsyncClient(
            timeout=settings.gateway_timeout,
            transport=gateway_transport,
            limits=httpx.Limits(
                max_connections=100, max_keepalive_connections=20
            ),
        )
        gateway = AsaasClient(
            app.state.http,
            settings.asaas_api_key,
            settings.asaas_url,
            max_attempts=settings.gateway_retry_attempts,
            base_delay=settings.gateway_retry_base_delay,
        )
        app.state.payments = PaymentService(gateway, ledger)
        app.state.billing = BillingService(
            AbacatePayClient(
                app.state.http,
                settings.abacatepay_api_key,
                settings.abacatepay_base_url,
                max_attempts=settings.gateway_retry_attempts,
                base_delay=settings.gateway_retry_base_delay,
            ),
            ledger,
        )

    async def _ratelimit_start(app: FastAPI):
        if ratelimit_store is not None:
            app.state.ratelimit = ratelimit_store
        elif settings.ratelimit_backend == "redis":
            r = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
            app.state.ratelimit = new_store("redis", r=r)
        else:
            app.state.ratelimit = new_store("memory")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("giftpay.starting", environment=settings.environment,
                 ratelimit_backend=settings.ratelimit_backend,
                 gateway_url=settings.asaas_url,
                 api_key_configured=bool(settings.asaas_api_key))
        for name, secret in (
            ("ASAAS_WEBHOOK_TOKEN", settings.asaas_webhook_token),
            ("ABACATEPAY_WEBHOOK_SECRET", settings.abacatepay_webhook_secret),
        ):
            if not secret:
                log.warning("giftpay.webhook_unsigned", setting=name,
                            reason="webhooks will be accepted unverified")
        await db.create_schema(Base.metadata)
        await _http_client_start(app)
        await _ratelimit_start(app)
        try:
            yield
        finally:
            await app.state.http.aclose()
            if ratelimit_store is None:
                await app.state.ratelimit.close()
            await db.dispose()

    app = FastAPI(
        title="giftpay",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.db = db
    app.state.ledger = ledger
    app.state.reconciler = WebhookReconciler(ledger)
    app.state.webhooks = {
        "asaas": AsaasWebhookAdapter(settings.asaas_webhook_token),
        "abacatepay": AbacatePayWebhook(settings.abacatepay_webhook_secret),
    }
    install_cors(app, settings.allowed_origins, settings.is_production)

    @app.exception_handler(PaymentError)
    async def _payment_error(request: Request, exc: PaymentError):
        reason = getattr(exc, "reason", None)
        if exc.status_code >= 500:
            log.error("request.failed", path=request.url.path,
                      error=exc.error, details=exc.details, reason=reason)
        return ORJSONResponse(exc.to_body(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request,
                                  exc: RequestValidationError):
        err = ValidationError("Invalid data",
                              details=describe_errors(exc.errors()))
        return ORJSONResponse(err.to_body(), status_code=err.status_code)

    _register_routes(app)
    return app


# ----------------------------
# Dependencies / helpers
# ----------------------------
def get_payments(request: Request) -> PaymentService:
    return request.app.state.payments


def get_billing(request: Request) -> BillingService:
    return request.app.state.billing


def get_ledger(request: Request) -> PurchaseLedger:
    return request.app.state.ledger


def caller_identifier(request: Request) -> str:
    peer = request.client.host if request.client else None
    return client_identifier(request.headers, peer)


async def enforce_rate_limit(request: Request, limit: RateLimit) -> None:
    identifier = caller_identifier(request)
    result = await request.app.state.ratelimit.check(
        f"{request.url.path}:{identifier}", limit.max_requests,
        limit.window_ms,
    )
    if not result.allowed:
        log.warning("ratelimit.exceeded", identifier=identifier,
                    path=request.url.path)
        raise RateLimitError()


async def read_json(request: Request) -> object:
    try:
        return await request.json()
    except ValueError:
        raise ValidationError("Invalid data",
                              details="body is not valid JSON")


class DirectPurchaseBody(BaseModel):
    purchaserName: str = Field(min_length=2, max_length=100)
    purchaserEmail: Optional[str] = Field(default=None, max_length=254)


def _register_routes(app: FastAPI) -> None:
    settings: Settings = app.state.settings

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    # ----------------------------
    # Payment initiation
    # ----------------------------
    @app.post("/api/payments")
    async def create_payment(
        request: Request,
        payments: PaymentService = Depends(get_payments),
    ):
        payments.gateway.require_key()
        await enforce_rate_limit(request, settings.payment_rate)
        req = parse_payment_request(await read_json(request))
        try:
            return await payments.initiate(req)
        except PaymentError:
            raise
        except Exception as e:
            log.exception("payment.unexpected_error", gift_id=req.giftId)
            raise InternalError() from e

    # ----------------------------
    # Hosted PIX billing (several gifts, one payment)
    # ----------------------------
    @app.post("/api/billings")
    async def create_billing(
        request: Request,
        billing: BillingService = Depends(get_billing),
    ):
        billing.gateway.require_key()
        await enforce_rate_limit(request, settings.payment_rate)
        req = parse_billing_request(await read_json(request))
        try:
            return await billing.initiate(req)
        except PaymentError:
            raise
        except Exception as e:
            log.exception("billing.unexpected_error",
                          gift_ids=[item.giftId for item in req.items])
            raise InternalError() from e

    # ----------------------------
    # Status poll / cancel
    # ----------------------------
    @app.post("/api/payments/status")
    async def payment_status(
        request: Request,
        payments: PaymentService = Depends(get_payments),
    ):
        payments.gateway.require_key()
        await enforce_rate_limit(request, settings.status_rate)
        req = parse_status_request(await read_json(request))
        try:
            if req.action == "cancel":
                return await payments.cancel(req.paymentId)
            return await payments.check(req.paymentId)
        except PaymentError:
            raise
        except Exception as e:
            log.exception("payment.status_unexpected_error",
                          payment_id=req.paymentId)
            raise InternalError("Internal error while checking status") from e

    # ----------------------------
    # Webhooks (one per gateway)
    # ----------------------------
    async def _webhook(request: Request, adapter: WebhookAdapter):
        reconciler: WebhookReconciler = request.app.state.reconciler
        try:
            await enforce_rate_limit(request, settings.webhook_rate)
        except RateLimitError:
            status, body = await reconciler.throttled(
                adapter, caller_identifier(request)
            )
            return ORJSONResponse(body, status_code=status)
        payload = await request.body()
        status, body = await reconciler.handle(
            adapter, payload, request.headers
        )
        return ORJSONResponse(body, status_code=status)

    @app.post("/webhooks/asaas")
    async def asaas_webhook(request: Request):
        return await _webhook(request, app.state.webhooks["asaas"])

    @app.post("/webhooks/abacatepay")
    async def abacatepay_webhook(request: Request):
        return await _webhook(request, app.state.webhooks["abacatepay"])

    # ----------------------------
    # Gifts
    # ----------------------------
    @app.get("/api/gifts/{gift_id}")
    async def get_gift(gift_id: str,
                       ledger: PurchaseLedger = Depends(get_ledger)):
        gift = await ledger.get_gift(gift_id)
        if gift is None:
            raise ValidationError("Unknown gift", details=gift_id,
                                  status_code=404)
        return {
            "id": gift["id"],
            "name": gift["name"],
            "price": str(gift["price"]),
            "purchaseCount": gift["purchase_count"],
            "purchaseLimit": gift["purchase_limit"],
            "available": gift["available"],
        }

    # legacy flow: mark a gift as bought without going through a gateway
    @app.post("/api/gifts/{gift_id}/purchase")
    async def direct_purchase(
        gift_id: str, body: DirectPurchaseBody, request: Request,
        ledger: PurchaseLedger = Depends(get_ledger),
    ):
        await enforce_rate_limit(request, settings.purchase_rate)
        if body.purchaserEmail and not is_valid_email(body.purchaserEmail):
            raise ValidationError("Invalid data",
                                  details="purchaserEmail: invalid email")
        gift = await ledger.get_gift(gift_id)
        if gift is None:
            raise ValidationError("Unknown gift", details=gift_id,
                                  status_code=404)
        purchase_id = await ledger.direct_purchase(
            gift_id=gift_id,
            purchaser_name=body.purchaserName.strip(),
            purchaser_email=body.purchaserEmail or None,
            amount=gift["price"],
        )
        if purchase_id is None:
            raise ValidationError("Gift is no longer available",
                                  details=gift_id, status_code=409)
        return {"success": True, "purchaseId": purchase_id}

    @app.get("/api/timings")
    async def get_timings():
        return {"items": timings.snapshot()}


app = create_app()
