from __future__ import annotations
import json
from typing import Any, Dict, Mapping, Optional

import httpx
import pydantic
import structlog
from pydantic import BaseModel, ConfigDict

from ..errors import ConfigurationError, GatewayError, TransientError
from ..helpers import ct_equal
from ..infra.logs import redact
from ..infra.retry import fetch_with_retry
from ..infra.timings import timeit
from ..model.orm import CANCELLED, CONFIRMED, REFUNDED
from .base import MalformedPayload, WebhookAdapter, WebhookEvent

log = structlog.get_logger(__name__)

GATEWAY = "asaas"
TOKEN_HEADER = "asaas-access-token"

EVENT_MAP = {
    "PAYMENT_CONFIRMED": CONFIRMED,
    "PAYMENT_RECEIVED": CONFIRMED,
    "PAYMENT_REFUNDED": REFUNDED,
    "PAYMENT_DELETED": CANCELLED,
    "PAYMENT_OVERDUE": CANCELLED,
}

# customer creation errors that mean "look the customer up instead"
CUSTOMER_EXISTS_CODES = ("customer_already_exists", "invalid_cpfCnpj")


# ----------------------------
# Webhook
# ----------------------------
class _Envelope(BaseModel):
    model_config = ConfigDict(extra="allow")


class AsaasPayment(_Envelope):
    id: str
    status: Optional[str] = None
    customer: Optional[str] = None
    value: Optional[float] = None
    billingType: Optional[str] = None
    externalReference: Optional[str] = None


class AsaasWebhook(_Envelope):
    event: str = "unknown"
    payment: Optional[AsaasPayment] = None


class AsaasWebhookAdapter(WebhookAdapter):
    gateway = GATEWAY
    auth_failure_event = "token_validation_failed"

    def __init__(self, token: Optional[str]) -> None:
        self.token = token

    @property
    def configured(self) -> bool:
        return bool(self.token)

    def verify(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        token = headers.get(TOKEN_HEADER)
        if not token:
            log.error("webhook.missing_token", gateway=self.gateway)
            return False
        return ct_equal(token, self.token)

    def parse(self, payload: bytes) -> WebhookEvent:
        try:
            hook = AsaasWebhook.model_validate(json.loads(payload.decode()))
        except (UnicodeDecodeError, json.JSONDecodeError,
                pydantic.ValidationError) as e:
            raise MalformedPayload(str(e)) from e

        if hook.payment is None:
            return WebhookEvent(self.gateway, hook.event, None, None, None,
                                {"event": hook.event})
        payment = hook.payment
        return WebhookEvent(
            gateway=self.gateway,
            event=hook.event,
            payment_id=payment.id,
            gateway_status=payment.status,
            new_status=EVENT_MAP.get(hook.event),
            log_payload={
                "event": hook.event,
                "paymentId": payment.id,
                "status": payment.status,
            },
        )


# ----------------------------
# REST client
# ----------------------------
def _descriptions(data: Mapping[str, Any]) -> str:
    return ", ".join(
        str(e.get("description") or e.get("code") or "")
        for e in data.get("errors") or []
    )


class AsaasClient:
    """Thin async client for the gateway's v3 REST API.

    Every call goes through :func:`fetch_with_retry`; a 5xx that survives the
    retries becomes :class:`TransientError`, a body with ``errors`` becomes
    :class:`GatewayError` carrying the joined descriptions.
    """

    def __init__(self, http: httpx.AsyncClient, api_key: Optional[str],
                 base_url: str, *, max_attempts: int = 3,
                 base_delay: float = 1.0) -> None:
        self.http = http
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    def require_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError("ASAAS_API_KEY not configured")
        return self.api_key

    async def _call(self, method: str, path: str, *,
                    json_body: Optional[Dict[str, Any]] = None,
                    params: Optional[Dict[str, str]] = None,
                    error: str = "Payment gateway rejected the request",
                    raise_errors: bool = True) -> Dict[str, Any]:
        request = self.http.build_request(
            method,
            f"{self.base_url}{path}",
            headers={"access_token": self.require_key()},
            json=json_body,
            params=params,
        )
        try:
            async with timeit(f"gateway.{method.lower()}"):
                response = await fetch_with_retry(
                    self.http, request, self.max_attempts,
                    base_delay=self.base_delay,
                )
        except httpx.TransportError as e:
            log.error("gateway.unreachable", method=method, path=path,
                      error=str(e))
            raise TransientError() from e

        if response.status_code >= 500:
            log.error("gateway.server_error", method=method, path=path,
                      status=response.status_code)
            raise TransientError()

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        log.info("gateway.response", method=method, path=path,
                 status=response.status_code, body=redact(data))

        if raise_errors and data.get("errors"):
            raise GatewayError(error, details=_descriptions(data))
        if raise_errors and response.status_code >= 400:
            raise GatewayError(error, details=f"HTTP {response.status_code}")
        return data

    # ---- customers
    async def find_customer(self, **query: str) -> Optional[Dict[str, Any]]:
        data = await self._call("GET", "/customers", params=query,
                                raise_errors=False)
        found = data.get("data") or []
        return found[0] if found else None

    async def ensure_customer(self, payload: Dict[str, Any]) -> str:
        """Create the customer, or reuse the existing one on a conflict."""
        data = await self._call("POST", "/customers", json_body=payload,
                                raise_errors=False)
        if data.get("id"):
            return data["id"]

        errors = data.get("errors") or []
        if any(e.get("code") in CUSTOMER_EXISTS_CODES for e in errors):
            existing = None
            if payload.get("cpfCnpj"):
                existing = await self.find_customer(cpfCnpj=payload["cpfCnpj"])
            if existing is None and payload.get("email"):
                existing = await self.find_customer(email=payload["email"])
            if existing and existing.get("id"):
                log.info("gateway.customer_reused", customer=existing["id"])
                return existing["id"]

        if errors:
            raise GatewayError("Could not create customer",
                               details=_descriptions(data))
        raise GatewayError("Could not create customer",
                           details="no customer id returned")

    # ---- payments
    async def create_payment(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("POST", "/payments", json_body=payload,
                                error="Could not process payment")

    async def get_pix_qr_code(self, payment_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/payments/{payment_id}/pixQrCode",
                                error="Could not generate PIX QR code")

    async def get_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/payments/{payment_id}",
                                error="Could not check payment status")

    async def delete_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self._call("DELETE", f"/payments/{payment_id}",
                                error="Could not cancel payment")
