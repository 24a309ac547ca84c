from __future__ import annotations
import base64
import hashlib
import hmac
import json
from typing import Any, Dict, Mapping, Optional

import httpx
import pydantic
import structlog
from pydantic import BaseModel, ConfigDict

from ..errors import ConfigurationError, GatewayError, TransientError
from ..infra.logs import redact
from ..infra.retry import fetch_with_retry
from ..infra.timings import timeit
from ..model.orm import CANCELLED, CONFIRMED, REFUNDED
from .base import MalformedPayload, WebhookAdapter, WebhookEvent

log = structlog.get_logger(__name__)

GATEWAY = "abacatepay"
SIGNATURE_HEADER = "x-abacate-signature"

# billing statuses: PENDING, EXPIRED, CANCELLED, PAID, REFUNDED
STATUS_MAP = {
    "PAID": CONFIRMED,
    "REFUNDED": REFUNDED,
    "CANCELLED": CANCELLED,
    "EXPIRED": CANCELLED,
}


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="allow")


class BillingMetadata(_Envelope):
    purchaseId: Optional[str] = None
    giftId: Optional[str] = None


class Billing(_Envelope):
    id: str
    status: str
    metadata: Optional[BillingMetadata] = None


class BillingData(_Envelope):
    billing: Optional[Billing] = None


class AbacateWebhook(_Envelope):
    event: str = "unknown"
    data: Optional[BillingData] = None


def sign(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


class AbacatePayWebhook(WebhookAdapter):
    gateway = GATEWAY
    auth_failure_event = "signature_validation_failed"
    keyed_by_status = True

    def __init__(self, secret: Optional[str]) -> None:
        self.secret = secret

    @property
    def configured(self) -> bool:
        return bool(self.secret)

    def verify(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        sig = headers.get(SIGNATURE_HEADER)
        if not sig:
            log.error("webhook.missing_signature", gateway=self.gateway)
            return False
        return hmac.compare_digest(sign(self.secret, payload), sig)

    def parse(self, payload: bytes) -> WebhookEvent:
        try:
            body = json.loads(payload.decode())
            hook = AbacateWebhook.model_validate(body)
        except (UnicodeDecodeError, json.JSONDecodeError,
                pydantic.ValidationError) as e:
            raise MalformedPayload(str(e)) from e

        billing = hook.data.billing if hook.data else None
        if billing is None:
            return WebhookEvent(self.gateway, hook.event, None, None, None,
                                body)
        return WebhookEvent(
            gateway=self.gateway,
            event=hook.event,
            payment_id=billing.id,
            gateway_status=billing.status,
            new_status=STATUS_MAP.get(billing.status),
            log_payload=body,
        )


# ----------------------------
# REST client
# ----------------------------
class AbacatePayClient:
    """Billing API client. The API reports failures in an ``error`` field
    next to ``data``, often with a 200 status."""

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
            raise ConfigurationError("ABACATEPAY_API_KEY not configured")
        return self.api_key

    async def create_billing(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        request = self.http.build_request(
            "POST",
            f"{self.base_url}/billing/create",
            headers={"Authorization": f"Bearer {self.require_key()}"},
            json=payload,
        )
        try:
            async with timeit("gateway.billing_create"):
                response = await fetch_with_retry(
                    self.http, request, self.max_attempts,
                    base_delay=self.base_delay,
                )
        except httpx.TransportError as e:
            log.error("gateway.unreachable", gateway=GATEWAY,
                      path="/billing/create", error=str(e))
            raise TransientError() from e

        if response.status_code >= 500:
            log.error("gateway.server_error", gateway=GATEWAY,
                      status=response.status_code)
            raise TransientError()

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        log.info("gateway.response", gateway=GATEWAY,
                 path="/billing/create", status=response.status_code,
                 body=redact(data))

        if data.get("error"):
            raise GatewayError("Could not create billing",
                               details=str(data["error"]))
        if response.status_code >= 400:
            raise GatewayError("Could not create billing",
                               details=f"HTTP {response.status_code}")
        billing = data.get("data")
        return billing if isinstance(billing, dict) else {}
