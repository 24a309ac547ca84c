from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import structlog

log = structlog.get_logger(__name__)


class MalformedPayload(ValueError):
    """Authenticated body that does not match the gateway's envelope."""


# ----------------------------
# Canonical webhook event
# ----------------------------
@dataclass(frozen=True)
class WebhookEvent:
    gateway: str
    event: str
    # None when the envelope carries no payment/billing object
    payment_id: Optional[str]
    gateway_status: Optional[str]
    # canonical status, None when the gateway vocabulary is not mapped
    new_status: Optional[str]
    # what goes to the webhook log (before redaction)
    log_payload: Mapping[str, Any]


# ----------------------------
# Webhook adapter interface
# ----------------------------
class WebhookAdapter(ABC):
    gateway: str
    # event name written to the log when authentication fails
    auth_failure_event: str = "authentication_failed"
    # True when the mapped vocabulary is the payment status, not the event
    keyed_by_status: bool = False

    @property
    @abstractmethod
    def configured(self) -> bool:
        """False when no secret/token is set (unsigned requests accepted)."""

    @abstractmethod
    def verify(self, payload: bytes, headers: Mapping[str, str]) -> bool: ...

    @abstractmethod
    def parse(self, payload: bytes) -> WebhookEvent: ...

    def authenticate(self, payload: bytes,
                     headers: Mapping[str, str]) -> bool:
        if not self.configured:
            log.warning(
                "webhook.unauthenticated_accept",
                gateway=self.gateway,
                reason="no webhook secret configured; request NOT verified",
            )
            return True
        return self.verify(payload, headers)
