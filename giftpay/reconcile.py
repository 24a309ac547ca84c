"""Webhook reconciliation.

Turns an inbound gateway callback into at most one status transition per
purchase row of the payment. Response policy, so gateways only re-deliver
on real failures:

- 401 when the request fails authentication
- 500 for anything unexpected after authentication, and for throttled
  deliveries, which the gateway must re-send
- 200 for everything else, including events we ignore
"""

from __future__ import annotations
from typing import Any, Dict, Mapping, Tuple

import structlog

from .errors import RateLimitError
from .gateways.base import MalformedPayload, WebhookAdapter
from .infra.logs import redact
from .model.ledger import PurchaseLedger

log = structlog.get_logger(__name__)

Reply = Tuple[int, Dict[str, Any]]


def _ack(message: str) -> Reply:
    return 200, {"success": True, "message": message}


class WebhookReconciler:
    def __init__(self, ledger: PurchaseLedger) -> None:
        self.ledger = ledger

    async def _log(self, adapter: WebhookAdapter, event: str, payload: Any,
                   success: bool, error: str | None = None) -> None:
        await self.ledger.log_webhook(
            adapter.gateway, event, redact(payload), success, error
        )

    async def throttled(self, adapter: WebhookAdapter,
                        identifier: str) -> Reply:
        log.warning("webhook.throttled", gateway=adapter.gateway,
                    identifier=identifier)
        await self._log(adapter, "rate_limited", {"identifier": identifier},
                        False, "Too many requests")
        return 500, RateLimitError().to_body()

    async def handle(self, adapter: WebhookAdapter, payload: bytes,
                     headers: Mapping[str, str]) -> Reply:
        # 1) authenticity
        if not adapter.authenticate(payload, headers):
            log.error("webhook.rejected", gateway=adapter.gateway)
            await self._log(adapter, adapter.auth_failure_event, {}, False,
                            "Unauthorized")
            return 401, {"success": False, "error": "Unauthorized"}

        try:
            return await self._reconcile(adapter, payload)
        except Exception as e:
            log.exception("webhook.failed", gateway=adapter.gateway)
            await self._log(adapter, "processing_failed", {}, False,
                            f"{type(e).__name__}: {e}")
            return 500, {"success": False, "error": "Internal server error"}

    async def _reconcile(self, adapter: WebhookAdapter,
                         payload: bytes) -> Reply:
        # 2) parse into the canonical event
        try:
            evt = adapter.parse(payload)
        except MalformedPayload as e:
            # re-delivering the same bytes cannot fix this
            log.warning("webhook.malformed", gateway=adapter.gateway,
                        error=str(e))
            await self._log(adapter, "malformed_payload", {}, False, str(e))
            return _ack("Malformed payload ignored")

        log.info("webhook.received", gateway=adapter.gateway,
                 webhook_event=evt.event, payment_id=evt.payment_id,
                 status=evt.gateway_status)

        if evt.payment_id is None:
            await self._log(adapter, evt.event, evt.log_payload, True)
            return _ack("No payment data")

        # 3) purchase lookup
        purchase = await self.ledger.get_purchase(evt.payment_id)
        if purchase is None:
            log.info("webhook.purchase_not_found", gateway=adapter.gateway,
                     payment_id=evt.payment_id)
            await self._log(adapter, evt.event, evt.log_payload, True,
                            "Purchase not found")
            return _ack("Purchase not found")

        owner = purchase["payment_gateway"]
        if owner != adapter.gateway:
            log.warning("webhook.gateway_mismatch", gateway=adapter.gateway,
                        payment_id=evt.payment_id, purchase_gateway=owner)
            await self._log(adapter, evt.event, evt.log_payload, False,
                            f"Payment belongs to gateway {owner}")
            return _ack("Payment not handled by this gateway")

        # 4) vocabulary mapping
        if evt.new_status is None:
            if adapter.keyed_by_status and evt.gateway_status:
                kind, detail = "Status", evt.gateway_status
            else:
                kind, detail = "Event", evt.event
            log.info("webhook.unhandled", gateway=adapter.gateway,
                     webhook_event=evt.event, status=evt.gateway_status)
            await self._log(adapter, evt.event, evt.log_payload, True,
                            f"Unhandled {kind.lower()}: {detail}")
            return _ack(f"{kind} {detail} not handled")

        # 5) + 6) status write and purchase_count adjustment
        transitions = await self.ledger.apply_status(
            evt.payment_id, evt.new_status
        )
        if not transitions:
            # purchases vanished between lookup and update; they are never
            # deleted, so treat it like an untracked payment
            await self._log(adapter, evt.event, evt.log_payload, True,
                            "Purchase not found")
            return _ack("Purchase not found")

        for t in transitions:
            log.info("webhook.applied", gateway=adapter.gateway,
                     purchase_id=t.purchase_id, gift_id=t.gift_id,
                     previous_status=t.previous_status,
                     new_status=t.new_status, count_delta=t.count_delta)

        # 7) audit trail
        first = transitions[0]
        await self._log(adapter, evt.event, {
            **evt.log_payload,
            "previousStatus": first.previous_status,
            "newStatus": first.new_status,
        }, True)
        body: Dict[str, Any] = {
            "success": True,
            "purchaseId": first.purchase_id,
            "previousStatus": first.previous_status,
            "newStatus": first.new_status,
        }
        if len(transitions) > 1:
            body["purchaseIds"] = [t.purchase_id for t in transitions]
        return 200, body
