from __future__ import annotations
from typing import Any, Dict

import structlog

from .errors import (
    GatewayError, InternalError, TransientError, ValidationError
)
from .gateways.abacatepay import GATEWAY as ABACATEPAY, AbacatePayClient
from .gateways.asaas import GATEWAY, AsaasClient
from .helpers import only_digits, tomorrow
from .model.ledger import PurchaseLedger
from .validation import BillingRequest, PaymentRequest, parse_expiry_year

log = structlog.get_logger(__name__)

# gateway payment statuses as seen by the status poll
PAID_STATUSES = ("RECEIVED", "CONFIRMED", "RECEIVED_IN_CASH")
CANCELLED_STATUSES = ("REFUNDED", "DELETED")
PENDING_STATUSES = ("PENDING",)


def status_flags(status: str | None) -> Dict[str, bool]:
    return {
        "isPaid": status in PAID_STATUSES,
        "isPending": status in PENDING_STATUSES,
        "isCancelled": status in CANCELLED_STATUSES,
    }


class PaymentService:
    def __init__(self, gateway: AsaasClient, ledger: PurchaseLedger) -> None:
        self.gateway = gateway
        self.ledger = ledger

    # ----------------------------
    # initiation
    # ----------------------------
    def _customer_payload(self, req: PaymentRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": req.customerName,
            "notificationDisabled": True,
        }
        if req.customerEmail:
            payload["email"] = req.customerEmail
        if req.tax_id:
            payload["cpfCnpj"] = req.tax_id
        phone = (req.creditCardHolderInfo.phone if req.creditCardHolderInfo
                 else req.customerPhone)
        if only_digits(phone):
            payload["phone"] = only_digits(phone)
        return payload

    def _payment_payload(self, req: PaymentRequest,
                         customer_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "customer": customer_id,
            "billingType": req.billingType,
            "value": float(req.value),
            "dueDate": tomorrow(),
            "description": f"Wedding gift: {req.giftName}",
            "externalReference": req.giftId,
        }
        if req.billingType == "CREDIT_CARD":
            card, holder = req.creditCard, req.creditCardHolderInfo
            payload["creditCard"] = {
                "holderName": card.holderName,
                "number": card.number,
                "expiryMonth": card.expiryMonth.zfill(2),
                "expiryYear": str(parse_expiry_year(card.expiryYear)),
                "ccv": card.ccv,
            }
            payload["creditCardHolderInfo"] = {
                "name": holder.name,
                "email": holder.email,
                "cpfCnpj": only_digits(holder.cpfCnpj),
                "postalCode": only_digits(holder.postalCode),
                "addressNumber": holder.addressNumber,
                "phone": only_digits(holder.phone),
            }
        return payload

    async def initiate(self, req: PaymentRequest) -> Dict[str, Any]:
        self.gateway.require_key()

        gift = await self.ledger.get_gift(req.giftId)
        if gift is None:
            raise ValidationError("Unknown gift", details=req.giftId)
        if not gift["available"]:
            raise ValidationError("Gift is no longer available",
                                  details=req.giftId)

        log.info("payment.request", gift_id=req.giftId,
                 billing_type=req.billingType, value=str(req.value),
                 customer_name=req.customerName)

        customer_id = await self.gateway.ensure_customer(
            self._customer_payload(req)
        )
        payment = await self.gateway.create_payment(
            self._payment_payload(req, customer_id)
        )
        payment_id = payment.get("id")
        if not payment_id:
            log.error("payment.invalid_gateway_response", body=payment)
            raise InternalError("Invalid response from payment gateway")

        pix: Dict[str, Any] = {}
        if req.billingType == "PIX":
            try:
                pix = await self.gateway.get_pix_qr_code(payment_id)
            except (GatewayError, TransientError) as e:
                # the invoice URL still lets the guest pay
                log.warning("payment.pix_qr_failed", payment_id=payment_id,
                            error=str(e))

        await self.ledger.record_purchase(
            gift_id=req.giftId,
            purchaser_name=req.customerName,
            purchaser_email=req.customerEmail,
            amount=req.value,
            external_payment_id=payment_id,
            payment_gateway=GATEWAY,
        )
        log.info("payment.created", payment_id=payment_id,
                 status=payment.get("status"), gift_id=req.giftId)

        body = {
            "success": True,
            "paymentId": payment_id,
            "status": payment.get("status"),
            "billingType": req.billingType,
            "value": payment.get("value"),
            "invoiceUrl": payment.get("invoiceUrl"),
        }
        if req.billingType == "PIX":
            body.update({
                "pixQrCode": pix.get("encodedImage"),
                "pixCopyPaste": pix.get("payload"),
                "expirationDate": pix.get("expirationDate"),
            })
        return body

    # ----------------------------
    # status / cancel
    # ----------------------------
    async def check(self, payment_id: str) -> Dict[str, Any]:
        log.info("payment.check", payment_id=payment_id)
        data = await self.gateway.get_payment(payment_id)
        status = data.get("status")
        return {
            "success": True,
            "paymentId": data.get("id", payment_id),
            "status": status,
            **status_flags(status),
            "value": data.get("value"),
            "paymentDate": data.get("paymentDate"),
            "confirmedDate": data.get("confirmedDate"),
        }

    async def cancel(self, payment_id: str) -> Dict[str, Any]:
        # the ledger is left alone: the webhook reconciler is its only writer
        log.info("payment.cancel", payment_id=payment_id)
        await self.gateway.delete_payment(payment_id)
        return {
            "success": True,
            "cancelled": True,
            "message": "Payment cancelled",
        }


class BillingService:
    """Hosted PIX checkout: one billing for several gifts.

    Each gift of the billing gets its own pending purchase row under the
    billing id, so the webhook moves every gift's counter on its own.
    """

    def __init__(self, gateway: AbacatePayClient,
                 ledger: PurchaseLedger) -> None:
        self.gateway = gateway
        self.ledger = ledger

    def _billing_payload(self, req: BillingRequest) -> Dict[str, Any]:
        customer: Dict[str, Any] = {"name": req.customerName}
        if req.customerEmail:
            customer["email"] = req.customerEmail
        if only_digits(req.customerPhone):
            customer["cellphone"] = only_digits(req.customerPhone)
        if req.tax_id:
            customer["taxId"] = req.tax_id
        return {
            "frequency": "ONE_TIME",
            "methods": ["PIX"],
            "products": [{
                "externalId": item.giftId,
                "name": item.name,
                "description": f"Wedding gift: {item.name}",
                "quantity": item.quantity,
                "price": item.cents,
            } for item in req.items],
            "returnUrl": req.returnUrl,
            "completionUrl": req.completionUrl,
            "customer": customer,
            "metadata": {
                "giftIds": [item.giftId for item in req.items],
                "purchaserName": req.customerName,
            },
        }

    async def initiate(self, req: BillingRequest) -> Dict[str, Any]:
        self.gateway.require_key()

        for item in req.items:
            gift = await self.ledger.get_gift(item.giftId)
            if gift is None:
                raise ValidationError("Unknown gift", details=item.giftId)
            if not gift["available"]:
                raise ValidationError("Gift is no longer available",
                                      details=item.giftId)

        log.info("billing.request",
                 gift_ids=[item.giftId for item in req.items],
                 total_cents=sum(item.cents for item in req.items),
                 customer_name=req.customerName)

        billing = await self.gateway.create_billing(
            self._billing_payload(req)
        )
        billing_id = billing.get("id")
        if not billing_id:
            log.error("billing.invalid_gateway_response", body=billing)
            raise InternalError("Invalid response from payment gateway")

        purchase_ids = await self.ledger.record_billing(
            external_payment_id=billing_id,
            payment_gateway=ABACATEPAY,
            purchaser_name=req.customerName,
            purchaser_email=req.customerEmail,
            items=[(item.giftId, item.price * item.quantity)
                   for item in req.items],
        )
        log.info("billing.created", billing_id=billing_id,
                 status=billing.get("status"), purchases=len(purchase_ids))

        return {
            "success": True,
            "billingId": billing_id,
            "status": billing.get("status"),
            "paymentUrl": billing.get("url"),
            "amount": billing.get("amount"),
            "purchaseIds": purchase_ids,
        }
