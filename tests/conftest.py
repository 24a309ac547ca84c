import json
from contextlib import asynccontextmanager
from dataclasses import replace
from decimal import Decimal

import httpx
import pytest

from giftpay.config import Settings
from giftpay.gateways.abacatepay import sign
from giftpay.infra import timings
from giftpay.model.orm import Gift
from giftpay.server import create_app

GATEWAY_URL = "https://gateway.test/v3"
BILLING_URL = "https://abacate.test/v1"
WEBHOOK_TOKEN = "hook-token"
ABACATE_SECRET = "abacate-secret"
VALID_CPF = "52998224725"
VALID_CARD = "4111111111111111"


# ----------------------------
# Fake payment gateway
# ----------------------------
def gw_error(code, description, status=400):
    return httpx.Response(
        status, json={"errors": [{"code": code, "description": description}]}
    )


class FakeGateway:
    """In-memory stand-in for both gateway REST APIs, used as a MockTransport
    handler. Responses queued with ``queue()`` win over the defaults. Billing
    paths are recorded under their own prefix, e.g. ``/billing/create``."""

    def __init__(self):
        self.calls = []
        self.keys = []
        self.payments = {}
        self.billings = {}
        self._billing_seq = 0
        self.overrides = {}
        self._seq = 0

    def queue(self, method, path, *responses):
        self.overrides.setdefault((method, path), []).extend(responses)

    def set_status(self, payment_id, status):
        self.payments[payment_id]["status"] = status

    def calls_to(self, method, path):
        return [c for c in self.calls if c[0] == method and c[1] == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        billing_api = request.url.host == "abacate.test"
        path = request.url.path.removeprefix("/v1" if billing_api else "/v3")
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, path, body))
        self.keys.append(request.headers.get(
            "authorization" if billing_api else "access_token"
        ))

        queued = self.overrides.get((request.method, path))
        if queued:
            r = queued.pop(0)
            if isinstance(r, Exception):
                raise r
            return r

        if billing_api:
            return self._billing(request, path, body)

        parts = path.strip("/").split("/")
        if path == "/customers" and request.method == "POST":
            return httpx.Response(200, json={"id": "cus_1"})
        if path == "/customers" and request.method == "GET":
            return httpx.Response(200, json={"data": []})
        if path == "/payments" and request.method == "POST":
            self._seq += 1
            pid = f"p{self._seq}"
            self.payments[pid] = {
                "id": pid,
                "status": "PENDING",
                "value": body["value"],
                "billingType": body["billingType"],
                "invoiceUrl": f"https://pay.test/i/{pid}",
            }
            return httpx.Response(200, json=self.payments[pid])
        if len(parts) == 3 and parts[2] == "pixQrCode":
            return httpx.Response(200, json={
                "encodedImage": "aW1hZ2U=",
                "payload": "00020126580014br.gov.bcb.pix",
                "expirationDate": "2026-10-19 23:59:59",
            })
        if len(parts) == 2 and parts[0] == "payments":
            payment = self.payments.get(parts[1])
            if payment is None:
                return gw_error("invalid_object", "Payment not found", 404)
            if request.method == "DELETE":
                payment["status"] = "DELETED"
                return httpx.Response(200, json={"deleted": True,
                                                 "id": parts[1]})
            return httpx.Response(200, json=payment)
        return httpx.Response(404, json={})

    def _billing(self, request, path, body):
        if path != "/billing/create" or request.method != "POST":
            return httpx.Response(404, json={"data": None,
                                             "error": "Not found"})
        self._billing_seq += 1
        bid = f"bill_{self._billing_seq}"
        self.billings[bid] = {
            "id": bid,
            "status": "PENDING",
            "url": f"https://pay.test/b/{bid}",
            "amount": sum(p["price"] * p["quantity"]
                          for p in body["products"]),
        }
        return httpx.Response(200, json={"data": self.billings[bid],
                                         "error": None})


# ----------------------------
# App under test
# ----------------------------
@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'giftpay.db'}",
        asaas_api_key="test-key",
        asaas_base_url=GATEWAY_URL,
        abacatepay_api_key="abacate-key",
        abacatepay_base_url=BILLING_URL,
        gateway_retry_base_delay=0.0,
        asaas_webhook_token=WEBHOOK_TOKEN,
        abacatepay_webhook_secret=ABACATE_SECRET,
        log_level="WARNING",
        log_json=False,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@asynccontextmanager
async def running_app(settings, gateway, ratelimit_store=None, **overrides):
    app = create_app(
        replace(settings, **overrides),
        gateway_transport=httpx.MockTransport(gateway),
        ratelimit_store=ratelimit_store,
    )
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(
            transport=transport, base_url="http://giftpay.test"
        ) as client:
            yield app, client


async def seed_gift(app, gift_id="g1", name="Coffee maker",
                    price="150.00", limit=1, count=0):
    async with app.state.db.transaction() as s:
        s.add(Gift(id=gift_id, name=name, price=Decimal(price),
                   purchase_limit=limit, purchase_count=count))


@pytest.fixture
async def app_client(settings, gateway):
    timings.reset()
    async with running_app(settings, gateway) as (app, client):
        await seed_gift(app)
        yield app, client


@pytest.fixture
def app(app_client):
    return app_client[0]


@pytest.fixture
def client(app_client):
    return app_client[1]


# ----------------------------
# Request builders
# ----------------------------
def pix_request(**kw):
    body = {
        "giftId": "g1",
        "giftName": "Coffee maker",
        "value": 150.00,
        "customerName": "Ana Souza",
        "customerEmail": "ana@example.com",
        "customerTaxId": VALID_CPF,
        "billingType": "PIX",
    }
    body.update(kw)
    return body


def card_request(year, **card):
    body = pix_request(billingType="CREDIT_CARD")
    body["creditCard"] = {
        "holderName": "ANA SOUZA",
        "number": VALID_CARD,
        "expiryMonth": "12",
        "expiryYear": str(year),
        "ccv": "123",
        **card,
    }
    body["creditCardHolderInfo"] = {
        "name": "Ana Souza",
        "email": "ana@example.com",
        "cpfCnpj": "529.982.247-25",
        "postalCode": "01310-100",
        "addressNumber": "1000",
        "phone": "(11) 98888-7777",
    }
    return body


def billing_request(*items, **kw):
    body = {
        "items": [
            {"giftId": gift_id, "name": name, "price": price, "quantity": 1}
            for gift_id, name, price in items
        ] or [{"giftId": "g1", "name": "Coffee maker", "price": 150.00,
               "quantity": 1}],
        "customerName": "Ana Souza",
        "customerEmail": "ana@example.com",
        "customerPhone": "(11) 98888-7777",
        "customerTaxId": VALID_CPF,
        "returnUrl": "https://registry.test/gifts",
        "completionUrl": "https://registry.test/thanks",
    }
    body.update(kw)
    return body


async def asaas_hook(client, event, payment_id="p1", status=None,
                     token=WEBHOOK_TOKEN):
    headers = {"asaas-access-token": token} if token else {}
    return await client.post("/webhooks/asaas", json={
        "event": event,
        "payment": {"id": payment_id, "status": status},
    }, headers=headers)


async def abacate_hook(client, billing_status, billing_id="p1",
                       event="billing.paid", secret=ABACATE_SECRET,
                       raw=None):
    body = raw if raw is not None else json.dumps({
        "event": event,
        "data": {"billing": {"id": billing_id, "status": billing_status,
                             "customer": {"taxId": VALID_CPF}}},
    }).encode()
    headers = {"content-type": "application/json"}
    if secret:
        headers["X-Abacate-Signature"] = sign(secret, body)
    return await client.post("/webhooks/abacatepay", content=body,
                             headers=headers)
