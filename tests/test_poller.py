import asyncio
import json

import httpx
import pytest

from giftpay.poller import CheckoutError, CheckoutPoller, CheckoutState

from conftest import pix_request


class FakeCheckoutApi:
    """Scripted /api/payments + /api/payments/status for the poller."""

    def __init__(self, statuses=("PENDING",), create=None):
        self.statuses = list(statuses)
        self.create = create
        self.checks = 0
        self.cancels = 0
        self.cancel_response = None

    def __call__(self, request):
        body = json.loads(request.content)
        if request.url.path == "/api/payments":
            if self.create is not None:
                return self.create
            return httpx.Response(200, json={
                "success": True, "paymentId": "p1", "status": "PENDING",
                "pixCopyPaste": "0002...", "invoiceUrl": "https://pay/p1",
            })
        if body.get("action") == "cancel":
            self.cancels += 1
            if self.cancel_response is not None:
                return self.cancel_response
            return httpx.Response(200, json={"success": True,
                                             "cancelled": True})
        status = self.statuses[min(self.checks, len(self.statuses) - 1)]
        self.checks += 1
        return httpx.Response(200, json={
            "success": True, "paymentId": "p1", "status": status,
            "isPaid": status in ("RECEIVED", "CONFIRMED"),
            "isPending": status == "PENDING",
            "isCancelled": status in ("REFUNDED", "DELETED"),
        })


def fast_poller(client, **kw):
    opts = dict(timeout_s=5.0, tick_s=0.01, poll_interval_s=0.01,
                redirect_delay_s=0)
    opts.update(kw)
    return CheckoutPoller(client, "http://app.test", **opts)


@pytest.fixture
def api():
    return FakeCheckoutApi()


@pytest.fixture
async def http(api):
    async with httpx.AsyncClient(transport=httpx.MockTransport(api)) as c:
        yield c


async def test_paid_stops_timers_and_redirects(api, http):
    api.statuses = ["PENDING", "PENDING", "CONFIRMED"]
    changes, redirects = [], []

    async def on_redirect(payment):
        redirects.append(payment["paymentId"])

    async with fast_poller(http, on_change=changes.append,
                           on_redirect=on_redirect) as poller:
        await poller.start(pix_request())
        assert await poller.wait(timeout=2) is CheckoutState.PAID
        await asyncio.sleep(0.05)
        checks = api.checks
        await asyncio.sleep(0.05)
        # no further polls once terminal
        assert api.checks == checks
        assert redirects == ["p1"]
        assert poller.active_tasks == 0
    assert changes == [CheckoutState.PENDING, CheckoutState.PAID]
    assert api.cancels == 0


async def test_countdown_expiry_cancels_once(api, http):
    async with fast_poller(http, timeout_s=0.05,
                           poll_interval_s=0.02) as poller:
        await poller.start(pix_request())
        assert await poller.wait(timeout=2) is CheckoutState.EXPIRED
        assert poller.remaining_s == 0
        checks = api.checks
        await asyncio.sleep(0.1)
        assert api.checks == checks
    assert api.cancels == 1


async def test_gateway_cancellation_is_terminal(api, http):
    api.statuses = ["DELETED"]
    async with fast_poller(http) as poller:
        await poller.start(pix_request())
        assert await poller.wait(timeout=2) is CheckoutState.CANCELLED
    assert api.cancels == 0


async def test_user_cancel(api, http):
    async with fast_poller(http, poll_interval_s=10) as poller:
        await poller.start(pix_request())
        await poller.cancel()
        assert poller.state is CheckoutState.CANCELLED
        # a second cancel is a no-op
        await poller.cancel()
    assert api.cancels == 1


async def test_cancel_failure_still_ends_cancelled(api, http):
    async with fast_poller(http, poll_interval_s=10) as poller:
        await poller.start(pix_request())
        api.cancel_response = httpx.Response(400, json={
            "success": False, "error": "Could not cancel payment",
            "details": "Payment already received",
        })
        await poller.cancel()
        assert poller.state is CheckoutState.CANCELLED
        assert poller.error == "Payment already received"


async def test_paid_wins_over_late_expiry(api, http):
    api.statuses = ["CONFIRMED"]
    async with fast_poller(http, timeout_s=0.2,
                           poll_interval_s=0.01) as poller:
        await poller.start(pix_request())
        assert await poller.wait(timeout=2) is CheckoutState.PAID
        await asyncio.sleep(0.3)
        assert poller.state is CheckoutState.PAID
    assert api.cancels == 0


async def test_card_payment_has_no_countdown(api, http):
    body = pix_request(billingType="CREDIT_CARD")
    async with fast_poller(http, timeout_s=0.02,
                           poll_interval_s=0.02) as poller:
        await poller.start(body)
        await asyncio.sleep(0.1)
        assert poller.state is CheckoutState.PENDING
        assert poller.active_tasks == 1
    assert api.cancels == 0


async def test_initiation_error_shows_gateway_message(api, http):
    api.create = httpx.Response(400, json={
        "success": False, "error": "Could not process payment",
        "details": "Value below minimum",
    })
    poller = fast_poller(http)
    with pytest.raises(CheckoutError) as ei:
        await poller.start(pix_request())
    assert str(ei.value) == "Value below minimum"
    assert ei.value.status_code == 400
    assert poller.state is CheckoutState.IDLE
    assert poller.active_tasks == 0


async def test_close_tears_down_pending_checkout(api, http):
    poller = fast_poller(http)
    await poller.start(pix_request())
    assert poller.active_tasks == 2
    await poller.close()
    assert poller.active_tasks == 0
    assert poller.state is CheckoutState.PENDING


async def test_start_twice_is_refused(api, http):
    async with fast_poller(http, poll_interval_s=10) as poller:
        await poller.start(pix_request())
        with pytest.raises(RuntimeError):
            await poller.start(pix_request())
