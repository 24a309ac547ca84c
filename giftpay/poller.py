#!/usr/bin/env python3
"""
giftpay checkout driver (async)

Drives one purchase the way the checkout page does:
  1) POST /api/payments          -> {paymentId, pixQrCode, pixCopyPaste, ...}
  2) two independent loops while the payment is pending:
     - countdown, ticking every second from an 8 minute budget; reaching
       zero cancels the payment and ends in EXPIRED
     - status poll every 5 seconds against /api/payments/status; isPaid
       ends in PAID (then redirects), isCancelled ends in CANCELLED
  3) a user cancel also calls the cancel action and ends in CANCELLED

Both loops are owned by the poller and are torn down by close() (or on
leaving ``async with``) whatever the outcome.

Usage:
  python -m giftpay.poller --base http://localhost:8000 \
      --gift-id g1 --gift-name "Coffee maker" --value 150.00 \
      --name "Ana Souza" --email ana@example.com --tax-id 52998224725
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import inspect
import json
from typing import Any, Callable, Dict, Optional, Set

import httpx
import structlog

log = structlog.get_logger(__name__)

CHECKOUT_TIMEOUT_S = 8 * 60
TICK_S = 1.0
POLL_INTERVAL_S = 5.0
REDIRECT_DELAY_S = 2.0


class CheckoutState(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL = (CheckoutState.PAID, CheckoutState.EXPIRED,
            CheckoutState.CANCELLED)

OnChange = Callable[[CheckoutState], Any]
OnRedirect = Callable[[Dict[str, Any]], Any]


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


class CheckoutPoller:
    def __init__(
        self,
        client: httpx.AsyncClient,
        base: str = "",
        *,
        timeout_s: float = CHECKOUT_TIMEOUT_S,
        tick_s: float = TICK_S,
        poll_interval_s: float = POLL_INTERVAL_S,
        redirect_delay_s: float = REDIRECT_DELAY_S,
        on_change: Optional[OnChange] = None,
        on_redirect: Optional[OnRedirect] = None,
    ) -> None:
        self.client = client
        self.base = base.rstrip("/")
        self.timeout_s = timeout_s
        self.tick_s = tick_s
        self.poll_interval_s = poll_interval_s
        self.redirect_delay_s = redirect_delay_s
        self.on_change = on_change
        self.on_redirect = on_redirect

        self.state = CheckoutState.IDLE
        self.payment: Dict[str, Any] = {}
        self.payment_id: Optional[str] = None
        self.remaining_s = timeout_s
        self.error: Optional[str] = None
        self.last_status: Optional[Dict[str, Any]] = None

        self._countdown: Optional[asyncio.Task] = None
        self._poll: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._done = asyncio.Event()

    async def __aenter__(self) -> "CheckoutPoller":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ----------------------------
    # transitions
    # ----------------------------
    async def _set_state(self, state: CheckoutState) -> None:
        self.state = state
        log.info("checkout.state", state=state.value,
                 payment_id=self.payment_id)
        if state in TERMINAL:
            self._done.set()
        if self.on_change is not None:
            await _maybe_await(self.on_change(state))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _stop_intervals(self) -> None:
        current = asyncio.current_task()
        for task in (self._countdown, self._poll):
            if task is not None and task is not current and not task.done():
                task.cancel()

    # ----------------------------
    # HTTP
    # ----------------------------
    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.client.post(f"{self.base}{path}", json=body)
        try:
            data = resp.json()
        except ValueError:
            data = {"success": False, "error": f"HTTP {resp.status_code}"}
        if resp.status_code >= 400 or not data.get("success"):
            # gateway messages are shown verbatim when there are any
            message = data.get("details") or data.get("error") \
                or f"HTTP {resp.status_code}"
            raise CheckoutError(message, status_code=resp.status_code)
        return data

    async def _cancel_request(self) -> None:
        await self._post("/api/payments/status",
                         {"paymentId": self.payment_id, "action": "cancel"})

    # ----------------------------
    # public API
    # ----------------------------
    async def start(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.state is not CheckoutState.IDLE:
            raise RuntimeError(f"checkout already {self.state.value}")
        try:
            data = await self._post("/api/payments", payload)
        except CheckoutError as e:
            self.error = str(e)
            log.warning("checkout.initiation_failed", error=self.error)
            raise

        self.payment = data
        self.payment_id = data["paymentId"]
        self.remaining_s = self.timeout_s
        await self._set_state(CheckoutState.PENDING)

        if payload.get("billingType") == "PIX":
            self._countdown = self._spawn(self._run_countdown())
        self._poll = self._spawn(self._run_poll())
        return data

    async def check(self) -> Dict[str, Any]:
        """One status poll; applies the outcome if it is terminal."""
        data = await self._post("/api/payments/status",
                                {"paymentId": self.payment_id,
                                 "action": "check"})
        self.last_status = data
        if self.state is not CheckoutState.PENDING:
            return data
        if data.get("isPaid"):
            self._stop_intervals()
            await self._set_state(CheckoutState.PAID)
            self._spawn(self._redirect())
        elif data.get("isCancelled"):
            self._stop_intervals()
            await self._set_state(CheckoutState.CANCELLED)
        return data

    async def cancel(self) -> None:
        """User-initiated cancel."""
        if self.state is not CheckoutState.PENDING:
            return
        self._stop_intervals()
        try:
            await self._cancel_request()
        except (CheckoutError, httpx.HTTPError) as e:
            # e.g. the gateway refuses because the payment already completed
            self.error = str(e)
            log.warning("checkout.cancel_failed", payment_id=self.payment_id,
                        error=self.error)
        await self._set_state(CheckoutState.CANCELLED)

    async def wait(self, timeout: Optional[float] = None) -> CheckoutState:
        await asyncio.wait_for(self._done.wait(), timeout)
        return self.state

    async def close(self) -> None:
        """Tear down every loop this poller started."""
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def active_tasks(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    # ----------------------------
    # loops
    # ----------------------------
    async def _run_countdown(self) -> None:
        while self.state is CheckoutState.PENDING:
            await asyncio.sleep(self.tick_s)
            self.remaining_s = max(0.0, self.remaining_s - self.tick_s)
            if self.remaining_s <= 0:
                await self._expire()
                return

    async def _expire(self) -> None:
        if self.state is not CheckoutState.PENDING:
            return
        self._stop_intervals()
        try:
            await self._cancel_request()
        except (CheckoutError, httpx.HTTPError) as e:
            self.error = str(e)
            log.warning("checkout.expire_cancel_failed",
                        payment_id=self.payment_id, error=self.error)
        await self._set_state(CheckoutState.EXPIRED)

    async def _run_poll(self) -> None:
        while self.state is CheckoutState.PENDING:
            await asyncio.sleep(self.poll_interval_s)
            if self.state is not CheckoutState.PENDING:
                return
            try:
                await self.check()
            except (CheckoutError, httpx.HTTPError) as e:
                # keep polling; the countdown bounds how long we try
                log.warning("checkout.poll_failed",
                            payment_id=self.payment_id, error=str(e))

    async def _redirect(self) -> None:
        await asyncio.sleep(self.redirect_delay_s)
        if self.on_redirect is not None:
            await _maybe_await(self.on_redirect(self.payment))


class CheckoutError(Exception):
    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


# ----------------------------
# CLI
# ----------------------------
async def run_checkout(args: argparse.Namespace) -> CheckoutState:
    payload = {
        "giftId": args.gift_id,
        "giftName": args.gift_name,
        "value": args.value,
        "customerName": args.name,
        "customerEmail": args.email,
        "customerTaxId": args.tax_id,
        "billingType": "PIX",
    }

    def _show(state: CheckoutState):
        print(f"[checkout] {state.value}")

    def _redirect(payment: Dict[str, Any]):
        print(f"[checkout] paid, confirmation for {payment['paymentId']}")

    async with httpx.AsyncClient(timeout=30.0) as client:
        async with CheckoutPoller(
            client, args.base,
            timeout_s=args.timeout,
            poll_interval_s=args.poll_interval,
            on_change=_show,
            on_redirect=_redirect,
        ) as poller:
            data = await poller.start(payload)
            print("PIX copy-paste code:")
            print(data.get("pixCopyPaste") or "(unavailable)")
            if data.get("invoiceUrl"):
                print(f"Invoice: {data['invoiceUrl']}")
            state = await poller.wait()
            # give the redirect a chance to run before tearing down
            if state is CheckoutState.PAID:
                await asyncio.sleep(poller.redirect_delay_s)
            if poller.last_status:
                print(json.dumps(poller.last_status, indent=2))
            return state


def main():
    ap = argparse.ArgumentParser(description="giftpay PIX checkout driver")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--gift-id", required=True)
    ap.add_argument("--gift-name", required=True)
    ap.add_argument("--value", type=float, required=True)
    ap.add_argument("--name", required=True, help="Purchaser name")
    ap.add_argument("--email", default=None)
    ap.add_argument("--tax-id", default=None, help="CPF, digits only")
    ap.add_argument("--timeout", type=float, default=CHECKOUT_TIMEOUT_S,
                    help="Seconds before the payment is cancelled")
    ap.add_argument("--poll-interval", type=float, default=POLL_INTERVAL_S,
                    help="Seconds between status polls")
    args = ap.parse_args()

    try:
        state = asyncio.run(run_checkout(args))
    except CheckoutError as e:
        print(f"[checkout] failed: {e}")
        raise SystemExit(1)
    raise SystemExit(0 if state is CheckoutState.PAID else 2)


if __name__ == "__main__":
    main()
