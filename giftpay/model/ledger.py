# model/ledger.py
"""
Purchase ledger on top of SQLAlchemy asyncio.

- purchases are inserted optimistically as `pending` right after the gateway
  created the payment, and are never deleted
- a gateway payment owns one purchase row per gift it covers; a status
  change reaches all of them
- status transitions are applied as a compare-and-swap on the previously
  read status; the gift's purchase_count moves by at most one per
  transition, in a single UPDATE statement (no read-modify-write)
- the webhook log is append-only and its failures never propagate
"""

from __future__ import annotations
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select, text

from ..helpers import now_ts
from ..infra.sql import Database
from ..infra.timings import timeit
from .orm import (
    CANCELLED, CONFIRMED, PENDING, REFUNDED, Purchase, WebhookLog
)

log = structlog.get_logger(__name__)

CAS_RETRIES = 5
CENTS = Decimal("0.01")


class LedgerConflict(RuntimeError):
    pass


@dataclass(frozen=True)
class Transition:
    purchase_id: str
    gift_id: str
    previous_status: str
    new_status: str
    count_delta: int


def count_delta(previous: str, new: str) -> int:
    """+1 when a purchase becomes confirmed, -1 when it stops being so."""
    if new == CONFIRMED and previous != CONFIRMED:
        return 1
    if previous == CONFIRMED and new in (REFUNDED, CANCELLED):
        return -1
    return 0


SQL_SELECT_GIFT = text("""
    SELECT id, name, price, purchase_count, purchase_limit
    FROM gifts WHERE id = :id
""")

SQL_SELECT_PURCHASES = text("""
    SELECT id, gift_id, purchaser_name, purchaser_email, amount,
           payment_status, external_payment_id, payment_gateway, purchased_at
    FROM purchases WHERE external_payment_id = :pid
    ORDER BY purchased_at, id
""")

SQL_SELECT_PURCHASE_BY_ID = text("""
    SELECT id, gift_id, payment_status FROM purchases WHERE id = :id
""")

SQL_CAS_STATUS = text("""
    UPDATE purchases SET payment_status = :new
    WHERE id = :id AND payment_status = :prev
""")

SQL_INCREMENT = text("""
    UPDATE gifts SET purchase_count = purchase_count + 1 WHERE id = :id
""")

SQL_DECREMENT = text("""
    UPDATE gifts SET purchase_count = purchase_count - 1
    WHERE id = :id AND purchase_count > 0
""")

SQL_CLAIM_GIFT = text("""
    UPDATE gifts SET purchase_count = purchase_count + 1
    WHERE id = :id AND purchase_count < purchase_limit
""")


def _gift_dict(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "price": Decimal(str(row["price"])).quantize(CENTS),
        "purchase_count": int(row["purchase_count"]),
        "purchase_limit": int(row["purchase_limit"]),
        "available": int(row["purchase_count"]) < int(row["purchase_limit"]),
    }


class PurchaseLedger:
    def __init__(self, db: Database) -> None:
        self.db = db

    # ---- gifts
    async def get_gift(self, gift_id: str) -> Optional[Dict[str, Any]]:
        async with timeit("db.get_gift"), self.db.session() as s:
            row = (await s.execute(
                SQL_SELECT_GIFT, {"id": gift_id}
            )).mappings().first()
        return _gift_dict(row) if row else None

    # ---- purchases
    async def record_purchase(
        self, *, gift_id: str, purchaser_name: str,
        purchaser_email: Optional[str], amount: Decimal,
        external_payment_id: Optional[str], payment_gateway: str,
        payment_status: str = PENDING,
    ) -> str:
        purchase_id = uuid.uuid4().hex
        async with timeit("db.record_purchase"), self.db.transaction() as s:
            s.add(Purchase(
                id=purchase_id,
                gift_id=gift_id,
                purchaser_name=purchaser_name,
                purchaser_email=purchaser_email,
                amount=amount,
                payment_status=payment_status,
                external_payment_id=external_payment_id,
                payment_gateway=payment_gateway,
                purchased_at=now_ts(),
            ))
        return purchase_id

    async def record_billing(
        self, *, external_payment_id: str, payment_gateway: str,
        purchaser_name: str, purchaser_email: Optional[str],
        items: List[Tuple[str, Decimal]],
    ) -> List[str]:
        """One pending purchase per (gift, amount) item of a billing, all
        under the same gateway id and written in one transaction."""
        purchase_ids = [uuid.uuid4().hex for _ in items]
        ts = now_ts()
        async with timeit("db.record_billing"), self.db.transaction() as s:
            s.add_all([
                Purchase(
                    id=purchase_id,
                    gift_id=gift_id,
                    purchaser_name=purchaser_name,
                    purchaser_email=purchaser_email,
                    amount=amount,
                    payment_status=PENDING,
                    external_payment_id=external_payment_id,
                    payment_gateway=payment_gateway,
                    purchased_at=ts,
                )
                for purchase_id, (gift_id, amount) in zip(purchase_ids, items)
            ])
        return purchase_ids

    async def get_purchases(
            self, external_payment_id: str) -> List[Dict[str, Any]]:
        async with timeit("db.get_purchase"), self.db.session() as s:
            rows = (await s.execute(
                SQL_SELECT_PURCHASES, {"pid": external_payment_id}
            )).mappings().all()
        return [dict(row) for row in rows]

    async def get_purchase(
            self, external_payment_id: str) -> Optional[Dict[str, Any]]:
        rows = await self.get_purchases(external_payment_id)
        return rows[0] if rows else None

    async def _try_transition(self, purchase_id: str, new_status: str):
        """One CAS attempt on a purchase row. Returns a Transition, None
        when the row is gone, or False when a concurrent delivery got in
        between."""
        async with self.db.transaction() as s:
            row = (await s.execute(
                SQL_SELECT_PURCHASE_BY_ID, {"id": purchase_id}
            )).mappings().first()
            if row is None:
                return None
            previous = row["payment_status"]
            res = await s.execute(SQL_CAS_STATUS, {
                "id": row["id"], "prev": previous, "new": new_status,
            })
            if res.rowcount != 1:
                return False

            delta = count_delta(previous, new_status)
            if delta > 0:
                await s.execute(SQL_INCREMENT, {"id": row["gift_id"]})
            elif delta < 0:
                await s.execute(SQL_DECREMENT, {"id": row["gift_id"]})
            return Transition(
                purchase_id=row["id"],
                gift_id=row["gift_id"],
                previous_status=previous,
                new_status=new_status,
                count_delta=delta,
            )

    async def _transition(self, purchase_id: str,
                          new_status: str) -> Optional[Transition]:
        for attempt in range(CAS_RETRIES):
            result = await self._try_transition(purchase_id, new_status)
            if result is not False:
                return result
            log.info("ledger.cas_retry", purchase_id=purchase_id,
                     attempt=attempt + 1)
        raise LedgerConflict(f"purchase {purchase_id} kept changing")

    async def apply_status(self, external_payment_id: str,
                           new_status: str) -> List[Transition]:
        """Move every purchase of a gateway payment to ``new_status`` and
        adjust each gift's counter. Empty when the payment is untracked.

        The write itself is unconditional from the caller's point of view
        (the newest delivery wins); the CAS only makes sure the counter
        adjustment is computed against the status we actually replaced.
        """
        async with timeit("db.apply_status"):
            rows = await self.get_purchases(external_payment_id)
            transitions = []
            for row in rows:
                t = await self._transition(row["id"], new_status)
                if t is not None:
                    transitions.append(t)
        return transitions

    async def direct_purchase(
        self, *, gift_id: str, purchaser_name: str,
        purchaser_email: Optional[str], amount: Decimal,
    ) -> Optional[str]:
        """Legacy path: claim one unit of the gift without a gateway.

        The claim is a conditional UPDATE guarded on the gift still being
        available; it returns None when somebody else got there first.
        """
        purchase_id = uuid.uuid4().hex
        async with timeit("db.direct_purchase"), self.db.transaction() as s:
            res = await s.execute(SQL_CLAIM_GIFT, {"id": gift_id})
            if res.rowcount != 1:
                return None
            s.add(Purchase(
                id=purchase_id,
                gift_id=gift_id,
                purchaser_name=purchaser_name,
                purchaser_email=purchaser_email,
                amount=amount,
                payment_status=CONFIRMED,
                external_payment_id=None,
                payment_gateway="direct",
                purchased_at=now_ts(),
            ))
        return purchase_id

    # ---- webhook audit trail
    async def log_webhook(self, gateway: str, event: str, payload: Any,
                          success: bool, error: Optional[str] = None) -> None:
        try:
            async with self.db.transaction() as s:
                s.add(WebhookLog(
                    gateway=gateway,
                    event=event or "unknown",
                    payload=payload if payload is not None else {},
                    success=success,
                    error=error,
                    received_at=now_ts(),
                ))
        except Exception:
            # the audit trail must never break webhook processing
            log.exception("webhook_log.write_failed", gateway=gateway,
                          webhook_event=event)

    async def list_webhook_logs(
            self, limit: int = 100) -> List[Dict[str, Any]]:
        stmt = (
            select(WebhookLog)
            .order_by(WebhookLog.id.desc())
            .limit(max(1, min(limit, 500)))
        )
        async with self.db.session() as s:
            rows = (await s.execute(stmt)).scalars().all()
        return [{
            "id": r.id,
            "gateway": r.gateway,
            "event": r.event,
            "payload": r.payload,
            "success": r.success,
            "error": r.error,
            "received_at": r.received_at,
        } for r in rows]
