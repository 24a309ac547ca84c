#!/usr/bin/env python3
"""
Create the schema and upsert the gift list.

  python init_gifts.py --gift g1:"Coffee maker":150.00 \
                       --gift g2:"Dinner set":420.00:2

Each --gift is id:name:price[:limit]; limit defaults to 1. Existing gifts
get their name, price and limit updated; purchase_count is never touched.
"""

import argparse
import asyncio
import os
from decimal import Decimal, InvalidOperation

from giftpay.config import DEFAULT_DATABASE_URL
from giftpay.infra.sql import Database
from giftpay.model.orm import Base, Gift


def parse_gift(value: str) -> Gift:
    parts = value.split(":")
    if len(parts) not in (3, 4):
        raise argparse.ArgumentTypeError(
            f"expected id:name:price[:limit], got {value!r}"
        )
    gift_id, name, price = (p.strip() for p in parts[:3])
    try:
        amount = Decimal(price)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"bad price in {value!r}")
    limit = int(parts[3]) if len(parts) == 4 else 1
    if not gift_id or not name or amount <= 0 or limit < 1:
        raise argparse.ArgumentTypeError(f"bad gift {value!r}")
    return Gift(id=gift_id, name=name, price=amount, purchase_limit=limit)


async def init_gifts(database_url: str, gifts):
    db = Database(database_url)
    try:
        await db.create_schema(Base.metadata)
        print('✅ schema created')

        async with db.transaction() as s:
            for gift in gifts:
                await s.merge(gift)
        for gift in gifts:
            print(f'✅ {gift.id}: {gift.name} ({gift.price}, '
                  f'limit {gift.purchase_limit})')
    finally:
        await db.dispose()


def main():
    ap = argparse.ArgumentParser(description="Seed the gift registry")
    ap.add_argument("--db", default=os.getenv("DATABASE_URL",
                                              DEFAULT_DATABASE_URL))
    ap.add_argument("--gift", action="append", type=parse_gift, default=[],
                    help="id:name:price[:limit], may be repeated")
    args = ap.parse_args()
    asyncio.run(init_gifts(args.db, args.gift))


if __name__ == "__main__":
    main()
