#!/usr/bin/env python3
"""Top up stored demo ledgers to a minimum total balance.

For every ledger in a FileStore directory (or just the user IDs given on
the command line) whose total balance is below ``--minimum``, deposits the
difference so that bidding demos never stall on an empty account:

  python scripts/top_up_demo_balances.py --root ./ledgers --minimum 50000
  python scripts/top_up_demo_balances.py --root ./ledgers alice bob

Users without a stored ledger are skipped unless named explicitly, in
which case they start from the demo seed balance.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from bidledger.config import LedgerConfig
from bidledger.ledger import BalanceLedger
from bidledger.stores.file import FileStore

logger = logging.getLogger("top_up_demo_balances")

TOP_UP_DESCRIPTION = "Demo balance top-up for bidding"


async def top_up(store: FileStore, user_ids: list[str], minimum: int, seed_balance: int) -> int:
    """Top up each user below ``minimum``. Returns the number of ledgers changed."""
    changed = 0
    for user_id in user_ids:
        ledger_json = await store.fetch_ledger(user_id)
        if ledger_json is None:
            ledger = BalanceLedger.seeded(seed_balance)
        else:
            ledger = BalanceLedger.from_json(ledger_json)

        shortfall = minimum - ledger.total_balance
        if shortfall <= 0:
            logger.info("%s: balance %d already at or above %d.", user_id, ledger.total_balance, minimum)
            continue

        ledger.deposit(shortfall, description=TOP_UP_DESCRIPTION)
        await store.store_ledger(user_id, ledger.to_json())
        changed += 1
        logger.info("%s: added %d (balance now %d).", user_id, shortfall, ledger.total_balance)
    return changed


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--root", required=True, help="FileStore directory holding ledgers")
    parser.add_argument("--minimum", type=int, default=50_000, help="minimum total balance")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("users", nargs="*", help="user IDs (default: every stored ledger)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.minimum <= 0:
        print("Error: --minimum must be positive.", file=sys.stderr)
        return 2

    store = FileStore(args.root)
    user_ids = args.users or store.list_users()
    if not user_ids:
        logger.info("No ledgers found under %s.", args.root)
        return 0

    changed = asyncio.run(top_up(store, user_ids, args.minimum, LedgerConfig().seed_balance))
    print(f"Topped up {changed} of {len(user_ids)} ledger(s).")
    return 0


if __name__ == "__main__":
    sys.exit(main())
