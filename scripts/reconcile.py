#!/usr/bin/env python3
"""Ledger Reconciliation Script.

Checks that every user's balance equals the signed sum of their ledger
entries, and optionally lists on-chain balances of deposit addresses and hot
wallets next to it.

Usage:
    python scripts/reconcile.py [--chain] [--json]

Options:
    --chain  Also query on-chain deposit and hot wallet balances
    --json   Print the report as JSON

Exit code is 1 when discrepancies are found.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from custody.config import get_settings
from custody.context import CustodyContext

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def build_report(ctx: CustodyContext, include_chain: bool) -> dict:
    """Collect discrepancies and, on request, on-chain balances."""
    discrepancies = await ctx.ledger.verify_consistency()
    report = {
        "consistent": not discrepancies,
        "discrepancies": [
            {
                "user_id": d.user_id,
                "balance": str(d.balance),
                "ledger_total": str(d.ledger_total),
                "difference": str(d.difference),
            }
            for d in discrepancies
        ],
    }

    if include_chain:
        deposit_balances = await ctx.sweeper.get_all_deposit_balances()
        hot_balances = await ctx.sweeper.get_hot_wallet_balances()
        report["deposit_addresses"] = [
            {
                "user_id": b.user_id,
                "network": b.network,
                "address": b.address,
                "native": str(b.native),
                "token": str(b.token),
                "error": b.error,
            }
            for b in deposit_balances
        ]
        report["hot_wallets"] = [
            {
                "network": h.network,
                "address": h.address,
                "native": str(h.balance.native) if h.balance else None,
                "token": str(h.balance.token) if h.balance else None,
                "error": h.error,
            }
            for h in hot_balances
        ]

    return report


def print_report(report: dict) -> None:
    print("=" * 60)
    print("LEDGER RECONCILIATION")
    print("=" * 60)

    if report["consistent"]:
        print("All balances match their ledger entries.")
    for d in report["discrepancies"]:
        print(
            f"  user {d['user_id']}: balance {d['balance']} vs ledger {d['ledger_total']} "
            f"(difference {d['difference']})"
        )

    if "deposit_addresses" in report:
        print("\nDeposit addresses:")
        for b in report["deposit_addresses"]:
            status = b["error"] or f"native {b['native']}, token {b['token']}"
            print(f"  [{b['network']}] user {b['user_id']} {b['address']}: {status}")

        print("\nHot wallets:")
        for h in report["hot_wallets"]:
            status = h["error"] or f"native {h['native']}, token {h['token']}"
            print(f"  [{h['network']}] {h['address'] or '-'}: {status}")


async def main() -> int:
    parser = argparse.ArgumentParser(description="Reconcile ledger balances")
    parser.add_argument("--chain", action="store_true", help="Include on-chain balances")
    parser.add_argument("--json", action="store_true", help="Print JSON")
    args = parser.parse_args()

    async with CustodyContext(get_settings()) as ctx:
        report = await build_report(ctx, include_chain=args.chain)

    if args.json:
        print(json.dumps(report, indent=2))
    else:
        print_report(report)

    return 0 if report["consistent"] else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
