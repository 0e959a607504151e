#!/usr/bin/env python3
"""
List migration relays that need operator attention.

`failed` rows: inbound V1 still sits at the relayer, nothing went out.
`pending` rows: a disbursement was submitted but never settled (crash or
ledger outage). Check tx_hash_out / the relayer's outgoing transfers on the
explorer before acting on either.

Usage:
    python scripts/list_relays.py                       # failed rows
    python scripts/list_relays.py --status pending
    python scripts/list_relays.py --json --limit 500
    DATABASE_URL=postgresql://... python scripts/list_relays.py
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv

from relayer.config import DEFAULTS
from relayer.ledger import LedgerStore, RelayStatus


def format_row(r) -> str:
    return (
        f"{r.block_number:>10}  {r.tx_hash_in}  {r.sender_address}  "
        f"v1={r.v1_amount}  out={r.asset_out or '-'}  tx_out={r.tx_hash_out or '-'}  reason={r.reason or '-'}  "
        f"error={(r.error or '-')[:80]}"
    )


async def list_relays(database_url: str, status: RelayStatus, limit: int) -> list:
    ledger = LedgerStore(database_url)
    try:
        return await ledger.list_by_status(status, limit=limit)
    finally:
        ledger.dispose()


def main(argv=None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="List relays needing reconciliation")
    parser.add_argument(
        "--status", choices=[RelayStatus.FAILED.value, RelayStatus.PENDING.value],
        default=RelayStatus.FAILED.value,
    )
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    parser.add_argument("--database-url", default=os.getenv("DATABASE_URL", DEFAULTS.DATABASE_URL))
    args = parser.parse_args(argv)

    rows = asyncio.run(list_relays(args.database_url, RelayStatus(args.status), args.limit))

    if args.json:
        print(json.dumps([r.to_dict() for r in rows], indent=2))
        return 0

    if not rows:
        print(f"No {args.status} relays.")
        return 0

    print(f"{len(rows)} {args.status} relay(s):")
    for r in rows:
        print(format_row(r))
    return 0


if __name__ == "__main__":
    sys.exit(main())
