#!/usr/bin/env python3
"""
SETTLEMENT JOB RUNNER

PURPOSE: Run any settlement pipeline by hand, outside the scheduler. Every
command goes through the same single-flight guard as the scheduled job, so a
manual run never overlaps a scheduled tick.

USAGE:
    python scripts/run_job.py deposits                                  # One scan from the cursor
    python scripts/run_job.py deposits --from-block 100 --to-block 900  # Rescan, cursor untouched
    python scripts/run_job.py withdrawals                               # Process one queued withdrawal
    python scripts/run_job.py sweeps                                    # Sweep pending vault deposits
    python scripts/run_job.py verify-sweeps                             # Verify withdrawal sweeps
    python scripts/run_job.py settle-withdrawals                        # Settle confirmed vault withdrawals
    python scripts/run_job.py resolve-sweep 42 0xabc...                 # Close out a failed sweep
"""

import sys
import os
import asyncio
import argparse
import json
import logging

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run settlement jobs manually")
    subparsers = parser.add_subparsers(dest="command", required=True)

    deposits = subparsers.add_parser("deposits", help="Scan for inbound deposits")
    deposits.add_argument("--from-block", type=int, default=None, help="First block of an administrative rescan")
    deposits.add_argument("--to-block", type=int, default=None, help="Last block of an administrative rescan")

    subparsers.add_parser("withdrawals", help="Process the oldest queued withdrawal")
    subparsers.add_parser("sweeps", help="Sweep PENDING_SWEEP vault deposits")
    subparsers.add_parser("verify-sweeps", help="Verify vault withdrawal sweeps")
    subparsers.add_parser("settle-withdrawals", help="Settle SWEEP_CONFIRMED vault withdrawals")

    resolve = subparsers.add_parser("resolve-sweep", help="Resolve a sweep_failed entry after manual completion")
    resolve.add_argument("entry_id", type=int, help="Ledger entry id of the failed sweep")
    resolve.add_argument("tx_hash", help="Transaction hash of the manually sent devops leg")
    resolve.add_argument("--trading-desk-tx-hash", default=None,
                         help="Trading desk leg hash, if it was not recorded")
    return parser


async def run_command(args) -> dict:
    from jobs.deposit_monitor import run_deposit_scan
    from jobs.sweep_monitor import run_capital_sweeps, sweep_monitor
    from jobs.vault_withdrawal_monitor import run_vault_withdrawal_settlement, run_withdrawal_sweep_verification
    from jobs.withdrawal_monitor import run_withdrawal_queue

    if args.command == "deposits":
        if (args.from_block is None) != (args.to_block is None):
            raise SystemExit("--from-block and --to-block must be given together")
        return await run_deposit_scan(from_block=args.from_block, to_block=args.to_block)
    if args.command == "withdrawals":
        return await run_withdrawal_queue()
    if args.command == "sweeps":
        return await run_capital_sweeps()
    if args.command == "verify-sweeps":
        return await run_withdrawal_sweep_verification()
    if args.command == "settle-withdrawals":
        return await run_vault_withdrawal_settlement()
    if args.command == "resolve-sweep":
        guarded = run_capital_sweeps.guard
        return await guarded.run(
            sweep_monitor.resolve, args.entry_id, args.tx_hash, args.trading_desk_tx_hash
        )
    raise SystemExit(f"Unknown command {args.command}")


async def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    from database import create_tables, dispose_engine

    await create_tables()
    try:
        result = await run_command(args)
    finally:
        await dispose_engine()

    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("status") != "error" else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
