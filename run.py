#!/usr/bin/env python3
"""
LP Ledger -- Concentrated-Liquidity Position Reconstruction
===========================================================

Rebuilds closed Uniswap V3 positions from event logs and reports fees,
range width, gross yield, impermanent loss and net return.

Usage:
  python run.py fetch   --from-block <n> [--to-block <n>]         Download history (JSON-RPC)
  python run.py analyze --adds F --removes F --prices F           Yield report (CSV to stdout)
  python run.py analyze ... --out report.csv --report liquidity   Liquidity report to file
  python run.py analyze ... --report breakdown                    Base-denominated breakdown
  python run.py info                                              System overview

Environment:
  LP_LEDGER_POOL     pool address (default: USDC/WETH 0.30%)
  LP_LEDGER_RPC_URL  JSON-RPC endpoint (archive node for long ranges)

Sources:
  Uniswap V3 Whitepaper : https://uniswap.org/whitepaper-v3.pdf
  Uniswap V3 Docs       : https://docs.uniswap.org/
"""

import sys
import asyncio
import argparse
from pathlib import Path

# ── Imports ───────────────────────────────────────────────────────────────

project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from lp_ledger.central_config import PROJECT_VERSION, RPC_URLS
from lp_ledger.commands import cmd_analyze, cmd_fetch, cmd_info
from lp_ledger.export import REPORTS


# ── CLI Parser ────────────────────────────────────────────────────────────


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lp-ledger",
        description=f"LP Ledger v{PROJECT_VERSION} — V3 position reconstruction",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py fetch --from-block 12370000 --to-block 12380000
  python run.py fetch --from-block 12370000 --to-block 12380000 --out-dir cache
  python run.py analyze --adds data/adds.json --removes data/removes.json \\
                        --prices data/prices.json --out yields.csv
  python run.py analyze ... --report liquidity
  python run.py analyze ... --report breakdown
  python run.py info
""",
    )
    parser.add_argument(
        "--version", action="version", version=f"LP Ledger v{PROJECT_VERSION}"
    )

    sub = parser.add_subparsers(dest="command", help="Available commands")

    analyze_p = sub.add_parser(
        "analyze", help="Reconstruct positions from cached logs and export CSV"
    )
    analyze_p.add_argument(
        "--adds", required=True, help="Logs of opening transactions (JSON / NDJSON)"
    )
    analyze_p.add_argument(
        "--removes", required=True, help="Logs of closing transactions (JSON / NDJSON)"
    )
    analyze_p.add_argument(
        "--prices", required=True, help="Price rows or pool Swap logs (JSON / NDJSON)"
    )
    analyze_p.add_argument(
        "--gas", default=None, help="Optional JSON map tx hash → gas paid (wei)"
    )
    analyze_p.add_argument(
        "--out", default=None, help="CSV output path (default: stdout)"
    )
    analyze_p.add_argument(
        "--report",
        choices=REPORTS,
        default="yield",
        help="Report type: yield, liquidity, breakdown (default: yield)",
    )

    fetch_p = sub.add_parser("fetch", help="Download pool history over JSON-RPC")
    fetch_p.add_argument("--from-block", type=int, required=True, help="First block")
    fetch_p.add_argument(
        "--to-block", type=int, default=None, help="Last block (default: latest)"
    )
    fetch_p.add_argument(
        "--network",
        type=str,
        default="ethereum",
        help=f"Network: {', '.join(RPC_URLS.keys())} (default: ethereum)",
    )
    fetch_p.add_argument(
        "--out-dir", default="data", help="Directory for the JSON cache (default: data)"
    )

    sub.add_parser("info", help="System & architecture info")

    return parser


# ── Main ──────────────────────────────────────────────────────────────────


def main(argv=None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "info":
        cmd_info()
        return 0

    if args.command == "analyze":
        return cmd_analyze(
            adds=args.adds,
            removes=args.removes,
            prices=args.prices,
            out=args.out,
            report=args.report,
            gas=args.gas,
        )

    if args.command == "fetch":
        return asyncio.run(
            cmd_fetch(
                from_block=args.from_block,
                to_block=args.to_block,
                network=args.network,
                out_dir=args.out_dir,
            )
        )

    parser.print_help()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n❌ Cancelled.")
        sys.exit(130)
