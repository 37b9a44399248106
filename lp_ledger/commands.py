"""
LP Ledger — Command Implementations
===================================

All CLI command handlers live here, keeping run.py as a thin argparse
dispatcher. Each public function corresponds to a subcommand
(analyze, fetch, info).
"""

from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path

from fee_accountant import PositionMetrics
from ledger_fetcher import LedgerFetcher, load_cached_rows, save_cached_rows
from lp_ledger.central_config import (
    PROJECT_NAME,
    PROJECT_VERSION,
    RPC_URLS,
    get_rpc_url,
    load_pool_config,
)
from lp_ledger.errors import NoPriceData
from lp_ledger.export import REPORTS, format_quote, render_report, write_report
from position_pipeline import reconstruct

CACHE_FILES = {
    "adds": "adds.json",
    "removes": "removes.json",
    "prices": "prices.json",
    "gas": "gas.json",
}


def _print_summary(result, quote) -> None:
    summary = result.summary
    mean_bps = summary["mean_gross_yield_bps"]
    print()
    print(f"📊 {PROJECT_NAME} — {summary['positions']} positions")
    print("=" * 55)
    print(f"   Closed (raw)     : {result.closed_count}")
    print(f"   Finalized        : {summary['positions']}")
    print(f"   Sideways         : {summary['sideways']}")
    print(f"   Excluded         : {result.report.total}")
    print(
        f"   Fees total       : "
        f"{format_quote(summary['fees_total_in_quote'], quote)} {quote.symbol}"
    )
    if mean_bps is not None:
        print(f"   Mean gross yield : {Decimal(mean_bps) / 100:.2f}%")
    print()


def _top_positions(metrics: list[PositionMetrics], limit: int = 5) -> list:
    eligible = [m for m in metrics if m.gross_yield_bps is not None]
    return sorted(eligible, key=lambda m: m.gross_yield_bps, reverse=True)[:limit]


# ── analyze ──────────────────────────────────────────────────────────────


def cmd_analyze(
    adds: str,
    removes: str,
    prices: str,
    out: str | None = None,
    report: str = "yield",
    gas: str | None = None,
) -> int:
    """Reconstruct positions from cached query results and export a report."""
    if report not in REPORTS:
        print(f"❌ Unknown report: {report}. Available: {', '.join(REPORTS)}")
        return 1
    config = load_pool_config()
    print(f"\n🔎 Reconstructing positions for pool {config.pool_address}")
    try:
        add_rows = load_cached_rows(adds)
        remove_rows = load_cached_rows(removes)
        price_rows = load_cached_rows(prices)
        gas_by_tx = None
        if gas:
            gas_by_tx = {
                k.lower(): int(v)
                for k, v in json.loads(Path(gas).read_text(encoding="utf-8")).items()
            }
    except (OSError, ValueError) as e:
        print(f"❌ Could not read input: {e}")
        return 1

    try:
        result = reconstruct(
            add_rows, remove_rows, price_rows, config=config, gas_by_tx=gas_by_tx
        )
    except NoPriceData as e:
        print(f"❌ Price history too short: {e}")
        return 1

    quote = config.quote_token
    _print_summary(result, quote)
    for m in _top_positions(result.metrics):
        print(
            f"   #{m.token_id:<8} {m.gross_yield_percent:>7.2f}%  "
            f"width {m.range_width_bps} bps  "
            f"{result.positions[m.token_id].fees_log(config.base_token, quote)}"
        )

    if out:
        path = write_report(result, out, report, quote, config.base_token)
        print(f"\n✅ {report} report written to {path}")
    else:
        print()
        print(render_report(result, report, quote, config.base_token), end="")
    return 0


# ── fetch ────────────────────────────────────────────────────────────────


async def cmd_fetch(
    from_block: int,
    to_block: int | None = None,
    network: str = "ethereum",
    out_dir: str = "data",
) -> int:
    """Download position history over JSON-RPC into the JSON cache files."""
    try:
        rpc_url = get_rpc_url(network)
    except ValueError as e:
        print(f"❌ {e}")
        return 1
    config = load_pool_config()
    print(f"\n🌐 Fetching {network} pool {config.pool_address}")
    try:
        async with LedgerFetcher(rpc_url) as fetcher:
            adds, removes, prices, gas_by_tx = await fetcher.fetch_history(
                config, from_block, to_block
            )
    except (RuntimeError, ValueError) as e:
        print(f"❌ Fetch failed: {e}")
        return 1

    target = Path(out_dir)
    save_cached_rows(target / CACHE_FILES["adds"], adds)
    save_cached_rows(target / CACHE_FILES["removes"], removes)
    save_cached_rows(target / CACHE_FILES["prices"], prices)
    target.mkdir(parents=True, exist_ok=True)
    (target / CACHE_FILES["gas"]).write_text(
        json.dumps({k: str(v) for k, v in gas_by_tx.items()}, indent=2),
        encoding="utf-8",
    )
    print(
        f"✅ Saved {len(adds)} opening logs, {len(removes)} closing logs, "
        f"{len(prices)} swaps → {target}/"
    )
    return 0


# ── info ─────────────────────────────────────────────────────────────────


def cmd_info() -> None:
    """Print system overview."""
    config = load_pool_config()
    print(f"\n📊 {PROJECT_NAME} v{PROJECT_VERSION}")
    print("=" * 55)
    print("🔗 Protocol   : Uniswap V3 (concentrated liquidity)")
    print(f"🏊 Pool       : {config.pool_address}")
    print(f"📜 Positions  : {config.position_manager}")
    print(
        f"💱 Pair       : {config.base_token.symbol} (base) / "
        f"{config.quote_token.symbol} (quote)"
    )
    print(f"🌐 Networks   : {', '.join(RPC_URLS.keys())}")
    print()
    print("📁 Files:")
    print("   run.py                — CLI entry point")
    print("   log_indexer.py        — event logs → transactions → positions")
    print("   position_builder.py   — direction, range width, raw amounts")
    print("   fee_accountant.py     — fees, prices, yield, IL, net return")
    print("   price_index.py        — swap price history, point-in-time lookup")
    print("   tick_math.py          — exact TickMath port")
    print("   ledger_fetcher.py     — JSON-RPC history download + JSON cache")
    print("   lp_ledger/            — config, errors, RPC helpers, export")
    print()
    print("🔗 Quick Start:")
    print("   python run.py fetch --from-block 12370000 --to-block 12380000")
    print(
        "   python run.py analyze --adds data/adds.json "
        "--removes data/removes.json --prices data/prices.json"
    )
    print()
    print("📚 References:")
    print("   Uniswap V3 Whitepaper : https://uniswap.org/whitepaper-v3.pdf")
    print("   Uniswap V3 Docs       : https://docs.uniswap.org/")
    print()
