"""
Tabular Export — CSV reports of finalized positions
===================================================

Three reports:

  yield      one row per yield-eligible position (Sideways skipped)
             tokenId, rangeWidthInBps, openedAt, closedAt, timeOpenInDays,
             openingLiquidityInQuote, feesTotalInQuote, grossYieldInPercent

  liquidity  one row per finalized position
             tokenId, direction, rangeWidthInBps, openingLiquidityBase,
             openingLiquidityQuote, closingLiquidityBase, closingLiquidityQuote,
             impermanentLossInQuote, netReturnInQuote

  breakdown  one row per finalized position, base-denominated
             tokenId, direction, rangeWidthInBps, closingPriceInQuote,
             openingLiquidityTotalInBase, closingLiquidityTotalInBase,
             feesTotalInBase, gasPaidInBase, impermanentLossInBase,
             netReturnInBase
             feesTotalInBase − gasPaidInBase + impermanentLossInBase = netReturnInBase

Quote amounts are printed with two decimals of the quote token, truncated
(USDC 1_062_479_999 → "1062.47"). Base amounts stay in atoms in the liquidity
report; the breakdown prints them exactly in whole units (263 * 10**15 → "0.263").
"""

import csv
import io
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from lp_ledger.central_config import USDC, WETH, TokenInfo

YIELD_COLUMNS = [
    "tokenId",
    "rangeWidthInBps",
    "openedAt",
    "closedAt",
    "timeOpenInDays",
    "openingLiquidityInQuote",
    "feesTotalInQuote",
    "grossYieldInPercent",
]

LIQUIDITY_COLUMNS = [
    "tokenId",
    "direction",
    "rangeWidthInBps",
    "openingLiquidityBase",
    "openingLiquidityQuote",
    "closingLiquidityBase",
    "closingLiquidityQuote",
    "impermanentLossInQuote",
    "netReturnInQuote",
]

BREAKDOWN_COLUMNS = [
    "tokenId",
    "direction",
    "rangeWidthInBps",
    "closingPriceInQuote",
    "openingLiquidityTotalInBase",
    "closingLiquidityTotalInBase",
    "feesTotalInBase",
    "gasPaidInBase",
    "impermanentLossInBase",
    "netReturnInBase",
]

REPORTS = ("yield", "liquidity", "breakdown")


def format_quote(amount: Optional[int], token: TokenInfo = USDC) -> str:
    """Atoms → whole units with two decimals, truncated toward zero."""
    if amount is None:
        return ""
    sign = "-" if amount < 0 else ""
    cents = abs(amount) * 100 // 10**token.decimals
    return f"{sign}{cents // 100}.{cents % 100:02d}"


def format_base(amount: Optional[int], token: TokenInfo = WETH) -> str:
    """Atoms → whole units, every significant decimal kept."""
    if amount is None:
        return ""
    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), 10**token.decimals)
    digits = f"{frac:0{token.decimals}d}".rstrip("0") or "0"
    return f"{sign}{whole}.{digits}"


def yield_rows(metrics: Iterable, quote: TokenInfo = USDC) -> List[Dict[str, str]]:
    rows = []
    for m in metrics:
        if m.gross_yield_bps is None:
            continue
        rows.append(
            {
                "tokenId": str(m.token_id),
                "rangeWidthInBps": str(m.range_width_bps),
                "openedAt": m.opened_at.isoformat(),
                "closedAt": m.closed_at.isoformat(),
                "timeOpenInDays": f"{m.time_open_in_days:.2f}",
                "openingLiquidityInQuote": format_quote(
                    m.opening_liquidity_total_in_quote, quote
                ),
                "feesTotalInQuote": format_quote(m.fees_total_in_quote, quote),
                "grossYieldInPercent": f"{m.gross_yield_percent:.2f}",
            }
        )
    return rows


def liquidity_rows(positions: Dict[int, object], metrics: Iterable,
                   quote: TokenInfo = USDC) -> List[Dict[str, str]]:
    rows = []
    for m in metrics:
        p = positions[m.token_id]
        rows.append(
            {
                "tokenId": str(m.token_id),
                "direction": m.direction.value,
                "rangeWidthInBps": str(m.range_width_bps),
                "openingLiquidityBase": str(p.opening_liquidity_base),
                "openingLiquidityQuote": format_quote(p.opening_liquidity_quote, quote),
                "closingLiquidityBase": str(p.closing_liquidity_base),
                "closingLiquidityQuote": format_quote(p.closing_liquidity_quote, quote),
                "impermanentLossInQuote": format_quote(m.impermanent_loss, quote),
                "netReturnInQuote": format_quote(m.net_return, quote),
            }
        )
    return rows


def breakdown_rows(positions: Dict[int, object], metrics: Iterable,
                   quote: TokenInfo = USDC, base: TokenInfo = WETH) -> List[Dict[str, str]]:
    rows = []
    for m in metrics:
        p = positions[m.token_id]
        rows.append(
            {
                "tokenId": str(m.token_id),
                "direction": m.direction.value,
                "rangeWidthInBps": str(m.range_width_bps),
                "closingPriceInQuote": format_quote(p.price_at_closing, quote),
                "openingLiquidityTotalInBase": format_base(
                    m.opening_liquidity_total_in_base, base
                ),
                "closingLiquidityTotalInBase": format_base(
                    m.closing_liquidity_total_in_base, base
                ),
                "feesTotalInBase": format_base(m.fees_total_in_base, base),
                "gasPaidInBase": format_base(m.gas_paid_in_base, base),
                "impermanentLossInBase": format_base(m.impermanent_loss_in_base, base),
                "netReturnInBase": format_base(m.net_return_in_base, base),
            }
        )
    return rows


def to_csv(rows: List[Dict[str, str]], columns: List[str]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=columns, lineterminator="\n")
    writer.writeheader()
    writer.writerows(rows)
    return buf.getvalue()


def render_report(result, report: str = "yield", quote: TokenInfo = USDC,
                  base: TokenInfo = WETH) -> str:
    """CSV text of a PipelineResult for the chosen report."""
    if report == "yield":
        return to_csv(yield_rows(result.metrics, quote), YIELD_COLUMNS)
    if report == "liquidity":
        return to_csv(
            liquidity_rows(result.positions, result.metrics, quote), LIQUIDITY_COLUMNS
        )
    if report == "breakdown":
        return to_csv(
            breakdown_rows(result.positions, result.metrics, quote, base),
            BREAKDOWN_COLUMNS,
        )
    raise ValueError(f"Unknown report: {report}. Available: {list(REPORTS)}")


def write_report(result, path, report: str = "yield", quote: TokenInfo = USDC,
                 base: TokenInfo = WETH) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_report(result, report, quote, base), encoding="utf-8")
    return target
