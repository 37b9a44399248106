#!/usr/bin/env python3
"""
Position Pipeline — Rows → Finalized Positions + Metrics
========================================================

Wires the stages together in their fixed order:

  raw rows → EventLog → LogIndexer → PositionBuilder
           → FeeAccountant (fees → gas → prices → metrics)

Input rows are what the ledger query returns: the logs of every opening
transaction ("adds"), the logs of every closing transaction ("removes")
and the pool price history ("prices"). Progress goes to stdout as plain
lines unless quiet=True.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from fee_accountant import FeeAccountant, PositionMetrics, attach_gas, summarize
from log_indexer import EventLog, LogIndexer, logs_from_rows
from lp_ledger.central_config import PoolConfig
from lp_ledger.errors import ExclusionReport
from position_builder import Direction, Position, PositionBuilder
from price_index import PriceIndex, samples_from_rows


@dataclass
class PipelineResult:
    """Everything one reconstruction run produced."""

    positions: Dict[int, Position]
    metrics: List[PositionMetrics]
    report: ExclusionReport
    closed_count: int = 0
    duplicate_openings: Dict[int, int] = field(default_factory=dict)
    duplicate_closings: Dict[int, int] = field(default_factory=dict)

    @property
    def yield_metrics(self) -> List[PositionMetrics]:
        return [m for m in self.metrics if m.gross_yield_bps is not None]

    @property
    def summary(self) -> Dict[str, object]:
        return summarize(self.metrics)


def _merge_logs(*batches: Iterable[EventLog]) -> List[EventLog]:
    """Concatenate batches, dropping logs that appear in more than one."""
    merged: Dict[EventLog, None] = {}
    for batch in batches:
        for log in batch:
            merged.setdefault(log, None)
    return list(merged)


def reconstruct(
    adds: Iterable[dict],
    removes: Iterable[dict],
    prices,
    config: Optional[PoolConfig] = None,
    gas_by_tx: Optional[Dict[str, int]] = None,
    quiet: bool = False,
) -> PipelineResult:
    """
    Run the full reconstruction.

    Args:
        adds: Log rows of the opening transactions.
        removes: Log rows of the closing transactions.
        prices: A PriceIndex, or price / Swap rows to build one from.
        config: Pool configuration (default: USDC/WETH 0.30%).
        gas_by_tx: Optional tx hash → gas paid in wei.
        quiet: Suppress progress output.

    Raises:
        NoPriceData: the price history starts after a position opened.
    """
    config = config or PoolConfig()

    def say(msg: str) -> None:
        if not quiet:
            print(msg)

    opening_logs = logs_from_rows(adds)
    closing_logs = logs_from_rows(removes)
    say(f"  📥 {len(opening_logs)} opening logs, {len(closing_logs)} closing logs")

    if isinstance(prices, PriceIndex):
        price_index = prices
    else:
        price_index = PriceIndex.load(
            samples_from_rows(prices, config.base_is_token0)
        )
    say(f"  📈 {len(price_index)} price samples")

    indexer = LogIndexer(config)
    indexer.index(_merge_logs(opening_logs, closing_logs))
    say(
        f"  🔎 {len(indexer.transactions)} transactions, "
        f"{len(indexer.positions)} position ids"
    )
    duplicates = len(indexer.duplicate_openings) + len(indexer.duplicate_closings)
    if duplicates:
        say(f"  ⚠️  {duplicates} position ids with more than one open/close (latest kept)")

    report = ExclusionReport()
    builder = PositionBuilder(indexer.positions, config, report)
    builder.run_all()
    say(f"  🧱 {builder.closed_count} closed positions, {len(builder.positions)} built")

    accountant = FeeAccountant(builder.positions, report)
    accountant.set_fees()
    if gas_by_tx:
        attached = attach_gas(accountant.positions, gas_by_tx)
        say(f"  ⛽ Gas attached to {attached} positions")
    accountant.set_prices(price_index)
    metrics = accountant.metrics()

    sideways = sum(
        1 for p in accountant.positions.values() if p.direction is Direction.SIDEWAYS
    )
    say(f"  ✅ {len(metrics)} positions finalized ({sideways} sideways, no yield)")
    for line in report.lines():
        say(line)

    return PipelineResult(
        positions=accountant.positions,
        metrics=metrics,
        report=report,
        closed_count=builder.closed_count,
        duplicate_openings=dict(indexer.duplicate_openings),
        duplicate_closings=dict(indexer.duplicate_closings),
    )
