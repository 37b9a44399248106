#!/usr/bin/env python3
"""
Fee Accountant — Fees, Prices and Position Metrics
==================================================

Works on the positions a PositionBuilder produced. All values are exact
integers; every division truncates toward zero (Python // on non-negative
operands) and the truncation points are the ones listed below.

FEE DECOMPOSITION (requires direction):
───────────────────────────────────────
  TRADED_DOWN  principal came back as base only
      fees_quote = withdrawn_quote
      fees_base  = withdrawn_base − closing_liquidity_base
  TRADED_UP    principal came back as quote only
      fees_base  = withdrawn_base
      fees_quote = withdrawn_quote − closing_liquidity_quote
  SIDEWAYS     principal came back in both assets, the one-sided split
               does not apply: fees_base = fees_quote = 0

  A negative component is excluded as NegativeFeeAnomaly, never clamped.

METRICS (SCALE = 10^18, native price = quote atoms per SCALE base atoms):
─────────────────────────────────────────────────────────────────────────
  fees_total_in_quote              = fees_quote + fees_base·P_close // SCALE
  opening_liquidity_total_in_quote = open_quote + open_base·P_open // SCALE
  closing_liquidity_total_in_quote = close_quote + close_base·P_close // SCALE
  gross_yield_bps                  = fees_total_in_quote·10000 // opening_total
  gross_yield_percent              = Decimal(gross_yield_bps) / 100
  impermanent_loss                 = closing_total − opening_total
  gas_paid_in_quote                = gas_paid·P_close // SCALE
  net_return                       = fees_total − gas_in_quote + impermanent_loss
  time_open                        = closed_at − opened_at

BASE-DENOMINATED (None when the price they divide by is 0):
───────────────────────────────────────────────────────────
  fees_total_in_base               = fees_base + fees_quote·SCALE // P_close
  opening_liquidity_total_in_base  = open_base + open_quote·SCALE // P_open
  closing_liquidity_total_in_base  = close_base + close_quote·SCALE // P_close
  impermanent_loss_in_base         = closing_total_in_base − opening_total_in_base
  gas_paid_in_base                 = gas_paid (wei, base is WETH)
  net_return_in_base               = fees_in_base − gas_in_base + il_in_base
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional

from lp_ledger.central_config import BPS, PRICE_SCALE
from lp_ledger.errors import ExclusionReport, MissingRequiredField, NegativeFeeAnomaly
from position_builder import Direction, Position, run_pass
from price_index import PriceIndex

_SECONDS_PER_DAY = Decimal(86_400)
_TWO_PLACES = Decimal("0.01")


# ── Fee decomposition ───────────────────────────────────────────────────


def decompose_fees(position: Position) -> tuple:
    """
    (fees_base, fees_quote) for one position, by direction.

    Raises:
        MissingRequiredField: direction or an amount was never set.
        NegativeFeeAnomaly: a component came out negative.
    """
    direction = position.require("direction")
    if direction is Direction.SIDEWAYS:
        return 0, 0
    if direction is Direction.TRADED_DOWN:
        fees_quote = position.require("withdrawn_quote")
        fees_base = position.require("withdrawn_base") - position.require(
            "closing_liquidity_base"
        )
    else:
        fees_base = position.require("withdrawn_base")
        fees_quote = position.require("withdrawn_quote") - position.require(
            "closing_liquidity_quote"
        )
    if fees_base < 0 or fees_quote < 0:
        raise NegativeFeeAnomaly(
            position.token_id, f"fees_base={fees_base} fees_quote={fees_quote}"
        )
    return fees_base, fees_quote


# ── Metric functions ────────────────────────────────────────────────────


def to_quote(amount_base: int, price: int) -> int:
    return amount_base * price // PRICE_SCALE


def fees_total_in_quote(position: Position) -> int:
    return position.require("fees_quote") + to_quote(
        position.require("fees_base"), position.require("price_at_closing")
    )


def opening_liquidity_total_in_quote(position: Position) -> int:
    return position.require("opening_liquidity_quote") + to_quote(
        position.require("opening_liquidity_base"),
        position.require("price_at_opening"),
    )


def closing_liquidity_total_in_quote(position: Position) -> int:
    return position.require("closing_liquidity_quote") + to_quote(
        position.require("closing_liquidity_base"),
        position.require("price_at_closing"),
    )


def gross_yield_bps(position: Position) -> Optional[int]:
    """Fees over opening value in bps; None when not yield-eligible."""
    if not position.is_yield_eligible:
        return None
    opening = opening_liquidity_total_in_quote(position)
    if opening == 0:
        return None
    return fees_total_in_quote(position) * BPS // opening


def gross_yield_percent(position: Position) -> Optional[Decimal]:
    bps = gross_yield_bps(position)
    return None if bps is None else Decimal(bps) / 100


def impermanent_loss(position: Position) -> int:
    """Positive means the liquidity itself gained value."""
    return closing_liquidity_total_in_quote(
        position
    ) - opening_liquidity_total_in_quote(position)


def gas_paid_in_quote(position: Position) -> Optional[int]:
    if position.gas_paid is None:
        return None
    return to_quote(position.gas_paid, position.require("price_at_closing"))


def net_return(position: Position) -> int:
    gas = gas_paid_in_quote(position) or 0
    return fees_total_in_quote(position) - gas + impermanent_loss(position)


def time_open(position: Position) -> timedelta:
    return position.require("closed_at") - position.require("opened_at")


def time_open_in_days(position: Position) -> Decimal:
    seconds = Decimal(int(time_open(position).total_seconds()))
    return (seconds / _SECONDS_PER_DAY).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)


# ── Base-denominated metrics ────────────────────────────────────────────


def to_base(amount_quote: int, price: int) -> Optional[int]:
    """Quote atoms → base atoms; None when the price is 0."""
    if price == 0:
        return None
    return amount_quote * PRICE_SCALE // price


def fees_total_in_base(position: Position) -> Optional[int]:
    quote_part = to_base(
        position.require("fees_quote"), position.require("price_at_closing")
    )
    if quote_part is None:
        return None
    return position.require("fees_base") + quote_part


def opening_liquidity_total_in_base(position: Position) -> Optional[int]:
    quote_part = to_base(
        position.require("opening_liquidity_quote"),
        position.require("price_at_opening"),
    )
    if quote_part is None:
        return None
    return position.require("opening_liquidity_base") + quote_part


def closing_liquidity_total_in_base(position: Position) -> Optional[int]:
    quote_part = to_base(
        position.require("closing_liquidity_quote"),
        position.require("price_at_closing"),
    )
    if quote_part is None:
        return None
    return position.require("closing_liquidity_base") + quote_part


def impermanent_loss_in_base(position: Position) -> Optional[int]:
    opening = opening_liquidity_total_in_base(position)
    closing = closing_liquidity_total_in_base(position)
    if opening is None or closing is None:
        return None
    return closing - opening


def gas_paid_in_base(position: Position) -> Optional[int]:
    # gas is paid in ETH, so wei are already base atoms of a WETH pool
    return position.gas_paid


def net_return_in_base(position: Position) -> Optional[int]:
    fees = fees_total_in_base(position)
    il = impermanent_loss_in_base(position)
    if fees is None or il is None:
        return None
    return fees - (position.gas_paid or 0) + il


# ── Metrics record ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class PositionMetrics:
    """
    Derived figures of one finalized position.

    Amounts are quote atoms unless the name ends in _in_base (base atoms).
    """

    token_id: int
    direction: Direction
    range_width_bps: Optional[int]
    opened_at: object
    closed_at: object
    time_open: timedelta
    time_open_in_days: Decimal
    fees_total_in_quote: int
    opening_liquidity_total_in_quote: int
    closing_liquidity_total_in_quote: int
    gross_yield_bps: Optional[int]
    impermanent_loss: int
    gas_paid_in_quote: Optional[int]
    net_return: int
    fees_total_in_base: Optional[int] = None
    opening_liquidity_total_in_base: Optional[int] = None
    closing_liquidity_total_in_base: Optional[int] = None
    impermanent_loss_in_base: Optional[int] = None
    gas_paid_in_base: Optional[int] = None
    net_return_in_base: Optional[int] = None

    @property
    def gross_yield_percent(self) -> Optional[Decimal]:
        if self.gross_yield_bps is None:
            return None
        return Decimal(self.gross_yield_bps) / 100


def compute_metrics(position: Position) -> PositionMetrics:
    return PositionMetrics(
        token_id=position.token_id,
        direction=position.direction,
        range_width_bps=position.range_width_bps,
        opened_at=position.opened_at,
        closed_at=position.closed_at,
        time_open=time_open(position),
        time_open_in_days=time_open_in_days(position),
        fees_total_in_quote=fees_total_in_quote(position),
        opening_liquidity_total_in_quote=opening_liquidity_total_in_quote(position),
        closing_liquidity_total_in_quote=closing_liquidity_total_in_quote(position),
        gross_yield_bps=gross_yield_bps(position),
        impermanent_loss=impermanent_loss(position),
        gas_paid_in_quote=gas_paid_in_quote(position),
        net_return=net_return(position),
        fees_total_in_base=fees_total_in_base(position),
        opening_liquidity_total_in_base=opening_liquidity_total_in_base(position),
        closing_liquidity_total_in_base=closing_liquidity_total_in_base(position),
        impermanent_loss_in_base=impermanent_loss_in_base(position),
        gas_paid_in_base=gas_paid_in_base(position),
        net_return_in_base=net_return_in_base(position),
    )


def summarize(metrics: Iterable[PositionMetrics]) -> Dict[str, object]:
    """
    Aggregate over a metrics set.

    Sideways positions count towards "positions" and "sideways" but not
    towards the yield mean.
    """
    items = list(metrics)
    yields = [m.gross_yield_bps for m in items if m.gross_yield_bps is not None]
    return {
        "positions": len(items),
        "sideways": sum(1 for m in items if m.direction is Direction.SIDEWAYS),
        "yield_eligible": len(yields),
        "mean_gross_yield_bps": sum(yields) // len(yields) if yields else None,
        "fees_total_in_quote": sum(m.fees_total_in_quote for m in items),
    }


# ── Fee Accountant ──────────────────────────────────────────────────────


class FeeAccountant:
    """
    Fee and price passes, then metrics, over built positions.

    Usage:
        accountant = FeeAccountant(builder.positions, builder.report)
        accountant.set_fees()
        accountant.set_prices(price_index)
        metrics = accountant.metrics()
    """

    def __init__(
        self,
        positions: Dict[int, Position],
        report: Optional[ExclusionReport] = None,
    ):
        self.positions = positions
        self.report = report if report is not None else ExclusionReport()

    def set_fees(self) -> Dict[int, Position]:
        def step(position: Position) -> None:
            position.fees_base, position.fees_quote = decompose_fees(position)

        run_pass(self.positions, step, self.report)
        return self.positions

    def set_prices(self, price_index: PriceIndex) -> Dict[int, Position]:
        """
        Attach opening and closing prices.

        Raises:
            NoPriceData: a position predates the price history.
        """
        for position in self.positions.values():
            position.price_at_opening = price_index.price_at(
                position.require("opened_at")
            )
            position.price_at_closing = price_index.price_at(
                position.require("closed_at")
            )
        return self.positions

    def metrics(self) -> List[PositionMetrics]:
        return [
            compute_metrics(p)
            for p in sorted(self.positions.values(), key=lambda p: p.token_id)
        ]


def attach_gas(positions: Dict[int, Position], gas_by_tx: Dict[str, int]) -> int:
    """
    Set gas_paid (wei) from the opening and closing transactions.

    Positions where either transaction's gas is unknown keep gas_paid None.
    Returns the number of positions updated.
    """
    updated = 0
    for position in positions.values():
        try:
            opening = position.require("opening_logs")
            closing = position.require("closing_logs")
        except MissingRequiredField:
            continue
        txs = {opening[0].transaction_hash, closing[0].transaction_hash}
        if all(tx in gas_by_tx for tx in txs):
            position.gas_paid = sum(gas_by_tx[tx] for tx in txs)
            updated += 1
    return updated
