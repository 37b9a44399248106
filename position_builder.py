#!/usr/bin/env python3
"""
Position Builder — Indexed Logs → Position Records
==================================================

Turns the per-position log sets produced by the LogIndexer into Position
records through ordered passes. Each pass reads fields written by the one
before it, so the order is fixed:

  1. create_positions      one Position per token id with a closing tx
  2. attach_opening_logs   opening tx + opened_at   (else IncompletePosition)
  3. set_direction         DecreaseLiquidity amounts → TradedUp/Down/Sideways
  4. set_range_width       Mint ticks → range width in bps (else InvariantViolation)
  5. set_raw_amounts       token Transfers in/out of the pool

Exclusions raised inside a pass are collected and applied once the pass
has visited every position, so no entry is removed while the map is being
iterated.

Direction (token0 = USDC quote, token1 = WETH base):
  DecreaseLiquidity.amount0 == 0  → TRADED_DOWN  (price fell through the range,
                                                  principal is all WETH)
  DecreaseLiquidity.amount1 == 0  → TRADED_UP    (price rose through the range,
                                                  principal is all USDC)
  otherwise                       → SIDEWAYS     (closed while in range)

Range width, in native prices (quote per base):
  Ticks grow with token1/token0 = WETH/USDC, i.e. against the USDC price of
  WETH, so tickUpper gives the LOWER price bound and tickLower the upper one.

  width_bps = (upper − lower) × 10000 // (lower + (upper − lower) // 2)

Events read (UniswapV3Pool / NonfungiblePositionManager / ERC-20):
  Mint(address sender, address indexed owner, int24 indexed tickLower,
       int24 indexed tickUpper, uint128 amount, uint256 amount0, uint256 amount1)
  DecreaseLiquidity(uint256 indexed tokenId, uint128 liquidity,
                    uint256 amount0, uint256 amount1)
  Transfer(address indexed from, address indexed to, uint256 value)
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from lp_ledger.central_config import BPS, TOPICS, USDC, WETH, PoolConfig, TokenInfo
from lp_ledger.errors import (
    ExclusionReason,
    ExclusionReport,
    IncompletePosition,
    InvariantViolation,
    MissingRequiredField,
)
from lp_ledger.rpc_helpers import decode_uint, topic_address, topic_int, topic_uint
from log_indexer import EventLog, PositionLogs
from tick_math import MAX_TICK, MIN_TICK, tick_to_native_price

# DecreaseLiquidity / IncreaseLiquidity data layout
LIQUIDITY_SLOT = 0
AMOUNT0_SLOT = 1
AMOUNT1_SLOT = 2


class Direction(enum.Enum):
    """Where the pool price went relative to the range before the close."""

    UNKNOWN = "Unknown"
    TRADED_UP = "TradedUp"
    TRADED_DOWN = "TradedDown"
    SIDEWAYS = "Sideways"


def classify_direction(amount_quote: int, amount_base: int) -> Direction:
    """Classify a close from the principal returned in each asset."""
    if amount_quote == 0:
        return Direction.TRADED_DOWN
    if amount_base == 0:
        return Direction.TRADED_UP
    return Direction.SIDEWAYS


def _format_units(amount: int, decimals: int) -> str:
    return f"{Decimal(amount).scaleb(-decimals).normalize():f}"


# ── Position ────────────────────────────────────────────────────────────


@dataclass
class Position:
    """
    One concentrated-liquidity position, filled in pass by pass.

    Amounts are in each token's smallest unit (wei for WETH, 10^-6 for USDC).
    Prices are native: quote atoms per 10^18 base atoms.
    """

    token_id: int
    direction: Direction = Direction.UNKNOWN
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    tick_lower: Optional[int] = None
    tick_upper: Optional[int] = None
    range_width_bps: Optional[int] = None
    opening_liquidity_base: Optional[int] = None
    opening_liquidity_quote: Optional[int] = None
    closing_liquidity_base: Optional[int] = None
    closing_liquidity_quote: Optional[int] = None
    withdrawn_base: Optional[int] = None
    withdrawn_quote: Optional[int] = None
    fees_base: Optional[int] = None
    fees_quote: Optional[int] = None
    price_at_opening: Optional[int] = None
    price_at_closing: Optional[int] = None
    gas_paid: Optional[int] = None
    opening_logs: Optional[List[EventLog]] = field(default=None, repr=False)
    closing_logs: Optional[List[EventLog]] = field(default=None, repr=False)

    def require(self, name: str):
        """
        Read a field a previous pass must have set.

        Raises:
            MissingRequiredField: field unset (direction counts as unset
                while UNKNOWN).
        """
        value = getattr(self, name)
        if value is None or value is Direction.UNKNOWN:
            raise MissingRequiredField(self.token_id, name)
        return value

    def assign_direction(self, direction: Direction) -> None:
        if self.direction is not Direction.UNKNOWN:
            raise ValueError(
                f"Position {self.token_id}: direction already set to "
                f"{self.direction.value}"
            )
        self.direction = direction

    @property
    def is_yield_eligible(self) -> bool:
        return self.direction in (Direction.TRADED_UP, Direction.TRADED_DOWN)

    def fees_log(self, base: TokenInfo = WETH, quote: TokenInfo = USDC) -> str:
        """'0.211 WETH and 534.97 USDC', or 'unknown' before fees are set."""
        if self.fees_base is None or self.fees_quote is None:
            return "unknown"
        return (
            f"{_format_units(self.fees_base, base.decimals)} {base.symbol} and "
            f"{_format_units(self.fees_quote, quote.decimals)} {quote.symbol}"
        )


# ── Pass runner ─────────────────────────────────────────────────────────


def run_pass(
    positions: Dict[int, Position],
    step: Callable[[Position], None],
    report: ExclusionReport,
) -> List[ExclusionReason]:
    """
    Apply step to every position, then drop the ones it excluded.

    Hard failures (anything not an ExclusionReason) propagate immediately.
    """
    excluded: List[ExclusionReason] = []
    for position in positions.values():
        try:
            step(position)
        except ExclusionReason as reason:
            excluded.append(reason)
    for reason in excluded:
        report.record(reason)
        positions.pop(reason.token_id, None)
    return excluded


# ── Position Builder ────────────────────────────────────────────────────


class PositionBuilder:
    """
    Runs the reconstruction passes over an indexed position map.

    Usage:
        builder = PositionBuilder(indexer.positions, config)
        positions = builder.run_all()
        builder.report.lines()
    """

    def __init__(
        self,
        position_logs: Dict[int, PositionLogs],
        config: Optional[PoolConfig] = None,
        report: Optional[ExclusionReport] = None,
    ):
        self.config = config or PoolConfig()
        self.position_logs = position_logs
        self.report = report if report is not None else ExclusionReport()
        self.positions: Dict[int, Position] = {}
        self.closed_count = 0

    # ── Pass 1 ──

    def create_positions(self) -> Dict[int, Position]:
        for token_id, logs in self.position_logs.items():
            if not logs.closing:
                continue
            self.positions[token_id] = Position(
                token_id=token_id,
                closed_at=logs.closing[0].block_timestamp,
                closing_logs=logs.closing,
            )
        self.closed_count = len(self.positions)
        return self.positions

    # ── Pass 2 ──

    def attach_opening_logs(self) -> Dict[int, Position]:
        def step(position: Position) -> None:
            entry = self.position_logs.get(position.token_id)
            if entry is None or not entry.opening:
                raise IncompletePosition(position.token_id, "no opening transaction")
            position.opening_logs = entry.opening
            position.opened_at = entry.opening[0].block_timestamp

        run_pass(self.positions, step, self.report)
        return self.positions

    # ── Pass 3 ──

    def _decrease_event(self, position: Position) -> EventLog:
        for log in position.require("closing_logs"):
            if (
                log.address == self.config.position_manager
                and log.topic0 == TOPICS["DecreaseLiquidity"]
                and topic_uint(log.topics[1]) == position.token_id
            ):
                return log
        raise IncompletePosition(position.token_id, "no DecreaseLiquidity event")

    def set_direction(self) -> Dict[int, Position]:
        base_is_token0 = self.config.base_is_token0

        def step(position: Position) -> None:
            event = self._decrease_event(position)
            amount0 = decode_uint(event.data, AMOUNT0_SLOT)
            amount1 = decode_uint(event.data, AMOUNT1_SLOT)
            amount_base, amount_quote = (
                (amount0, amount1) if base_is_token0 else (amount1, amount0)
            )
            position.closing_liquidity_base = amount_base
            position.closing_liquidity_quote = amount_quote
            position.assign_direction(classify_direction(amount_quote, amount_base))

        run_pass(self.positions, step, self.report)
        return self.positions

    # ── Pass 4 ──

    def _mint_ticks(self, position: Position) -> tuple:
        for log in position.require("opening_logs"):
            if (
                log.address == self.config.pool_address
                and log.topic0 == TOPICS["Mint"]
                and len(log.topics) == 4
            ):
                return topic_int(log.topics[2]), topic_int(log.topics[3])
        raise InvariantViolation(position.token_id, "no Mint event in opening tx")

    def set_range_width(self) -> Dict[int, Position]:
        base_is_token0 = self.config.base_is_token0

        def step(position: Position) -> None:
            tick_lower, tick_upper = self._mint_ticks(position)
            for tick in (tick_lower, tick_upper):
                if not MIN_TICK <= tick <= MAX_TICK:
                    raise InvariantViolation(
                        position.token_id, f"tick {tick} outside valid domain"
                    )
            if tick_lower >= tick_upper:
                raise InvariantViolation(
                    position.token_id, f"tickLower {tick_lower} >= tickUpper {tick_upper}"
                )
            position.tick_lower = tick_lower
            position.tick_upper = tick_upper
            position.range_width_bps = range_width_bps(
                tick_lower, tick_upper, base_is_token0, position.token_id
            )

        run_pass(self.positions, step, self.report)
        return self.positions

    # ── Pass 5 ──

    def _pool_transfers(self, logs: List[EventLog], inbound: bool) -> Dict[str, int]:
        """Sum tracked-token Transfer values into (inbound) or out of the pool."""
        pool = self.config.pool_address
        totals = {address: 0 for address in self.config.tracked_tokens}
        for log in logs:
            if (
                log.address not in totals
                or log.topic0 != TOPICS["Transfer"]
                or len(log.topics) != 3
            ):
                continue
            counterparty = topic_address(log.topics[2 if inbound else 1])
            if counterparty == pool:
                totals[log.address] += decode_uint(log.data, 0)
        return totals

    def set_raw_amounts(self) -> Dict[int, Position]:
        base = self.config.base_token.address
        quote = self.config.quote_token.address

        def step(position: Position) -> None:
            deposited = self._pool_transfers(position.require("opening_logs"), True)
            withdrawn = self._pool_transfers(position.require("closing_logs"), False)
            position.opening_liquidity_base = deposited[base]
            position.opening_liquidity_quote = deposited[quote]
            position.withdrawn_base = withdrawn[base]
            position.withdrawn_quote = withdrawn[quote]

        run_pass(self.positions, step, self.report)
        return self.positions

    def run_all(self) -> Dict[int, Position]:
        self.create_positions()
        self.attach_opening_logs()
        self.set_direction()
        self.set_range_width()
        self.set_raw_amounts()
        return self.positions


def range_width_bps(
    tick_lower: int,
    tick_upper: int,
    base_is_token0: bool = False,
    token_id: int = 0,
) -> int:
    """
    Width of [tick_lower, tick_upper] in basis points of its mid price.

    Raises:
        InvariantViolation: a tick outside the domain or a zero mid price.
    """
    try:
        a = tick_to_native_price(tick_lower, base_is_token0)
        b = tick_to_native_price(tick_upper, base_is_token0)
    except ValueError as e:
        raise InvariantViolation(token_id, str(e)) from e
    price_lower, price_upper = min(a, b), max(a, b)
    spread = price_upper - price_lower
    midpoint = price_lower + spread // 2
    if midpoint == 0:
        raise InvariantViolation(token_id, "range mid price rounds to zero")
    return spread * BPS // midpoint
