#!/usr/bin/env python3
"""
Exact Tick Math — Tick ↔ Native Price
=====================================

Integer-only port of the Uniswap V3 TickMath library plus the conversion
to a "native" price used across the position ledger.

FORMULA SOURCES:
────────────────
1. Uniswap V3 Core Whitepaper §6.1 — https://uniswap.org/whitepaper-v3.pdf
   p(i) = 1.0001^i,  √p(i) = 1.0001^(i/2)

2. TickMath.sol — https://github.com/Uniswap/v3-core/blob/main/contracts/libraries/TickMath.sol
   getSqrtRatioAtTick: √(1.0001^tick) · 2^96 computed with 19 precomputed
   Q128 multipliers, one per bit of |tick|. Valid ticks: [-887272, 887272].

3. Uniswap v3-sdk tickToPrice(base, quote, tick)
   raw price = sqrtRatioX96² / 2^192 (token1 per token0), inverted when the
   base token sorts after the quote token.

Native price:
  Quote-token atoms per PRICE_SCALE (10^18) base-token atoms. For the
  USDC/WETH pool (token0 = USDC, token1 = WETH) a market price of USDC 3,000
  is 3_000_000_000. No float is ever involved.
"""

from math import isqrt

from lp_ledger.central_config import PRICE_SCALE
from lp_ledger.rpc_helpers import Q192

# ── TickMath Constants ───────────────────────────────────────────────────

MIN_TICK = -887272
MAX_TICK = 887272
MIN_SQRT_RATIO = 4295128739
MAX_SQRT_RATIO = 1461446703485210103287273052203988822378723970342

_MAX_UINT256 = 2**256 - 1

# ratio multiplier for bit k of |tick|: 2^128 / √1.0001^(2^k), Q128.128
_BIT_MULTIPLIERS = (
    (0x2, 0xFFF97272373D413259A46990580E213A),
    (0x4, 0xFFF2E50F5F656932EF12357CF3C7FDCC),
    (0x8, 0xFFE5CACA7E10E4E61C3624EAA0941CD0),
    (0x10, 0xFFCB9843D60F6159C9DB58835C926644),
    (0x20, 0xFF973B41FA98C081472E6896DFB254C0),
    (0x40, 0xFF2EA16466C96A3843EC78B326B52861),
    (0x80, 0xFE5DEE046A99A2A811C461F1969C3053),
    (0x100, 0xFCBE86C7900A88AEDCFFC83B479AA3A4),
    (0x200, 0xF987A7253AC413176F2B074CF7815E54),
    (0x400, 0xF3392B0822B70005940C7A398E4B70F3),
    (0x800, 0xE7159475A2C29B7443B29C7FA6E889D9),
    (0x1000, 0xD097F3BDFD2022B8845AD8F792AA5825),
    (0x2000, 0xA9F746462D870FDF8A65DC1F90E061E5),
    (0x4000, 0x70D869A156D2A1B890BB3DF62BAF32F7),
    (0x8000, 0x31BE135F97D08FD981231505542FCFA6),
    (0x10000, 0x9AA508B5B7A84E1C677DE54F3E99BC9),
    (0x20000, 0x5D6AF8DEDB81196699C329225EE604),
    (0x40000, 0x2216E584F5FA1EA926041BEDFE98),
    (0x80000, 0x48A170391F7DC42444E8FA2),
)


class TickMath:
    """
    Pure functions mirroring TickMath.sol bit for bit.
    Out-of-domain inputs raise ValueError (the Solidity 'T' / 'R' reverts).
    """

    @staticmethod
    def get_sqrt_ratio_at_tick(tick: int) -> int:
        """
        √(1.0001^tick) · 2^96 as a Q64.96 integer, rounded up.

        Raises:
            ValueError: tick outside [MIN_TICK, MAX_TICK].
        """
        abs_tick = abs(tick)
        if abs_tick > MAX_TICK:
            raise ValueError(f"TICK: {tick} outside [{MIN_TICK}, {MAX_TICK}]")

        ratio = (
            0xFFFCB933BD6FAD37AA2D162D1A594001
            if abs_tick & 0x1
            else 0x100000000000000000000000000000000
        )
        for bit, multiplier in _BIT_MULTIPLIERS:
            if abs_tick & bit:
                ratio = (ratio * multiplier) >> 128

        if tick > 0:
            ratio = _MAX_UINT256 // ratio

        # Q128.128 → Q64.96, rounding up
        return (ratio >> 32) + (0 if ratio % (1 << 32) == 0 else 1)

    @staticmethod
    def get_tick_at_sqrt_ratio(sqrt_price_x96: int) -> int:
        """
        Greatest tick whose sqrt ratio is ≤ sqrt_price_x96.

        Binary search over the tick domain using get_sqrt_ratio_at_tick,
        which is monotonic, so the result matches TickMath.getTickAtSqrtRatio.

        Raises:
            ValueError: sqrt_price_x96 outside [MIN_SQRT_RATIO, MAX_SQRT_RATIO).
        """
        if not MIN_SQRT_RATIO <= sqrt_price_x96 < MAX_SQRT_RATIO:
            raise ValueError(f"R: sqrt ratio {sqrt_price_x96} out of bounds")

        lo, hi = MIN_TICK, MAX_TICK
        while hi - lo > 1:
            mid = (lo + hi) // 2
            if TickMath.get_sqrt_ratio_at_tick(mid) <= sqrt_price_x96:
                lo = mid
            else:
                hi = mid
        return lo


# ── Native Price Conversion ──────────────────────────────────────────────


def tick_to_native_price(tick: int, base_is_token0: bool = False) -> int:
    """
    Convert a tick to a native price (quote atoms per 10^18 base atoms).

    base_is_token0=False (default, USDC/WETH): quote per base is the inverse
    of the pool's token1/token0 ratio, so higher ticks mean LOWER prices.

    Raises:
        ValueError: tick outside the valid domain.
    """
    sqrt_ratio = TickMath.get_sqrt_ratio_at_tick(tick)
    ratio_x192 = sqrt_ratio * sqrt_ratio
    if base_is_token0:
        return ratio_x192 * PRICE_SCALE // Q192
    return Q192 * PRICE_SCALE // ratio_x192


def native_price_to_tick(price: int, base_is_token0: bool = False) -> int:
    """
    Inverse of tick_to_native_price.

    Exact for realistic prices; within one tick of the original when the
    truncated native price has few significant digits.

    Raises:
        ValueError: non-positive price or a price outside the tick domain.
    """
    if price <= 0:
        raise ValueError("Price must be positive")
    if base_is_token0:
        ratio_x192 = price * Q192 // PRICE_SCALE
    else:
        ratio_x192 = Q192 * PRICE_SCALE // price
    return TickMath.get_tick_at_sqrt_ratio(isqrt(ratio_x192))
