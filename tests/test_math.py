"""
Test Suite — Tick Math and Range Width
======================================

Checks the integer TickMath port against the constants hard-coded in
TickMath.sol, its inverse, the native price conversion and the range-width
formula built on top of it.

Formula Sources:
  - Uniswap V3 Whitepaper §6.1  p(i) = 1.0001^i
  - TickMath.sol MIN_SQRT_RATIO / MAX_SQRT_RATIO

Run:  python -m pytest tests/test_math.py -v
"""

import pytest

from lp_ledger.central_config import PRICE_SCALE
from lp_ledger.errors import InvariantViolation
from position_builder import range_width_bps
from tick_math import (
    MAX_SQRT_RATIO,
    MAX_TICK,
    MIN_SQRT_RATIO,
    MIN_TICK,
    TickMath,
    native_price_to_tick,
    tick_to_native_price,
)

Q96 = 2**96


# ── Helpers ──────────────────────────────────────────────────────────────

def reference_width(tick_lower: int, tick_upper: int) -> int:
    """Width straight from the definition, inversion spelled out."""
    price_lower = tick_to_native_price(tick_upper)
    price_upper = tick_to_native_price(tick_lower)
    spread = price_upper - price_lower
    return spread * 10_000 // (price_lower + spread // 2)


# ═══════════════════════════════════════════════════════════════════════════
# getSqrtRatioAtTick
# ═══════════════════════════════════════════════════════════════════════════


class TestSqrtRatioAtTick:
    def test_tick_zero_is_q96(self):
        assert TickMath.get_sqrt_ratio_at_tick(0) == Q96

    def test_min_tick(self):
        assert TickMath.get_sqrt_ratio_at_tick(MIN_TICK) == MIN_SQRT_RATIO

    def test_max_tick(self):
        assert TickMath.get_sqrt_ratio_at_tick(MAX_TICK) == MAX_SQRT_RATIO

    @pytest.mark.parametrize("tick", [MIN_TICK - 1, MAX_TICK + 1, 10**7, -(10**7)])
    def test_out_of_domain_raises(self, tick):
        with pytest.raises(ValueError, match="TICK"):
            TickMath.get_sqrt_ratio_at_tick(tick)

    def test_strictly_increasing(self):
        ticks = [MIN_TICK, -500_000, -60, -1, 0, 1, 60, 198_080, 500_000, MAX_TICK]
        ratios = [TickMath.get_sqrt_ratio_at_tick(t) for t in ticks]
        assert ratios == sorted(ratios)
        assert len(set(ratios)) == len(ratios)

    @pytest.mark.parametrize("tick", [1, 60, 1_000, 50_000])
    def test_close_to_float_reference(self, tick):
        exact = TickMath.get_sqrt_ratio_at_tick(tick)
        approx = (1.0001 ** (tick / 2)) * Q96
        assert abs(exact - approx) / approx < 1e-9

    @pytest.mark.parametrize("tick", [1, 60, 50_000])
    def test_negative_tick_is_reciprocal(self, tick):
        up = TickMath.get_sqrt_ratio_at_tick(tick)
        down = TickMath.get_sqrt_ratio_at_tick(-tick)
        # up·down ≈ 2^192, within rounding of the two Q64.96 results
        assert abs(up * down - 2**192) <= 2 * (up + down)


# ═══════════════════════════════════════════════════════════════════════════
# getTickAtSqrtRatio
# ═══════════════════════════════════════════════════════════════════════════


class TestTickAtSqrtRatio:
    def test_bounds(self):
        assert TickMath.get_tick_at_sqrt_ratio(MIN_SQRT_RATIO) == MIN_TICK
        assert TickMath.get_tick_at_sqrt_ratio(MAX_SQRT_RATIO - 1) == MAX_TICK - 1

    @pytest.mark.parametrize("ratio", [MIN_SQRT_RATIO - 1, MAX_SQRT_RATIO, 0])
    def test_out_of_bounds_raises(self, ratio):
        with pytest.raises(ValueError, match="R"):
            TickMath.get_tick_at_sqrt_ratio(ratio)

    @pytest.mark.parametrize("tick", [-887_220, -195_000, -1, 0, 1, 198_060, 887_220])
    def test_inverse(self, tick):
        ratio = TickMath.get_sqrt_ratio_at_tick(tick)
        assert TickMath.get_tick_at_sqrt_ratio(ratio) == tick
        assert TickMath.get_tick_at_sqrt_ratio(ratio + 1) == tick

    def test_just_below_a_tick_rounds_down(self):
        ratio = TickMath.get_sqrt_ratio_at_tick(100)
        assert TickMath.get_tick_at_sqrt_ratio(ratio - 1) == 99


# ═══════════════════════════════════════════════════════════════════════════
# Native price
# ═══════════════════════════════════════════════════════════════════════════


class TestNativePrice:
    def test_tick_zero_is_parity(self):
        assert tick_to_native_price(0) == PRICE_SCALE
        assert tick_to_native_price(0, base_is_token0=True) == PRICE_SCALE

    def test_usdc_weth_magnitude(self):
        # tick ≈ 198,080 is about 2,500 USDC per WETH in the USDC/WETH pool
        price = tick_to_native_price(198_080)
        assert 2_490 * 10**6 < price < 2_510 * 10**6

    def test_higher_tick_means_lower_price(self):
        assert tick_to_native_price(195_000) > tick_to_native_price(201_000)

    def test_base_token0_orientation_increases(self):
        assert tick_to_native_price(60, True) > tick_to_native_price(0, True)

    def test_non_positive_price_raises(self):
        with pytest.raises(ValueError, match="positive"):
            native_price_to_tick(0)

    @pytest.mark.parametrize("tick", [190_020, 195_000, 198_060, 201_000, 210_000])
    def test_round_trip_within_one_spacing(self, tick):
        back = native_price_to_tick(tick_to_native_price(tick))
        assert abs(back - tick) < 60

    @pytest.mark.parametrize("tick", [-60_000, -600, 0, 600, 60_000])
    def test_round_trip_base_token0(self, tick):
        back = native_price_to_tick(tick_to_native_price(tick, True), True)
        assert abs(back - tick) < 60


# ═══════════════════════════════════════════════════════════════════════════
# Range width
# ═══════════════════════════════════════════════════════════════════════════


class TestRangeWidth:
    def test_matches_inverted_definition(self):
        assert range_width_bps(195_000, 201_000) == reference_width(195_000, 201_000)

    def test_approximately_tick_span(self):
        # 1.0001^-6000 ≈ 0.549: spread 0.451·P, midpoint 0.774·P → ≈ 5,826 bps
        width = range_width_bps(195_000, 201_000)
        assert 5_500 < width < 6_500

    def test_narrow_range(self):
        # one tick spacing (60 ticks) ≈ 60 bps
        assert range_width_bps(198_000, 198_060) in (59, 60)

    def test_orientation_independent(self):
        mirrored = range_width_bps(-201_000, -195_000, base_is_token0=True)
        assert abs(mirrored - range_width_bps(195_000, 201_000)) <= 1

    def test_out_of_domain_tick_is_invariant_violation(self):
        with pytest.raises(InvariantViolation) as exc:
            range_width_bps(0, MAX_TICK + 60, token_id=9)
        assert exc.value.token_id == 9

    def test_inversion_law_recovers_ticks(self):
        tick_lower, tick_upper = 195_000, 201_000
        price_lower = tick_to_native_price(tick_upper)
        price_upper = tick_to_native_price(tick_lower)
        assert abs(native_price_to_tick(price_lower) - tick_upper) < 60
        assert abs(native_price_to_tick(price_upper) - tick_lower) < 60
