"""
Scenario Tests — End-to-End Position Reconstruction
===================================================

Feeds hand-built event-log rows through the full pipeline
(LogIndexer → PositionBuilder → FeeAccountant) and checks the finalized
records against values worked out by hand.

Prices (native, USDC atoms per 1 WETH):
  2021-05-31  3,000 USDC   → price_at_opening for positions opened 06-01
  2021-06-10  2,500 USDC   → price_at_closing for positions closed 06-11

Run:  python -m pytest tests/test_scenarios.py -v
"""

from decimal import Decimal

import pytest

from log_factory import E6, E18, PRICE_ROWS, closing_rows, opening_rows
from lp_ledger.errors import (
    IncompletePosition,
    InvariantViolation,
    NegativeFeeAnomaly,
    NoPriceData,
)
from position_builder import Direction
from position_pipeline import reconstruct

TICK_LOWER = 195_000
TICK_UPPER = 201_000


def _run(adds, removes, prices=PRICE_ROWS, **kw):
    return reconstruct(adds, removes, prices, quiet=True, **kw)


def _traded_down(token_id=198342, scale=1):
    """0.248 WETH withdrawn, 0.037 WETH principal, 534.97 USDC fees."""
    adds = opening_rows(
        token_id, f"0xopen{token_id}", TICK_LOWER, TICK_UPPER,
        deposit_base=1 * E18 * scale, deposit_quote=3_000 * E6 * scale,
    )
    removes = closing_rows(
        token_id, f"0xclose{token_id}",
        amount0=0, amount1=37 * 10**15 * scale,
        withdrawn_base=248 * 10**15 * scale, withdrawn_quote=534_970_000 * scale,
    )
    return adds, removes


def _traded_up(token_id=204635):
    """5,170.48 USDC withdrawn, 5,000 USDC principal, 0.037 WETH fees."""
    adds = opening_rows(
        token_id, f"0xopen{token_id}", TICK_LOWER, TICK_UPPER,
        deposit_base=1 * E18, deposit_quote=3_000 * E6,
    )
    removes = closing_rows(
        token_id, f"0xclose{token_id}",
        amount0=5_000 * E6, amount1=0,
        withdrawn_base=37 * 10**15, withdrawn_quote=5_170_480_000,
    )
    return adds, removes


# ═══════════════════════════════════════════════════════════════════════════
# Scenario A — TradedDown
# ═══════════════════════════════════════════════════════════════════════════


class TestTradedDown:
    def test_direction_and_fee_split(self):
        result = _run(*_traded_down())
        pos = result.positions[198342]
        assert pos.direction is Direction.TRADED_DOWN
        assert pos.withdrawn_base == 248 * 10**15
        assert pos.closing_liquidity_base == 37 * 10**15
        assert pos.fees_base == 211 * 10**15
        assert pos.fees_quote == 534_970_000

    def test_fees_total_combines_both_assets_at_closing_price(self):
        result = _run(*_traded_down())
        m = result.metrics[0]
        # 534.97 USDC + 0.211 WETH × 2,500
        assert m.fees_total_in_quote == 534_970_000 + 527_500_000
        assert m.fees_total_in_quote == 1_062_470_000

    def test_opening_value_uses_opening_price(self):
        m = _run(*_traded_down()).metrics[0]
        assert m.opening_liquidity_total_in_quote == 6_000 * E6

    def test_gross_yield_truncates_to_bps(self):
        m = _run(*_traded_down()).metrics[0]
        # 1_062_470_000 × 10_000 // 6_000_000_000 = 1770 (17.7078…%)
        assert m.gross_yield_bps == 1770
        assert m.gross_yield_percent == Decimal("17.70")

    def test_time_open(self):
        m = _run(*_traded_down()).metrics[0]
        assert m.time_open.total_seconds() == 10.5 * 86_400
        assert m.time_open_in_days == Decimal("10.50")

    def test_base_denominated_breakdown(self):
        m = _run(*_traded_down()).metrics[0]
        # 1 WETH + 3,000 USDC / 3,000 at opening; 0.037 WETH principal back
        assert m.opening_liquidity_total_in_base == 2 * E18
        assert m.closing_liquidity_total_in_base == 37 * 10**15
        # 0.211 WETH + 534.97 / 2,500 WETH
        assert m.fees_total_in_base == 211 * 10**15 + 213_988 * 10**12
        assert m.impermanent_loss_in_base == 37 * 10**15 - 2 * E18
        assert m.gas_paid_in_base is None
        assert m.net_return_in_base == m.fees_total_in_base + m.impermanent_loss_in_base

    def test_fees_log(self):
        pos = _run(*_traded_down()).positions[198342]
        assert pos.fees_log() == "0.211 WETH and 534.97 USDC"

    def test_negative_base_fee_is_excluded_not_clamped(self):
        adds = opening_rows(1, "0xo1", TICK_LOWER, TICK_UPPER, E18, 3_000 * E6)
        removes = closing_rows(
            1, "0xc1", amount0=0, amount1=300 * 10**15,
            withdrawn_base=248 * 10**15, withdrawn_quote=534_970_000,
        )
        result = _run(adds, removes)
        assert 1 not in result.positions
        assert result.report.count(NegativeFeeAnomaly) == 1
        assert any("negative fees" in line for line in result.report.lines())

    def test_finalized_traded_down_fees_never_negative(self):
        adds, removes = _traded_down(token_id=10)
        a2, r2 = _traded_down(token_id=11)
        result = _run(adds + a2, removes + r2)
        for pos in result.positions.values():
            if pos.direction is Direction.TRADED_DOWN:
                assert pos.fees_base == pos.withdrawn_base - pos.closing_liquidity_base
                assert pos.fees_base >= 0


# ═══════════════════════════════════════════════════════════════════════════
# Scenario B — TradedUp
# ═══════════════════════════════════════════════════════════════════════════


class TestTradedUp:
    def test_symmetric_decomposition(self):
        result = _run(*_traded_up())
        pos = result.positions[204635]
        assert pos.direction is Direction.TRADED_UP
        assert pos.fees_base == 37 * 10**15
        assert pos.fees_quote == 5_170_480_000 - 5_000 * E6
        assert pos.fees_quote == 170_480_000

    def test_total_in_quote(self):
        m = _run(*_traded_up()).metrics[0]
        # 170.48 USDC + 0.037 WETH × 2,500
        assert m.fees_total_in_quote == 170_480_000 + 92_500_000

    def test_total_in_base(self):
        m = _run(*_traded_up()).metrics[0]
        # 0.037 WETH + 170.48 / 2,500 WETH
        assert m.fees_total_in_base == 37 * 10**15 + 170_480_000 * E18 // (2_500 * E6)

    def test_impermanent_loss_and_net_return(self):
        m = _run(*_traded_up()).metrics[0]
        assert m.closing_liquidity_total_in_quote == 5_000 * E6
        assert m.impermanent_loss == 5_000 * E6 - 6_000 * E6
        assert m.net_return == m.fees_total_in_quote + m.impermanent_loss
        assert m.gas_paid_in_quote is None

    def test_gas_reduces_net_return(self):
        adds, removes = _traded_up()
        gas = {"0xopen204635": 3 * 10**15, "0xclose204635": 1 * 10**15}
        result = _run(adds, removes, gas_by_tx=gas)
        pos = result.positions[204635]
        m = result.metrics[0]
        assert pos.gas_paid == 4 * 10**15
        assert m.gas_paid_in_quote == 10 * E6  # 0.004 ETH × 2,500
        assert m.net_return == m.fees_total_in_quote - 10 * E6 + m.impermanent_loss
        assert m.gas_paid_in_base == 4 * 10**15
        assert m.net_return_in_base == (
            m.fees_total_in_base - 4 * 10**15 + m.impermanent_loss_in_base
        )


# ═══════════════════════════════════════════════════════════════════════════
# Scenario C — Sideways
# ═══════════════════════════════════════════════════════════════════════════


class TestSideways:
    def _rows(self):
        adds = opening_rows(7, "0xo7", TICK_LOWER, TICK_UPPER, E18, 3_000 * E6)
        removes = closing_rows(
            7, "0xc7", amount0=1_000 * E6, amount1=5 * 10**17,
            withdrawn_base=6 * 10**17, withdrawn_quote=1_100 * E6,
        )
        return adds, removes

    def test_retained_with_zero_fees(self):
        result = _run(*self._rows())
        pos = result.positions[7]
        assert pos.direction is Direction.SIDEWAYS
        assert (pos.fees_base, pos.fees_quote) == (0, 0)
        assert result.report.total == 0

    def test_excluded_from_yield(self):
        adds, removes = self._rows()
        a2, r2 = _traded_down()
        result = _run(adds + a2, removes + r2)
        assert len(result.metrics) == 2
        assert [m.token_id for m in result.yield_metrics] == [198342]
        summary = result.summary
        assert summary["positions"] == 2
        assert summary["sideways"] == 1
        assert summary["yield_eligible"] == 1
        assert summary["mean_gross_yield_bps"] == 1770


# ═══════════════════════════════════════════════════════════════════════════
# Scenario D / E — soft exclusions
# ═══════════════════════════════════════════════════════════════════════════


class TestExclusions:
    def test_tick_outside_domain_is_excluded(self):
        adds = opening_rows(3, "0xo3", 195_000, 900_000, E18, 3_000 * E6)
        removes = closing_rows(3, "0xc3", 0, 10**15, 2 * 10**15, 10 * E6)
        a2, r2 = _traded_down()
        result = _run(adds + a2, removes + r2)
        assert 3 not in result.positions
        assert 198342 in result.positions
        assert result.report.count(InvariantViolation) == 1
        assert result.report.ids(InvariantViolation) == {3}

    def test_closing_only_is_incomplete(self):
        removes = closing_rows(4, "0xc4", 0, 10**15, 2 * 10**15, 10 * E6)
        result = _run([], removes)
        assert result.positions == {}
        assert result.closed_count == 1
        assert result.report.count(IncompletePosition) == 1

    def test_opening_only_is_not_a_position(self):
        adds = opening_rows(5, "0xo5", TICK_LOWER, TICK_UPPER, E18, 3_000 * E6)
        result = _run(adds, [])
        assert result.positions == {}
        assert result.report.total == 0

    def test_nft_mint_identifies_opening_without_increase_event(self):
        adds = opening_rows(
            198342, "0xopen198342", TICK_LOWER, TICK_UPPER,
            E18, 3_000 * E6, with_increase=False,
        )
        _, removes = _traded_down()
        result = _run(adds, removes)
        assert result.positions[198342].fees_base == 211 * 10**15

    def test_price_history_too_short_is_a_hard_failure(self):
        late_prices = [{"blockTimestamp": "2021-06-05T00:00:00Z", "price": 2_800 * E6}]
        with pytest.raises(NoPriceData):
            _run(*_traded_down(), prices=late_prices)


# ═══════════════════════════════════════════════════════════════════════════
# Properties
# ═══════════════════════════════════════════════════════════════════════════


class TestProperties:
    @pytest.mark.parametrize("scale", [2, 10, 1_000])
    def test_gross_yield_invariant_under_scaling(self, scale):
        base = _run(*_traded_down(scale=1)).metrics[0]
        scaled = _run(*_traded_down(scale=scale)).metrics[0]
        assert scaled.gross_yield_bps == base.gross_yield_bps
        assert scaled.fees_total_in_quote == base.fees_total_in_quote * scale

    def test_duplicate_closing_is_counted_latest_wins(self):
        adds, removes = _traded_down()
        later = closing_rows(
            198342, "0xclose-again", amount0=0, amount1=37 * 10**15,
            withdrawn_base=250 * 10**15, withdrawn_quote=534_970_000,
            ts="2021-06-12T00:00:00Z",
        )
        result = _run(adds, removes + later)
        assert result.duplicate_closings == {198342: 1}
        assert result.positions[198342].withdrawn_base == 250 * 10**15
        assert result.positions[198342].fees_base == 213 * 10**15

    @pytest.mark.parametrize("reverse", [False, True])
    def test_duplicate_closing_resolved_by_chronology(self, reverse):
        adds, removes = _traded_down()
        later = closing_rows(
            198342, "0xclose-again", amount0=0, amount1=37 * 10**15,
            withdrawn_base=250 * 10**15, withdrawn_quote=534_970_000,
            ts="2021-06-12T00:00:00Z",
        )
        closings = later + removes if reverse else removes + later
        result = _run(adds, closings)
        pos = result.positions[198342]
        assert result.duplicate_closings == {198342: 1}
        assert pos.closed_at.isoformat() == "2021-06-12T00:00:00+00:00"
        assert pos.withdrawn_base == 250 * 10**15

    def test_duplicate_opening_resolved_by_chronology(self):
        early = opening_rows(
            198342, "0xopen-early", TICK_LOWER, TICK_UPPER,
            deposit_base=2 * E18, deposit_quote=3_000 * E6,
            ts="2021-05-31T12:00:00Z",
        )
        adds, removes = _traded_down()
        result = _run(adds + early, removes)
        assert result.duplicate_openings == {198342: 1}
        assert result.positions[198342].opening_liquidity_base == E18

    def test_zero_closing_price_leaves_base_metrics_empty(self):
        prices = [
            {"blockTimestamp": "2021-05-31T00:00:00Z", "price": 3_000 * E6},
            {"blockTimestamp": "2021-06-10T00:00:00Z", "price": 0},
        ]
        m = _run(*_traded_down(), prices=prices).metrics[0]
        assert m.fees_total_in_quote == 534_970_000
        assert m.opening_liquidity_total_in_base == 2 * E18
        assert m.fees_total_in_base is None
        assert m.closing_liquidity_total_in_base is None
        assert m.impermanent_loss_in_base is None
        assert m.net_return_in_base is None

    def test_output_sorted_by_token_id(self):
        a1, r1 = _traded_down(token_id=30)
        a2, r2 = _traded_down(token_id=20)
        result = _run(a1 + a2, r1 + r2)
        assert [m.token_id for m in result.metrics] == [20, 30]

    def test_progress_output(self, capsys):
        reconstruct(*_traded_down(), PRICE_ROWS)
        out = capsys.readouterr().out
        assert "price samples" in out
        assert "1 positions finalized" in out

    def test_quiet(self, capsys):
        reconstruct(*_traded_down(), PRICE_ROWS, quiet=True)
        assert capsys.readouterr().out == ""
