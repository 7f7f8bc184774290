"""
BarrierCalculator tests: ATR scaling, direction, time exit, snapping.
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd
import pytest

from regime_barriers.barriers import BarrierCalculator
from regime_barriers.config import DEFAULT_REGIME_CONFIGS
from regime_barriers.registry import RegimeConfigStore
from regime_barriers.models import (
    Candle,
    MarketRegime,
    OrderFlow,
    SignalDirection,
)

from conftest import NOW


def make_flat_candles(n, price=1.17, true_range=0.001):
    half = true_range / 2
    return [
        Candle(
            open_time=NOW - timedelta(hours=n - i),
            open=price,
            high=price + half,
            low=price - half,
            close=price,
        )
        for i in range(n)
    ]


def make_random_walk(n=120, price=1.17, seed=7):
    rng = np.random.default_rng(seed)
    closes = price + np.cumsum(rng.normal(0, 0.0008, n))
    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        high = max(prev, close) + abs(rng.normal(0, 0.0004))
        low = min(prev, close) - abs(rng.normal(0, 0.0004))
        candles.append(Candle(NOW - timedelta(hours=n - i), prev, high, low, close))
        prev = close
    return candles


def make_structure_frame(highs, lows):
    """Candles with explicit highs/lows around a 1.17 close."""
    return pd.DataFrame({
        'open_time': [NOW - timedelta(hours=len(highs) - i) for i in range(len(highs))],
        'open': 1.17,
        'high': highs,
        'low': lows,
        'close': 1.17,
        'volume': 0.0,
    })


# =============================================================================
# RAW BARRIERS
# =============================================================================

class TestRawBarriers:

    def setup_method(self):
        self.store = RegimeConfigStore()
        self.calculator = BarrierCalculator(self.store, clock=lambda: NOW)
        self.regime = MarketRegime("trending_bullish", confidence=0.8, volatility=0.5)
        self.store.update_config("trending_bullish", dynamic_adjustment=False)

    def test_long_stop_loss_scenario(self):
        """Entry 1.17000 long, SL multiplier 1.5, ATR 0.0010 -> SL 1.16850."""
        levels = self.calculator.compute_barriers(
            1.17, SignalDirection.BUY, self.regime, make_flat_candles(30)
        )
        assert levels.stop_loss == pytest.approx(1.16850, abs=1e-7)
        assert levels.take_profit == pytest.approx(1.17300, abs=1e-7)
        assert levels.current_atr == pytest.approx(0.001, rel=1e-6)
        assert levels.confidence == 0.8
        assert levels.regime == "trending_bullish"

    def test_short_mirrors_long(self):
        levels = self.calculator.compute_barriers(
            1.17, SignalDirection.SELL, self.regime, make_flat_candles(30)
        )
        assert levels.stop_loss == pytest.approx(1.17150, abs=1e-7)
        assert levels.take_profit == pytest.approx(1.16700, abs=1e-7)
        assert levels.is_ordered()

    def test_time_exit_uses_regime_multiplier(self):
        levels = self.calculator.compute_barriers(
            1.17, SignalDirection.BUY, self.regime, make_flat_candles(30)
        )
        # 48h x 1.2 trending multiplier
        assert levels.time_exit - levels.entry_time == timedelta(hours=57.6)
        assert levels.entry_time == NOW

    def test_explicit_now_overrides_clock(self):
        later = NOW + timedelta(hours=3)
        levels = self.calculator.compute_barriers(
            1.17, SignalDirection.BUY, self.regime, make_flat_candles(30), now=later
        )
        assert levels.entry_time == later

    def test_sparse_candles_use_fallback_atr(self):
        levels = self.calculator.compute_barriers(
            1.17, SignalDirection.BUY, "trending_bullish", make_flat_candles(5, true_range=0.004)
        )
        assert levels.current_atr == pytest.approx(0.001)
        assert levels.stop_loss == pytest.approx(1.17 - 1.5 * 0.001)

    def test_no_candles(self):
        levels = self.calculator.compute_barriers(1.17, SignalDirection.BUY, "ranging_tight", [])
        # Fallback ATR x 0.8 ranging factor
        assert levels.current_atr == pytest.approx(0.0008)
        assert levels.is_ordered()

    def test_unknown_regime_uses_fallback_config(self):
        levels = self.calculator.compute_barriers(
            1.17, SignalDirection.BUY, "unheard_of", make_flat_candles(30)
        )
        cfg = DEFAULT_REGIME_CONFIGS["ranging_tight"]
        assert levels.take_profit == pytest.approx(1.17 + cfg.take_profit_multiplier * 0.001, abs=1e-7)
        assert levels.regime == "unheard_of"

    def test_reads_current_store_config(self):
        self.store.update_config("trending_bullish", stop_loss_multiplier=2.0)
        levels = self.calculator.compute_barriers(
            1.17, SignalDirection.BUY, self.regime, make_flat_candles(30)
        )
        assert levels.stop_loss == pytest.approx(1.168, abs=1e-7)

    def test_rejects_non_positive_entry(self):
        with pytest.raises(ValueError):
            self.calculator.compute_barriers(0.0, SignalDirection.BUY, self.regime, [])

    def test_levels_immutable(self):
        levels = self.calculator.compute_barriers(1.17, SignalDirection.BUY, self.regime, [])
        with pytest.raises(Exception):
            levels.stop_loss = 1.0


# =============================================================================
# ORDERING INVARIANT
# =============================================================================

class TestOrderingInvariant:

    @pytest.mark.parametrize("regime", sorted(DEFAULT_REGIME_CONFIGS))
    @pytest.mark.parametrize("direction", [SignalDirection.BUY, SignalDirection.SELL])
    @pytest.mark.parametrize("flow", list(OrderFlow))
    def test_levels_straddle_entry(self, regime, direction, flow):
        calculator = BarrierCalculator(RegimeConfigStore(), clock=lambda: NOW)
        candles = make_random_walk()
        entry = candles[-1].close

        levels = calculator.compute_barriers(
            entry, direction, MarketRegime(regime, order_flow=flow, volatility=0.6), candles
        )

        assert levels.is_ordered()
        assert levels.time_exit > levels.entry_time

    @pytest.mark.parametrize("hour", [0, 8, 20])
    def test_ordering_with_flat_history(self, hour):
        now = datetime(2024, 3, 4, hour, tzinfo=timezone.utc)
        calculator = BarrierCalculator(RegimeConfigStore(), clock=lambda: now)
        for direction in SignalDirection:
            levels = calculator.compute_barriers(
                1.17, direction, "ranging_tight", make_flat_candles(120)
            )
            assert levels.is_ordered()


# =============================================================================
# DYNAMIC ADJUSTMENTS
# =============================================================================

class TestDynamicAdjustments:

    def setup_method(self):
        self.calculator = BarrierCalculator(RegimeConfigStore(), clock=lambda: NOW)
        self.neutral = MarketRegime("trending_bullish")

    def test_take_profit_stops_before_resistance(self):
        highs = [1.150, 1.152, 1.154, 1.156, 1.158, 1.17301, 1.17299, 1.1730, 1.17302]
        lows = [h - 0.002 for h in highs]
        df = make_structure_frame(highs, lows)

        tp, sl = self.calculator.apply_dynamic_adjustments(
            1.1740, 1.1600, SignalDirection.BUY, self.neutral, df
        )
        assert tp == pytest.approx(1.1730 * 0.999)
        assert sl == 1.1600

    def test_take_profit_short_stops_above_support(self):
        lows = [1.190, 1.188, 1.186, 1.16699, 1.16701, 1.1670, 1.16702]
        highs = [l + 0.002 for l in lows]
        df = make_structure_frame(highs, lows)

        tp, _ = self.calculator.apply_dynamic_adjustments(
            1.1660, 1.1800, SignalDirection.SELL, self.neutral, df
        )
        assert tp == pytest.approx(1.1670 * 1.001)

    def test_far_resistance_not_snapped(self):
        highs = [1.150, 1.152, 1.1830, 1.1830, 1.1830]
        df = make_structure_frame(highs, [h - 0.002 for h in highs])
        tp, _ = self.calculator.apply_dynamic_adjustments(
            1.1740, 1.1600, SignalDirection.BUY, self.neutral, df
        )
        assert tp == 1.1740

    def test_buying_flow_extends_snapped_target(self):
        highs = [1.150, 1.152, 1.154, 1.1740, 1.1740, 1.1740]
        df = make_structure_frame(highs, [h - 0.002 for h in highs])
        buying = MarketRegime("trending_bullish", order_flow=OrderFlow.BUYING)

        tp, _ = self.calculator.apply_dynamic_adjustments(
            1.1720, 1.1600, SignalDirection.BUY, buying, df
        )
        snapped = 1.1740 * 0.999
        assert tp == pytest.approx(1.1720 + (snapped - 1.1720) * 1.1)

    def test_buying_flow_without_structure_leaves_target(self):
        highs = [1.150, 1.152, 1.1830, 1.1830, 1.1830]
        df = make_structure_frame(highs, [h - 0.002 for h in highs])
        buying = MarketRegime("trending_bullish", order_flow=OrderFlow.BUYING)

        tp, _ = self.calculator.apply_dynamic_adjustments(
            1.1740, 1.1600, SignalDirection.BUY, buying, df
        )
        assert tp == 1.1740

    def test_stop_moves_beyond_swing_low(self):
        lows = [1.1700, 1.1695, 1.1690, 1.1683, 1.1692, 1.1697, 1.1700]
        highs = [l + 0.0005 for l in lows]
        df = make_structure_frame(highs, lows)

        _, sl = self.calculator.apply_dynamic_adjustments(
            1.1800, 1.1685, SignalDirection.BUY, self.neutral, df
        )
        assert sl == pytest.approx(1.1683 - 1.1685 * 0.001)
        assert sl < 1.1683

    def test_stop_moves_beyond_swing_high_for_short(self):
        highs = [1.1700, 1.1705, 1.1710, 1.1717, 1.1708, 1.1703, 1.1700]
        lows = [h - 0.0005 for h in highs]
        df = make_structure_frame(highs, lows)

        _, sl = self.calculator.apply_dynamic_adjustments(
            1.1600, 1.1715, SignalDirection.SELL, self.neutral, df
        )
        assert sl == pytest.approx(1.1717 + 1.1715 * 0.001)

    def test_empty_candles_leave_levels(self):
        tp, sl = self.calculator.apply_dynamic_adjustments(
            1.1740, 1.1600, SignalDirection.BUY, self.neutral, []
        )
        assert (tp, sl) == (1.1740, 1.1600)

    def test_snap_past_entry_falls_back_to_raw(self):
        """Resistance just above entry would pull TP below entry: raw levels kept."""
        store = RegimeConfigStore()
        calculator = BarrierCalculator(store, clock=lambda: NOW)
        # Flat history: every high clusters next to entry
        candles = make_flat_candles(60)
        levels = calculator.compute_barriers(1.17, SignalDirection.BUY, "trending_bullish", candles)

        assert levels.is_ordered()
        assert levels.take_profit == pytest.approx(1.173, abs=1e-7)
        assert levels.stop_loss == pytest.approx(1.1685, abs=1e-7)
