"""
Barrier Calculator

Derives take-profit, stop-loss and time-exit levels for a new signal.

ALGORITHM:
1. ATR over `lookback` candles (fallback ATR on sparse data)
2. Volatility adjustment from regime type, volatility band and session
3. Barrier distances = regime multiplier x adjusted ATR
4. Raw levels placed in the signal's direction
5. Optional snapping to support/resistance and swing levels, with an
   order-flow extension of the take-profit. The order-flow bias only
   stretches a take-profit that structure already moved in the flow's
   direction (up for buying, down for selling); an unsnapped take-profit
   keeps its ATR distance whatever the order flow.
6. Time exit = now + time_exit_hours x regime time multiplier

Pure with respect to its inputs and the current RegimeConfigStore read.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple, Union

from .config import EngineSettings, DEFAULT_SETTINGS
from .models import (
    BarrierLevels,
    MarketRegime,
    OrderFlow,
    SignalDirection,
)
from .registry import RegimeConfigStore
from .structure import find_significant_level, find_swing_levels, nearest_level
from .volatility import VolatilityEstimator, CandleInput, candles_to_frame, utc_now


logger = logging.getLogger(__name__)


class BarrierCalculator:
    """
    Regime-aware barrier level calculator.

    Usage:
        calculator = BarrierCalculator(store)
        levels = calculator.compute_barriers(1.17, SignalDirection.BUY,
                                             MarketRegime("trending_bullish"),
                                             candles)
    """

    def __init__(
        self,
        store: RegimeConfigStore,
        settings: EngineSettings = DEFAULT_SETTINGS,
        estimator: Optional[VolatilityEstimator] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock
        self.estimator = estimator or VolatilityEstimator(settings.volatility, clock)

    def compute_barriers(
        self,
        entry_price: float,
        direction: SignalDirection,
        regime: Union[MarketRegime, str],
        candles: Optional[CandleInput],
        lookback: int = 20,
        now: Optional[datetime] = None,
    ) -> BarrierLevels:
        """
        Compute barrier levels at signal entry.

        Args:
            entry_price: Fill price of the entry
            direction: BUY or SELL
            regime: Regime classification (a bare regime id is accepted)
            candles: Recent candles, oldest first
            lookback: ATR window
            now: Entry time (defaults to the injected clock)

        Returns:
            BarrierLevels satisfying the TP / entry / SL ordering
        """
        if not entry_price > 0:
            raise ValueError(f"entry_price must be positive, got {entry_price}")
        if isinstance(regime, str):
            regime = MarketRegime(type=regime)

        now = now or self.clock()
        config = self.store.get_config(regime.type)
        df = candles_to_frame(candles)

        atr = self.estimator.calculate_atr(df, lookback)
        adjustment = self.estimator.adjustment_factor(regime.type, regime.volatility, now)
        adjusted_atr = atr * adjustment

        tp_distance = adjusted_atr * config.take_profit_multiplier
        sl_distance = adjusted_atr * config.stop_loss_multiplier

        sign = direction.sign
        raw_tp = entry_price + sign * tp_distance
        raw_sl = entry_price - sign * sl_distance

        hours = config.time_exit_hours * self.estimator.time_multiplier(regime.type)
        time_exit = now + timedelta(hours=hours)

        take_profit, stop_loss = raw_tp, raw_sl
        if config.dynamic_adjustment:
            take_profit, stop_loss = self.apply_dynamic_adjustments(
                raw_tp, raw_sl, direction, regime, df
            )

        levels = BarrierLevels(
            entry_price=entry_price,
            take_profit=take_profit,
            stop_loss=stop_loss,
            time_exit=time_exit,
            entry_time=now,
            current_atr=adjusted_atr,
            regime=regime.type,
            confidence=regime.confidence,
            direction=direction,
        )

        if not levels.is_ordered():
            logger.warning(
                f"Snapped barriers out of order for {regime.type} "
                f"(tp={take_profit:.5f} entry={entry_price:.5f} sl={stop_loss:.5f}); "
                f"using raw levels"
            )
            levels = BarrierLevels(
                entry_price=entry_price,
                take_profit=raw_tp,
                stop_loss=raw_sl,
                time_exit=time_exit,
                entry_time=now,
                current_atr=adjusted_atr,
                regime=regime.type,
                confidence=regime.confidence,
                direction=direction,
            )

        logger.debug(
            f"Barriers {regime.type} {direction.value} @ {entry_price:.5f}: "
            f"TP={levels.take_profit:.5f} SL={levels.stop_loss:.5f} "
            f"ATR={atr:.5f} adj={adjustment:.2f} exit={time_exit.isoformat()}"
        )
        return levels

    # =========================================================================
    # DYNAMIC ADJUSTMENTS
    # =========================================================================

    def apply_dynamic_adjustments(
        self,
        take_profit: float,
        stop_loss: float,
        direction: SignalDirection,
        regime: MarketRegime,
        candles,
    ) -> Tuple[float, float]:
        """
        Snap raw levels to nearby market structure.

        - TP stops just in front of a significant resistance (long) or
          support (short) within snap_distance
        - SL moves just beyond the nearest swing low (long) or swing
          high (short) within swing_distance
        - Favourable order flow extends a snapped TP further; a TP that
          was not moved by structure is left at its raw level
        """
        s = self.settings.structure
        df = candles_to_frame(candles)
        if df.empty:
            return take_profit, stop_loss

        adjusted_tp = take_profit
        adjusted_sl = stop_loss

        recent = df.iloc[-s.sr_lookback:]
        if direction is SignalDirection.BUY:
            resistance = find_significant_level(
                recent['high'], take_profit, s.bin_tolerance, s.search_radius, s.min_touches
            )
            if resistance is not None and abs(take_profit - resistance) < take_profit * s.snap_distance:
                adjusted_tp = resistance * (1 - s.sr_offset)
        else:
            support = find_significant_level(
                recent['low'], take_profit, s.bin_tolerance, s.search_radius, s.min_touches
            )
            if support is not None and abs(take_profit - support) < take_profit * s.snap_distance:
                adjusted_tp = support * (1 + s.sr_offset)

        swing_highs, swing_lows = find_swing_levels(df.iloc[-s.swing_lookback:])
        swings = swing_lows if direction is SignalDirection.BUY else swing_highs
        swing = nearest_level(swings, stop_loss, s.swing_distance)
        if swing is not None:
            buffer = stop_loss * s.swing_buffer
            adjusted_sl = swing - direction.sign * buffer

        # Order flow
        if regime.order_flow is OrderFlow.BUYING and adjusted_tp > take_profit:
            adjusted_tp = take_profit + (adjusted_tp - take_profit) * s.order_flow_extension
        elif regime.order_flow is OrderFlow.SELLING and adjusted_tp < take_profit:
            adjusted_tp = take_profit - (take_profit - adjusted_tp) * s.order_flow_extension

        return adjusted_tp, adjusted_sl
