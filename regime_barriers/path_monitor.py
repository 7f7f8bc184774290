"""
Path Monitor

Evaluates an open signal against the latest candle and the price path
since entry.

STEP ORDER (first match wins):
1. Traditional barriers: stop-loss, take-profit, time exit (always active)
2. Path-dependent exits (if enabled for the regime):
   volatility surprise, choppy path, adverse excursion, time decay
3. Gamma scaling (if enabled): staged stop tightening and TP extension

TIE-BREAK: a candle that touches both barriers exits at STOP_LOSS.
Worst case is assumed, as the stop is checked before the target.

evaluate() is a pure function of its inputs: the same levels, path and
candle always produce the same decision.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from .config import EngineSettings, DEFAULT_SETTINGS
from .models import (
    BarrierLevels,
    Candle,
    Decision,
    DecisionType,
    HitType,
    PathExitReason,
    PathMetrics,
    RegimeBarrierConfig,
    SignalDirection,
)
from .registry import RegimeConfigStore
from .volatility import expected_volatility, realized_volatility, utc_now


logger = logging.getLogger(__name__)


def compute_path_metrics(
    levels: BarrierLevels,
    price_history: Sequence[float],
    now: Optional[datetime] = None,
    annualization: int = 252,
) -> PathMetrics:
    """
    Path statistics since entry.

    Excursions and current return are direction-adjusted fractions of the
    entry price: positive means the position is in profit.

    Args:
        levels: Barrier levels of the signal (entry price, direction, entry time)
        price_history: Prices observed since entry, oldest first
        now: Evaluation time for time_elapsed_hours
        annualization: Periods per year for realized volatility
    """
    elapsed = 0.0
    if now is not None:
        elapsed = max(0.0, (now - levels.entry_time).total_seconds() / 3600.0)

    prices = np.asarray(price_history, dtype=float)
    if len(prices) == 0 or levels.entry_price <= 0:
        return PathMetrics(time_elapsed_hours=elapsed)

    entry = levels.entry_price
    sign = levels.direction.sign
    moves = sign * (prices - entry) / entry

    max_favorable = max(0.0, float(moves.max()))
    max_adverse = min(0.0, float(moves.min()))

    path = np.concatenate(([entry], prices))
    total_path = float(np.abs(np.diff(path)).sum())
    net = abs(float(prices[-1]) - entry)
    efficiency = net / total_path if total_path > 0 else 0.0

    return PathMetrics(
        max_favorable=max_favorable,
        max_adverse=max_adverse,
        realized_volatility=realized_volatility(path, annualization),
        directional_efficiency=min(1.0, efficiency),
        current_return=float(moves[-1]),
        path_length=len(prices),
        time_elapsed_hours=elapsed,
    )


class PathMonitor:
    """
    Per-tick decision logic for open signals.

    Reads the regime's feature flags from the store; never writes to it.
    """

    def __init__(
        self,
        store: RegimeConfigStore,
        settings: EngineSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock

    def evaluate(
        self,
        levels: BarrierLevels,
        price_history: Sequence[float],
        latest_candle: Candle,
        now: Optional[datetime] = None,
        config: Optional[RegimeBarrierConfig] = None,
    ) -> Decision:
        """
        Evaluate one signal.

        Args:
            levels: Current barrier levels (direction is taken from here)
            price_history: Prices since entry, latest last
            latest_candle: Candle being evaluated
            now: Evaluation time (defaults to the injected clock)
            config: Regime config override (defaults to the store's)

        Returns:
            Decision: CONTINUE, EXIT (with hit type and price) or ADJUST
            (with the replacement levels)
        """
        now = now or self.clock()
        config = config or self.store.get_config(levels.regime)
        metrics = compute_path_metrics(
            levels, price_history, now, self.settings.path_exits.annualization
        )

        # 1. Traditional barriers
        hit = self.check_traditional_barriers(levels, latest_candle, now)
        if hit is not None:
            hit_type, price, reason = hit
            return Decision(
                action=DecisionType.EXIT,
                metrics=metrics,
                hit_type=hit_type,
                reason=reason,
                exit_price=price,
            )

        # 2. Path-dependent exits
        if config.path_dependent_exits:
            path_exit = self.check_path_dependent_exits(levels, metrics)
            if path_exit is not None:
                exit_reason, reason = path_exit
                return Decision(
                    action=DecisionType.EXIT,
                    metrics=metrics,
                    hit_type=HitType.PATH_DEPENDENT_EXIT,
                    reason=reason,
                    path_exit_reason=exit_reason,
                    exit_price=latest_candle.close,
                )

        # 3. Gamma scaling
        if config.gamma_scaling:
            new_levels = self.calculate_gamma_scaling(levels, metrics, latest_candle)
            if new_levels is not None:
                return Decision(
                    action=DecisionType.ADJUST,
                    metrics=metrics,
                    reason=f"Gamma stage {new_levels.gamma_stage}",
                    levels=new_levels,
                )

        return Decision(action=DecisionType.CONTINUE, metrics=metrics)

    # =========================================================================
    # RULES
    # =========================================================================

    def check_traditional_barriers(
        self,
        levels: BarrierLevels,
        candle: Candle,
        now: datetime,
    ) -> Optional[Tuple[HitType, float, str]]:
        """
        Barrier touch test for one candle. Touches are inclusive.

        Stop-loss is checked first so a candle spanning both barriers
        resolves as STOP_LOSS.
        """
        if levels.direction is SignalDirection.BUY:
            sl_hit = candle.low <= levels.stop_loss
            tp_hit = candle.high >= levels.take_profit
        else:
            sl_hit = candle.high >= levels.stop_loss
            tp_hit = candle.low <= levels.take_profit

        if sl_hit:
            return HitType.STOP_LOSS, levels.stop_loss, "stop_loss"
        if tp_hit:
            return HitType.TAKE_PROFIT, levels.take_profit, "take_profit"
        if now >= levels.time_exit:
            return HitType.TIME_EXIT, candle.close, "time_exit"
        return None

    def check_path_dependent_exits(
        self,
        levels: BarrierLevels,
        metrics: PathMetrics,
    ) -> Optional[Tuple[PathExitReason, str]]:
        """Return the first path-dependent exit rule that fires, if any."""
        s = self.settings.path_exits

        # Realized volatility far above what the entry ATR implied
        expected = expected_volatility(levels.current_atr, levels.entry_price, s.annualization)
        if expected > 0 and metrics.realized_volatility > expected * s.volatility_surprise_ratio:
            return (
                PathExitReason.VOLATILITY_SURPRISE,
                f"High realized volatility: {metrics.realized_volatility:.1%} "
                f"vs expected {expected:.1%}",
            )

        # Choppy path, no progress
        if (metrics.directional_efficiency < s.min_efficiency
                and metrics.path_length > s.min_path_length):
            return (
                PathExitReason.CHOPPY_PATH,
                f"Low path efficiency: {metrics.directional_efficiency:.1%} "
                f"over {metrics.path_length} bars",
            )

        # Adverse excursion close to the stop (inactive once profit is locked)
        stop_distance = -levels.stop_return
        if stop_distance > 0 and abs(metrics.max_adverse) > stop_distance * s.adverse_fraction:
            return (
                PathExitReason.ADVERSE_EXCURSION,
                f"Excessive adverse excursion: {metrics.max_adverse:.2%} "
                f"vs stop distance {stop_distance:.2%}",
            )

        # Time decay with an unrealized loss
        budget = levels.total_time_budget_hours
        if budget > 0:
            time_fraction = metrics.time_elapsed_hours / budget
            if time_fraction > s.time_decay_fraction and metrics.current_return < 0:
                return (
                    PathExitReason.TIME_DECAY,
                    f"Time decay exit: {time_fraction:.0%} time elapsed with "
                    f"return {metrics.current_return:.2%}",
                )

        return None

    def calculate_gamma_scaling(
        self,
        levels: BarrierLevels,
        metrics: PathMetrics,
        candle: Candle,
    ) -> Optional[BarrierLevels]:
        """
        Staged profit locking.

        Stage 1 (profit ratio >= first_stage_ratio): lock first_stage_lock of
        accrued profit, extend TP distance by first_stage_extension.
        Stage 2 (>= second_stage_ratio): second_stage_lock / second_stage_extension.

        Each stage fires at most once; the stop is only ever tightened.
        """
        g = self.settings.gamma
        target = levels.target_return
        if metrics.current_return <= 0 or target <= 0:
            return None

        profit_ratio = metrics.current_return / target

        if profit_ratio >= g.second_stage_ratio and levels.gamma_stage < 2:
            stage, lock, extension = 2, g.second_stage_lock, g.second_stage_extension
        elif g.first_stage_ratio <= profit_ratio < g.second_stage_ratio and levels.gamma_stage < 1:
            stage, lock, extension = 1, g.first_stage_lock, g.first_stage_extension
        else:
            return None

        entry = levels.entry_price
        locked_sl = entry + (candle.close - entry) * lock
        if levels.direction is SignalDirection.BUY:
            new_sl = max(levels.stop_loss, locked_sl)
        else:
            new_sl = min(levels.stop_loss, locked_sl)
        new_tp = entry + (levels.take_profit - entry) * extension

        logger.debug(
            f"Gamma stage {stage} {levels.regime}: ratio={profit_ratio:.2f} "
            f"SL {levels.stop_loss:.5f} -> {new_sl:.5f}, "
            f"TP {levels.take_profit:.5f} -> {new_tp:.5f}"
        )
        return replace(
            levels,
            stop_loss=new_sl,
            take_profit=new_tp,
            gamma_stage=stage,
            gamma_adjustments=levels.gamma_adjustments + 1,
        )
