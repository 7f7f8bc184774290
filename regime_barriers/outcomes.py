"""
Outcome Recorder

Appends terminal hit results to a regime's history and folds them into the
regime's BarrierStats with online updates (no replay).

Updates for one regime are serialized by the store's per-regime lock;
different regimes are recorded concurrently.
"""

import logging
from typing import Optional

from .models import BarrierHitResult, BarrierStats, HitType, HoldingPeriods
from .registry import RegimeConfigStore, copy_stats


logger = logging.getLogger(__name__)


def running_mean(old_mean: float, n: int, value: float) -> float:
    """
    Online mean update: (old_mean * (n - 1) + value) / n.

    n is the sample count including `value`. n <= 0 leaves the mean
    unchanged rather than dividing by zero.
    """
    if n <= 0:
        return old_mean
    return (old_mean * (n - 1) + value) / n


class OutcomeRecorder:
    """Folds BarrierHitResults into per-regime statistics."""

    def __init__(self, store: RegimeConfigStore):
        self.store = store

    def record(self, regime: str, hit_result: BarrierHitResult) -> BarrierStats:
        """
        Record a terminal outcome.

        Returns:
            Copy of the regime's statistics after the update
        """
        with self.store.locked(regime) as slot:
            slot.history.append(hit_result)
            stats = slot.stats

            stats.total_signals += 1
            stats.hit_patterns.increment(hit_result.hit_type)

            self._update_holding_periods(stats.avg_holding_periods, hit_result)
            self._update_volatility_efficiency(stats, hit_result)
            self._update_gamma_performance(stats, hit_result)

            result = copy_stats(stats)

        logger.debug(
            f"Recorded {hit_result.hit_type.value} for {regime} "
            f"(signal={hit_result.signal_id or '-'}, return={hit_result.return_percent:+.3f}%, "
            f"held={hit_result.holding_period:.1f}h, n={result.total_signals})"
        )
        return result

    # =========================================================================
    # ONLINE UPDATES
    # =========================================================================

    @staticmethod
    def _update_holding_periods(periods: HoldingPeriods, hit: BarrierHitResult) -> None:
        """
        Outcome classes: positive return -> winners; otherwise time exits
        -> time-outs; everything else -> losers.
        """
        if hit.return_percent > 0:
            periods.winners_count += 1
            periods.winners = running_mean(periods.winners, periods.winners_count, hit.holding_period)
        elif hit.hit_type is HitType.TIME_EXIT:
            periods.time_outs_count += 1
            periods.time_outs = running_mean(periods.time_outs, periods.time_outs_count, hit.holding_period)
        else:
            periods.losers_count += 1
            periods.losers = running_mean(periods.losers, periods.losers_count, hit.holding_period)

    @staticmethod
    def _update_volatility_efficiency(stats: BarrierStats, hit: BarrierHitResult) -> None:
        """
        Running mean of expected / realized volatility.

        1.0 means the entry ATR forecast matched the path; below 1.0 the
        path was more volatile than the barriers assumed.
        """
        expected: Optional[float] = hit.path_data.expected_volatility
        realized = hit.path_data.volatility_realized
        if not expected or realized <= 0:
            return
        stats.volatility_samples += 1
        stats.volatility_efficiency = running_mean(
            stats.volatility_efficiency, stats.volatility_samples, expected / realized
        )

    @staticmethod
    def _update_gamma_performance(stats: BarrierStats, hit: BarrierHitResult) -> None:
        """
        Count gamma adjustments and the return they added.

        Improvement is measured against the unadjusted barrier that would
        otherwise have closed the trade: the initial stop for stop-outs,
        the initial target for take-profits.
        """
        path = hit.path_data
        if path.gamma_exits <= 0:
            return

        stats.gamma_performance.total_exits += path.gamma_exits

        baseline = None
        if hit.hit_type is HitType.STOP_LOSS and path.initial_stop_return is not None:
            baseline = path.initial_stop_return * 100
        elif hit.hit_type is HitType.TAKE_PROFIT and path.initial_target_return is not None:
            baseline = path.initial_target_return * 100

        if baseline is not None:
            stats.gamma_performance.profit_improvement += hit.return_percent - baseline
