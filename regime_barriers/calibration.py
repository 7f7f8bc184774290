"""
Calibrator

Slow closed-loop adaptation of a regime's multipliers from its cumulative
hit-type distribution.

RULES (each applied independently, fixed multiplicative step):
- time-exit rate  > 40% -> shrink time_exit_hours      ; < 10% -> grow
- stop-loss rate  > 50% -> grow stop_loss_multiplier    ; < 20% -> shrink
- take-profit rate < 20% -> shrink take_profit_multiplier; > 60% -> grow

BOUNDS (applied in the direction of a nudge only):
- multipliers within multiplier_band, hours within time_exit_band
- total drift within [baseline / max_drift_factor, baseline * max_drift_factor]

No-op until the regime has min_samples outcomes. Every change produces a
ConfigAuditRecord with the before/after values and the triggering stats.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Tuple

from .config import EngineSettings, DEFAULT_SETTINGS
from .models import ConfigAuditRecord, HitType, InvalidBarrierConfig
from .registry import RegimeConfigStore
from .volatility import utc_now


logger = logging.getLogger(__name__)


class Calibrator:
    """Per-regime multiplier tuning, invoked after every recorded outcome."""

    def __init__(
        self,
        store: RegimeConfigStore,
        settings: EngineSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock

    def _nudge(self, rate: float, high: float, low: float, grow_when_high: bool) -> float:
        """Step factor for one rule: 1 - step, 1 + step or 1.0."""
        step = self.settings.calibration.step
        if rate > high:
            return 1 + step if grow_when_high else 1 - step
        if rate < low:
            return 1 - step if grow_when_high else 1 + step
        return 1.0

    def _bounds(self, default: float, band: Tuple[float, float]) -> Tuple[float, float]:
        drift = self.settings.calibration.max_drift_factor
        low = max(band[0], default / drift)
        high = min(band[1], default * drift)
        return low, high

    @staticmethod
    def _step(value: float, factor: float, bounds: Tuple[float, float]) -> float:
        """
        Apply one nudge. The bounds only stop movement in the nudge's
        direction: a value already outside them is never pulled back in
        more than one step, and an unchanged factor leaves it untouched.
        """
        low, high = bounds
        stepped = value * factor
        if factor > 1:
            return max(value, min(stepped, high))
        if factor < 1:
            return min(value, max(stepped, low))
        return value

    def maybe_recalibrate(self, regime: str) -> List[ConfigAuditRecord]:
        """
        Nudge the regime's multipliers if enough samples exist.

        Returns:
            Audit records for every parameter that changed (empty if none)
        """
        c = self.settings.calibration

        with self.store.locked(regime) as slot:
            stats = slot.stats
            if stats.total_signals < c.min_samples:
                return []

            tp_rate = stats.hit_rate(HitType.TAKE_PROFIT)
            sl_rate = stats.hit_rate(HitType.STOP_LOSS)
            te_rate = stats.hit_rate(HitType.TIME_EXIT)

            # Too many time exits: holding budget too long relative to moves
            time_factor = self._nudge(te_rate, c.time_exit_high_rate, c.time_exit_low_rate, False)
            # Too many stop-outs: stop too tight
            sl_factor = self._nudge(sl_rate, c.stop_loss_high_rate, c.stop_loss_low_rate, True)
            # Too few targets reached: target too ambitious
            tp_factor = self._nudge(tp_rate, c.take_profit_high_rate, c.take_profit_low_rate, True)

            old = slot.config
            default = slot.default

            candidate = replace(
                old,
                time_exit_hours=self._step(
                    old.time_exit_hours, time_factor,
                    self._bounds(default.time_exit_hours, c.time_exit_band)
                ),
                stop_loss_multiplier=self._step(
                    old.stop_loss_multiplier, sl_factor,
                    self._bounds(default.stop_loss_multiplier, c.multiplier_band)
                ),
                take_profit_multiplier=self._step(
                    old.take_profit_multiplier, tp_factor,
                    self._bounds(default.take_profit_multiplier, c.multiplier_band)
                ),
            )

            try:
                candidate.validate(*c.multiplier_band)
            except InvalidBarrierConfig as e:
                logger.warning(f"Calibration rejected for {regime}: {e}")
                return []

            slot.config = candidate
            snapshot = stats.snapshot()

        now = self.clock()
        records = []
        for name in ('take_profit_multiplier', 'stop_loss_multiplier', 'time_exit_hours'):
            before = getattr(old, name)
            after = getattr(candidate, name)
            if before == after:
                continue
            records.append(ConfigAuditRecord(
                regime=regime,
                parameter=name,
                old_value=before,
                new_value=after,
                timestamp=now,
                source="calibration",
                triggering_stat_snapshot=snapshot,
            ))

        if records:
            logger.info(
                f"Recalibrated {regime} (n={snapshot['total_signals']}): "
                f"TP {old.take_profit_multiplier:.3f}->{candidate.take_profit_multiplier:.3f}, "
                f"SL {old.stop_loss_multiplier:.3f}->{candidate.stop_loss_multiplier:.3f}, "
                f"Time {old.time_exit_hours:.2f}h->{candidate.time_exit_hours:.2f}h"
            )
            for record in records:
                self.store.emit_audit(record)

        return records
