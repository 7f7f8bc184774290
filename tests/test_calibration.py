"""
Calibrator tests: sample threshold, rule directions, band and drift
bounds, operator overrides, convergence and audit records.
"""

from datetime import timedelta

import pytest

from regime_barriers.calibration import Calibrator
from regime_barriers.config import EngineSettings, CalibrationSettings
from regime_barriers.logging_module import InMemoryAuditLog
from regime_barriers.models import BarrierHitResult, HitType, PathSnapshot
from regime_barriers.outcomes import OutcomeRecorder
from regime_barriers.registry import RegimeConfigStore

from conftest import NOW


REGIME = "trending_bullish"


def make_hit(hit_type):
    winner = hit_type is HitType.TAKE_PROFIT
    return BarrierHitResult(
        hit_type=hit_type,
        hit_time=NOW + timedelta(hours=5),
        hit_price=1.17,
        holding_period=5.0,
        return_percent=0.25 if winner else -0.12,
        path_data=PathSnapshot(max_favorable=0.0, max_adverse=0.0, volatility_realized=0.0),
    )


def pattern(n, stop_every=None, take_every=None, time_every=None):
    """
    Deterministic hit sequence: index i is a stop-loss when i % 10 is in
    stop_every, and so on; everything else is a path-dependent exit.
    """
    stop_every = stop_every or set()
    take_every = take_every or set()
    time_every = time_every or set()
    hits = []
    for i in range(n):
        k = i % 10
        if k in stop_every:
            hits.append(HitType.STOP_LOSS)
        elif k in take_every:
            hits.append(HitType.TAKE_PROFIT)
        elif k in time_every:
            hits.append(HitType.TIME_EXIT)
        else:
            hits.append(HitType.PATH_DEPENDENT_EXIT)
    return hits


class TestCalibrator:

    def setup_method(self):
        self.audit = InMemoryAuditLog()
        self.settings = EngineSettings()
        self.store = RegimeConfigStore(self.settings, audit_sink=self.audit)
        self.recorder = OutcomeRecorder(self.store)
        self.calibrator = Calibrator(self.store, self.settings, clock=lambda: NOW)

    def feed(self, hit_types, calibrate=True):
        """Record hits, calibrating after each like the engine does."""
        history = []
        for hit_type in hit_types:
            self.recorder.record(REGIME, make_hit(hit_type))
            if calibrate:
                self.calibrator.maybe_recalibrate(REGIME)
            history.append(self.store.get_config(REGIME))
        return history

    def test_noop_below_min_samples(self):
        history = self.feed([HitType.STOP_LOSS] * 19)
        assert all(c.stop_loss_multiplier == 1.5 for c in history)
        assert self.audit.config_changes == []

    def test_first_adjustment_at_twenty_samples(self):
        history = self.feed([HitType.STOP_LOSS] * 20)
        assert history[18].stop_loss_multiplier == 1.5
        assert history[19].stop_loss_multiplier == pytest.approx(1.5 * 1.05)

    def test_rule_directions(self):
        # 60% stops, 0% targets, 0% time exits
        self.feed(pattern(20, stop_every={0, 1, 2, 3, 4, 5}), calibrate=False)
        records = self.calibrator.maybe_recalibrate(REGIME)

        cfg = self.store.get_config(REGIME)
        assert cfg.stop_loss_multiplier == pytest.approx(1.5 * 1.05)
        assert cfg.take_profit_multiplier == pytest.approx(3.0 * 0.95)
        assert cfg.time_exit_hours == pytest.approx(48.0 * 1.05)
        assert {r.parameter for r in records} == {
            'stop_loss_multiplier', 'take_profit_multiplier', 'time_exit_hours'
        }

    def test_opposite_rule_directions(self):
        # 10% stops, 70% targets, no time exits
        self.feed(pattern(20, stop_every={0}, take_every={1, 2, 3, 4, 5, 6, 7}), calibrate=False)
        self.calibrator.maybe_recalibrate(REGIME)

        cfg = self.store.get_config(REGIME)
        assert cfg.stop_loss_multiplier == pytest.approx(1.5 * 0.95)
        assert cfg.take_profit_multiplier == pytest.approx(3.0 * 1.05)
        assert cfg.time_exit_hours == pytest.approx(48.0 * 1.05)

    def test_many_time_exits_shrink_time_budget(self):
        self.feed(pattern(20, stop_every={0, 1, 2}, take_every={3, 4}, time_every={5, 6, 7, 8, 9}),
                  calibrate=False)
        self.calibrator.maybe_recalibrate(REGIME)

        cfg = self.store.get_config(REGIME)
        assert cfg.time_exit_hours == pytest.approx(48.0 * 0.95)
        # 30% stops and 20% targets are inside the neutral bands
        assert cfg.stop_loss_multiplier == 1.5
        assert cfg.take_profit_multiplier == 3.0

    def test_neutral_rates_change_nothing(self):
        self.feed(pattern(20, stop_every={0, 1, 2}, take_every={3, 4, 5}, time_every={6, 7}),
                  calibrate=False)
        records = self.calibrator.maybe_recalibrate(REGIME)
        assert records == []
        assert self.store.get_config(REGIME) == self.store.default_config(REGIME)

    def test_convergence_under_seventy_percent_stops(self):
        """
        100 outcomes at a 70% stop-loss rate: the stop multiplier rises
        monotonically, stays in the band, then holds once rates are neutral.
        """
        hits = pattern(100, stop_every={0, 1, 2, 3, 4, 5, 6}, take_every={7, 8, 9})
        history = self.feed(hits)

        sl = [c.stop_loss_multiplier for c in history]
        assert all(b >= a for a, b in zip(sl, sl[1:]))
        assert sl[-1] > 1.5

        low, high = self.settings.calibration.multiplier_band
        drift = self.settings.calibration.max_drift_factor
        assert all(low <= v <= min(high, 1.5 * drift) + 1e-12 for v in sl)
        assert sl[-1] == pytest.approx(1.5 * drift)

        # Targets only until the cumulative stop rate is back in [20%, 50%]
        self.feed([HitType.TAKE_PROFIT] * 41)
        assert self.store.get_stats(REGIME).hit_rate(HitType.STOP_LOSS) <= 0.5

        settled = self.store.get_config(REGIME).stop_loss_multiplier
        after = self.feed(pattern(50, stop_every={7, 8, 9}, take_every={0, 1, 2, 3},
                                  time_every={4, 5}))
        assert all(c.stop_loss_multiplier == settled for c in after)

    def test_single_outlier_does_not_reset(self):
        self.feed(pattern(40, stop_every={0, 1, 2, 3, 4, 5, 6}, take_every={7, 8, 9}))
        before = self.store.get_config(REGIME).stop_loss_multiplier

        self.feed([HitType.TAKE_PROFIT])

        after = self.store.get_config(REGIME).stop_loss_multiplier
        assert after >= before
        assert after > 1.5

    def test_band_clamp(self):
        settings = EngineSettings(calibration=CalibrationSettings(
            multiplier_band=(0.3, 4.0), max_drift_factor=10.0
        ))
        store = RegimeConfigStore(settings)
        recorder = OutcomeRecorder(store)
        calibrator = Calibrator(store, settings)

        for _ in range(60):
            recorder.record(REGIME, make_hit(HitType.STOP_LOSS))
            calibrator.maybe_recalibrate(REGIME)

        assert store.get_config(REGIME).stop_loss_multiplier == 4.0

    def test_time_exit_band_clamp(self):
        settings = EngineSettings(calibration=CalibrationSettings(time_exit_band=(40.0, 168.0)))
        store = RegimeConfigStore(settings)
        recorder = OutcomeRecorder(store)
        calibrator = Calibrator(store, settings)

        for _ in range(30):
            recorder.record(REGIME, make_hit(HitType.TIME_EXIT))
            calibrator.maybe_recalibrate(REGIME)

        assert store.get_config(REGIME).time_exit_hours == 40.0

    def test_audit_records(self):
        self.feed([HitType.STOP_LOSS] * 20)

        changes = self.audit.changes_for(REGIME, 'stop_loss_multiplier')
        assert len(changes) == 1
        record = changes[0]
        assert record.old_value == 1.5
        assert record.new_value == pytest.approx(1.575)
        assert record.source == "calibration"
        assert record.timestamp == NOW
        assert record.triggering_stat_snapshot['total_signals'] == 20
        assert record.triggering_stat_snapshot['stop_loss_rate'] == 1.0

    def test_other_regimes_untouched(self):
        self.feed([HitType.STOP_LOSS] * 25)
        assert self.store.get_config("trending_bearish").stop_loss_multiplier == 1.5


# =============================================================================
# OPERATOR OVERRIDES
# =============================================================================

class TestOperatorOverrides:
    """Operator writes inside the band but beyond the drift guard."""

    REGIME = "liquidity_crisis"  # built-in TP 1.0, drift guard caps it at 3.0

    def setup_method(self):
        self.settings = EngineSettings()
        self.store = RegimeConfigStore(self.settings)
        self.recorder = OutcomeRecorder(self.store)
        self.calibrator = Calibrator(self.store, self.settings, clock=lambda: NOW)
        assert self.store.update_config(self.REGIME, take_profit_multiplier=6.0)

    def record(self, hit_types):
        for hit_type in hit_types:
            self.recorder.record(self.REGIME, make_hit(hit_type))

    def test_neutral_rates_keep_override(self):
        self.record(pattern(20, stop_every={0, 1, 2}, take_every={3, 4, 5}, time_every={6, 7}))

        records = self.calibrator.maybe_recalibrate(self.REGIME)

        assert records == []
        assert self.store.get_config(self.REGIME).take_profit_multiplier == 6.0

    def test_shrink_moves_one_step(self):
        # No targets reached: shrink, but only by one step
        self.record(pattern(20, stop_every={0, 1, 2, 3}, time_every={4, 5}))

        self.calibrator.maybe_recalibrate(self.REGIME)

        assert self.store.get_config(self.REGIME).take_profit_multiplier == pytest.approx(5.7)

    def test_growth_beyond_guard_blocked(self):
        self.record(pattern(20, stop_every={0, 1, 2}, take_every={3, 4, 5, 6, 7, 8, 9}))

        self.calibrator.maybe_recalibrate(self.REGIME)

        assert self.store.get_config(self.REGIME).take_profit_multiplier == 6.0


class TestStep:

    @pytest.mark.parametrize("value,factor,expected", [
        (1.0, 1.05, 1.05),
        (2.9, 1.05, 3.0),    # capped at the upper bound
        (3.5, 1.05, 3.5),    # already above: no growth
        (3.5, 0.95, 3.325),  # already above: one step back
        (0.5, 0.95, 0.5),    # at the lower bound
        (0.2, 1.05, 0.21),   # below the band: grows one step
        (5.0, 1.0, 5.0),     # no rule fired
    ])
    def test_step(self, value, factor, expected):
        assert Calibrator._step(value, factor, (0.5, 3.0)) == pytest.approx(expected)
