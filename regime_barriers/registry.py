"""
Regime Config Store

Explicitly owned registry of per-regime barrier configuration, outcome
statistics and hit history.

Each regime is one logical resource guarded by one lock: every
read-modify-write of a regime's config or stats happens inside
``store.locked(regime)``. Different regimes never contend.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Iterator, Callable, Any

from .config import EngineSettings, DEFAULT_SETTINGS, DEFAULT_REGIME_CONFIGS
from .models import (
    RegimeBarrierConfig,
    BarrierStats,
    BarrierHitResult,
    ConfigAuditRecord,
    InvalidBarrierConfig,
)


logger = logging.getLogger(__name__)


@dataclass
class RegimeSlot:
    """Config, stats and history for one regime, behind one lock."""
    config: RegimeBarrierConfig
    default: RegimeBarrierConfig
    stats: BarrierStats
    history: List[BarrierHitResult] = field(default_factory=list)
    lock: threading.RLock = field(default_factory=threading.RLock)


class RegimeConfigStore:
    """
    Process-wide registry keyed by regime identifier.

    Lifecycle: initialized from the settings at startup (built-in defaults
    plus validated overrides, which also become each regime's baseline);
    mutated only through update_config() or the Calibrator.
    """

    def __init__(
        self,
        settings: EngineSettings = DEFAULT_SETTINGS,
        audit_sink: Optional[Callable[[ConfigAuditRecord], Any]] = None,
    ):
        self.settings = settings
        self.fallback_regime = settings.fallback_regime
        self._audit_sink = audit_sink
        self._audit_routed = False
        self._slots: Dict[str, RegimeSlot] = {}
        self._registry_lock = threading.Lock()

        band = settings.calibration.multiplier_band
        for name, cfg in settings.regimes.items():
            cfg = self._validated_startup_config(name, cfg, band)
            if cfg is None:
                continue
            # The configured value is the regime's baseline for resets and drift
            self._slots[name] = self._new_slot(replace(cfg), replace(cfg))

        if self.fallback_regime not in self._slots:
            raise ValueError(f"Fallback regime '{self.fallback_regime}' has no configuration")

    @staticmethod
    def _validated_startup_config(name: str, cfg: RegimeBarrierConfig,
                                  band) -> Optional[RegimeBarrierConfig]:
        """
        Startup configs go through the same validation as update_config().

        A rejected override falls back to the built-in config for that
        regime; a rejected regime with no valid built-in is not registered.
        """
        try:
            cfg.validate(*band)
            return cfg
        except InvalidBarrierConfig as e:
            logger.warning(f"Rejected startup config for {name}: {e}")

        builtin = DEFAULT_REGIME_CONFIGS.get(name)
        if builtin is None:
            return None
        try:
            builtin.validate(*band)
        except InvalidBarrierConfig as e:
            logger.warning(f"Built-in config for {name} also rejected: {e}")
            return None
        logger.warning(f"Using built-in config for {name}")
        return replace(builtin)

    @staticmethod
    def _new_slot(config: RegimeBarrierConfig, default: RegimeBarrierConfig) -> RegimeSlot:
        return RegimeSlot(
            config=config,
            default=default,
            stats=BarrierStats(regime=config.regime),
        )

    def _slot(self, regime: str, create: bool = False) -> RegimeSlot:
        """
        Resolve a regime slot.

        Unknown regimes resolve to the fallback slot unless create=True,
        in which case a slot is added with a copy of the fallback config.
        """
        slot = self._slots.get(regime)
        if slot is not None:
            return slot
        if not create:
            return self._slots[self.fallback_regime]

        with self._registry_lock:
            slot = self._slots.get(regime)
            if slot is None:
                base = self._slots[self.fallback_regime]
                slot = self._new_slot(
                    replace(base.default, regime=regime),
                    replace(base.default, regime=regime),
                )
                self._slots[regime] = slot
                logger.info(f"Registered regime '{regime}' with {self.fallback_regime} defaults")
            return slot

    # ═══════════════════════════════════════════════════════════════════════
    # SYNCHRONIZATION
    # ═══════════════════════════════════════════════════════════════════════

    @contextmanager
    def locked(self, regime: str) -> Iterator[RegimeSlot]:
        """
        Hold the regime's lock for a read-modify-write.

        Yields the live slot; callers may mutate slot.config and
        slot.stats while inside the block.
        """
        slot = self._slot(regime, create=True)
        with slot.lock:
            yield slot

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIG ACCESS
    # ═══════════════════════════════════════════════════════════════════════

    def get_config(self, regime: str) -> RegimeBarrierConfig:
        """Copy of the regime's config (fallback config for unknown regimes)."""
        slot = self._slot(regime)
        with slot.lock:
            return replace(slot.config)

    def default_config(self, regime: str) -> RegimeBarrierConfig:
        slot = self._slot(regime)
        return replace(slot.default)

    def update_config(self, regime: str, source: str = "operator", **changes) -> bool:
        """
        Validate and apply a configuration write.

        Invalid writes are rejected and the prior configuration retained.

        Returns:
            True if applied, False if rejected
        """
        band = self.settings.calibration.multiplier_band
        with self.locked(regime) as slot:
            try:
                candidate = replace(slot.config, **changes)
                candidate.validate(*band)
            except (InvalidBarrierConfig, TypeError) as e:
                logger.warning(f"Rejected config write for {regime}: {e}")
                return False

            old = slot.config
            slot.config = candidate
            snapshot = slot.stats.snapshot()

        for name in changes:
            old_value = getattr(old, name)
            new_value = getattr(candidate, name)
            if old_value != new_value:
                self.emit_audit(ConfigAuditRecord(
                    regime=regime,
                    parameter=name,
                    old_value=old_value,
                    new_value=new_value,
                    timestamp=datetime.now(timezone.utc),
                    source=source,
                    triggering_stat_snapshot=snapshot,
                ))
        return True

    def emit_audit(self, record: ConfigAuditRecord) -> None:
        """Log an audit record and forward it to the audit sink."""
        logger.info(
            f"CONFIG_CHANGE regime={record.regime} param={record.parameter} "
            f"{record.old_value} -> {record.new_value} source={record.source}"
        )
        with self._registry_lock:
            sink = self._audit_sink
        if sink is None:
            return
        try:
            sink(record)
        except Exception as e:
            logger.error(f"Audit sink failed for {record.regime}/{record.parameter}: {e}")

    def route_audit(self, dispatcher) -> None:
        """
        Deliver audit records through a queued dispatcher instead of calling
        the sink on the caller's thread.

        The current sink becomes one of the dispatcher's audit sinks. Only
        the first call has an effect.
        """
        with self._registry_lock:
            if self._audit_routed:
                return
            if self._audit_sink is not None:
                dispatcher.audit_sinks.append(self._audit_sink)
            self._audit_sink = dispatcher.submit_audit
            self._audit_routed = True

    # ═══════════════════════════════════════════════════════════════════════
    # STATS / HISTORY ACCESS
    # ═══════════════════════════════════════════════════════════════════════

    def get_stats(self, regime: str) -> BarrierStats:
        """Deep copy of the regime's statistics."""
        slot = self._slots.get(regime)
        if slot is None:
            return BarrierStats(regime=regime)
        with slot.lock:
            return copy_stats(slot.stats)

    def all_stats(self) -> Dict[str, BarrierStats]:
        """Statistics for every regime that has recorded outcomes."""
        return {
            name: self.get_stats(name)
            for name in list(self._slots)
            if self._slots[name].stats.total_signals > 0
        }

    def get_history(self, regime: Optional[str] = None) -> List[BarrierHitResult]:
        if regime is not None:
            slot = self._slots.get(regime)
            if slot is None:
                return []
            with slot.lock:
                return list(slot.history)

        history: List[BarrierHitResult] = []
        for slot in list(self._slots.values()):
            with slot.lock:
                history.extend(slot.history)
        return history

    @property
    def regimes(self) -> List[str]:
        return sorted(self._slots)

    # ═══════════════════════════════════════════════════════════════════════
    # OPERATOR ACTIONS
    # ═══════════════════════════════════════════════════════════════════════

    def reset_stats(self, regime: str) -> None:
        """Explicit operator reset of a regime's statistics and history."""
        with self.locked(regime) as slot:
            slot.stats = BarrierStats(regime=regime)
            slot.history.clear()
        logger.warning(f"Statistics reset for {regime}")

    def reset_to_defaults(self, regime: str) -> None:
        """
        Restore the regime's baseline configuration: the value it was
        configured with at startup (settings overrides included).
        """
        default = self.default_config(regime)
        changes = {
            k: v for k, v in default.to_dict().items() if k != 'regime'
        }
        self.update_config(regime, source="reset", **changes)


def copy_stats(stats: BarrierStats) -> BarrierStats:
    return replace(
        stats,
        hit_patterns=replace(stats.hit_patterns),
        avg_holding_periods=replace(stats.avg_holding_periods),
        gamma_performance=replace(stats.gamma_performance),
    )
