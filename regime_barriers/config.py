"""
Configuration for the regime-aware barrier engine.

Fixed thresholds live in frozen dataclasses. Per-regime barrier parameters
start from DEFAULT_REGIME_CONFIGS and are only changed through the
RegimeConfigStore (operator writes or calibration).
"""

from dataclasses import dataclass, field, asdict, replace
from pathlib import Path
from typing import Dict, Any, Tuple, Optional

import yaml

from .models import RegimeBarrierConfig


FALLBACK_REGIME = "ranging_tight"


@dataclass(frozen=True)
class VolatilitySettings:
    """ATR and volatility-adjustment parameters."""
    atr_lookback: int = 20
    fallback_atr: float = 0.001          # Used when candles are too sparse

    adjustment_floor: float = 0.5
    adjustment_cap: float = 2.0

    # Regime-type factors
    shock_factor: float = 1.5            # Wider barriers for shock events
    ranging_factor: float = 0.8          # Tighter barriers in ranges

    # Regime volatility bands (0-1 scale from the detector)
    high_volatility_band: float = 0.8
    high_volatility_factor: float = 1.2
    low_volatility_band: float = 0.3
    low_volatility_factor: float = 0.9

    # Session activity (UTC hours, inclusive)
    active_session_start: int = 7
    active_session_end: int = 16
    quiet_session_factor: float = 0.8

    # Holding-time multipliers by regime type
    shock_time_multiplier: float = 0.5
    trending_time_multiplier: float = 1.2
    consolidation_time_multiplier: float = 1.5


@dataclass(frozen=True)
class StructureSettings:
    """Support/resistance and swing snapping parameters."""
    sr_lookback: int = 100               # Candles scanned for S/R clusters
    bin_tolerance: float = 0.001         # Price bin width
    min_touches: int = 3                 # Touches for a significant level
    search_radius: float = 0.01          # Levels within 1% of the target
    snap_distance: float = 0.005         # Snap TP when within 0.5%
    sr_offset: float = 0.001             # Stay 0.1% in front of the level

    swing_lookback: int = 50
    swing_distance: float = 0.003        # Snap SL when within 0.3% of a swing
    swing_buffer: float = 0.001          # Place SL 0.1% beyond the swing

    order_flow_extension: float = 1.1


@dataclass(frozen=True)
class PathExitSettings:
    """Path-dependent exit thresholds."""
    volatility_surprise_ratio: float = 2.0
    min_efficiency: float = 0.3
    min_path_length: int = 20
    adverse_fraction: float = 0.8
    time_decay_fraction: float = 0.8
    annualization: int = 252


@dataclass(frozen=True)
class GammaSettings:
    """Staged profit-locking parameters."""
    first_stage_ratio: float = 0.5
    second_stage_ratio: float = 0.75
    first_stage_lock: float = 0.3        # Fraction of accrued profit locked
    second_stage_lock: float = 0.5
    first_stage_extension: float = 1.2   # TP distance multiplier
    second_stage_extension: float = 1.5


@dataclass(frozen=True)
class CalibrationSettings:
    """Closed-loop multiplier adaptation parameters."""
    min_samples: int = 20
    step: float = 0.05

    time_exit_high_rate: float = 0.40
    time_exit_low_rate: float = 0.10
    stop_loss_high_rate: float = 0.50
    stop_loss_low_rate: float = 0.20
    take_profit_low_rate: float = 0.20
    take_profit_high_rate: float = 0.60

    multiplier_band: Tuple[float, float] = (0.3, 6.0)
    time_exit_band: Tuple[float, float] = (0.5, 168.0)

    # Bound on total drift: value stays within [default / f, default * f]
    max_drift_factor: float = 3.0


def _regime(regime: str, tp: float, sl: float, hours: float,
            dynamic: bool, path: bool, gamma: bool) -> RegimeBarrierConfig:
    return RegimeBarrierConfig(
        regime=regime,
        take_profit_multiplier=tp,
        stop_loss_multiplier=sl,
        time_exit_hours=hours,
        dynamic_adjustment=dynamic,
        path_dependent_exits=path,
        gamma_scaling=gamma,
    )


# Built-in defaults, loaded at startup
DEFAULT_REGIME_CONFIGS: Dict[str, RegimeBarrierConfig] = {
    c.regime: c for c in (
        #        regime              TP   SL   hours  dynamic path   gamma
        _regime("trending_bullish", 3.0, 1.5, 48.0, True,  True,  True),
        _regime("trending_bearish", 3.0, 1.5, 36.0, True,  True,  True),
        _regime("ranging_tight",    2.0, 1.0, 12.0, True,  False, False),
        _regime("ranging_volatile", 2.5, 1.2, 8.0,  True,  True,  True),
        _regime("shock_up",         1.5, 0.8, 2.0,  False, True,  False),
        _regime("shock_down",       1.5, 0.8, 2.0,  False, True,  False),
        _regime("news_driven",      2.5, 1.0, 4.0,  True,  True,  True),
        _regime("breakout",         4.0, 1.2, 24.0, True,  True,  True),
        _regime("consolidation",    1.8, 0.9, 72.0, True,  False, False),
        _regime("liquidity_crisis", 1.0, 0.5, 6.0,  False, True,  False),
    )
}


@dataclass
class EngineSettings:
    """Master configuration - aggregates all settings."""
    volatility: VolatilitySettings = field(default_factory=VolatilitySettings)
    structure: StructureSettings = field(default_factory=StructureSettings)
    path_exits: PathExitSettings = field(default_factory=PathExitSettings)
    gamma: GammaSettings = field(default_factory=GammaSettings)
    calibration: CalibrationSettings = field(default_factory=CalibrationSettings)

    fallback_regime: str = FALLBACK_REGIME
    regimes: Dict[str, RegimeBarrierConfig] = field(
        default_factory=lambda: {k: replace(v) for k, v in DEFAULT_REGIME_CONFIGS.items()}
    )

    # Audit / logging
    logs_dir: str = "logs"
    verbose: bool = False

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'EngineSettings':
        """Build settings from a plain mapping (as loaded from YAML)."""
        calibration = dict(config.get('calibration', {}))
        for key in ('multiplier_band', 'time_exit_band'):
            if key in calibration:
                calibration[key] = tuple(calibration[key])

        regimes = {k: replace(v) for k, v in DEFAULT_REGIME_CONFIGS.items()}
        # New regimes start from the built-in fallback config
        template = DEFAULT_REGIME_CONFIGS.get(
            config.get('fallback_regime', FALLBACK_REGIME), DEFAULT_REGIME_CONFIGS[FALLBACK_REGIME]
        )
        for name, overrides in (config.get('regimes') or {}).items():
            base = regimes.get(name) or replace(template, regime=name)
            regimes[name] = replace(base, **(overrides or {}))

        return cls(
            volatility=VolatilitySettings(**config.get('volatility', {})),
            structure=StructureSettings(**config.get('structure', {})),
            path_exits=PathExitSettings(**config.get('path_exits', {})),
            gamma=GammaSettings(**config.get('gamma', {})),
            calibration=CalibrationSettings(**calibration),
            fallback_regime=config.get('fallback_regime', FALLBACK_REGIME),
            regimes=regimes,
            logs_dir=config.get('logs_dir', 'logs'),
            verbose=bool(config.get('verbose', False)),
        )

    @classmethod
    def from_yaml(cls, path: str) -> 'EngineSettings':
        """Load settings from YAML file."""
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
        return cls.from_dict(config)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'volatility': asdict(self.volatility),
            'structure': asdict(self.structure),
            'path_exits': asdict(self.path_exits),
            'gamma': asdict(self.gamma),
            'calibration': {
                k: list(v) if isinstance(v, tuple) else v
                for k, v in asdict(self.calibration).items()
            },
            'fallback_regime': self.fallback_regime,
            'regimes': {
                name: {k: v for k, v in cfg.to_dict().items() if k != 'regime'}
                for name, cfg in self.regimes.items()
            },
            'logs_dir': self.logs_dir,
            'verbose': self.verbose,
        }

    def to_yaml(self, path: Optional[str] = None) -> str:
        """Dump settings as YAML; also write to path when given."""
        text = yaml.safe_dump(self.to_dict(), sort_keys=False)
        if path:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            Path(path).write_text(text)
        return text


# Default settings instance
DEFAULT_SETTINGS = EngineSettings()
