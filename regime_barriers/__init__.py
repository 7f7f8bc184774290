"""
Regime-Aware Triple-Barrier Exit Engine

Per-signal take-profit / stop-loss / time-exit management scaled to the
market regime and realized volatility, with path-dependent exits, staged
gamma profit-locking and per-regime calibration from outcome statistics.

Modules:
- models: records and enums
- config: settings dataclasses and built-in regime defaults
- registry: RegimeConfigStore (per-regime config, stats, history)
- volatility: ATR and volatility adjustment
- structure: support/resistance and swing levels
- barriers: BarrierCalculator
- path_monitor: PathMonitor
- outcomes: OutcomeRecorder
- calibration: Calibrator
- engine: BarrierEngine, OutcomeDispatcher
- logging_module: logging setup and audit loggers
"""

from .models import (
    SignalDirection,
    OrderFlow,
    HitType,
    PathExitReason,
    DecisionType,
    InvalidBarrierConfig,
    Candle,
    EntrySignal,
    MarketRegime,
    RegimeBarrierConfig,
    BarrierLevels,
    PathMetrics,
    PathSnapshot,
    BarrierHitResult,
    BarrierStats,
    Decision,
    ExecutionInstruction,
    ConfigAuditRecord,
)
from .config import EngineSettings, DEFAULT_SETTINGS, DEFAULT_REGIME_CONFIGS
from .registry import RegimeConfigStore
from .volatility import VolatilityEstimator
from .barriers import BarrierCalculator
from .path_monitor import PathMonitor, compute_path_metrics
from .outcomes import OutcomeRecorder
from .calibration import Calibrator
from .engine import BarrierEngine, OutcomeDispatcher
from .logging_module import (
    setup_logging,
    ConfigAuditLogger,
    DecisionLogger,
    StatsSummaryLogger,
    InMemoryAuditLog,
)

__version__ = "1.0.0"
