"""
Data model for the regime-aware triple-barrier exit engine.

RECORD TYPES:
- Candle / EntrySignal / MarketRegime: inputs from market data and the
  signal generator
- RegimeBarrierConfig: per-regime tunable barrier parameters
- BarrierLevels: per-signal take-profit / stop-loss / time-exit levels
- PathMetrics: path statistics derived on every evaluation
- BarrierHitResult: append-only terminal outcome
- BarrierStats: per-regime aggregate of outcomes
- Decision / ExecutionInstruction / ConfigAuditRecord: engine outputs
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List


# =============================================================================
# ENUMS
# =============================================================================

class SignalDirection(Enum):
    """Direction of the entry signal."""
    BUY = "buy"
    SELL = "sell"

    @property
    def sign(self) -> int:
        return 1 if self is SignalDirection.BUY else -1


class OrderFlow(Enum):
    """Order-flow bias reported by the regime detector."""
    BUYING = "buying"
    SELLING = "selling"
    NEUTRAL = "neutral"


class HitType(Enum):
    """Terminal outcome categories."""
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    TIME_EXIT = "time_exit"
    PATH_DEPENDENT_EXIT = "path_dependent_exit"


class PathExitReason(Enum):
    """Which path-dependent rule fired."""
    VOLATILITY_SURPRISE = "volatility_surprise"
    CHOPPY_PATH = "choppy_path"
    ADVERSE_EXCURSION = "adverse_excursion"
    TIME_DECAY = "time_decay"


class DecisionType(Enum):
    """Result of one evaluation pass."""
    CONTINUE = "continue"
    EXIT = "exit"
    ADJUST = "adjust"


class InvalidBarrierConfig(ValueError):
    """Raised when a regime configuration fails validation."""


# =============================================================================
# INPUTS
# =============================================================================

@dataclass(frozen=True)
class Candle:
    """
    Single OHLC candle - immutable.
    """
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def __post_init__(self):
        if self.high < self.low:
            raise ValueError(f"Invalid candle: high={self.high} < low={self.low}")


@dataclass(frozen=True)
class EntrySignal:
    """
    Directional entry produced by the signal generator.

    The barrier engine only consumes these fields; it never decides
    whether a position should be opened.
    """
    symbol: str
    direction: SignalDirection
    entry_price: float
    regime_type: str
    regime_confidence: float = 0.5
    order_flow: OrderFlow = OrderFlow.NEUTRAL
    regime_volatility: float = 0.5  # 0-1 scale


@dataclass(frozen=True)
class MarketRegime:
    """Regime classification the barrier calculation is scaled to."""
    type: str
    confidence: float = 0.5
    order_flow: OrderFlow = OrderFlow.NEUTRAL
    volatility: float = 0.5

    @classmethod
    def from_signal(cls, signal: EntrySignal) -> 'MarketRegime':
        return cls(
            type=signal.regime_type,
            confidence=signal.regime_confidence,
            order_flow=signal.order_flow,
            volatility=signal.regime_volatility,
        )


# =============================================================================
# REGIME CONFIGURATION
# =============================================================================

@dataclass
class RegimeBarrierConfig:
    """
    Tunable barrier configuration for one market regime.

    Barrier distance = multiplier x volatility-adjusted ATR.
    """
    regime: str
    take_profit_multiplier: float
    stop_loss_multiplier: float
    time_exit_hours: float
    dynamic_adjustment: bool = True
    path_dependent_exits: bool = True
    gamma_scaling: bool = True

    def validate(self, min_multiplier: float = 0.3, max_multiplier: float = 6.0) -> None:
        """
        Raise InvalidBarrierConfig if any value is outside the sane band.
        """
        for name in ("take_profit_multiplier", "stop_loss_multiplier"):
            value = getattr(self, name)
            if not (min_multiplier <= value <= max_multiplier):
                raise InvalidBarrierConfig(
                    f"{self.regime}: {name}={value} outside [{min_multiplier}, {max_multiplier}]"
                )
        if not self.time_exit_hours > 0:
            raise InvalidBarrierConfig(
                f"{self.regime}: time_exit_hours must be positive, got {self.time_exit_hours}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# BARRIER LEVELS
# =============================================================================

@dataclass(frozen=True)
class BarrierLevels:
    """
    Barrier levels for a single open signal.

    INVARIANT: for BUY, take_profit > entry_price > stop_loss at creation;
    reversed for SELL. time_exit is strictly after entry_time.

    Gamma scaling produces a replacement instance rather than mutating
    this one, so evaluations over a given instance are repeatable.
    """
    entry_price: float
    take_profit: float
    stop_loss: float
    time_exit: datetime
    entry_time: datetime
    current_atr: float
    regime: str
    confidence: float
    direction: SignalDirection
    gamma_stage: int = 0
    gamma_adjustments: int = 0

    @property
    def target_return(self) -> float:
        """Fractional distance from entry to take-profit."""
        if self.entry_price <= 0:
            return 0.0
        return abs(self.take_profit - self.entry_price) / self.entry_price

    @property
    def stop_return(self) -> float:
        """
        Signed fractional return if the stop were hit now.

        Negative while the stop is on the losing side of entry, positive
        once gamma scaling has locked profit.
        """
        if self.entry_price <= 0:
            return 0.0
        return self.direction.sign * (self.stop_loss - self.entry_price) / self.entry_price

    @property
    def total_time_budget_hours(self) -> float:
        return (self.time_exit - self.entry_time).total_seconds() / 3600.0

    def is_ordered(self) -> bool:
        """Check the TP/entry/SL ordering invariant for the signal direction."""
        if self.direction is SignalDirection.BUY:
            return self.take_profit > self.entry_price > self.stop_loss
        return self.take_profit < self.entry_price < self.stop_loss

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_price": self.entry_price,
            "take_profit": self.take_profit,
            "stop_loss": self.stop_loss,
            "time_exit": self.time_exit.isoformat(),
            "entry_time": self.entry_time.isoformat(),
            "current_atr": self.current_atr,
            "regime": self.regime,
            "confidence": self.confidence,
            "direction": self.direction.value,
            "gamma_stage": self.gamma_stage,
            "gamma_adjustments": self.gamma_adjustments,
        }


# =============================================================================
# PATH METRICS
# =============================================================================

@dataclass(frozen=True)
class PathMetrics:
    """Statistics of the price path since entry. Recomputed, never stored."""
    max_favorable: float = 0.0
    max_adverse: float = 0.0
    realized_volatility: float = 0.0
    directional_efficiency: float = 0.0
    current_return: float = 0.0
    path_length: int = 0
    time_elapsed_hours: float = 0.0


# =============================================================================
# OUTCOMES
# =============================================================================

@dataclass(frozen=True)
class PathSnapshot:
    """Path data captured at the moment a signal terminated."""
    max_favorable: float
    max_adverse: float
    volatility_realized: float
    gamma_exits: int = 0
    expected_volatility: Optional[float] = None
    initial_stop_return: Optional[float] = None
    initial_target_return: Optional[float] = None


@dataclass(frozen=True)
class BarrierHitResult:
    """
    Terminal outcome of a signal. Append-only.
    """
    hit_type: HitType
    hit_time: datetime
    hit_price: float
    holding_period: float  # hours
    return_percent: float
    path_data: PathSnapshot
    signal_id: str = ""
    reason: str = ""

    @property
    def is_winner(self) -> bool:
        return self.return_percent > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "hit_type": self.hit_type.value,
            "hit_time": self.hit_time.isoformat(),
            "hit_price": self.hit_price,
            "holding_period": self.holding_period,
            "return_percent": self.return_percent,
            "reason": self.reason,
            "path_data": asdict(self.path_data),
        }


@dataclass
class HitPatterns:
    """Counts by hit type."""
    take_profit: int = 0
    stop_loss: int = 0
    time_exit: int = 0
    path_dependent: int = 0

    def increment(self, hit_type: HitType) -> None:
        if hit_type is HitType.TAKE_PROFIT:
            self.take_profit += 1
        elif hit_type is HitType.STOP_LOSS:
            self.stop_loss += 1
        elif hit_type is HitType.TIME_EXIT:
            self.time_exit += 1
        else:
            self.path_dependent += 1


@dataclass
class HoldingPeriods:
    """Running mean holding period (hours) per outcome class."""
    winners: float = 0.0
    losers: float = 0.0
    time_outs: float = 0.0

    # Sample count behind each running mean
    winners_count: int = 0
    losers_count: int = 0
    time_outs_count: int = 0


@dataclass
class GammaPerformance:
    total_exits: int = 0
    profit_improvement: float = 0.0


@dataclass
class BarrierStats:
    """
    Aggregate outcome statistics for one regime.

    Updated online; never reset except by explicit operator action.
    """
    regime: str
    total_signals: int = 0
    hit_patterns: HitPatterns = field(default_factory=HitPatterns)
    avg_holding_periods: HoldingPeriods = field(default_factory=HoldingPeriods)
    volatility_efficiency: float = 0.0
    volatility_samples: int = 0
    gamma_performance: GammaPerformance = field(default_factory=GammaPerformance)

    def hit_rate(self, hit_type: HitType) -> float:
        """Fraction of all recorded signals that ended with hit_type."""
        if self.total_signals == 0:
            return 0.0
        counts = {
            HitType.TAKE_PROFIT: self.hit_patterns.take_profit,
            HitType.STOP_LOSS: self.hit_patterns.stop_loss,
            HitType.TIME_EXIT: self.hit_patterns.time_exit,
            HitType.PATH_DEPENDENT_EXIT: self.hit_patterns.path_dependent,
        }
        return counts[hit_type] / self.total_signals

    def snapshot(self) -> Dict[str, Any]:
        """Plain-dict copy for audit records."""
        return {
            "regime": self.regime,
            "total_signals": self.total_signals,
            "take_profit_rate": round(self.hit_rate(HitType.TAKE_PROFIT), 4),
            "stop_loss_rate": round(self.hit_rate(HitType.STOP_LOSS), 4),
            "time_exit_rate": round(self.hit_rate(HitType.TIME_EXIT), 4),
            "path_dependent_rate": round(self.hit_rate(HitType.PATH_DEPENDENT_EXIT), 4),
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def summary(self) -> str:
        """Generate human-readable summary."""
        hp = self.hit_patterns
        hold = self.avg_holding_periods
        lines = [
            "",
            "=" * 70,
            f"                BARRIER STATISTICS: {self.regime}",
            "=" * 70,
            "",
            f"  Total Signals:         {self.total_signals}",
            "",
            "  HIT PATTERNS:",
            f"    TAKE PROFIT:         {hp.take_profit:4d}  ({self.hit_rate(HitType.TAKE_PROFIT):6.1%})",
            f"    STOP LOSS:           {hp.stop_loss:4d}  ({self.hit_rate(HitType.STOP_LOSS):6.1%})",
            f"    TIME EXIT:           {hp.time_exit:4d}  ({self.hit_rate(HitType.TIME_EXIT):6.1%})",
            f"    PATH DEPENDENT:      {hp.path_dependent:4d}  ({self.hit_rate(HitType.PATH_DEPENDENT_EXIT):6.1%})",
            "",
            "  AVG HOLDING (hours):",
            f"    Winners:             {hold.winners:.1f}  (n={hold.winners_count})",
            f"    Losers:              {hold.losers:.1f}  (n={hold.losers_count})",
            f"    Time-outs:           {hold.time_outs:.1f}  (n={hold.time_outs_count})",
            "",
            f"  Volatility Efficiency: {self.volatility_efficiency:.2f}",
            f"  Gamma Exits:           {self.gamma_performance.total_exits}",
            f"  Gamma Improvement:     {self.gamma_performance.profit_improvement:+.3f}%",
            "",
            "=" * 70,
        ]
        return "\n".join(lines)


# =============================================================================
# ENGINE OUTPUTS
# =============================================================================

@dataclass(frozen=True)
class Decision:
    """
    Outcome of one PathMonitor evaluation.
    """
    action: DecisionType
    metrics: PathMetrics
    hit_type: Optional[HitType] = None
    reason: str = ""
    path_exit_reason: Optional[PathExitReason] = None
    levels: Optional[BarrierLevels] = None
    exit_price: Optional[float] = None

    @property
    def is_exit(self) -> bool:
        return self.action is DecisionType.EXIT

    @property
    def is_adjust(self) -> bool:
        return self.action is DecisionType.ADJUST


@dataclass(frozen=True)
class ExecutionInstruction:
    """
    Record handed to the downstream execution/bookkeeping collaborator
    on every ADJUST or EXIT decision.
    """
    signal_id: str
    decision_type: DecisionType
    timestamp: datetime
    new_stop_loss: Optional[float] = None
    new_take_profit: Optional[float] = None
    exit_reason: Optional[str] = None
    exit_price: Optional[float] = None
    holding_period_hours: Optional[float] = None
    return_percent: Optional[float] = None
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "decision_type": self.decision_type.value,
            "timestamp": self.timestamp.isoformat(),
            "new_stop_loss": self.new_stop_loss,
            "new_take_profit": self.new_take_profit,
            "exit_reason": self.exit_reason,
            "exit_price": self.exit_price,
            "holding_period_hours": self.holding_period_hours,
            "return_percent": self.return_percent,
            "duplicate": self.duplicate,
        }


@dataclass(frozen=True)
class ConfigAuditRecord:
    """Audit record emitted on every configuration change."""
    regime: str
    parameter: str
    old_value: Any
    new_value: Any
    timestamp: datetime
    source: str = "calibration"
    triggering_stat_snapshot: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "regime": self.regime,
            "parameter": self.parameter,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "triggering_stat_snapshot": dict(self.triggering_stat_snapshot),
        }


@dataclass
class SignalState:
    """
    Mutable per-signal state owned by the engine.

    Exclusively owned by one position; never shared across signals.
    """
    signal_id: str
    entry_signal: EntrySignal
    levels: BarrierLevels
    initial_levels: BarrierLevels
    price_history: List[float] = field(default_factory=list)
    is_active: bool = True
