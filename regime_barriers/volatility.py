"""
Volatility Estimator

Average True Range over recent candles plus the regime / volatility-band /
session multiplier applied to it before barrier distances are derived.

All edge cases degrade to conservative defaults:
- Fewer than lookback + 1 candles -> fallback ATR
- Non-finite or non-positive ATR -> fallback ATR
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .config import VolatilitySettings
from .models import Candle


logger = logging.getLogger(__name__)

CANDLE_COLUMNS = ['open_time', 'open', 'high', 'low', 'close', 'volume']

CandleInput = Union[pd.DataFrame, Sequence[Candle]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def candles_to_frame(candles: Optional[CandleInput]) -> pd.DataFrame:
    """
    Normalize a candle sequence to a DataFrame with CANDLE_COLUMNS.

    Args:
        candles: list of Candle, or a DataFrame with at least high/low/close

    Returns:
        DataFrame ordered oldest first (empty frame for None)
    """
    if candles is None:
        return pd.DataFrame(columns=CANDLE_COLUMNS)

    if isinstance(candles, pd.DataFrame):
        df = candles.copy()
        df.columns = [str(c).lower() for c in df.columns]
        if 'open_time' not in df.columns:
            df['open_time'] = df.index
        if 'volume' not in df.columns:
            df['volume'] = 0.0
        return df.reset_index(drop=True)

    rows = [
        {
            'open_time': c.open_time,
            'open': c.open,
            'high': c.high,
            'low': c.low,
            'close': c.close,
            'volume': c.volume,
        }
        for c in candles
    ]
    return pd.DataFrame(rows, columns=CANDLE_COLUMNS)


def true_range(df: pd.DataFrame) -> pd.Series:
    """
    True Range per candle; NaN for the first candle (no previous close).
    """
    prev_close = df['close'].shift(1)
    tr1 = df['high'] - df['low']
    tr2 = (df['high'] - prev_close).abs()
    tr3 = (df['low'] - prev_close).abs()

    tr = pd.concat([tr1, tr2, tr3], axis=1).max(axis=1, skipna=False)
    tr.iloc[:1] = np.nan
    return tr


class VolatilityEstimator:
    """
    ATR and volatility-adjustment calculator.

    The clock is injected so session-of-day behaviour is deterministic in
    tests and replays.
    """

    def __init__(
        self,
        settings: Optional[VolatilitySettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or VolatilitySettings()
        self.clock = clock

    # =========================================================================
    # ATR
    # =========================================================================

    def calculate_atr(self, candles: Optional[CandleInput], period: Optional[int] = None) -> float:
        """
        Simple mean of the last `period` true ranges.

        Returns the fallback ATR when fewer than period + 1 candles exist.
        """
        period = period or self.settings.atr_lookback
        df = candles_to_frame(candles)

        if len(df) < period + 1:
            logger.debug(
                f"ATR fallback: {len(df)} candles < {period + 1} required"
            )
            return self.settings.fallback_atr

        tr = true_range(df).iloc[-period:]
        atr = float(tr.mean())

        if not np.isfinite(atr) or atr <= 0:
            logger.debug(f"ATR fallback: degenerate value {atr}")
            return self.settings.fallback_atr
        return atr

    # =========================================================================
    # ADJUSTMENTS
    # =========================================================================

    def adjustment_factor(
        self,
        regime_type: str,
        regime_volatility: float,
        now: Optional[datetime] = None,
    ) -> float:
        """
        Multiplier applied to ATR before barrier distances are computed.

        Combines regime type (shock wider, ranging tighter), the detector's
        volatility band and session activity, clamped to
        [adjustment_floor, adjustment_cap].
        """
        s = self.settings
        adjustment = 1.0

        if 'shock' in regime_type:
            adjustment *= s.shock_factor
        elif 'ranging' in regime_type:
            adjustment *= s.ranging_factor

        if regime_volatility > s.high_volatility_band:
            adjustment *= s.high_volatility_factor
        elif regime_volatility < s.low_volatility_band:
            adjustment *= s.low_volatility_factor

        adjustment *= self.session_factor(now)

        return float(min(s.adjustment_cap, max(s.adjustment_floor, adjustment)))

    def session_factor(self, now: Optional[datetime] = None) -> float:
        """1.0 during active sessions (UTC), quiet_session_factor otherwise."""
        now = now or self.clock()
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc)
        s = self.settings
        if s.active_session_start <= now.hour <= s.active_session_end:
            return 1.0
        return s.quiet_session_factor

    def time_multiplier(self, regime_type: str) -> float:
        """Holding-time multiplier by regime type."""
        s = self.settings
        if 'shock' in regime_type:
            return s.shock_time_multiplier
        if 'trending' in regime_type:
            return s.trending_time_multiplier
        if regime_type == 'consolidation':
            return s.consolidation_time_multiplier
        return 1.0

    def effective_atr(
        self,
        candles: Optional[CandleInput],
        regime_type: str,
        regime_volatility: float,
        lookback: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> float:
        """ATR scaled by the volatility adjustment factor."""
        atr = self.calculate_atr(candles, lookback)
        return atr * self.adjustment_factor(regime_type, regime_volatility, now)


def expected_volatility(atr: float, entry_price: float, annualization: int = 252) -> float:
    """Annualized volatility implied by an ATR at the given price."""
    if entry_price <= 0:
        return 0.0
    return atr / entry_price * float(np.sqrt(annualization))


def realized_volatility(prices: Iterable[float], annualization: int = 252) -> float:
    """
    Annualized population standard deviation of log returns.

    Fewer than two valid prices gives 0.0.
    """
    arr = np.asarray(list(prices), dtype=float)
    arr = arr[np.isfinite(arr) & (arr > 0)]
    if len(arr) < 2:
        return 0.0
    log_returns = np.diff(np.log(arr))
    return float(np.std(log_returns) * np.sqrt(annualization))
