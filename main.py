"""
Regime Barrier Engine - Main Entry Point

Replays historical candles through the barrier engine and prints the
resulting per-regime statistics and calibrated configuration.

Usage:
    python main.py replay --csv data/EURUSD_H1.csv --regime trending_bullish
    python main.py replay --csv data/EURUSD_H1.csv --regime ranging_tight --direction sell
    python main.py defaults
    python main.py defaults --config config/regimes.yaml --out logs/effective.yaml
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

import pandas as pd

from regime_barriers import (
    BarrierEngine,
    Candle,
    DecisionType,
    EngineSettings,
    EntrySignal,
    OrderFlow,
    OutcomeDispatcher,
    RegimeConfigStore,
    SignalDirection,
    setup_logging,
    ConfigAuditLogger,
    DecisionLogger,
    StatsSummaryLogger,
)


logger = logging.getLogger("regime_barriers.main")


def load_candles(path: str) -> pd.DataFrame:
    """
    Load OHLC candles from CSV.

    Expects open_time/time, open, high, low, close and optionally volume.
    """
    df = pd.read_csv(path)
    df.columns = [str(c).lower() for c in df.columns]
    if 'open_time' not in df.columns:
        for alt in ('time', 'timestamp', 'date', 'datetime'):
            if alt in df.columns:
                df = df.rename(columns={alt: 'open_time'})
                break
        else:
            raise ValueError(f"{path}: no open_time column")
    if 'volume' not in df.columns:
        df['volume'] = 0.0

    df['open_time'] = pd.to_datetime(df['open_time'], utc=True)
    df = df.sort_values('open_time').reset_index(drop=True)
    return df[['open_time', 'open', 'high', 'low', 'close', 'volume']]


def run_replay(args, settings: EngineSettings) -> None:
    logs_dir = Path(args.logs_dir or settings.logs_dir)

    audit_logger = ConfigAuditLogger(logs_dir / "config_audit.csv")
    decision_logger = DecisionLogger(logs_dir / "decisions.csv")

    store = RegimeConfigStore(settings, audit_sink=audit_logger)
    dispatcher = OutcomeDispatcher(instruction_sinks=[decision_logger])
    engine = BarrierEngine(store, settings, dispatcher=dispatcher)

    df = load_candles(args.csv)
    warmup = settings.volatility.atr_lookback + 1
    if len(df) <= warmup:
        logger.error(f"Need more than {warmup} candles, got {len(df)}")
        return

    direction = SignalDirection(args.direction)
    order_flow = OrderFlow(args.order_flow)
    signal_id: Optional[str] = None
    opened = 0

    for i in range(warmup, len(df)):
        row = df.iloc[i]
        candle = Candle(
            open_time=row['open_time'].to_pydatetime(),
            open=float(row['open']),
            high=float(row['high']),
            low=float(row['low']),
            close=float(row['close']),
            volume=float(row['volume']),
        )

        if signal_id is not None:
            instruction = engine.on_candle(signal_id, candle, now=candle.open_time)
            if instruction is not None and instruction.decision_type is DecisionType.EXIT:
                signal_id = None
            continue

        if opened >= args.max_signals:
            break

        # Enter on this candle's close using the candles before it
        signal_id = f"{args.symbol}-{opened:05d}"
        entry = EntrySignal(
            symbol=args.symbol,
            direction=direction,
            entry_price=candle.close,
            regime_type=args.regime,
            regime_confidence=args.confidence,
            order_flow=order_flow,
            regime_volatility=args.volatility,
        )
        engine.open_signal(signal_id, entry, df.iloc[max(0, i - 100):i + 1], now=candle.open_time)
        opened += 1

    if signal_id is not None:
        engine.close_signal(signal_id, reason="end of data")

    engine.shutdown()

    stats = store.all_stats()
    for s in stats.values():
        print(s.summary())

    config = store.get_config(args.regime)
    default = store.default_config(args.regime)
    print(f"\n{args.regime} configuration after replay:")
    print(f"  TP multiplier: {default.take_profit_multiplier:.3f} -> {config.take_profit_multiplier:.3f}")
    print(f"  SL multiplier: {default.stop_loss_multiplier:.3f} -> {config.stop_loss_multiplier:.3f}")
    print(f"  Time exit:     {default.time_exit_hours:.2f}h -> {config.time_exit_hours:.2f}h")

    if stats:
        path = StatsSummaryLogger(logs_dir).log_stats(stats)
        print(f"\nStatistics written to {path}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Regime-aware triple-barrier exit engine'
    )
    parser.add_argument('--config', type=str, default=None, help='YAML settings overrides')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Replay command
    replay_parser = subparsers.add_parser('replay', help='Replay candles through the engine')
    replay_parser.add_argument('--csv', type=str, required=True, help='Candle CSV file')
    replay_parser.add_argument('--symbol', type=str, default='EURUSD', help='Symbol')
    replay_parser.add_argument('--regime', type=str, default='ranging_tight', help='Regime type')
    replay_parser.add_argument('--direction', type=str, default='buy', choices=['buy', 'sell'])
    replay_parser.add_argument('--order-flow', type=str, default='neutral',
                               choices=['buying', 'selling', 'neutral'])
    replay_parser.add_argument('--confidence', type=float, default=0.7, help='Regime confidence')
    replay_parser.add_argument('--volatility', type=float, default=0.5, help='Regime volatility (0-1)')
    replay_parser.add_argument('--max-signals', type=int, default=1000, help='Signals to open')
    replay_parser.add_argument('--logs-dir', type=str, default=None, help='Audit output directory')

    # Defaults command
    defaults_parser = subparsers.add_parser('defaults', help='Print effective settings as YAML')
    defaults_parser.add_argument('--out', type=str, default=None, help='Also write to this file')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    settings = EngineSettings.from_yaml(args.config) if args.config else EngineSettings()
    setup_logging(settings.logs_dir, verbose=args.verbose or settings.verbose)

    try:
        if args.command == 'replay':
            run_replay(args, settings)

        elif args.command == 'defaults':
            print(settings.to_yaml(args.out))

    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Error: {e}")
        raise


if __name__ == '__main__':
    main()
