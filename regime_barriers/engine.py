"""
Barrier Engine

Orchestrates the barrier lifecycle for every open signal:

    open_signal -> BarrierCalculator -> BarrierLevels
    on_candle   -> PathMonitor -> CONTINUE / ADJUST / EXIT
    EXIT        -> OutcomeRecorder -> Calibrator -> dispatcher (queued)

GUARANTEES:
- An exit is finalized exactly once: the signal leaves the active set
  under the engine lock before anything is recorded.
- Re-submitting a candle for an exited signal returns the same terminal
  instruction flagged duplicate=True and records nothing. The most recent
  `terminal_capacity` exits are remembered; older ids are forgotten.
- close_signal() takes effect immediately; an evaluation in flight for a
  closed signal is discarded as stale.
- No exception escapes on_candle / on_market_update; a failure holds the
  current levels and takes no action.
- Config audit records, instructions and outcomes reach their sinks
  through the dispatcher queue, never on the evaluation thread.
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional, Any

from .barriers import BarrierCalculator
from .calibration import Calibrator
from .config import EngineSettings, DEFAULT_SETTINGS
from .models import (
    BarrierHitResult,
    BarrierLevels,
    Candle,
    ConfigAuditRecord,
    Decision,
    DecisionType,
    EntrySignal,
    ExecutionInstruction,
    MarketRegime,
    PathSnapshot,
    SignalState,
)
from .outcomes import OutcomeRecorder
from .path_monitor import PathMonitor, compute_path_metrics
from .registry import RegimeConfigStore
from .volatility import CandleInput, expected_volatility, utc_now


logger = logging.getLogger(__name__)

Sink = Callable[[Any], Any]

_STOP = object()


class OutcomeDispatcher:
    """
    Fire-and-forget delivery of instructions, outcomes and config audit
    records to sinks.

    A daemon worker drains the queue so slow persistence or execution
    collaborators never block evaluation. Sink failures are logged and
    dropped.
    """

    def __init__(
        self,
        instruction_sinks: Optional[Iterable[Sink]] = None,
        outcome_sinks: Optional[Iterable[Sink]] = None,
        audit_sinks: Optional[Iterable[Sink]] = None,
    ):
        self.instruction_sinks: List[Sink] = list(instruction_sinks or [])
        self.outcome_sinks: List[Sink] = list(outcome_sinks or [])
        self.audit_sinks: List[Sink] = list(audit_sinks or [])
        self._queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run, name="OutcomeDispatcher", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Drain pending items and stop the worker."""
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)

    def flush(self) -> None:
        """Block until every queued item has been delivered."""
        if self._thread is None:
            return
        self._queue.join()

    def submit_instruction(self, instruction: ExecutionInstruction) -> None:
        self.start()
        self._queue.put(("instruction", instruction))

    def submit_outcome(self, result: BarrierHitResult) -> None:
        self.start()
        self._queue.put(("outcome", result))

    def submit_audit(self, record: ConfigAuditRecord) -> None:
        self.start()
        self._queue.put(("audit", record))

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                kind, payload = item
                sinks = {
                    "instruction": self.instruction_sinks,
                    "outcome": self.outcome_sinks,
                    "audit": self.audit_sinks,
                }[kind]
                for sink in sinks:
                    try:
                        sink(payload)
                    except Exception as e:
                        logger.error(f"Dispatcher sink {sink!r} failed on {kind}: {e}")
            finally:
                self._queue.task_done()


class BarrierEngine:
    """
    Online exit engine over a set of open signals.

    Usage:
        engine = BarrierEngine()
        engine.open_signal("sig-1", entry_signal, candles)
        instruction = engine.on_candle("sig-1", candle)
    """

    def __init__(
        self,
        store: Optional[RegimeConfigStore] = None,
        settings: EngineSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = utc_now,
        dispatcher: Optional[OutcomeDispatcher] = None,
        max_workers: int = 1,
        terminal_capacity: int = 10000,
    ):
        self.settings = settings
        self.store = store or RegimeConfigStore(settings)
        self.clock = clock
        self.dispatcher = dispatcher or OutcomeDispatcher()
        self.store.route_audit(self.dispatcher)

        self.calculator = BarrierCalculator(self.store, settings, clock=clock)
        self.monitor = PathMonitor(self.store, settings, clock=clock)
        self.recorder = OutcomeRecorder(self.store)
        self.calibrator = Calibrator(self.store, settings, clock=clock)

        self.max_workers = max(1, int(max_workers))
        self._executor: Optional[ThreadPoolExecutor] = None
        if self.max_workers > 1:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="barrier-eval"
            )

        self._lock = threading.Lock()
        self._signals: Dict[str, SignalState] = {}
        self._signal_locks: Dict[str, threading.Lock] = {}
        self.terminal_capacity = max(1, int(terminal_capacity))
        self._terminal: "OrderedDict[str, ExecutionInstruction]" = OrderedDict()

    # ═══════════════════════════════════════════════════════════════════════
    # SIGNAL LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════

    def open_signal(
        self,
        signal_id: str,
        entry_signal: EntrySignal,
        candles: Optional[CandleInput],
        now: Optional[datetime] = None,
    ) -> BarrierLevels:
        """
        Compute barriers for a new signal and add it to the active set.

        Raises:
            ValueError: if signal_id is already active
        """
        with self._lock:
            if signal_id in self._signals:
                raise ValueError(f"Signal {signal_id} is already active")

        levels = self.calculator.compute_barriers(
            entry_signal.entry_price,
            entry_signal.direction,
            MarketRegime.from_signal(entry_signal),
            candles,
            lookback=self.settings.volatility.atr_lookback,
            now=now,
        )
        state = SignalState(
            signal_id=signal_id,
            entry_signal=entry_signal,
            levels=levels,
            initial_levels=levels,
        )

        with self._lock:
            if signal_id in self._signals:
                raise ValueError(f"Signal {signal_id} is already active")
            self._signals[signal_id] = state
            self._signal_locks[signal_id] = threading.Lock()
            self._terminal.pop(signal_id, None)

        logger.info(
            f"OPEN {signal_id} {entry_signal.symbol} {entry_signal.direction.value} "
            f"@ {levels.entry_price:.5f} regime={levels.regime} "
            f"TP={levels.take_profit:.5f} SL={levels.stop_loss:.5f} "
            f"exit={levels.time_exit.isoformat()}"
        )
        return levels

    def close_signal(self, signal_id: str, reason: str = "manual") -> bool:
        """
        Remove a signal from the active set immediately (broker close,
        manual override). Nothing is recorded.

        Returns:
            True if the signal was active
        """
        with self._lock:
            state = self._signals.pop(signal_id, None)
            if state is None:
                return False
            state.is_active = False
            self._signal_locks.pop(signal_id, None)
        logger.info(f"CLOSE {signal_id}: {reason}")
        return True

    def is_active(self, signal_id: str) -> bool:
        with self._lock:
            return signal_id in self._signals

    def active_signals(self) -> List[str]:
        with self._lock:
            return list(self._signals)

    def get_levels(self, signal_id: str) -> Optional[BarrierLevels]:
        with self._lock:
            state = self._signals.get(signal_id)
            return state.levels if state is not None else None

    def terminal_instruction(self, signal_id: str) -> Optional[ExecutionInstruction]:
        with self._lock:
            return self._terminal.get(signal_id)

    # ═══════════════════════════════════════════════════════════════════════
    # EVALUATION
    # ═══════════════════════════════════════════════════════════════════════

    def on_candle(
        self,
        signal_id: str,
        candle: Candle,
        now: Optional[datetime] = None,
    ) -> Optional[ExecutionInstruction]:
        """
        Evaluate one signal against a new candle.

        Returns:
            ExecutionInstruction for ADJUST / EXIT, None otherwise
            (CONTINUE, unknown / cancelled signal, or evaluation failure)
        """
        try:
            with self._lock:
                terminal = self._terminal.get(signal_id)
                signal_lock = self._signal_locks.get(signal_id)
            if terminal is not None:
                logger.debug(f"Duplicate evaluation for exited signal {signal_id}")
                return replace(terminal, duplicate=True)
            if signal_lock is None:
                logger.debug(f"Ignoring candle for unknown signal {signal_id}")
                return None

            with signal_lock:
                return self._evaluate(signal_id, signal_lock, candle, now)
        except Exception:
            logger.exception(f"Evaluation failed for {signal_id}; holding current levels")
            return None

    def on_market_update(
        self,
        candles_by_symbol: Dict[str, Candle],
        now: Optional[datetime] = None,
    ) -> List[ExecutionInstruction]:
        """
        One evaluation pass over every active signal with a candle for its
        symbol. Signals are independent and may be evaluated in parallel.
        """
        with self._lock:
            jobs = [
                (signal_id, candles_by_symbol[state.entry_signal.symbol])
                for signal_id, state in self._signals.items()
                if state.entry_signal.symbol in candles_by_symbol
            ]

        if self._executor is not None and len(jobs) > 1:
            results = list(self._executor.map(
                lambda job: self.on_candle(job[0], job[1], now), jobs
            ))
        else:
            results = [self.on_candle(signal_id, candle, now) for signal_id, candle in jobs]

        return [r for r in results if r is not None]

    def _evaluate(
        self,
        signal_id: str,
        signal_lock: threading.Lock,
        candle: Candle,
        now: Optional[datetime],
    ) -> Optional[ExecutionInstruction]:
        with self._lock:
            state = self._signals.get(signal_id)
            # Closed, exited or reopened since this caller picked up the lock
            if state is None or self._signal_locks.get(signal_id) is not signal_lock:
                terminal = self._terminal.get(signal_id)
                return replace(terminal, duplicate=True) if terminal is not None else None
            levels = state.levels
            history = state.price_history + [candle.close]

        now = now or self.clock()
        decision = self.monitor.evaluate(levels, history, candle, now)

        with self._lock:
            if self._signals.get(signal_id) is not state or not state.is_active:
                logger.debug(f"Discarding stale evaluation for {signal_id}")
                return None

            state.price_history.append(candle.close)

            if decision.action is DecisionType.CONTINUE:
                return None

            if decision.is_adjust:
                state.levels = decision.levels
                instruction = ExecutionInstruction(
                    signal_id=signal_id,
                    decision_type=DecisionType.ADJUST,
                    timestamp=now,
                    new_stop_loss=decision.levels.stop_loss,
                    new_take_profit=decision.levels.take_profit,
                )
                hit_result = None
            else:
                # Terminal: leave the active set before anything else
                state.is_active = False
                del self._signals[signal_id]
                self._signal_locks.pop(signal_id, None)
                hit_result = self._build_hit_result(state, decision, now)
                instruction = ExecutionInstruction(
                    signal_id=signal_id,
                    decision_type=DecisionType.EXIT,
                    timestamp=now,
                    exit_reason=decision.reason,
                    exit_price=hit_result.hit_price,
                    holding_period_hours=hit_result.holding_period,
                    return_percent=hit_result.return_percent,
                )
                self._remember_terminal(signal_id, instruction)

        if hit_result is not None:
            self._finalize(state, hit_result)
            logger.info(
                f"EXIT {signal_id} {hit_result.hit_type.value} @ {hit_result.hit_price:.5f} "
                f"return={hit_result.return_percent:+.3f}% held={hit_result.holding_period:.1f}h"
                f"{' (' + decision.reason + ')' if decision.path_exit_reason else ''}"
            )
        else:
            logger.info(
                f"ADJUST {signal_id} SL={instruction.new_stop_loss:.5f} "
                f"TP={instruction.new_take_profit:.5f} ({decision.reason})"
            )

        self.dispatcher.submit_instruction(instruction)
        return instruction

    def _remember_terminal(self, signal_id: str, instruction: ExecutionInstruction) -> None:
        """Cache a terminal instruction; caller holds the engine lock."""
        self._terminal[signal_id] = instruction
        self._terminal.move_to_end(signal_id)
        while len(self._terminal) > self.terminal_capacity:
            self._terminal.popitem(last=False)

    def _finalize(self, state: SignalState, hit_result: BarrierHitResult) -> None:
        """Record the outcome, recalibrate the regime, hand off persistence."""
        regime = state.initial_levels.regime
        try:
            self.recorder.record(regime, hit_result)
            self.calibrator.maybe_recalibrate(regime)
        except Exception:
            logger.exception(f"Outcome bookkeeping failed for {state.signal_id}")
        self.dispatcher.submit_outcome(hit_result)

    def _build_hit_result(
        self,
        state: SignalState,
        decision: Decision,
        now: datetime,
    ) -> BarrierHitResult:
        levels = state.levels
        initial = state.initial_levels
        entry = levels.entry_price

        metrics = compute_path_metrics(
            levels, state.price_history, now, self.settings.path_exits.annualization
        )
        exit_price = decision.exit_price
        return_percent = levels.direction.sign * (exit_price - entry) / entry * 100
        holding = max(0.0, (now - levels.entry_time).total_seconds() / 3600.0)

        return BarrierHitResult(
            hit_type=decision.hit_type,
            hit_time=now,
            hit_price=exit_price,
            holding_period=holding,
            return_percent=return_percent,
            path_data=PathSnapshot(
                max_favorable=metrics.max_favorable,
                max_adverse=metrics.max_adverse,
                volatility_realized=metrics.realized_volatility,
                gamma_exits=levels.gamma_adjustments,
                expected_volatility=expected_volatility(
                    initial.current_atr, entry, self.settings.path_exits.annualization
                ),
                initial_stop_return=initial.stop_return,
                initial_target_return=initial.target_return,
            ),
            signal_id=state.signal_id,
            reason=decision.reason,
        )

    # ═══════════════════════════════════════════════════════════════════════
    # SHUTDOWN
    # ═══════════════════════════════════════════════════════════════════════

    def shutdown(self) -> None:
        """Stop worker threads after delivering queued side effects."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self.dispatcher.flush()
        self.dispatcher.stop()
