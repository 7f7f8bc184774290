"""
Logging & Audit Module

Audit trail for the barrier engine:
- Config audit log (CSV): every calibration / operator config change
- Decision log (CSV): every ADJUST / EXIT instruction
- Stats summary (JSON): per-regime BarrierStats snapshots
- System log (structured)

Business events go through these loggers, never to the console directly.
"""

import csv
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from .models import BarrierStats, ConfigAuditRecord, ExecutionInstruction, BarrierHitResult


def setup_logging(log_dir: Union[str, Path] = "logs", verbose: bool = False) -> logging.Logger:
    """
    Configure package logging.

    Returns the package logger.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("regime_barriers")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Avoid stacking handlers when called twice
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_format = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    console_handler.setFormatter(console_format)

    # File handler
    file_handler = logging.FileHandler(log_dir / "barrier_engine.log")
    file_handler.setLevel(logging.DEBUG)
    file_format = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    file_handler.setFormatter(file_format)

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    return logger


class _CsvLogger:
    """Append-only CSV writer with headers written on first use."""

    HEADERS: List[str] = []

    def __init__(self, log_path: Union[str, Path]):
        self.log_path = Path(log_path)
        self._lock = threading.Lock()
        self._ensure_headers()

    def _ensure_headers(self) -> None:
        """Ensure CSV has headers."""
        if not self.log_path.exists():
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, 'w', newline='') as f:
                writer = csv.writer(f)
                writer.writerow(self.HEADERS)

    def _write_row(self, row: Dict) -> None:
        """Write a row to CSV."""
        with self._lock:
            with open(self.log_path, 'a', newline='') as f:
                writer = csv.DictWriter(f, fieldnames=self.HEADERS)
                writer.writerow(row)


class ConfigAuditLogger(_CsvLogger):
    """
    CSV logger for regime configuration changes.
    """

    HEADERS = [
        "timestamp",
        "regime",
        "parameter",
        "old_value",
        "new_value",
        "source",
        "total_signals",
        "take_profit_rate",
        "stop_loss_rate",
        "time_exit_rate",
    ]

    def log_change(self, record: ConfigAuditRecord) -> None:
        snap = record.triggering_stat_snapshot
        row = {
            "timestamp": record.timestamp.isoformat(),
            "regime": record.regime,
            "parameter": record.parameter,
            "old_value": record.old_value,
            "new_value": record.new_value,
            "source": record.source,
            "total_signals": snap.get("total_signals", ""),
            "take_profit_rate": snap.get("take_profit_rate", ""),
            "stop_loss_rate": snap.get("stop_loss_rate", ""),
            "time_exit_rate": snap.get("time_exit_rate", ""),
        }
        self._write_row(row)

    __call__ = log_change


class DecisionLogger(_CsvLogger):
    """
    CSV logger for execution instructions (ADJUST / EXIT).
    """

    HEADERS = [
        "timestamp",
        "signal_id",
        "decision",
        "new_stop_loss",
        "new_take_profit",
        "exit_reason",
        "exit_price",
        "holding_period_hours",
        "return_percent",
        "duplicate",
    ]

    def log_instruction(self, instruction: ExecutionInstruction) -> None:
        row = {
            k: ("" if v is None else v)
            for k, v in instruction.to_dict().items()
            if k in self.HEADERS
        }
        row["decision"] = instruction.decision_type.value
        self._write_row(row)

    __call__ = log_instruction


class StatsSummaryLogger:
    """
    JSON snapshot of per-regime statistics.
    """

    def __init__(self, log_dir: Union[str, Path]):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def log_stats(self, stats: Dict[str, BarrierStats], tag: Optional[str] = None) -> Path:
        """Write all regime stats to a timestamped JSON file."""
        now = datetime.now(timezone.utc)
        tag = tag or now.strftime("%Y%m%d_%H%M%S")
        summary = {
            "generated_at": now.isoformat(),
            "regimes": {
                name: {**s.to_dict(), "rates": s.snapshot()}
                for name, s in sorted(stats.items())
            },
        }

        summary_path = self.log_dir / f"barrier_stats_{tag}.json"
        with open(summary_path, 'w') as f:
            json.dump(summary, f, indent=2)

        return summary_path


class InMemoryAuditLog:
    """
    Collects audit records, instructions and outcomes in memory.

    Usable as the audit sink of a RegimeConfigStore and as the sinks of an
    OutcomeDispatcher.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.config_changes: List[ConfigAuditRecord] = []
        self.instructions: List[ExecutionInstruction] = []
        self.outcomes: List[BarrierHitResult] = []

    def record_change(self, record: ConfigAuditRecord) -> None:
        with self._lock:
            self.config_changes.append(record)

    def record_instruction(self, instruction: ExecutionInstruction) -> None:
        with self._lock:
            self.instructions.append(instruction)

    def record_outcome(self, result: BarrierHitResult) -> None:
        with self._lock:
            self.outcomes.append(result)

    __call__ = record_change

    def changes_for(self, regime: str, parameter: Optional[str] = None) -> List[ConfigAuditRecord]:
        with self._lock:
            return [
                r for r in self.config_changes
                if r.regime == regime and (parameter is None or r.parameter == parameter)
            ]
