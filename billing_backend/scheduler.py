"""Background scheduling for the overdue invoice sweep."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Dict, List, Optional

from billing_backend.app.billing import Invoice, InvoiceEngine
from billing_backend.app.services.billing import get_billing_engines

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_OverdueSweepWorker"] = None

_SWEEP_METRICS: Dict[str, object] = {
    "runs": 0,
    "invoices_marked": 0,
    "failures": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["runs"] = int(_SWEEP_METRICS.get("runs", 0)) + 1
        _SWEEP_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, marked: int) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["invoices_marked"] = int(_SWEEP_METRICS.get("invoices_marked", 0)) + marked
        _SWEEP_METRICS["last_success_at"] = completed_at
        _SWEEP_METRICS["last_error"] = None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["failures"] = int(_SWEEP_METRICS.get("failures", 0)) + 1
        _SWEEP_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_overdue_sweep(
    engine: Optional[InvoiceEngine] = None,
    *,
    now: Optional[datetime] = None,
) -> List[Invoice]:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    invoices = engine or get_billing_engines().invoices
    _record_run_start(current_time)
    try:
        swept = invoices.sweep_overdue()
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Overdue invoice sweep failed")
        raise
    _record_run_success(current_time, len(swept))
    logger.info(
        "Overdue invoice sweep completed",
        extra={"invoices_marked": len(swept)},
    )
    return swept


class _OverdueSweepWorker(Thread):
    def __init__(self, engine: Optional[InvoiceEngine], *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name="billing-overdue-sweep")
        self._engine = engine
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                run_overdue_sweep(self._engine)
            except Exception:
                logger.debug("Overdue sweep will retry after %.0fs", self._interval)
            if self._stop_event.wait(self._interval):
                break


def start_overdue_sweeper(
    interval_seconds: float,
    *,
    engine: Optional[InvoiceEngine] = None,
    initial_delay: float = 0.0,
) -> bool:
    """Start the periodic sweep; returns ``False`` when disabled or already running."""

    global _worker
    if interval_seconds <= 0:
        logger.info("Overdue invoice sweeper disabled")
        return False
    with _scheduler_lock:
        if _worker is not None:
            return False
        _worker = _OverdueSweepWorker(engine, initial_delay=initial_delay, interval=interval_seconds)
        _worker.start()
        logger.info(
            "Overdue invoice sweeper started",
            extra={"interval_seconds": interval_seconds, "initial_delay_seconds": initial_delay},
        )
        return True


def shutdown_overdue_sweeper() -> None:
    global _worker
    with _scheduler_lock:
        worker, _worker = _worker, None
        if worker is None:
            return
        worker.stop()
        worker.join(timeout=1.0)
        logger.info("Overdue invoice sweeper stopped")


def get_sweep_metrics() -> Dict[str, object]:
    with _metrics_lock:
        return {
            **_SWEEP_METRICS,
            "last_run_at": _SWEEP_METRICS["last_run_at"].isoformat() if _SWEEP_METRICS.get("last_run_at") else None,
            "last_success_at": (
                _SWEEP_METRICS["last_success_at"].isoformat() if _SWEEP_METRICS.get("last_success_at") else None
            ),
        }


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _SWEEP_METRICS.update(
            {
                "runs": 0,
                "invoices_marked": 0,
                "failures": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "get_sweep_metrics",
    "run_overdue_sweep",
    "shutdown_overdue_sweeper",
    "start_overdue_sweeper",
]
