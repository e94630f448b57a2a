from datetime import datetime, timezone

import pytest

from billing_backend import scheduler


class StubInvoiceEngine:
    def __init__(self, swept=None, error=None):
        self.swept = swept or []
        self.error = error
        self.calls = 0

    def sweep_overdue(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.swept


@pytest.fixture(autouse=True)
def _clean_scheduler():
    scheduler._reset_metrics_for_testing()
    yield
    scheduler.shutdown_overdue_sweeper()
    scheduler._reset_metrics_for_testing()


def test_run_overdue_sweep_updates_metrics():
    engine = StubInvoiceEngine(swept=["inv-1", "inv-2"])
    run_time = datetime(2024, 3, 1, 6, tzinfo=timezone.utc)

    result = scheduler.run_overdue_sweep(engine, now=run_time)

    assert result == ["inv-1", "inv-2"]
    metrics = scheduler.get_sweep_metrics()
    assert metrics["runs"] == 1
    assert metrics["invoices_marked"] == 2
    assert metrics["failures"] == 0
    assert metrics["last_run_at"] == run_time.isoformat()
    assert metrics["last_success_at"] == run_time.isoformat()
    assert metrics["last_error"] is None


def test_run_overdue_sweep_records_failure():
    engine = StubInvoiceEngine(error=RuntimeError("database unavailable"))

    with pytest.raises(RuntimeError):
        scheduler.run_overdue_sweep(engine, now=datetime(2024, 3, 1, 6))

    metrics = scheduler.get_sweep_metrics()
    assert metrics["failures"] == 1
    assert metrics["last_error"] == "RuntimeError: database unavailable"
    assert metrics["last_run_at"] == "2024-03-01T06:00:00+00:00"
    assert metrics["last_success_at"] is None


def test_sweeper_disabled_with_non_positive_interval():
    assert scheduler.start_overdue_sweeper(0, engine=StubInvoiceEngine()) is False


def test_sweeper_starts_once():
    engine = StubInvoiceEngine()

    assert scheduler.start_overdue_sweeper(3600, engine=engine, initial_delay=3600) is True
    assert scheduler.start_overdue_sweeper(3600, engine=engine) is False

    scheduler.shutdown_overdue_sweeper()
    scheduler.shutdown_overdue_sweeper()
    assert engine.calls == 0
