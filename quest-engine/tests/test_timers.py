"""Tests for the background reconcile timer."""

from __future__ import annotations

import time

from timers import ReconcileTimerRunner


class _Engine:
    def __init__(self, fail: bool = False) -> None:
        self.runs = 0
        self.fail = fail

    def reconcile_all(self) -> dict[str, object]:
        self.runs += 1
        if self.fail:
            raise RuntimeError("store offline")
        return {"quests": [], "issued": 2}


class TestReconcileTimerRunner:
    def test_run_once_records_result(self) -> None:
        engine = _Engine()
        runner = ReconcileTimerRunner(engine=engine, interval_seconds=60)  # type: ignore[arg-type]
        assert runner.run_once() == {"quests": [], "issued": 2}
        assert runner.last_run_at is not None
        assert runner.last_error is None

    def test_failed_pass_is_recorded_and_loop_survives(self) -> None:
        runner = ReconcileTimerRunner(engine=_Engine(fail=True), interval_seconds=60)  # type: ignore[arg-type]
        assert runner.run_once() is None
        assert runner.last_error == "store offline"

    def test_start_and_stop(self) -> None:
        runner = ReconcileTimerRunner(engine=_Engine(), interval_seconds=1)  # type: ignore[arg-type]
        assert runner.interval_seconds == 5
        runner.start()
        assert runner.is_running
        runner.stop()
        time.sleep(0.05)
        assert not runner.is_running
