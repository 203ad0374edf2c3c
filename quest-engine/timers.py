"""Background timer that reconciles stalled reward issuance."""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime

from quest_engine import QuestEngine

log = logging.getLogger(__name__)


class ReconcileTimerRunner:
    """Runs ``QuestEngine.reconcile_all`` every ``interval_seconds``."""

    def __init__(self, engine: QuestEngine, interval_seconds: int) -> None:
        self._engine = engine
        self.interval_seconds = max(5, interval_seconds)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_run_at: str | None = None
        self.last_result: dict[str, object] | None = None
        self.last_error: str | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> dict[str, object] | None:
        try:
            self.last_result = self._engine.reconcile_all()
            self.last_error = None
        except Exception as exc:
            # Keep the loop alive; the next tick retries.
            log.exception("reconciliation pass failed")
            self.last_error = str(exc)
        self.last_run_at = datetime.now(UTC).isoformat()
        if self.last_result and self.last_result.get("issued"):
            log.info("reconciliation issued %s rewards", self.last_result["issued"])
        return self.last_result

    def start(self) -> None:
        if self.is_running:
            return

        def _loop() -> None:
            while not self._stop_event.is_set():
                self._stop_event.wait(self.interval_seconds)
                if self._stop_event.is_set():
                    break
                self.run_once()

        self._stop_event.clear()
        self._thread = threading.Thread(target=_loop, daemon=True, name="reconcile-timer")
        self._thread.start()
        log.info("reconcile timer started (every %ss)", self.interval_seconds)

    def stop(self) -> None:
        if not self.is_running:
            return
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
