"""
Period-end sweep job.

Turns elapsed billing periods into `canceled` / `expired` transitions.
Runs either one-shot (cron / CLI) or as a background thread started from the
app lifespan when SWEEP_ENABLED is set.

Usage:
    python -m commerce.workers.period_end_sweep
"""
import logging
import threading
from datetime import datetime
from typing import Optional

from commerce.features.subscriptions.service import SubscriptionStateManager, SweepReport


logger = logging.getLogger("commerce.workers.sweep")


def run_period_end_sweep(
    manager: SubscriptionStateManager,
    now: Optional[datetime] = None,
    *,
    limit: int = 100,
) -> SweepReport:
    report = manager.process_period_end_sweep(now=now, limit=limit)
    logger.info("[sweep] period end sweep finished", extra=report.as_dict())
    return report


class PeriodicSweeper:
    """Runs the sweep every `interval_seconds` on a daemon thread until stopped."""

    def __init__(self, manager: SubscriptionStateManager, interval_seconds: float, *, limit: int = 100):
        self.manager = manager
        self.interval_seconds = interval_seconds
        self.limit = limit
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="period-end-sweep", daemon=True)
        self._thread.start()
        logger.info("[sweep] periodic sweeper started", extra={"interval_seconds": self.interval_seconds})

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                run_period_end_sweep(self.manager, limit=self.limit)
            except Exception:
                logger.error("[sweep] periodic sweep failed", exc_info=True)
            self._stop.wait(self.interval_seconds)


if __name__ == "__main__":
    from commerce.core.config import settings
    from commerce.core.logging import configure_logging
    from commerce.main import build_services

    configure_logging(settings.ENV)
    services = build_services(settings)
    try:
        result = run_period_end_sweep(services.manager, limit=settings.SWEEP_BATCH_LIMIT)
        print(result.as_dict())
    finally:
        services.close()
