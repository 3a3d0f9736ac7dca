"""Scheduler daemon for the two background passes.

No external scheduler library is required — uses stdlib ``time``,
``signal`` and ``random`` only.

Typical usage via the CLI::

    pfe start-scheduler

Or import directly::

    from portfolio_engine.scheduler import SchedulerDaemon
    daemon = SchedulerDaemon(processor, sweeper, config.scheduler)
    daemon.start()  # blocks until Ctrl-C

Jobs executed, each on its own timer:
  - **transactions** — ``TransactionProcessor.process_pending()``
  - **reconcile**    — ``ReconciliationSweeper.sweep()``

Each run is followed by ``interval + uniform(0, jitter)`` seconds of wait, so
several daemons sharing a database drift apart instead of contending on the
same tick.  The jobs communicate only through the database.  A failure in
one run is logged but does not stop the daemon.
"""

from __future__ import annotations

import logging
import platform
import random
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from portfolio_engine.config import SchedulerConfig
from portfolio_engine.engine.processor import TransactionProcessor
from portfolio_engine.engine.reconciler import ReconciliationSweeper

log = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    name: str
    interval_seconds: float
    action: Callable[[], object]
    next_run: float = 0.0


class SchedulerDaemon:
    """Runs the transaction pass and the reconciliation pass periodically.

    Parameters
    ----------
    processor:
        Drains pending transactions.
    sweeper:
        Derives terminal optimization states.
    config:
        Intervals, jitter and loop tick (seconds).
    monotonic, sleep, rng:
        Time and randomness sources; replaced in tests.
    """

    def __init__(
        self,
        processor: TransactionProcessor,
        sweeper: ReconciliationSweeper,
        config: Optional[SchedulerConfig] = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.processor = processor
        self.sweeper = sweeper
        self.config = config or SchedulerConfig()
        self._monotonic = monotonic
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._running = False
        self.jobs = [
            ScheduledJob(
                "transactions",
                self.config.transaction_interval_seconds,
                self.processor.process_pending,
            ),
            ScheduledJob(
                "reconcile",
                self.config.reconcile_interval_seconds,
                self.sweeper.sweep,
            ),
        ]

    # ── Jobs ──────────────────────────────────────────────────────────────────

    def _run_job(self, job: ScheduledJob) -> bool:
        """Run one pass.  Returns ``True`` on success; errors are logged."""
        log.debug("[%s] Running.", job.name)
        try:
            job.action()
        except Exception as exc:
            log.error("[%s] Pass failed: %s", job.name, exc, exc_info=True)
            return False
        return True

    def next_delay(self, interval_seconds: float) -> float:
        """Interval plus a random jitter in ``[0, jitter_seconds]``."""
        return interval_seconds + self._rng.uniform(0, self.config.jitter_seconds)

    def run_due(self) -> list[str]:
        """Run every job whose time has come and reschedule it.

        Returns:
            Names of the jobs that ran.
        """
        ran: list[str] = []
        for job in self.jobs:
            now = self._monotonic()
            if now < job.next_run:
                continue
            self._run_job(job)
            job.next_run = self._monotonic() + self.next_delay(job.interval_seconds)
            ran.append(job.name)
        return ran

    # ── Main loop ─────────────────────────────────────────────────────────────

    def start(self, skip_initial: bool = False) -> None:
        """Start the daemon.  Blocks until Ctrl-C (or SIGTERM on Linux/macOS).

        Args:
            skip_initial: Wait one interval before the first run of each
                job instead of running immediately.
        """
        start = self._monotonic()
        for job in self.jobs:
            job.next_run = start + self.next_delay(job.interval_seconds) if skip_initial else start

        log.info(
            "Scheduler started.  transactions every %.0fs, reconcile every %.0fs, jitter %.1fs",
            self.config.transaction_interval_seconds,
            self.config.reconcile_interval_seconds,
            self.config.jitter_seconds,
        )

        self._running = True

        def _shutdown(signum, frame):  # noqa: ANN001
            log.info("Signal %d received — stopping scheduler.", signum)
            self._running = False

        signal.signal(signal.SIGINT, _shutdown)
        if platform.system() != "Windows":
            signal.signal(signal.SIGTERM, _shutdown)

        while self._running:
            self.run_due()
            self._sleep(self.config.tick_seconds)

        log.info("Scheduler stopped.")

    def stop(self) -> None:
        self._running = False
