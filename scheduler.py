"""
Background worker for periodic jobs: expiring agent broadcast batches and
draining the email outbox.
"""
import logging
import threading
from typing import Any, Dict, Optional

from pymongo.database import Database

import config
from mailer import Mailer
from notifications import Notifier

logger = logging.getLogger(__name__)


class Scheduler:
    """Runs every job once per interval on a daemon thread until stopped."""

    def __init__(
        self,
        db: Database,
        interval_sec: float = config.SCHEDULER_INTERVAL_SEC,
        notifier: Optional[Notifier] = None,
        mailer: Optional[Mailer] = None,
    ) -> None:
        self.interval_sec = interval_sec
        self.notifier = notifier or Notifier(db)
        self.mailer = mailer or Mailer(db)
        self.runs = 0
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name="Scheduler", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self, join: bool = True) -> None:
        self._stop_event.set()
        if join and self._thread.is_alive():
            self._thread.join()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def run_once(self) -> Dict[str, Any]:
        """Run every job a single time; a failing job does not stop the others."""
        result: Dict[str, Any] = {}
        for name, job in (
            ("expired_batches", self.notifier.process_expired_batches),
            ("retried_emails", self.mailer.retry_failed),
            ("sent_emails", self.mailer.process_pending),
        ):
            try:
                result[name] = job()
            except Exception:
                logger.exception("Scheduled job %s failed", name)
                result[name] = None
        self.runs += 1
        return result

    def _run(self) -> None:
        logger.info("Scheduler started, interval %ss", self.interval_sec)
        while not self._stop_event.is_set():
            self.run_once()
            # wait() returns early when stop() is called
            self._stop_event.wait(self.interval_sec)
        logger.info("Scheduler stopped")
