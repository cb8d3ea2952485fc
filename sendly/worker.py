import json
import logging
import signal
import threading
import time

from sendly.core.config import Settings, load_settings
from sendly.core.observability import setup_observability
from sendly.db.session import Database
from sendly.services.container import ServiceContainer, build_services

logger = logging.getLogger("sendly.worker")


class WorkerRunner:
    """Polls the SMS queue and runs periodic reconciliation until stopped."""

    def __init__(self, services: ServiceContainer, *, stop_event: threading.Event | None = None):
        self.services = services
        self.settings = services.settings
        self.worker = services.job_worker()
        self.stop_event = stop_event or threading.Event()
        self._last_reconciled = 0.0

    def run_reconciliation(self) -> None:
        sweep = self.services.orphan_sweeper.sweep()
        polled = self.services.delivery_reconciler.poll_provider_statuses(
            self.services.sms_provider,
            older_than_minutes=self.settings.delivery_status_poll_after_minutes,
            limit=self.settings.delivery_status_poll_batch_size,
        )
        finalized = self.services.delivery_reconciler.refresh_active_campaigns()
        if sweep.refunded or polled.updated or finalized:
            logger.info(
                json.dumps(
                    {
                        "event": "worker.reconciliation",
                        "orphans_refunded": sweep.refunded,
                        "statuses_updated": polled.updated,
                        "campaigns_finalized": finalized,
                    }
                )
            )

    def tick(self) -> int:
        now = time.monotonic()
        if now - self._last_reconciled >= self.settings.reconciliation_interval_seconds:
            self._last_reconciled = now
            self.run_reconciliation()

        summary = self.worker.run_once(self.settings.queue_batch_size)
        if summary.processed:
            logger.info(
                json.dumps(
                    {
                        "event": "worker.batch",
                        "processed": summary.processed,
                        "completed": summary.completed,
                        "retried": summary.retried,
                        "dead_lettered": summary.dead_lettered,
                    }
                )
            )
        return summary.processed

    def run_forever(self) -> None:
        logger.info(json.dumps({"event": "worker.started", "queue": self.services.queue.queue_name}))
        while not self.stop_event.is_set():
            processed = self.tick()
            if not processed:
                self.stop_event.wait(self.settings.queue_poll_interval_seconds)
        logger.info(json.dumps({"event": "worker.stopped"}))


def main(settings: Settings | None = None) -> None:
    setup_observability()
    settings = settings or load_settings()
    database = Database.from_settings(settings)
    runner = WorkerRunner(build_services(settings, database))

    def _stop(signum, _frame):
        logger.info(json.dumps({"event": "worker.signal", "signal": signum}))
        runner.stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    try:
        runner.run_forever()
    finally:
        database.dispose()


if __name__ == "__main__":
    main()
