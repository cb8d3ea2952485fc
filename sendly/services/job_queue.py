import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sendly.core.config import Settings
from sendly.core.errors import QueueUnavailableError, TransientError, ValidationError
from sendly.core.observability import log_event
from sendly.core.retry import BackoffPolicy
from sendly.db.session import Database
from sendly.models.queue_job import QueueJob

logger = logging.getLogger("sendly.queue")

SMS_QUEUE = "sms-send"
SMS_DELIVER_JOB = "sms.deliver"


@dataclass(frozen=True)
class JobSpec:
    job_type: str
    payload: dict[str, Any]
    job_key: str
    group_key: str | None = None
    attempts: int | None = None
    backoff: BackoffPolicy | None = None
    delay_ms: int = 0


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    job_type: str
    job_key: str
    group_key: str | None
    payload: dict[str, Any]
    attempt: int
    max_attempts: int
    backoff: BackoffPolicy

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass
class WorkerSummary:
    processed: int = 0
    completed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    errors: list[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DatabaseJobQueue:
    """At-least-once job queue stored in `queue_jobs`.

    Jobs are claimed with a compare-and-set on status, so two workers polling
    the same table never run the same attempt twice. A job left in
    `processing` longer than the visibility timeout is handed out again.
    """

    def __init__(
        self,
        database: Database,
        *,
        queue_name: str = SMS_QUEUE,
        default_attempts: int = 5,
        default_backoff: BackoffPolicy | None = None,
        visibility_timeout_seconds: int = 300,
    ):
        self.database = database
        self.queue_name = queue_name
        self.default_attempts = default_attempts
        self.default_backoff = default_backoff or BackoffPolicy(kind="exponential", base_delay_ms=2000)
        self.visibility_timeout_seconds = visibility_timeout_seconds

    @classmethod
    def from_settings(cls, database: Database, settings: Settings, *, queue_name: str = SMS_QUEUE) -> "DatabaseJobQueue":
        return cls(
            database,
            queue_name=queue_name,
            default_attempts=settings.queue_default_attempts,
            default_backoff=BackoffPolicy(
                kind=settings.queue_backoff_type,
                base_delay_ms=settings.queue_backoff_delay_ms,
            ),
            visibility_timeout_seconds=settings.queue_visibility_timeout_seconds,
        )

    def _build_job(self, spec: JobSpec, now: datetime) -> QueueJob:
        if not spec.job_key:
            raise ValidationError("job_key is required")
        backoff = spec.backoff or self.default_backoff
        return QueueJob(
            queue_name=self.queue_name,
            job_type=spec.job_type,
            job_key=spec.job_key,
            group_key=spec.group_key,
            payload_json=spec.payload,
            status="pending",
            attempt_count=0,
            max_attempts=spec.attempts or self.default_attempts,
            backoff_type=backoff.kind,
            backoff_delay_ms=backoff.base_delay_ms,
            next_attempt_at=now + timedelta(milliseconds=spec.delay_ms),
        )

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        job_key: str,
        group_key: str | None = None,
        attempts: int | None = None,
        backoff: BackoffPolicy | None = None,
        delay_ms: int = 0,
    ) -> bool:
        spec = JobSpec(
            job_type=job_type,
            payload=payload,
            job_key=job_key,
            group_key=group_key,
            attempts=attempts,
            backoff=backoff,
            delay_ms=delay_ms,
        )
        return self.enqueue_many([spec]) == 1

    def enqueue_many(self, specs: list[JobSpec]) -> int:
        """Insert all jobs in one transaction; keys that already exist are skipped.

        Either every new job is stored or none is. Returns the number of jobs created.
        """
        if not specs:
            return 0

        def _insert(db: Session) -> int:
            now = _utcnow()
            keys = [spec.job_key for spec in specs]
            existing = set(
                db.execute(select(QueueJob.job_key).where(QueueJob.job_key.in_(keys))).scalars().all()
            )
            created = 0
            seen: set[str] = set()
            for spec in specs:
                if spec.job_key in existing or spec.job_key in seen:
                    continue
                seen.add(spec.job_key)
                db.add(self._build_job(spec, now))
                created += 1
            db.flush()
            return created

        try:
            created = self.database.run_in_transaction(_insert)
        except (SQLAlchemyError, TransientError) as exc:
            log_event(
                logger,
                "queue.enqueue.failed",
                level=logging.ERROR,
                queue=self.queue_name,
                jobs=len(specs),
                error=str(exc),
            )
            raise QueueUnavailableError("Job queue unavailable, please retry") from exc

        log_event(
            logger,
            "queue.enqueued",
            queue=self.queue_name,
            requested=len(specs),
            created=created,
        )
        return created

    def count_for_group(self, db: Session, group_key: str) -> int:
        return int(
            db.execute(
                select(func.count(QueueJob.id)).where(
                    QueueJob.queue_name == self.queue_name,
                    QueueJob.group_key == group_key,
                )
            ).scalar_one()
        )

    def claim_due(self, limit: int = 20) -> list[ClaimedJob]:
        def _claim(db: Session) -> list[ClaimedJob]:
            now = _utcnow()
            self._recover_stale(db, now)

            candidates = db.execute(
                select(QueueJob)
                .where(
                    QueueJob.queue_name == self.queue_name,
                    QueueJob.status == "pending",
                    QueueJob.next_attempt_at <= now,
                )
                .order_by(QueueJob.next_attempt_at.asc(), QueueJob.created_at.asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
            ).scalars().all()

            claimed: list[ClaimedJob] = []
            for job in candidates:
                result = db.execute(
                    update(QueueJob)
                    .where(QueueJob.id == job.id, QueueJob.status == "pending")
                    .values(
                        status="processing",
                        locked_at=now,
                        attempt_count=QueueJob.attempt_count + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                claimed.append(
                    ClaimedJob(
                        id=job.id,
                        job_type=job.job_type,
                        job_key=job.job_key,
                        group_key=job.group_key,
                        payload=dict(job.payload_json or {}),
                        attempt=job.attempt_count + 1,
                        max_attempts=job.max_attempts,
                        backoff=BackoffPolicy(kind=job.backoff_type, base_delay_ms=job.backoff_delay_ms),
                    )
                )
            return claimed

        return self.database.run_in_transaction(_claim)

    def _recover_stale(self, db: Session, now: datetime) -> None:
        stale_before = now - timedelta(seconds=self.visibility_timeout_seconds)
        stale = (
            QueueJob.queue_name == self.queue_name,
            QueueJob.status == "processing",
            QueueJob.locked_at < stale_before,
        )
        db.execute(
            update(QueueJob)
            .where(*stale, QueueJob.attempt_count >= QueueJob.max_attempts)
            .values(status="dead_letter", locked_at=None, last_error="Visibility timeout expired on final attempt")
            .execution_options(synchronize_session=False)
        )
        recovered = db.execute(
            update(QueueJob)
            .where(*stale)
            .values(status="pending", locked_at=None, next_attempt_at=now, last_error="Visibility timeout expired")
            .execution_options(synchronize_session=False)
        )
        if recovered.rowcount:
            log_event(logger, "queue.jobs.recovered", level=logging.WARNING, queue=self.queue_name, count=recovered.rowcount)

    def complete(self, job_id: str) -> None:
        def _complete(db: Session) -> None:
            db.execute(
                update(QueueJob)
                .where(QueueJob.id == job_id, QueueJob.status == "processing")
                .values(status="completed", locked_at=None, completed_at=_utcnow(), last_error=None)
                .execution_options(synchronize_session=False)
            )

        self.database.run_in_transaction(_complete)

    def fail(self, job: ClaimedJob, error: str) -> str:
        """Record a failed attempt; returns `retry` or `dead_letter`."""
        outcome = "dead_letter" if job.is_final_attempt else "retry"

        def _fail(db: Session) -> None:
            values: dict[str, Any] = {"locked_at": None, "last_error": error[:1000]}
            if outcome == "dead_letter":
                values["status"] = "dead_letter"
            else:
                values["status"] = "pending"
                values["next_attempt_at"] = _utcnow() + timedelta(milliseconds=job.backoff.delay_ms(job.attempt))
            db.execute(
                update(QueueJob)
                .where(QueueJob.id == job.id, QueueJob.status == "processing")
                .values(**values)
                .execution_options(synchronize_session=False)
            )

        self.database.run_in_transaction(_fail)
        log_event(
            logger,
            "queue.job.failed",
            level=logging.WARNING,
            queue=self.queue_name,
            job_id=job.id,
            job_key=job.job_key,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            outcome=outcome,
            error=error,
        )
        return outcome

    def stats(self) -> dict[str, int]:
        with self.database.session() as db:
            rows = db.execute(
                select(QueueJob.status, func.count(QueueJob.id))
                .where(QueueJob.queue_name == self.queue_name)
                .group_by(QueueJob.status)
            ).all()
        return {status: int(count) for status, count in rows}


JobHandler = Callable[[ClaimedJob], None]


class JobWorker:
    def __init__(self, queue: DatabaseJobQueue, handlers: dict[str, JobHandler]):
        self.queue = queue
        self.handlers = handlers

    def run_once(self, limit: int = 20) -> WorkerSummary:
        summary = WorkerSummary()
        for job in self.queue.claim_due(limit):
            summary.processed += 1
            handler = self.handlers.get(job.job_type)
            if handler is None:
                error = f"No handler registered for job type '{job.job_type}'"
                summary.errors.append(error)
                self._record_failure(job, error, summary)
                continue
            try:
                handler(job)
            except Exception as exc:
                # The job is rescheduled or dead-lettered; siblings keep running.
                summary.errors.append(str(exc))
                self._record_failure(job, str(exc) or exc.__class__.__name__, summary)
                continue
            self.queue.complete(job.id)
            summary.completed += 1
        return summary

    def _record_failure(self, job: ClaimedJob, error: str, summary: WorkerSummary) -> None:
        outcome = self.queue.fail(job, error)
        if outcome == "dead_letter":
            summary.dead_lettered += 1
        else:
            summary.retried += 1
