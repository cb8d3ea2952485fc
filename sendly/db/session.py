import json
import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from sendly.core.config import Settings
from sendly.core.errors import TransientError
from sendly.core.retry import BackoffPolicy

logger = logging.getLogger("sendly.db")

T = TypeVar("T")

# Postgres serialization_failure / deadlock_detected.
_TRANSIENT_PGCODES = {"40001", "40P01"}
_TRANSIENT_MESSAGES = ("database is locked", "deadlock detected", "could not serialize access")


def is_transient_db_error(exc: BaseException) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) in _TRANSIENT_PGCODES:
        return True
    message = str(orig or exc).lower()
    return any(marker in message for marker in _TRANSIENT_MESSAGES)


def build_engine(settings: Settings) -> Engine:
    engine_kwargs: dict[str, object] = {
        # Detect and recover from stale pooled connections.
        "pool_pre_ping": True,
    }

    if settings.database_url.lower().startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        # Tune SQLAlchemy pool for networked databases (e.g., Postgres).
        engine_kwargs.update(
            {
                "pool_size": settings.db_pool_size,
                "max_overflow": settings.db_max_overflow,
                "pool_timeout": settings.db_pool_timeout_seconds,
                "pool_recycle": settings.db_pool_recycle_seconds,
            }
        )

    return create_engine(settings.database_url, **engine_kwargs)


class Database:
    """Engine plus session factory, created by the process entry point and injected everywhere."""

    def __init__(
        self,
        engine: Engine,
        *,
        retry_attempts: int = 3,
        retry_base_delay_ms: int = 50,
    ):
        self.engine = engine
        self.session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=engine,
        )
        self.retry_attempts = retry_attempts
        self.retry_policy = BackoffPolicy(
            kind="exponential",
            base_delay_ms=retry_base_delay_ms,
            max_delay_ms=2000,
            jitter=True,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            build_engine(settings),
            retry_attempts=settings.ledger_retry_attempts,
            retry_base_delay_ms=settings.ledger_retry_base_delay_ms,
        )

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def run_in_transaction(self, fn: Callable[[Session], T], *, attempts: int | None = None) -> T:
        """Run `fn` in a fresh session and commit, retrying transient conflicts.

        `fn` must be safe to re-run from scratch: every attempt starts a new
        transaction and nothing from a failed attempt is committed.
        """
        max_attempts = attempts or self.retry_attempts
        for attempt in range(1, max_attempts + 1):
            db = self.session_factory()
            try:
                result = fn(db)
                db.commit()
                return result
            except DBAPIError as exc:
                db.rollback()
                if not is_transient_db_error(exc):
                    raise
                if attempt >= max_attempts:
                    logger.error(
                        json.dumps(
                            {
                                "event": "db.transaction.exhausted",
                                "attempts": attempt,
                                "error": str(exc.orig or exc),
                            }
                        )
                    )
                    raise TransientError("Database is busy, please retry") from exc
                delay = self.retry_policy.delay_seconds(attempt)
                logger.warning(
                    json.dumps(
                        {
                            "event": "db.transaction.retry",
                            "attempt": attempt,
                            "delay_seconds": round(delay, 3),
                            "error": str(exc.orig or exc),
                        }
                    )
                )
                time.sleep(delay)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
        raise TransientError("Database is busy, please retry")

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def dispose(self) -> None:
        self.engine.dispose()
