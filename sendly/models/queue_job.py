from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from sendly.core.id_utils import generate_shortuuid
from sendly.db.base import Base


class QueueJob(Base):
    __tablename__ = "queue_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_shortuuid)
    queue_name: Mapped[str] = mapped_column(String(60), nullable=False)
    job_type: Mapped[str] = mapped_column(String(60), nullable=False)
    # Idempotency key; re-enqueueing the same key is a no-op.
    job_key: Mapped[str] = mapped_column(String(191), nullable=False, unique=True)
    group_key: Mapped[Optional[str]] = mapped_column(String(191), nullable=True, index=True)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", server_default="pending")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5, server_default="5")
    backoff_type: Mapped[str] = mapped_column(String(20), nullable=False, default="exponential", server_default="exponential")
    backoff_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=2000, server_default="2000")
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_queue_jobs_queue_status_next_attempt", "queue_name", "status", "next_attempt_at"),
    )
