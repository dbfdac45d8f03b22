"""Row-level helpers for creating jobs and recording stage invocations.

These run inside the caller's transaction. Creating a job and recording its
invocation in the same transaction means a committed job always has a durable
delivery record, even if the process dies before the executor is called.
"""

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from inspection_pipeline.config import Settings
from inspection_pipeline.core.state import JobStatus, JobType, OutboxStatus
from inspection_pipeline.db.models import Job, OutboxEvent


@dataclass
class ChainOutcome:
    """Side effects produced inside a transaction, acted on after commit."""

    events: list[OutboxEvent] = field(default_factory=list)
    notes: list[tuple[str, str | None]] = field(default_factory=list)

    def note(self, message: str, related_id: str | None = None) -> None:
        self.notes.append((message, related_id))

    def extend(self, other: "ChainOutcome") -> None:
        self.events.extend(other.events)
        self.notes.extend(other.notes)


def next_sequence_order(session: Session, inspection_id: str) -> int:
    """Next free sequence number for an inspection (1-based)."""
    current = session.scalar(
        select(func.max(Job.sequence_order)).where(Job.inspection_id == inspection_id)
    )
    return (current or 0) + 1


def insert_job(
    session: Session,
    settings: Settings,
    inspection_id: str,
    job_type: JobType,
    *,
    chunk_index: int | None = None,
    total_chunks: int | None = None,
    chunk_data: dict[str, Any] | None = None,
) -> Job:
    """Create a pending job at the next sequence position.

    The (inspection_id, sequence_order) unique constraint rejects a concurrent
    writer that allocated the same position.
    """
    job = Job(
        inspection_id=inspection_id,
        job_type=job_type.value,
        status=JobStatus.PENDING.value,
        sequence_order=next_sequence_order(session, inspection_id),
        chunk_index=chunk_index,
        total_chunks=total_chunks,
        chunk_data=chunk_data,
        retry_count=0,
        max_retries=settings.max_job_retries,
    )
    session.add(job)
    session.flush()
    return job


def record_invocation(
    session: Session,
    settings: Settings,
    inspection_id: str,
    endpoint_key: str,
    payload: dict[str, Any],
    *,
    job_id: str | None = None,
    triggered_by: str | None = None,
) -> OutboxEvent:
    """Record a stage executor invocation for delivery after commit."""
    event = OutboxEvent(
        inspection_id=inspection_id,
        job_id=job_id,
        triggered_by=triggered_by,
        endpoint=settings.endpoint_for(endpoint_key),
        payload=payload,
        status=OutboxStatus.PENDING.value,
        attempts=0,
    )
    session.add(event)
    session.flush()
    return event
