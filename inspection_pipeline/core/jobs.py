"""Job state machine: pending -> processing -> completed | failed."""

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
import structlog

from inspection_pipeline.config import Settings, get_settings
from inspection_pipeline.core.audit import AuditLogger
from inspection_pipeline.core.chainer import COMPONENT as CHAINER_COMPONENT
from inspection_pipeline.core.chainer import CompletionChainer
from inspection_pipeline.core.queue import ChainOutcome, insert_job, record_invocation
from inspection_pipeline.core.state import InspectionStatus, JobStatus, JobType
from inspection_pipeline.db.models import Inspection, Job, OutboxEvent, utcnow
from inspection_pipeline.errors import (
    InspectionExistsError,
    InspectionNotFoundError,
    JobNotFoundError,
    JobTransitionError,
)

logger = structlog.get_logger()


@dataclass
class TransitionResult:
    """A committed transition and the invocations it recorded."""

    job: Job
    events: list[OutboxEvent] = field(default_factory=list)


class JobStateMachine:
    """Owns every status write to pipeline jobs.

    Forward transitions are single conditional updates on ``status`` so two
    workers racing for the same job cannot both win. The only backward
    transition, back to ``pending``, belongs to recovery.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        chainer: CompletionChainer | None = None,
        audit: AuditLogger | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.chainer = chainer or CompletionChainer(self.settings)
        self.audit = audit or AuditLogger(session_factory)

    def open_inspection(self, user_id: str, inspection_id: str | None = None) -> Inspection:
        """Create a pending inspection row for ``user_id``.

        Raises:
            InspectionExistsError: If ``inspection_id`` is already taken
        """
        try:
            with self.session_factory() as session, session.begin():
                if inspection_id and session.get(Inspection, inspection_id) is not None:
                    raise InspectionExistsError(f"Inspection {inspection_id} already exists")
                inspection = Inspection(user_id=user_id, status=InspectionStatus.PENDING.value)
                if inspection_id:
                    inspection.id = inspection_id
                session.add(inspection)
        except IntegrityError as e:
            # Opened concurrently under the same id
            raise InspectionExistsError(f"Inspection {inspection_id} already exists") from e
        return inspection

    def get_inspection(self, inspection_id: str) -> Inspection:
        with self.session_factory() as session:
            inspection = session.get(Inspection, inspection_id)
            if inspection is None:
                raise InspectionNotFoundError(f"Inspection {inspection_id} not found")
            return inspection

    def submit_inspection(
        self,
        inspection_id: str,
        chunks: list[dict[str, Any]],
        workflow_run_id: str | None = None,
    ) -> TransitionResult:
        """Store the chunk plan and enqueue the first chunk."""
        if not chunks:
            raise ValueError("An inspection needs at least one chunk to analyse")

        with self.session_factory() as session, session.begin():
            inspection = session.get(Inspection, inspection_id)
            if inspection is None:
                raise InspectionNotFoundError(f"Inspection {inspection_id} not found")
            existing = session.scalar(select(Job.id).where(Job.inspection_id == inspection_id).limit(1))
            if existing is not None:
                raise JobTransitionError(f"Inspection {inspection_id} was already submitted")

            inspection.chunk_plan = list(chunks)
            inspection.total_chunks = len(chunks)
            inspection.status = InspectionStatus.PROCESSING.value
            if workflow_run_id:
                inspection.workflow_run_id = workflow_run_id

            job = insert_job(
                session,
                self.settings,
                inspection_id,
                JobType.CHUNK_ANALYSIS,
                chunk_index=1,
                total_chunks=len(chunks),
                chunk_data={"chunk": chunks[0], "context": None},
            )
            event = record_invocation(
                session,
                self.settings,
                inspection_id,
                JobType.CHUNK_ANALYSIS.value,
                {"inspection_id": inspection_id, "completed_sequence": 0},
                job_id=job.id,
            )

        logger.info("Inspection submitted", inspection_id=inspection_id, total_chunks=len(chunks))
        return TransitionResult(job=job, events=[event])

    def create_job(
        self,
        session: Session,
        inspection_id: str,
        job_type: JobType,
        *,
        chunk_index: int | None = None,
        total_chunks: int | None = None,
        chunk_data: dict[str, Any] | None = None,
    ) -> Job:
        """Insert a pending job at the next sequence position of an inspection."""
        return insert_job(
            session,
            self.settings,
            inspection_id,
            job_type,
            chunk_index=chunk_index,
            total_chunks=total_chunks,
            chunk_data=chunk_data,
        )

    def get(self, job_id: str) -> Job:
        with self.session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            return job

    def list_jobs(self, inspection_id: str) -> list[Job]:
        with self.session_factory() as session:
            query = select(Job).where(Job.inspection_id == inspection_id).order_by(Job.sequence_order)
            return list(session.scalars(query).all())

    def completed_results(self, inspection_id: str) -> list[Job]:
        """Completed jobs in sequence order, the inputs of the final report."""
        with self.session_factory() as session:
            query = (
                select(Job)
                .where(Job.inspection_id == inspection_id, Job.status == JobStatus.COMPLETED.value)
                .order_by(Job.sequence_order)
            )
            return list(session.scalars(query).all())

    def pipeline_cost(self, inspection_id: str) -> dict[str, float | int]:
        """Total AI cost and tokens recorded across an inspection's jobs."""
        with self.session_factory() as session:
            cost, tokens = session.execute(
                select(func.coalesce(func.sum(Job.cost), 0.0), func.coalesce(func.sum(Job.total_tokens), 0))
                .where(Job.inspection_id == inspection_id)
            ).one()
        return {"total_cost": float(cost), "total_tokens": int(tokens)}

    def claim(self, job_id: str) -> Job:
        """Take ownership of a pending job."""
        with self.session_factory() as session, session.begin():
            won = self._compare_and_set(
                session,
                job_id,
                expected=JobStatus.PENDING,
                values={"status": JobStatus.PROCESSING.value, "started_at": utcnow(), "error_message": None},
            )
            if not won:
                raise JobTransitionError(f"Job {job_id} is not pending; another worker owns it")
            job = session.get(Job, job_id)

        logger.info("Job claimed", job_id=job_id, sequence=job.sequence_order)
        return job

    def claim_next(self, inspection_id: str, after_sequence: int = 0) -> Job | None:
        """Claim the lowest pending job after ``after_sequence``, if any."""
        with self.session_factory() as session:
            candidates = session.scalars(
                select(Job.id)
                .where(
                    Job.inspection_id == inspection_id,
                    Job.status == JobStatus.PENDING.value,
                    Job.sequence_order > after_sequence,
                )
                .order_by(Job.sequence_order)
            ).all()

        for job_id in candidates:
            try:
                return self.claim(job_id)
            except JobTransitionError:
                # Lost the race for this one; try the next
                continue
        return None

    def complete(
        self,
        job_id: str,
        result: dict[str, Any] | None = None,
        cost: float | None = None,
        total_tokens: int | None = None,
    ) -> TransitionResult:
        """Mark an owned job completed and run the chainer in the same transaction."""
        values: dict[str, Any] = {
            "status": JobStatus.COMPLETED.value,
            "chunk_result": result,
            "completed_at": utcnow(),
            "error_message": None,
        }
        if cost is not None:
            values["cost"] = cost
        if total_tokens is not None:
            values["total_tokens"] = total_tokens

        with self.session_factory() as session, session.begin():
            inspection_id = session.scalar(select(Job.inspection_id).where(Job.id == job_id))
            if inspection_id is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            # Every writer that appends jobs to an inspection serializes on its row
            session.get(Inspection, inspection_id, with_for_update=True)

            won = self._compare_and_set(session, job_id, expected=JobStatus.PROCESSING, values=values)
            if not won:
                raise JobTransitionError(f"Job {job_id} is not processing; completion rejected")
            job = session.get(Job, job_id)
            outcome = self.chainer.on_job_completed(session, job)

        logger.info("Job completed", job_id=job_id, job_type=job.job_type, sequence=job.sequence_order)
        self._write_notes(outcome)
        return TransitionResult(job=job, events=outcome.events)

    def fail(self, job_id: str, error_message: str) -> Job:
        """Mark an owned job failed; recovery decides whether it runs again."""
        with self.session_factory() as session, session.begin():
            won = self._compare_and_set(
                session,
                job_id,
                expected=JobStatus.PROCESSING,
                values={"status": JobStatus.FAILED.value, "error_message": error_message, "completed_at": utcnow()},
            )
            if not won:
                raise JobTransitionError(f"Job {job_id} is not processing; failure rejected")
            job = session.get(Job, job_id)

        logger.warning("Job failed", job_id=job_id, error=error_message, retry_count=job.retry_count)
        return job

    @staticmethod
    def reset_for_retry(session: Session, job: Job) -> bool:
        """Send a failed or stuck job back to pending. Recovery only.

        Conditional on the status and retry count observed by the caller, so a
        concurrent sweep cannot reset the same attempt twice.
        """
        if job.retry_count >= job.max_retries:
            return False
        result = session.execute(
            update(Job)
            .where(
                Job.id == job.id,
                Job.status.in_([JobStatus.PROCESSING.value, JobStatus.FAILED.value]),
                Job.retry_count == job.retry_count,
            )
            .values(
                status=JobStatus.PENDING.value,
                retry_count=Job.retry_count + 1,
                started_at=None,
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        session.refresh(job)
        return True

    @staticmethod
    def _compare_and_set(session: Session, job_id: str, expected: JobStatus, values: dict[str, Any]) -> bool:
        exists = session.scalar(select(Job.id).where(Job.id == job_id))
        if exists is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        result = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _write_notes(self, outcome: ChainOutcome) -> None:
        for message, related_id in outcome.notes:
            self.audit.record(CHAINER_COMPONENT, message, related_id)
