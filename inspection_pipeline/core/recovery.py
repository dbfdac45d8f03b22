"""Periodic recovery of stuck jobs and agent attempts."""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
import structlog

from inspection_pipeline.agents.attempts import latest_attempts
from inspection_pipeline.agents.tracker import create_retry_attempt
from inspection_pipeline.config import Settings, get_settings
from inspection_pipeline.core.audit import AuditLogger
from inspection_pipeline.core.dispatcher import OutboxDispatcher
from inspection_pipeline.core.jobs import JobStateMachine
from inspection_pipeline.core.queue import ChainOutcome, record_invocation
from inspection_pipeline.core.state import AGENT_RETRYABLE_STATUSES, AgentStatus, InspectionStatus, JobStatus
from inspection_pipeline.db.models import AgentExecution, Inspection, Job, OutboxEvent, utcnow

logger = structlog.get_logger()

COMPONENT = "job_recovery"

JOB_RETRIES_EXHAUSTED = "JOB_RETRIES_EXHAUSTED"
AGENT_RETRIES_EXHAUSTED = "AGENT_RETRIES_EXHAUSTED"
AGENT_TIMEOUT = "AGENT_TIMEOUT"

OPEN_INSPECTION_STATUSES = (InspectionStatus.PENDING.value, InspectionStatus.PROCESSING.value)
STUCK_JOB_STATUSES = (JobStatus.PROCESSING.value, JobStatus.FAILED.value)


@dataclass
class RecoveryReport:
    """Counts from one recovery sweep."""

    detected: int = 0
    recovered: int = 0
    skipped: int = 0
    errors: int = 0
    exhausted_inspections: list[str] = field(default_factory=list)


@dataclass
class AgentSweepReport:
    """Counts from one agent sweep."""

    timed_out: int = 0
    retried: int = 0
    exhausted_inspections: list[str] = field(default_factory=list)


class StuckJobRecovery:
    """Finds wedged jobs and agents and puts them back in motion.

    Every step is a conditional update, so overlapping sweeps are harmless:
    whichever sweep resets a job first wins and the other skips it.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        dispatcher: OutboxDispatcher,
        audit: AuditLogger | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self.audit = audit or AuditLogger(session_factory)
        self.logger = logger.bind(component=COMPONENT)

    @property
    def deadline(self) -> timedelta:
        return timedelta(seconds=self.settings.stuck_job_deadline_seconds)

    async def run(self) -> RecoveryReport:
        """Reset and re-trigger every recoverable stuck job."""
        report = RecoveryReport()
        candidates = self._candidates()
        if candidates:
            self.logger.info("Found stuck jobs", count=len(candidates))

        for job in candidates:
            report.detected += 1
            self.audit.record(
                COMPONENT,
                f"Detected stuck {job.job_type} job {job.id} for inspection {job.inspection_id} "
                f"(status {job.status}, sequence {job.sequence_order}, retry {job.retry_count}/{job.max_retries})",
                job.id,
            )

            try:
                reset = self._reset_and_record(job.id)
            except SQLAlchemyError as e:
                report.errors += 1
                self.logger.exception("Failed to reset stuck job", job_id=job.id, error=str(e))
                self.audit.record(COMPONENT, f"Failed to reset job {job.id}: {e}", job.id)
                continue

            if reset is None:
                report.skipped += 1
                self.logger.info("Stuck job already handled by another sweep", job_id=job.id)
                continue

            event, completed_sequence = reset
            delivered = await self.dispatcher.dispatch(event.id)
            report.recovered += 1
            outcome = "delivered" if delivered else "delivery failed, left for the outbox drain"
            self.audit.record(
                COMPONENT,
                f"Re-triggered job {job.id} from completed sequence {completed_sequence}: {outcome}",
                job.id,
            )

        report.exhausted_inspections = self._fail_exhausted()
        return report

    def find_stuck_jobs(self) -> list[dict[str, Any]]:
        """Jobs past the stuck deadline, recoverable or not."""
        now = utcnow()
        with self.session_factory() as session:
            jobs = session.scalars(
                select(Job)
                .where(Job.status.in_(STUCK_JOB_STATUSES), Job.started_at < now - self.deadline)
                .order_by(Job.started_at)
            ).all()

        return [
            {
                "job_id": job.id,
                "inspection_id": job.inspection_id,
                "job_type": job.job_type,
                "status": job.status,
                "sequence_order": job.sequence_order,
                "retry_count": job.retry_count,
                "max_retries": job.max_retries,
                "minutes_stuck": round((now - job.started_at).total_seconds() / 60, 1),
                "will_recover": job.retry_count < job.max_retries
                and job.job_type in self.settings.recoverable_job_types,
            }
            for job in jobs
        ]

    def _candidates(self) -> list[Job]:
        cutoff = utcnow() - self.deadline
        with self.session_factory() as session:
            query = (
                select(Job)
                .join(Inspection, Inspection.id == Job.inspection_id)
                .where(
                    Job.status.in_(STUCK_JOB_STATUSES),
                    Job.started_at < cutoff,
                    Job.retry_count < Job.max_retries,
                    Job.job_type.in_(self.settings.recoverable_job_types),
                    Inspection.status.in_(OPEN_INSPECTION_STATUSES),
                )
                .order_by(Job.inspection_id, Job.sequence_order)
            )
            return list(session.scalars(query).all())

    def _reset_and_record(self, job_id: str) -> tuple[OutboxEvent, int] | None:
        with self.session_factory() as session, session.begin():
            job = session.get(Job, job_id)
            if job is None:
                return None

            last_good = session.scalar(
                select(func.max(Job.sequence_order)).where(
                    Job.inspection_id == job.inspection_id,
                    Job.status == JobStatus.COMPLETED.value,
                    Job.sequence_order < job.sequence_order,
                )
            )
            completed_sequence = last_good or 0

            if not JobStateMachine.reset_for_retry(session, job):
                return None

            event = record_invocation(
                session,
                self.settings,
                job.inspection_id,
                job.job_type,
                {"inspection_id": job.inspection_id, "completed_sequence": completed_sequence},
                job_id=job.id,
                triggered_by=job.id,
            )

        self.logger.info(
            "Stuck job reset",
            job_id=job_id,
            retry_count=job.retry_count,
            completed_sequence=completed_sequence,
        )
        return event, completed_sequence

    def _fail_exhausted(self) -> list[str]:
        """Fail inspections whose jobs used up every retry."""
        now = utcnow()
        failed: list[tuple[str, str]] = []

        with self.session_factory() as session, session.begin():
            # A processing job past its deadline with no retries left will never finish
            exhausted = session.execute(
                select(Job.inspection_id, Job.id)
                .join(Inspection, Inspection.id == Job.inspection_id)
                .where(
                    or_(
                        Job.status == JobStatus.FAILED.value,
                        and_(Job.status == JobStatus.PROCESSING.value, Job.started_at < now - self.deadline),
                    ),
                    Job.retry_count >= Job.max_retries,
                    Inspection.status.in_(OPEN_INSPECTION_STATUSES),
                )
                .order_by(Job.inspection_id, Job.sequence_order)
            ).all()

            for inspection_id, job_id in exhausted:
                message = f"Job {job_id} failed after exhausting its retries"
                if self._fail_inspection(session, inspection_id, JOB_RETRIES_EXHAUSTED, message):
                    failed.append((inspection_id, job_id))

        for inspection_id, job_id in failed:
            self.logger.warning("Inspection failed after job retries", inspection_id=inspection_id, job_id=job_id)
            self.audit.record(
                COMPONENT, f"Inspection {inspection_id} failed: job {job_id} exhausted its retries", job_id
            )
        return [inspection_id for inspection_id, _ in failed]

    async def sweep_agents(self) -> AgentSweepReport:
        """Time out hung agents and retry failed ones within their ceiling."""
        report = AgentSweepReport()
        with self.session_factory() as session:
            runs = session.execute(
                select(Inspection.id, Inspection.workflow_run_id).where(
                    Inspection.status == InspectionStatus.PROCESSING.value,
                    Inspection.workflow_run_id.is_not(None),
                )
            ).all()

        for inspection_id, workflow_run_id in runs:
            outcome = ChainOutcome()
            try:
                with self.session_factory() as session, session.begin():
                    self._sweep_run(session, inspection_id, workflow_run_id, report, outcome)
            except IntegrityError as e:
                # A retry for the same attempt was created concurrently
                self.logger.info("Agent retry already created", inspection_id=inspection_id, error=str(e))
                continue
            except SQLAlchemyError as e:
                self.logger.exception("Agent sweep failed", inspection_id=inspection_id, error=str(e))
                self.audit.record(COMPONENT, f"Agent sweep for inspection {inspection_id} failed: {e}")
                continue

            for message, related_id in outcome.notes:
                self.audit.record(COMPONENT, message, related_id)
            await self.dispatcher.dispatch_all(outcome.events)

        return report

    def _sweep_run(
        self,
        session: Session,
        inspection_id: str,
        workflow_run_id: str,
        report: AgentSweepReport,
        outcome: ChainOutcome,
    ) -> None:
        now = utcnow()
        cutoff = now - timedelta(seconds=self.settings.agent_timeout_seconds)
        retried: list[str] = []
        exhausted: list[str] = []

        for name, attempt in sorted(latest_attempts(session, inspection_id, workflow_run_id).items()):
            status = AgentStatus(attempt.status)

            if status == AgentStatus.RUNNING and attempt.started_at is not None and attempt.started_at < cutoff:
                timed_out = session.execute(
                    update(AgentExecution)
                    .where(AgentExecution.id == attempt.id, AgentExecution.status == AgentStatus.RUNNING.value)
                    .values(
                        status=AgentStatus.TIMEOUT.value,
                        completed_at=now,
                        duration_ms=int((now - attempt.started_at).total_seconds() * 1000),
                        error_code=AGENT_TIMEOUT,
                        error_message=f"No result after {self.settings.agent_timeout_seconds}s",
                    )
                    .execution_options(synchronize_session=False)
                )
                if timed_out.rowcount != 1:
                    continue
                session.refresh(attempt)
                status = AgentStatus.TIMEOUT
                report.timed_out += 1
                outcome.note(f"Agent {name} (attempt {attempt.attempt_number}) timed out", attempt.id)

            if status not in AGENT_RETRYABLE_STATUSES:
                continue
            if attempt.attempt_number >= attempt.max_retries:
                exhausted.append(name)
                continue

            retry = create_retry_attempt(session, attempt)
            retried.append(name)
            outcome.note(
                f"Retrying agent {name} (attempt {retry.attempt_number}/{retry.max_retries})",
                retry.id,
            )

        if exhausted:
            message = f"Agents exhausted their retries: {', '.join(exhausted)}"
            if self._fail_inspection(session, inspection_id, AGENT_RETRIES_EXHAUSTED, message):
                report.exhausted_inspections.append(inspection_id)
                outcome.note(f"Inspection {inspection_id} failed: {message}", inspection_id)
            return

        if retried:
            report.retried += len(retried)
            event = record_invocation(
                session,
                self.settings,
                inspection_id,
                "agent_retry",
                {"inspection_id": inspection_id, "workflow_run_id": workflow_run_id, "agents": retried},
                triggered_by=inspection_id,
            )
            outcome.events.append(event)

    @staticmethod
    def _fail_inspection(session: Session, inspection_id: str, error_code: str, message: str) -> bool:
        result = session.execute(
            update(Inspection)
            .where(Inspection.id == inspection_id, Inspection.status.in_(OPEN_INSPECTION_STATUSES))
            .values(
                status=InspectionStatus.FAILED.value,
                error_code=error_code,
                error_message=message,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
