"""Completion chainer: decides what runs after a job or agent completes."""

from sqlalchemy import select, update
from sqlalchemy.orm import Session
import structlog

from inspection_pipeline.agents.attempts import latest_attempts
from inspection_pipeline.config import Settings, get_settings
from inspection_pipeline.core.queue import ChainOutcome, insert_job, record_invocation
from inspection_pipeline.core.state import AGENT_SUCCESS_STATUSES, AgentStatus, JobType, next_stage
from inspection_pipeline.db.models import AgentExecution, Inspection, Job

logger = structlog.get_logger()

COMPONENT = "trigger_next_job"


class CompletionChainer:
    """Enqueues the next unit of work when a job transitions into completed.

    Callers must only invoke the hooks for a genuine transition into
    ``completed`` and from inside the transaction that made it, so the
    downstream job and its invocation commit together with the completion.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.logger = logger.bind(component=COMPONENT)

    def on_job_completed(self, session: Session, job: Job) -> ChainOutcome:
        """Chain from a completed job."""
        outcome = ChainOutcome()
        job_type = JobType(job.job_type)

        if job_type == JobType.FINAL_REPORT:
            outcome.note(f"Final report job {job.id} completed; pipeline finished", job.id)
            return outcome

        if job_type == JobType.CHUNK_ANALYSIS and job.total_chunks and (job.chunk_index or 0) < job.total_chunks:
            self._enqueue_next_chunk(session, job, outcome)
            return outcome

        following = next_stage(job_type)
        if following is not None:
            self._enqueue_stage(session, job, following, outcome)
        else:
            self.trigger_final_report(session, job.inspection_id, job.id, outcome)
        return outcome

    def on_agent_completed(self, session: Session, execution: AgentExecution) -> ChainOutcome:
        """Trigger the final report once every agent of the run has succeeded."""
        outcome = ChainOutcome()
        latest = latest_attempts(session, execution.inspection_id, execution.workflow_run_id)
        pending = sorted(
            name for name, attempt in latest.items() if AgentStatus(attempt.status) not in AGENT_SUCCESS_STATUSES
        )
        if pending:
            self.logger.debug("Workflow run still has unfinished agents", agents=pending)
            return outcome

        outcome.note(
            f"All {len(latest)} agents of workflow run {execution.workflow_run_id} completed",
            execution.id,
        )
        self.trigger_final_report(session, execution.inspection_id, execution.id, outcome)
        return outcome

    def trigger_final_report(
        self, session: Session, inspection_id: str, triggered_by: str, outcome: ChainOutcome
    ) -> bool:
        """Enqueue final report generation exactly once per inspection.

        The one-shot flag is claimed with a conditional update; a sibling that
        loses the race, or any completion after delivery, gets rowcount 0.
        """
        claimed = session.execute(
            update(Inspection)
            .where(
                Inspection.id == inspection_id,
                Inspection.report_delivered.is_(False),
                Inspection.final_report_triggered.is_(False),
            )
            .values(final_report_triggered=True)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            outcome.note(
                f"Final report for inspection {inspection_id} already triggered or delivered; skipping",
                triggered_by,
            )
            return False

        final_job = insert_job(session, self.settings, inspection_id, JobType.FINAL_REPORT)
        event = record_invocation(
            session,
            self.settings,
            inspection_id,
            JobType.FINAL_REPORT.value,
            {"inspection_id": inspection_id},
            job_id=final_job.id,
            triggered_by=triggered_by,
        )
        outcome.events.append(event)
        outcome.note(
            f"Enqueued final report job {final_job.id} (sequence {final_job.sequence_order})",
            triggered_by,
        )
        return True

    def _enqueue_next_chunk(self, session: Session, job: Job, outcome: ChainOutcome) -> None:
        next_index = (job.chunk_index or 0) + 1
        if self._already_enqueued(session, job.inspection_id, JobType.CHUNK_ANALYSIS, next_index):
            outcome.note(f"Chunk {next_index} already enqueued for inspection {job.inspection_id}", job.id)
            return

        inspection = session.get(Inspection, job.inspection_id)
        plan = (inspection.chunk_plan if inspection else None) or []
        chunk_input = plan[next_index - 1] if len(plan) >= next_index else None

        next_job = insert_job(
            session,
            self.settings,
            job.inspection_id,
            JobType.CHUNK_ANALYSIS,
            chunk_index=next_index,
            total_chunks=job.total_chunks,
            chunk_data={"chunk": chunk_input, "context": job.chunk_result},
        )
        self._record(session, job, next_job, outcome)

    def _enqueue_stage(self, session: Session, job: Job, stage: JobType, outcome: ChainOutcome) -> None:
        if self._already_enqueued(session, job.inspection_id, stage):
            outcome.note(f"Stage {stage.value} already enqueued for inspection {job.inspection_id}", job.id)
            return

        next_job = insert_job(session, self.settings, job.inspection_id, stage)
        self._record(session, job, next_job, outcome)

    def _record(self, session: Session, job: Job, next_job: Job, outcome: ChainOutcome) -> None:
        event = record_invocation(
            session,
            self.settings,
            job.inspection_id,
            next_job.job_type,
            {"inspection_id": job.inspection_id, "completed_sequence": job.sequence_order},
            job_id=next_job.id,
            triggered_by=job.id,
        )
        outcome.events.append(event)
        outcome.note(
            f"Job {job.id} completed; enqueued {next_job.job_type} job {next_job.id} "
            f"(sequence {next_job.sequence_order})",
            job.id,
        )

    @staticmethod
    def _already_enqueued(
        session: Session, inspection_id: str, job_type: JobType, chunk_index: int | None = None
    ) -> bool:
        query = select(Job.id).where(Job.inspection_id == inspection_id, Job.job_type == job_type.value)
        if chunk_index is not None:
            query = query.where(Job.chunk_index == chunk_index)
        return session.scalar(query.limit(1)) is not None
