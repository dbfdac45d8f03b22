"""Per-agent attempt history for a workflow run."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
import structlog

from inspection_pipeline.agents.attempts import attempt_history
from inspection_pipeline.agents.attempts import latest_attempts as _latest_attempts
from inspection_pipeline.config import Settings, get_settings
from inspection_pipeline.core.audit import AuditLogger
from inspection_pipeline.core.queue import ChainOutcome
from inspection_pipeline.core.state import (
    AGENT_RETRYABLE_STATUSES,
    AGENT_SUCCESS_STATUSES,
    AGENT_TERMINAL_STATUSES,
    AgentStatus,
)
from inspection_pipeline.db.models import AgentExecution, Inspection, OutboxEvent, utcnow
from inspection_pipeline.errors import (
    AgentExecutionNotFoundError,
    AgentRetryExhaustedError,
    AgentStateError,
    InspectionNotFoundError,
)

if TYPE_CHECKING:
    from inspection_pipeline.core.chainer import CompletionChainer

logger = structlog.get_logger()

COMPONENT = "agent_tracker"


@dataclass
class AgentUpdate:
    """A committed agent status change and any invocations it triggered."""

    execution: AgentExecution
    events: list[OutboxEvent] = field(default_factory=list)


def create_retry_attempt(session: Session, execution: AgentExecution) -> AgentExecution:
    """Insert attempt ``n + 1`` for a failed or timed-out attempt.

    Raises:
        AgentStateError: If the attempt is not in a retryable status
        AgentRetryExhaustedError: If the agent already used every attempt
    """
    status = AgentStatus(execution.status)
    if status not in AGENT_RETRYABLE_STATUSES:
        raise AgentStateError(
            f"Agent {execution.agent_name} is {status.value}; only failed or timed out attempts retry"
        )
    if execution.attempt_number >= execution.max_retries:
        raise AgentRetryExhaustedError(
            f"Agent {execution.agent_name} exhausted {execution.max_retries} attempts"
        )

    retry = AgentExecution(
        inspection_id=execution.inspection_id,
        workflow_run_id=execution.workflow_run_id,
        agent_name=execution.agent_name,
        agent_type=execution.agent_type,
        status=AgentStatus.PENDING.value,
        attempt_number=execution.attempt_number + 1,
        max_retries=execution.max_retries,
        input_data=execution.input_data,
        execution_metadata={"retry_of": execution.id},
    )
    session.add(retry)
    session.flush()
    return retry


class AgentExecutionTracker:
    """Tracks attempts of the agents that make up a workflow run.

    Attempts are append-only: a retry is a new row with the next attempt
    number, and a row that reached a terminal status is never rewritten.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        chainer: "CompletionChainer",
        audit: AuditLogger | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.chainer = chainer
        self.settings = settings or get_settings()
        self.audit = audit or AuditLogger(session_factory)
        self.logger = logger.bind(component=COMPONENT)

    def start_run(
        self,
        inspection_id: str,
        workflow_run_id: str,
        agents: dict[str, str],
        input_data: dict[str, Any] | None = None,
    ) -> list[AgentExecution]:
        """Register attempt 1 of every agent (name -> type) of a workflow run."""
        with self.session_factory() as session, session.begin():
            inspection = session.get(Inspection, inspection_id)
            if inspection is None:
                raise InspectionNotFoundError(f"Inspection {inspection_id} not found")
            inspection.workflow_run_id = workflow_run_id

            executions = [
                self._insert(session, inspection_id, workflow_run_id, name, agent_type, input_data=input_data)
                for name, agent_type in agents.items()
            ]

        self.logger.info(
            "Workflow run started",
            inspection_id=inspection_id,
            workflow_run_id=workflow_run_id,
            agents=len(executions),
        )
        return executions

    def record_attempt(
        self,
        inspection_id: str,
        workflow_run_id: str,
        agent_name: str,
        agent_type: str,
        attempt_number: int = 1,
        input_data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AgentExecution:
        with self.session_factory() as session, session.begin():
            return self._insert(
                session,
                inspection_id,
                workflow_run_id,
                agent_name,
                agent_type,
                attempt_number=attempt_number,
                input_data=input_data,
                metadata=metadata,
            )

    def update_status(
        self,
        execution_id: str,
        status: AgentStatus,
        result_data: dict[str, Any] | None = None,
        error_message: str | None = None,
        error_code: str | None = None,
    ) -> AgentUpdate:
        """Move an attempt to ``status``.

        Repeating the current status of a terminal attempt is a no-op; any
        other change to a terminal attempt raises ``AgentStateError``.
        """
        status = AgentStatus(status)
        outcome = ChainOutcome()

        with self.session_factory() as session, session.begin():
            execution = session.get(AgentExecution, execution_id)
            if execution is None:
                raise AgentExecutionNotFoundError(f"Agent execution {execution_id} not found")
            current = AgentStatus(execution.status)

            if current in AGENT_TERMINAL_STATUSES:
                if current == status:
                    return AgentUpdate(execution=execution)
                raise AgentStateError(
                    f"Agent execution {execution_id} is already {current.value}; cannot move to {status.value}"
                )

            # Siblings finishing together serialize on the inspection row
            session.get(Inspection, execution.inspection_id, with_for_update=True)

            now = utcnow()
            values: dict[str, Any] = {"status": status.value}
            if status == AgentStatus.RUNNING and execution.started_at is None:
                values["started_at"] = now
            if status in AGENT_TERMINAL_STATUSES:
                completed_at = execution.completed_at or now
                values["completed_at"] = completed_at
                if execution.started_at is not None:
                    values["duration_ms"] = int((completed_at - execution.started_at).total_seconds() * 1000)
            if result_data is not None:
                values["result_data"] = result_data
            if error_message is not None:
                values["error_message"] = error_message
            if error_code is not None:
                values["error_code"] = error_code

            result = session.execute(
                update(AgentExecution)
                .where(AgentExecution.id == execution_id, AgentExecution.status == current.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise AgentStateError(f"Agent execution {execution_id} changed concurrently")
            session.refresh(execution)

            if status in AGENT_SUCCESS_STATUSES:
                outcome = self.chainer.on_agent_completed(session, execution)

        self.logger.info(
            "Agent status updated",
            execution_id=execution_id,
            agent=execution.agent_name,
            attempt=execution.attempt_number,
            status=status.value,
        )
        for message, related_id in outcome.notes:
            self.audit.record(COMPONENT, message, related_id)
        return AgentUpdate(execution=execution, events=outcome.events)

    def retry(self, execution_id: str) -> AgentExecution:
        """Create the next attempt for a failed or timed-out agent."""
        try:
            with self.session_factory() as session, session.begin():
                execution = session.get(AgentExecution, execution_id)
                if execution is None:
                    raise AgentExecutionNotFoundError(f"Agent execution {execution_id} not found")
                latest = _latest_attempts(session, execution.inspection_id, execution.workflow_run_id)
                current = latest.get(execution.agent_name, execution)
                retry = create_retry_attempt(session, current)
        except IntegrityError as e:
            raise AgentStateError(f"Agent execution {execution_id} was already retried") from e

        self.audit.record(
            COMPONENT,
            f"Retrying agent {retry.agent_name} (attempt {retry.attempt_number}/{retry.max_retries})",
            retry.id,
        )
        return retry

    def latest_attempts(self, inspection_id: str, workflow_run_id: str) -> dict[str, AgentExecution]:
        with self.session_factory() as session:
            return _latest_attempts(session, inspection_id, workflow_run_id)

    def history(self, inspection_id: str, workflow_run_id: str) -> list[AgentExecution]:
        with self.session_factory() as session:
            return attempt_history(session, inspection_id, workflow_run_id)

    def _insert(
        self,
        session: Session,
        inspection_id: str,
        workflow_run_id: str,
        agent_name: str,
        agent_type: str,
        attempt_number: int = 1,
        input_data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AgentExecution:
        execution = AgentExecution(
            inspection_id=inspection_id,
            workflow_run_id=workflow_run_id,
            agent_name=agent_name,
            agent_type=agent_type,
            status=AgentStatus.PENDING.value,
            attempt_number=attempt_number,
            max_retries=self.settings.agent_max_retries,
            input_data=input_data,
            execution_metadata=metadata,
        )
        session.add(execution)
        session.flush()
        return execution
