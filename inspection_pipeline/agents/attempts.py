"""Queries over the agent attempt history."""

from sqlalchemy import select
from sqlalchemy.orm import Session

from inspection_pipeline.db.models import AgentExecution


def attempt_history(session: Session, inspection_id: str, workflow_run_id: str) -> list[AgentExecution]:
    """All attempts of a workflow run, newest attempt first within each agent."""
    query = (
        select(AgentExecution)
        .where(
            AgentExecution.inspection_id == inspection_id,
            AgentExecution.workflow_run_id == workflow_run_id,
        )
        .order_by(AgentExecution.agent_name, AgentExecution.attempt_number.desc())
    )
    return list(session.scalars(query).all())


def latest_attempts(session: Session, inspection_id: str, workflow_run_id: str) -> dict[str, AgentExecution]:
    """Highest attempt per agent name."""
    latest: dict[str, AgentExecution] = {}
    for execution in attempt_history(session, inspection_id, workflow_run_id):
        # History is sorted by attempt descending, so the first one wins
        latest.setdefault(execution.agent_name, execution)
    return latest
