"""Tests for the completion chainer."""

from sqlalchemy import select

from inspection_pipeline.core.queue import ChainOutcome
from inspection_pipeline.core.state import AgentStatus, JobStatus, JobType
from inspection_pipeline.db.models import AgentExecution, AuditLog, Inspection, Job, OutboxEvent

PLAN = [{"images": ["a.jpg"]}, {"images": ["b.jpg"]}, {"images": ["c.jpg"]}]


def _complete(services, job: Job) -> ChainOutcome:
    """Run the chainer for ``job`` as if it had just transitioned to completed."""
    with services.session_factory() as session, session.begin():
        return services.chainer.on_job_completed(session, session.get(Job, job.id))


def _jobs(services, inspection_id: str) -> list[Job]:
    return services.jobs.list_jobs(inspection_id)


def test_completed_chunk_enqueues_next_chunk(services, make_inspection, make_job) -> None:
    """The next chunk gets the planned input and the previous result as context."""
    inspection = make_inspection(chunk_plan=PLAN, total_chunks=3)
    job = make_job(
        inspection.id,
        status=JobStatus.COMPLETED,
        chunk_index=1,
        total_chunks=3,
        chunk_result={"findings": ["scratch"]},
    )

    outcome = _complete(services, job)

    created = _jobs(services, inspection.id)[-1]
    assert created.job_type == JobType.CHUNK_ANALYSIS
    assert created.sequence_order == 2
    assert created.chunk_index == 2
    assert created.total_chunks == 3
    assert created.status == JobStatus.PENDING
    assert created.chunk_data == {"chunk": PLAN[1], "context": {"findings": ["scratch"]}}

    assert len(outcome.events) == 1
    assert outcome.events[0].endpoint == "chunk-analysis-handler"
    assert outcome.events[0].payload == {"inspection_id": inspection.id, "completed_sequence": 1}
    assert outcome.events[0].triggered_by == job.id


def test_last_chunk_enqueues_first_stage(services, make_inspection, make_job) -> None:
    inspection = make_inspection(chunk_plan=PLAN, total_chunks=3)
    job = make_job(inspection.id, status=JobStatus.COMPLETED, sequence_order=3, chunk_index=3, total_chunks=3)

    outcome = _complete(services, job)

    created = _jobs(services, inspection.id)[-1]
    assert created.job_type == JobType.FAIR_MARKET_VALUE
    assert created.sequence_order == 4
    assert created.chunk_index is None
    assert outcome.events[0].endpoint == "fair-market-value-handler"


def test_stages_follow_fixed_order(services, make_inspection, make_job) -> None:
    inspection = make_inspection()
    fmv = make_job(inspection.id, JobType.FAIR_MARKET_VALUE, JobStatus.COMPLETED, sequence_order=1)

    _complete(services, fmv)
    cost_forecast = _jobs(services, inspection.id)[-1]
    assert cost_forecast.job_type == JobType.COST_FORECAST

    with services.session_factory() as session, session.begin():
        session.get(Job, cost_forecast.id).status = JobStatus.COMPLETED.value
    _complete(services, cost_forecast)

    assert _jobs(services, inspection.id)[-1].job_type == JobType.EXPERT_ADVICE


def test_last_stage_triggers_final_report_once(services, make_inspection, make_job) -> None:
    """Two sibling completions reaching the last stage produce one final report."""
    inspection = make_inspection()
    expert = make_job(inspection.id, JobType.EXPERT_ADVICE, JobStatus.COMPLETED, sequence_order=1)

    first = _complete(services, expert)
    second = _complete(services, expert)

    final_jobs = [job for job in _jobs(services, inspection.id) if job.job_type == JobType.FINAL_REPORT]
    assert len(final_jobs) == 1
    assert [event.endpoint for event in first.events] == ["final-report-handler"]
    assert second.events == []
    assert first.events[0].payload == {"inspection_id": inspection.id}
    assert services.jobs.get_inspection(inspection.id).final_report_triggered is True


def test_delivered_report_is_not_regenerated(services, make_inspection, make_job) -> None:
    inspection = make_inspection(report_delivered=True)
    expert = make_job(inspection.id, JobType.EXPERT_ADVICE, JobStatus.COMPLETED, sequence_order=1)

    outcome = _complete(services, expert)

    assert outcome.events == []
    assert len(_jobs(services, inspection.id)) == 1
    assert any("already triggered or delivered" in message for message, _ in outcome.notes)


def test_final_report_completion_is_terminal(services, make_inspection, make_job) -> None:
    inspection = make_inspection()
    final = make_job(inspection.id, JobType.FINAL_REPORT, JobStatus.COMPLETED, sequence_order=1)

    outcome = _complete(services, final)

    assert outcome.events == []
    assert len(_jobs(services, inspection.id)) == 1
    assert outcome.notes


def test_duplicate_chunk_is_not_enqueued_twice(services, make_inspection, make_job) -> None:
    inspection = make_inspection(chunk_plan=PLAN, total_chunks=3)
    job = make_job(inspection.id, status=JobStatus.COMPLETED, chunk_index=1, total_chunks=3)

    _complete(services, job)
    outcome = _complete(services, job)

    assert outcome.events == []
    assert len(_jobs(services, inspection.id)) == 2


def test_agents_trigger_final_report_when_all_succeed(services, make_inspection) -> None:
    """Simultaneous last-agent completions fire exactly one final report."""
    inspection = make_inspection(status="processing")
    with services.session_factory() as session, session.begin():
        executions = [
            AgentExecution(
                inspection_id=inspection.id,
                workflow_run_id="run-1",
                agent_name=name,
                agent_type="researcher",
                status=status.value,
            )
            for name, status in (("valuation", AgentStatus.COMPLETED), ("advice", AgentStatus.SKIPPED))
        ]
        session.add_all(executions)

    outcomes = []
    for execution in executions:
        with services.session_factory() as session, session.begin():
            outcomes.append(services.chainer.on_agent_completed(session, session.get(AgentExecution, execution.id)))

    assert sum(len(outcome.events) for outcome in outcomes) == 1
    with services.session_factory() as session:
        events = session.scalars(select(OutboxEvent).where(OutboxEvent.endpoint == "final-report-handler")).all()
        assert len(events) == 1
        assert session.get(Inspection, inspection.id).final_report_triggered is True


def test_agents_wait_for_unfinished_siblings(services, make_inspection) -> None:
    inspection = make_inspection(status="processing")
    with services.session_factory() as session, session.begin():
        done = AgentExecution(
            inspection_id=inspection.id,
            workflow_run_id="run-1",
            agent_name="valuation",
            agent_type="researcher",
            status=AgentStatus.COMPLETED.value,
        )
        session.add_all(
            [
                done,
                AgentExecution(
                    inspection_id=inspection.id,
                    workflow_run_id="run-1",
                    agent_name="advice",
                    agent_type="researcher",
                    status=AgentStatus.RUNNING.value,
                ),
            ]
        )

    with services.session_factory() as session, session.begin():
        outcome = services.chainer.on_agent_completed(session, session.get(AgentExecution, done.id))

    assert outcome.events == []


def test_chain_notes_reach_audit_log(services, make_inspection) -> None:
    """Decisions taken during completion are written to the audit log after commit."""
    inspection = make_inspection()
    job = services.jobs.submit_inspection(inspection.id, PLAN).job
    services.jobs.claim(job.id)
    services.jobs.complete(job.id, {"findings": []})

    with services.session_factory() as session:
        entries = session.scalars(select(AuditLog).where(AuditLog.source_component == "trigger_next_job")).all()

    assert len(entries) == 1
    assert entries[0].related_id == job.id
    assert "enqueued chunk_analysis" in entries[0].message
