"""Tests for outbox delivery."""

import pytest
from sqlalchemy import select

from inspection_pipeline.core.queue import record_invocation
from inspection_pipeline.core.state import OutboxStatus
from inspection_pipeline.db.models import AuditLog, OutboxEvent


def _event(services, inspection_id: str, **values) -> OutboxEvent:
    with services.session_factory() as session, session.begin():
        event = record_invocation(
            session,
            services.settings,
            inspection_id,
            "cost_forecast",
            {"inspection_id": inspection_id, "completed_sequence": 4},
            job_id="job-5",
            triggered_by="job-4",
        )
        for key, value in values.items():
            setattr(event, key, value)
    return event


def _reload(services, event_id: str) -> OutboxEvent:
    with services.session_factory() as session:
        return session.get(OutboxEvent, event_id)


@pytest.mark.asyncio
async def test_dispatch_marks_event_delivered(services, executor, make_inspection) -> None:
    inspection = make_inspection()
    event = _event(services, inspection.id)

    delivered = await services.dispatcher.dispatch(event.id)

    assert delivered is True
    stored = _reload(services, event.id)
    assert stored.status == OutboxStatus.DELIVERED
    assert stored.attempts == 1
    assert stored.delivered_at is not None
    assert str(executor.requests[0].url) == "http://executor.test/functions/v1/cost-forecast-handler"
    assert executor.payloads == [{"inspection_id": inspection.id, "completed_sequence": 4}]


@pytest.mark.asyncio
async def test_delivered_event_is_not_resent(services, executor, make_inspection) -> None:
    inspection = make_inspection()
    event = _event(services, inspection.id)

    await services.dispatcher.dispatch(event.id)
    await services.dispatcher.dispatch(event.id)

    assert len(executor.requests) == 1


@pytest.mark.asyncio
async def test_rejected_invocation_is_recorded_against_trigger(services, executor, make_inspection) -> None:
    """A failed call is written back to the event and audited against the triggering job."""
    executor.status_code = 500
    inspection = make_inspection()
    event = _event(services, inspection.id)

    delivered = await services.dispatcher.dispatch(event.id)

    assert delivered is False
    stored = _reload(services, event.id)
    assert stored.status == OutboxStatus.FAILED
    assert stored.attempts == 1
    assert "500" in stored.last_error

    with services.session_factory() as session:
        entry = session.scalars(select(AuditLog).where(AuditLog.source_component == "outbox_dispatcher")).one()
    assert entry.related_id == "job-4"
    assert "cost-forecast-handler" in entry.message


@pytest.mark.asyncio
async def test_dispatch_unknown_event(services, executor) -> None:
    assert await services.dispatcher.dispatch("missing") is False
    assert executor.requests == []


@pytest.mark.asyncio
async def test_drain_redelivers_until_attempt_ceiling(services, executor, make_inspection) -> None:
    inspection = make_inspection()
    retryable = _event(services, inspection.id, status=OutboxStatus.FAILED.value, attempts=2)
    pending = _event(services, inspection.id)
    given_up = _event(services, inspection.id, status=OutboxStatus.FAILED.value, attempts=5)
    done = _event(services, inspection.id, status=OutboxStatus.DELIVERED.value, attempts=1)

    delivered = await services.dispatcher.drain()

    assert delivered == 2
    assert _reload(services, retryable.id).status == OutboxStatus.DELIVERED
    assert _reload(services, retryable.id).attempts == 3
    assert _reload(services, pending.id).status == OutboxStatus.DELIVERED
    assert _reload(services, given_up.id).status == OutboxStatus.FAILED
    assert _reload(services, done.id).attempts == 1
    assert len(executor.requests) == 2
