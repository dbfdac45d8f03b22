"""Outbox dispatcher: delivers recorded stage invocations after commit."""

from collections.abc import Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker
import structlog

from inspection_pipeline.config import Settings, get_settings
from inspection_pipeline.core.audit import AuditLogger
from inspection_pipeline.core.state import OutboxStatus
from inspection_pipeline.db.models import OutboxEvent, utcnow
from inspection_pipeline.errors import StageInvocationError
from inspection_pipeline.tools.executor import StageExecutorClient

logger = structlog.get_logger()

COMPONENT = "outbox_dispatcher"


class OutboxDispatcher:
    """Posts outbox events to the stage executor.

    Delivery is at-least-once. A failed delivery is written back to the event
    and to the audit log against the transition that produced it; it never
    touches the job rows, which were committed before dispatch began.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        client: StageExecutorClient | None = None,
        audit: AuditLogger | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.client = client or StageExecutorClient(self.settings)
        self.audit = audit or AuditLogger(session_factory)
        self.logger = logger.bind(component=COMPONENT)

    async def dispatch(self, event_id: str) -> bool:
        """Deliver one event. Returns True when the executor accepted it."""
        with self.session_factory() as session:
            event = session.get(OutboxEvent, event_id)
            if event is None:
                self.logger.warning("Outbox event not found", event_id=event_id)
                return False
            if event.status == OutboxStatus.DELIVERED.value:
                return True
            endpoint, payload = event.endpoint, dict(event.payload or {})
            related_id = event.triggered_by or event.job_id

        try:
            await self.client.invoke(endpoint, payload)
        except StageInvocationError as e:
            attempts = self._mark_failed(event_id, str(e))
            self.audit.record(
                COMPONENT,
                f"Failed to invoke {endpoint} for inspection {payload.get('inspection_id')} "
                f"(attempt {attempts}): {e.message}",
                related_id,
            )
            return False

        self._mark_delivered(event_id)
        self.logger.info("Outbox event delivered", event_id=event_id, endpoint=endpoint)
        return True

    async def dispatch_all(self, events: Iterable[OutboxEvent]) -> int:
        """Deliver events in order; returns how many were accepted."""
        delivered = 0
        for event in events:
            if await self.dispatch(event.id):
                delivered += 1
        return delivered

    def redeliverable(self, limit: int | None = None) -> list[OutboxEvent]:
        """Undelivered events still under the attempt ceiling, oldest first."""
        with self.session_factory() as session:
            query = (
                select(OutboxEvent)
                .where(
                    OutboxEvent.status.in_([OutboxStatus.PENDING.value, OutboxStatus.FAILED.value]),
                    OutboxEvent.attempts < self.settings.outbox_max_attempts,
                )
                .order_by(OutboxEvent.created_at, OutboxEvent.id)
                .limit(limit or self.settings.outbox_batch_size)
            )
            return list(session.scalars(query).all())

    async def drain(self) -> int:
        """Retry delivery of everything left behind by crashed or failed dispatches."""
        events = self.redeliverable()
        if not events:
            return 0
        delivered = await self.dispatch_all(events)
        self.logger.info("Outbox drained", attempted=len(events), delivered=delivered)
        return delivered

    def _mark_delivered(self, event_id: str) -> None:
        with self.session_factory() as session, session.begin():
            session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event_id)
                .values(
                    status=OutboxStatus.DELIVERED.value,
                    attempts=OutboxEvent.attempts + 1,
                    delivered_at=utcnow(),
                    last_error=None,
                )
            )

    def _mark_failed(self, event_id: str, error: str) -> int:
        with self.session_factory() as session, session.begin():
            session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event_id)
                .values(
                    status=OutboxStatus.FAILED.value,
                    attempts=OutboxEvent.attempts + 1,
                    last_error=error,
                )
            )
            attempts = session.scalar(select(OutboxEvent.attempts).where(OutboxEvent.id == event_id))
        self.logger.warning("Outbox delivery failed", event_id=event_id, attempts=attempts, error=error)
        return attempts or 0
