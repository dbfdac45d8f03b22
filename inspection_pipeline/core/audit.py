"""Append-only audit log sink for chainer, recovery and ledger decisions."""

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
import structlog

from inspection_pipeline.db.models import AuditLog

logger = structlog.get_logger()


class AuditLogger:
    """Writes audit records in their own transaction.

    A failed write is logged and dropped: the audit trail must never block the
    operation being audited.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def record(self, source_component: str, message: str, related_id: str | None = None) -> None:
        """Append one audit entry."""
        logger.info(message, component=source_component, related_id=related_id)
        try:
            with self.session_factory() as session, session.begin():
                session.add(
                    AuditLog(
                        source_component=source_component,
                        message=message,
                        related_id=related_id,
                    )
                )
        except SQLAlchemyError as e:
            logger.warning(
                "Audit log write failed",
                component=source_component,
                related_id=related_id,
                error=str(e),
            )

    def recent(
        self, source_component: str | None = None, related_id: str | None = None, limit: int = 50
    ) -> list[AuditLog]:
        """Most recent entries first."""
        with self.session_factory() as session:
            query = select(AuditLog)
            if source_component:
                query = query.where(AuditLog.source_component == source_component)
            if related_id:
                query = query.where(AuditLog.related_id == related_id)
            query = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)
            return list(session.scalars(query).all())
