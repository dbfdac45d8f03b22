"""Report block purchase and expiry."""

from datetime import datetime, timedelta

from sqlalchemy import or_, update
from sqlalchemy.orm import Session
import structlog

from inspection_pipeline.db.models import DEFAULT_BLOCK_VALIDITY_DAYS, ReportBlock, utcnow

logger = structlog.get_logger()


def purchase_block(
    session: Session,
    user_id: str,
    reports_total: int,
    with_history: bool = False,
    validity_days: int = DEFAULT_BLOCK_VALIDITY_DAYS,
    payment_reference: str | None = None,
    purchase_date: datetime | None = None,
) -> ReportBlock:
    """Add a block of report credits that expires after ``validity_days``."""
    if reports_total <= 0:
        raise ValueError("A report block must contain at least one report")

    purchased = purchase_date or utcnow()
    block = ReportBlock(
        user_id=user_id,
        reports_total=reports_total,
        reports_used=0,
        with_history=with_history,
        purchase_date=purchased,
        expiry_date=purchased + timedelta(days=validity_days),
        payment_reference=payment_reference,
        is_active=True,
    )
    session.add(block)
    session.flush()
    logger.info("Report block purchased", user_id=user_id, block_id=block.id, reports=reports_total)
    return block


def deactivate_expired_blocks(session: Session, now: datetime | None = None) -> int:
    """Deactivate active blocks that expired or ran out. Returns the count."""
    now = now or utcnow()
    result = session.execute(
        update(ReportBlock)
        .where(
            ReportBlock.is_active.is_(True),
            or_(ReportBlock.expiry_date <= now, ReportBlock.reports_used >= ReportBlock.reports_total),
        )
        .values(is_active=False, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
