"""Bills a generated report and closes out the inspection."""

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker
import structlog

from inspection_pipeline.core.audit import AuditLogger
from inspection_pipeline.core.state import InspectionStatus
from inspection_pipeline.db.models import Inspection, Report, ReportUsage, utcnow
from inspection_pipeline.errors import InspectionNotFoundError
from inspection_pipeline.ledger.entitlements import EntitlementCode, EntitlementRequest, EntitlementResult
from inspection_pipeline.ledger.service import UsageLedger

logger = structlog.get_logger()

COMPONENT = "report_finalizer"


class ReportFinalizer:
    """Called by the final report stage once the report is written."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        ledger: UsageLedger,
        audit: AuditLogger | None = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.audit = audit or AuditLogger(session_factory)
        self.logger = logger.bind(component=COMPONENT)

    def finalize(
        self, inspection_id: str, report_id: str | None = None, had_history: bool = False
    ) -> EntitlementResult:
        """Consume one credit for the report and mark the inspection delivered.

        An inspection is billed at most once: when it was already delivered or
        already has a ledger entry, the ledger is not charged again and the
        call counts as a duplicate. Any other ledger failure fails the
        inspection with the ledger's code, which is what the user sees.
        """
        with self.session_factory() as session:
            inspection = session.get(Inspection, inspection_id)
            if inspection is None:
                raise InspectionNotFoundError(f"Inspection {inspection_id} not found")
            user_id = inspection.user_id
            delivered = inspection.report_delivered
            billed_report_id = session.scalar(
                select(ReportUsage.report_id)
                .where(ReportUsage.inspection_id == inspection_id)
                .order_by(ReportUsage.created_at)
                .limit(1)
            )
            if report_id is None and billed_report_id is None:
                # Reuse the report left by an earlier attempt that was not billed
                report_id = session.scalar(
                    select(Report.id)
                    .where(Report.inspection_id == inspection_id)
                    .order_by(Report.created_at.desc())
                    .limit(1)
                )

        if delivered or billed_report_id is not None:
            result = self._already_billed(user_id, billed_report_id or report_id)
        else:
            result = self.ledger.resolve(
                EntitlementRequest(
                    user_id=user_id,
                    check_usage_limit=True,
                    track_usage=True,
                    inspection_id=inspection_id,
                    report_id=report_id,
                    had_history=had_history,
                )
            )

        now = utcnow()
        with self.session_factory() as session, session.begin():
            if result.consumed_or_duplicate:
                session.execute(
                    update(Inspection)
                    .where(Inspection.id == inspection_id)
                    .values(
                        status=InspectionStatus.COMPLETED.value,
                        report_delivered=True,
                        completed_at=inspection.completed_at or now,
                        error_code=None,
                        error_message=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
            else:
                session.execute(
                    update(Inspection)
                    .where(Inspection.id == inspection_id, Inspection.report_delivered.is_(False))
                    .values(
                        status=InspectionStatus.FAILED.value,
                        error_code=result.code.value if result.code else None,
                        error_message=result.error,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )

        if result.consumed_or_duplicate:
            self.logger.info(
                "Report delivered",
                inspection_id=inspection_id,
                report_id=result.report_id,
                duplicate=result.code == EntitlementCode.DUPLICATE_USAGE,
            )
        else:
            code = result.code.value if result.code else "UNKNOWN"
            self.logger.warning("Report billing failed", inspection_id=inspection_id, code=code)
            self.audit.record(
                COMPONENT,
                f"Could not bill report for inspection {inspection_id}: {code} ({result.error})",
                inspection_id,
            )
        return result

    def _already_billed(self, user_id: str, report_id: str | None) -> EntitlementResult:
        """Duplicate result carrying the user's current availability, without charging."""
        availability = self.ledger.resolve(EntitlementRequest(user_id=user_id, check_usage_limit=False))
        return availability.model_copy(
            update={
                "success": False,
                "code": EntitlementCode.DUPLICATE_USAGE,
                "error": "Report already tracked",
                "usage_tracked": False,
                "report_id": report_id,
            }
        )
