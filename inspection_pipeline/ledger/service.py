"""Usage ledger: checks entitlements and consumes exactly one credit per report."""

from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
import structlog

from inspection_pipeline.config import Settings, get_settings
from inspection_pipeline.core.audit import AuditLogger
from inspection_pipeline.core.state import ENTITLED_SUBSCRIPTION_STATUSES, UsageType
from inspection_pipeline.db.models import (
    Report,
    ReportBlock,
    ReportUsage,
    Subscription,
    SubscriptionUsageSummary,
    utcnow,
)
from inspection_pipeline.errors import PipelineError
from inspection_pipeline.ledger.blocks import deactivate_expired_blocks, purchase_block
from inspection_pipeline.ledger.entitlements import (
    INSUFFICIENT_USAGE_TYPE,
    BlockCapacity,
    Deduction,
    DeductionSource,
    EntitlementCode,
    EntitlementRequest,
    EntitlementResult,
    SubscriptionSnapshot,
    build_result,
    check_access,
    compute_availability,
    deduction_candidates,
)

logger = structlog.get_logger()

COMPONENT = "usage_ledger"

PLACEHOLDER_REPORT_SUMMARY = "Report generation in progress..."


@dataclass(frozen=True)
class Charge:
    """A deduction that was applied to a concrete source row."""

    usage_type: UsageType
    subscription_id: str | None = None
    report_block_id: str | None = None
    billing_period_start: date | None = None
    billing_period_end: date | None = None


def active_subscription(session: Session, user_id: str, lock: bool = False) -> Subscription | None:
    """Latest subscription in an entitled status."""
    query = (
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status.in_([status.value for status in ENTITLED_SUBSCRIPTION_STATUSES]),
        )
        .order_by(Subscription.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    if lock:
        query = query.with_for_update()
    return session.scalar(query)


def period_summary(session: Session, subscription: Subscription, lock: bool = False) -> SubscriptionUsageSummary | None:
    """Usage summary of the subscription's current billing period."""
    query = (
        select(SubscriptionUsageSummary)
        .where(
            SubscriptionUsageSummary.subscription_id == subscription.id,
            SubscriptionUsageSummary.billing_period_start == subscription.current_period_start.date(),
            SubscriptionUsageSummary.billing_period_end == subscription.current_period_end.date(),
        )
        .execution_options(populate_existing=True)
    )
    if lock:
        query = query.with_for_update()
    return session.scalar(query)


def latest_summary(session: Session, subscription_id: str, lock: bool = False) -> SubscriptionUsageSummary | None:
    """Most recent billing period summary; the carryover source for child subscriptions."""
    query = (
        select(SubscriptionUsageSummary)
        .where(SubscriptionUsageSummary.subscription_id == subscription_id)
        .order_by(SubscriptionUsageSummary.billing_period_start.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    if lock:
        query = query.with_for_update()
    return session.scalar(query)


def load_snapshot(session: Session, user_id: str, now: datetime | None = None) -> SubscriptionSnapshot:
    """Load the subscription, usage summaries and usable blocks of a user."""
    now = now or utcnow()
    subscription = active_subscription(session, user_id)

    values: dict = {}
    if subscription is not None:
        summary = period_summary(session, subscription)
        values.update(
            subscription_id=subscription.id,
            subscription_status=subscription.status,
            cancel_at_period_end=subscription.cancel_at_period_end,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            reports_included=subscription.plan.included_reports if subscription.plan else 0,
            reports_used=summary.reports_used if summary else 0,
        )
        if subscription.parent_subscription_id:
            parent = latest_summary(session, subscription.parent_subscription_id)
            values.update(
                parent_subscription_id=subscription.parent_subscription_id,
                parent_reports_included=parent.reports_included if parent else 0,
                parent_reports_used=parent.reports_used if parent else 0,
            )

    blocks = session.scalars(
        select(ReportBlock)
        .where(
            ReportBlock.user_id == user_id,
            ReportBlock.is_active.is_(True),
            ReportBlock.expiry_date > now,
            ReportBlock.reports_used < ReportBlock.reports_total,
        )
        .order_by(ReportBlock.expiry_date, ReportBlock.created_at)
        .execution_options(populate_existing=True)
    ).all()

    return SubscriptionSnapshot(
        user_id=user_id,
        now=now,
        blocks=tuple(
            BlockCapacity(
                id=block.id,
                reports_remaining=block.reports_remaining,
                with_history=block.with_history,
                expiry_date=block.expiry_date,
                created_at=block.created_at,
            )
            for block in blocks
        ),
        **values,
    )


def ensure_period_summary(
    session: Session, subscription: Subscription, reports_included: int
) -> SubscriptionUsageSummary:
    """Return the current period summary, creating it when missing.

    The caller holds the subscription row lock, so two creators for the same
    period are serialized; the unique period constraint is the final guard.
    """
    summary = period_summary(session, subscription, lock=True)
    if summary is None:
        summary = SubscriptionUsageSummary(
            subscription_id=subscription.id,
            billing_period_start=subscription.current_period_start.date(),
            billing_period_end=subscription.current_period_end.date(),
            reports_included=reports_included,
            reports_used=0,
            last_reset_date=utcnow(),
        )
        session.add(summary)
        session.flush()
    return summary


def _consume_summary(session: Session, summary: SubscriptionUsageSummary, now: datetime) -> bool:
    result = session.execute(
        update(SubscriptionUsageSummary)
        .where(
            SubscriptionUsageSummary.id == summary.id,
            SubscriptionUsageSummary.reports_used < SubscriptionUsageSummary.reports_included,
        )
        .values(reports_used=SubscriptionUsageSummary.reports_used + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def apply_deduction(
    session: Session, snapshot: SubscriptionSnapshot, deduction: Deduction
) -> Charge | None:
    """Charge one credit to ``deduction``'s source.

    Each source row is locked and decremented with an update that cannot
    exceed its capacity. Returns None when the source ran dry since the
    snapshot was taken.
    """
    now = snapshot.now

    if deduction.source == DeductionSource.PARENT_CARRYOVER:
        summary = latest_summary(session, snapshot.parent_subscription_id, lock=True)
        if summary is None or not _consume_summary(session, summary, now):
            return None
        return Charge(
            usage_type=deduction.usage_type,
            subscription_id=snapshot.parent_subscription_id,
            billing_period_start=summary.billing_period_start,
            billing_period_end=summary.billing_period_end,
        )

    if deduction.source == DeductionSource.SUBSCRIPTION:
        subscription = session.get(Subscription, snapshot.subscription_id, with_for_update=True)
        if subscription is None:
            return None
        summary = ensure_period_summary(session, subscription, snapshot.reports_included)
        if not _consume_summary(session, summary, now):
            return None
        return Charge(
            usage_type=deduction.usage_type,
            subscription_id=subscription.id,
            billing_period_start=summary.billing_period_start,
            billing_period_end=summary.billing_period_end,
        )

    session.scalar(select(ReportBlock.id).where(ReportBlock.id == deduction.block_id).with_for_update())
    result = session.execute(
        update(ReportBlock)
        .where(
            ReportBlock.id == deduction.block_id,
            ReportBlock.is_active.is_(True),
            ReportBlock.expiry_date > now,
            ReportBlock.reports_used < ReportBlock.reports_total,
        )
        .values(
            reports_used=ReportBlock.reports_used + 1,
            # Taking the last credit deactivates the block in the same statement
            is_active=case((ReportBlock.reports_used + 1 >= ReportBlock.reports_total, False), else_=True),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return Charge(usage_type=deduction.usage_type, report_block_id=deduction.block_id)


def record_usage(
    session: Session,
    request: EntitlementRequest,
    report_id: str,
    charge: Charge,
) -> ReportUsage:
    """Append the ledger row. A second row for ``report_id`` violates the unique key."""
    usage = ReportUsage(
        user_id=request.user_id,
        inspection_id=request.inspection_id,
        report_id=report_id,
        usage_type=charge.usage_type.value,
        subscription_id=charge.subscription_id,
        report_block_id=charge.report_block_id,
        had_history=request.had_history,
        billing_period_start=charge.billing_period_start,
        billing_period_end=charge.billing_period_end,
        usage_date=utcnow(),
    )
    session.add(usage)
    session.flush()
    return usage


class UsageLedger:
    """Resolves entitlement checks and consumes report credits idempotently."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        audit: AuditLogger | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.audit = audit or AuditLogger(session_factory)
        self.logger = logger.bind(component=COMPONENT)

    def resolve(self, request: EntitlementRequest) -> EntitlementResult:
        """Check access and, when ``track_usage`` is set, consume one credit.

        Never raises: database failures come back as ``INTERNAL_ERROR``.
        """
        try:
            if request.track_usage:
                result = self._track(request)
            else:
                result = self._check(request)
        except SQLAlchemyError as e:
            self.logger.exception("Entitlement check failed", user_id=request.user_id, error=str(e))
            self.audit.record(
                COMPONENT,
                f"Entitlement check for user {request.user_id} failed: {e}",
                request.inspection_id,
            )
            return EntitlementResult(
                user_id=request.user_id,
                code=EntitlementCode.INTERNAL_ERROR,
                error="Internal server error during subscription check",
            )

        self.logger.info(
            "Entitlement resolved",
            user_id=request.user_id,
            success=result.success,
            code=result.code.value if result.code else None,
            usage_type=result.usage_type,
        )
        return result

    def _check(self, request: EntitlementRequest) -> EntitlementResult:
        with self.session_factory() as session:
            availability = compute_availability(load_snapshot(session, request.user_id))

        denied = check_access(request, availability)
        if denied is not None:
            return build_result(request.user_id, availability, code=denied.code, error=denied.error)
        return build_result(request.user_id, availability, success=True)

    def _track(self, request: EntitlementRequest) -> EntitlementResult:
        try:
            with self.session_factory() as session, session.begin():
                snapshot = load_snapshot(session, request.user_id)
                availability = compute_availability(snapshot)

                denied = check_access(request, availability)
                if denied is not None:
                    return build_result(request.user_id, availability, code=denied.code, error=denied.error)

                report_id = request.report_id
                if report_id is None:
                    report = Report(inspection_id=request.inspection_id, summary=PLACEHOLDER_REPORT_SUMMARY)
                    session.add(report)
                    session.flush()
                    report_id = report.id

                if self._already_billed(session, report_id):
                    return self._duplicate(request.user_id, availability, report_id)

                charge = None
                for deduction in deduction_candidates(
                    availability,
                    snapshot.blocks,
                    request.had_history,
                    request.allow_block_usage,
                    snapshot.now,
                ):
                    charge = apply_deduction(session, snapshot, deduction)
                    if charge is not None:
                        break

                if charge is None:
                    result = build_result(
                        request.user_id,
                        availability,
                        code=EntitlementCode.USAGE_TRACKING_FAILED,
                        error="No available reports. Please purchase more.",
                        usage_type=INSUFFICIENT_USAGE_TYPE,
                        report_id=report_id,
                    )
                else:
                    record_usage(session, request, report_id, charge)
                    remaining = compute_availability(load_snapshot(session, request.user_id, now=snapshot.now))
                    result = build_result(
                        request.user_id,
                        remaining,
                        success=True,
                        usage_tracked=True,
                        usage_type=charge.usage_type.value,
                        report_id=report_id,
                    )
        except IntegrityError as e:
            # A concurrent call billed the same report first; its deduction wins
            # and ours was rolled back with the transaction.
            with self.session_factory() as session:
                if not self._already_billed(session, request.report_id):
                    raise
                availability = compute_availability(load_snapshot(session, request.user_id))
            self.logger.warning("Concurrent usage for report", report_id=request.report_id, error=str(e))
            return self._duplicate(request.user_id, availability, request.report_id)

        if result.success:
            self.audit.record(
                COMPONENT,
                f"Report {report_id} billed as {result.usage_type}; {result.remaining_reports} reports remaining",
                request.inspection_id,
            )
        else:
            self.audit.record(
                COMPONENT,
                f"Usage tracking failed for report {report_id}: no source with capacity",
                request.inspection_id,
            )
        return result

    @staticmethod
    def _already_billed(session: Session, report_id: str | None) -> bool:
        if report_id is None:
            return False
        return session.scalar(select(ReportUsage.id).where(ReportUsage.report_id == report_id)) is not None

    @staticmethod
    def _duplicate(user_id: str, availability, report_id: str | None) -> EntitlementResult:
        return build_result(
            user_id,
            availability,
            code=EntitlementCode.DUPLICATE_USAGE,
            error="Report already tracked",
            report_id=report_id,
        )

    def open_billing_period(self, subscription_id: str) -> SubscriptionUsageSummary:
        """Create the usage summary for a subscription's current period (idempotent)."""
        with self.session_factory() as session, session.begin():
            subscription = session.get(Subscription, subscription_id, with_for_update=True)
            if subscription is None:
                raise PipelineError(f"Subscription {subscription_id} not found", code="SUBSCRIPTION_NOT_FOUND")
            included = subscription.plan.included_reports if subscription.plan else 0
            return ensure_period_summary(session, subscription, included)

    def purchase_block(
        self,
        user_id: str,
        reports_total: int,
        with_history: bool = False,
        payment_reference: str | None = None,
    ) -> ReportBlock:
        with self.session_factory() as session, session.begin():
            block = purchase_block(
                session,
                user_id,
                reports_total,
                with_history=with_history,
                validity_days=self.settings.report_block_validity_days,
                payment_reference=payment_reference,
            )
        self.audit.record(COMPONENT, f"Purchased block of {reports_total} reports", block.id)
        return block

    def deactivate_expired_blocks(self) -> int:
        """Sweep blocks that expired or ran out since they were last written."""
        with self.session_factory() as session, session.begin():
            count = deactivate_expired_blocks(session)
        if count:
            self.audit.record(COMPONENT, f"Deactivated {count} expired or exhausted report blocks")
        return count
