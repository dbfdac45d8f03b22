"""Tests for the usage ledger against the database."""

from datetime import timedelta
from functools import partial

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from inspection_pipeline.db.models import (
    Inspection,
    Plan,
    Report,
    ReportBlock,
    ReportUsage,
    Subscription,
    SubscriptionUsageSummary,
    utcnow,
)
from inspection_pipeline.errors import PipelineError
from inspection_pipeline.ledger.entitlements import EntitlementCode, EntitlementRequest, EntitlementResult


def _report(services, inspection_id: str) -> str:
    with services.session_factory() as session, session.begin():
        report = Report(inspection_id=inspection_id, summary="Vehicle in good condition")
        session.add(report)
    return report.id


def _track(services, inspection_id: str, report_id: str | None = None, **values) -> EntitlementResult:
    request = EntitlementRequest(
        user_id="user-1",
        track_usage=True,
        inspection_id=inspection_id,
        report_id=report_id,
        **values,
    )
    return services.ledger.resolve(request)


def _usage(services) -> list[ReportUsage]:
    with services.session_factory() as session:
        return list(session.scalars(select(ReportUsage).order_by(ReportUsage.created_at)).all())


def test_credits_are_consumed_in_priority_order(services, make_inspection, make_subscription) -> None:
    """Carryover goes first, then the period quota, then blocks, then nothing."""
    # Setup
    parent = make_subscription(included_reports=1, reports_used=0, status="canceled", created_days_ago=10)
    child = make_subscription(included_reports=1, parent_subscription_id=parent.id)
    block = services.ledger.purchase_block("user-1", 1)
    inspection = make_inspection()

    # Execute
    report_ids = [_report(services, inspection.id) for _ in range(3)]
    results = [_track(services, inspection.id, report_id) for report_id in report_ids]
    exhausted = _track(services, inspection.id, _report(services, inspection.id), check_usage_limit=False)
    denied = _track(services, inspection.id, _report(services, inspection.id))

    # Verify
    assert [result.success for result in results] == [True, True, True]
    assert [result.usage_type for result in results] == ["subscription_included", "subscription_included", "block"]
    assert [result.remaining_reports for result in results] == [2, 1, 0]

    usage = {row.report_id: row for row in _usage(services)}
    assert [usage[report_id].subscription_id for report_id in report_ids] == [parent.id, child.id, None]
    assert usage[report_ids[2]].report_block_id == block.id

    assert exhausted.success is False
    assert exhausted.code == EntitlementCode.USAGE_TRACKING_FAILED
    assert exhausted.usage_type == "insufficient"
    assert denied.code == EntitlementCode.NO_REPORTS_AVAILABLE
    assert len(_usage(services)) == 3

    with services.session_factory() as session:
        spent = session.get(ReportBlock, block.id)
        assert spent.reports_used == 1
        assert spent.is_active is False


def test_same_report_is_billed_once(services, make_inspection, make_subscription) -> None:
    make_subscription(included_reports=5)
    inspection = make_inspection()
    report_id = _report(services, inspection.id)

    first = _track(services, inspection.id, report_id)
    second = _track(services, inspection.id, report_id)

    assert first.success is True
    assert first.usage_tracked is True
    assert second.success is False
    assert second.code == EntitlementCode.DUPLICATE_USAGE
    assert second.consumed_or_duplicate is True
    assert second.remaining_reports == 4
    assert len(_usage(services)) == 1


def test_period_summary_tracks_quota(services, make_inspection, make_subscription) -> None:
    subscription = make_subscription(included_reports=3, reports_used=1)
    inspection = make_inspection()

    result = _track(services, inspection.id, _report(services, inspection.id))

    assert result.subscription_reports == 1
    with services.session_factory() as session:
        summary = session.scalars(
            select(SubscriptionUsageSummary).where(SubscriptionUsageSummary.subscription_id == subscription.id)
        ).one()
    assert summary.reports_used == 2


def test_history_report_uses_history_block(services, make_inspection) -> None:
    plain = services.ledger.purchase_block("user-1", 2)
    history = services.ledger.purchase_block("user-1", 2, with_history=True)
    inspection = make_inspection()

    result = _track(services, inspection.id, _report(services, inspection.id), had_history=True)

    assert result.usage_type == "block"
    usage = _usage(services)[0]
    assert usage.report_block_id == history.id
    assert usage.had_history is True
    with services.session_factory() as session:
        assert session.get(ReportBlock, plain.id).reports_used == 0


def test_blocks_can_be_excluded(services, make_inspection) -> None:
    services.ledger.purchase_block("user-1", 3)
    inspection = make_inspection()

    result = _track(services, inspection.id, _report(services, inspection.id), allow_block_usage=False)

    assert result.code == EntitlementCode.NO_REPORTS_AVAILABLE
    assert result.block_reports == 3
    assert _usage(services) == []


def test_subscription_required(services) -> None:
    services.ledger.purchase_block("user-1", 3)

    result = services.ledger.resolve(EntitlementRequest(user_id="user-1", require_subscription=True))

    assert result.code == EntitlementCode.SUBSCRIPTION_REQUIRED
    assert result.has_active_subscription is False


def test_check_without_tracking_reports_availability(services, make_subscription) -> None:
    make_subscription(included_reports=4, reports_used=1)
    services.ledger.purchase_block("user-1", 2)

    result = services.ledger.resolve(EntitlementRequest(user_id="user-1", require_subscription=True))

    assert result.success is True
    assert result.usage_tracked is False
    assert result.has_active_subscription is True
    assert result.subscription_status == "active"
    assert result.subscription_reports == 3
    assert result.block_reports == 2
    assert result.total_available_reports == 5


def test_tracking_requires_inspection(services, make_subscription) -> None:
    make_subscription()

    result = services.ledger.resolve(EntitlementRequest(user_id="user-1", track_usage=True))

    assert result.code == EntitlementCode.INSPECTION_ID_REQUIRED
    assert _usage(services) == []


def test_missing_report_gets_placeholder(services, make_inspection, make_subscription) -> None:
    make_subscription()
    inspection = make_inspection()

    result = _track(services, inspection.id)

    assert result.success is True
    with services.session_factory() as session:
        report = session.get(Report, result.report_id)
    assert report.inspection_id == inspection.id
    assert report.summary == "Report generation in progress..."


def test_database_failure_is_reported(services, monkeypatch) -> None:
    def broken(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr("inspection_pipeline.ledger.service.load_snapshot", broken)

    result = services.ledger.resolve(EntitlementRequest(user_id="user-1"))

    assert result.success is False
    assert result.code == EntitlementCode.INTERNAL_ERROR


def test_open_billing_period_is_idempotent(services, make_subscription) -> None:
    subscription = make_subscription(included_reports=7)

    first = services.ledger.open_billing_period(subscription.id)
    second = services.ledger.open_billing_period(subscription.id)

    assert first.id == second.id
    assert first.reports_included == 7
    assert first.reports_used == 0
    assert first.billing_period_start == subscription.current_period_start.date()


def test_open_billing_period_unknown_subscription(services) -> None:
    with pytest.raises(PipelineError) as exc_info:
        services.ledger.open_billing_period("missing")

    assert exc_info.value.code == "SUBSCRIPTION_NOT_FOUND"


def test_purchase_block_rejects_empty_block(services) -> None:
    with pytest.raises(ValueError):
        services.ledger.purchase_block("user-1", 0)


def test_purchase_block_sets_expiry(services) -> None:
    block = services.ledger.purchase_block("user-1", 10, payment_reference="pi_123")

    assert block.is_active is True
    assert block.expiry_date - block.purchase_date == timedelta(days=90)
    assert block.payment_reference == "pi_123"


def test_sweep_deactivates_expired_blocks(services) -> None:
    expired = services.ledger.purchase_block("user-1", 5)
    current = services.ledger.purchase_block("user-1", 5)
    with services.session_factory() as session, session.begin():
        session.execute(
            update(ReportBlock)
            .where(ReportBlock.id == expired.id)
            .values(expiry_date=utcnow() - timedelta(days=1))
        )

    assert services.ledger.deactivate_expired_blocks() == 1
    assert services.ledger.deactivate_expired_blocks() == 0

    with services.session_factory() as session:
        assert session.get(ReportBlock, expired.id).is_active is False
        assert session.get(ReportBlock, current.id).is_active is True


def test_concurrent_tracking_cannot_overdraw_quota(file_services, run_concurrently) -> None:
    """Two reports billed at once against a quota of one: one wins, the other finds nothing left."""
    # Setup
    services = file_services
    now = utcnow()
    with services.session_factory() as session, session.begin():
        plan = Plan(name="single", included_reports=1)
        inspection = Inspection(user_id="user-1", status="processing")
        session.add_all([plan, inspection])
        session.flush()
        subscription = Subscription(
            user_id="user-1",
            plan_id=plan.id,
            status="active",
            current_period_start=now - timedelta(days=5),
            current_period_end=now + timedelta(days=25),
        )
        session.add(subscription)
        session.flush()
        summary = SubscriptionUsageSummary(
            subscription_id=subscription.id,
            billing_period_start=subscription.current_period_start.date(),
            billing_period_end=subscription.current_period_end.date(),
            reports_included=1,
            reports_used=0,
        )
        session.add(summary)
    reports = [_report(services, inspection.id) for _ in range(2)]

    # Execute
    results = run_concurrently(*(partial(_track, services, inspection.id, report_id) for report_id in reports))

    # Verify
    assert sum(result.usage_tracked for result in results) == 1
    loser = next(result for result in results if not result.usage_tracked)
    assert loser.code in (EntitlementCode.NO_REPORTS_AVAILABLE, EntitlementCode.USAGE_TRACKING_FAILED)
    assert len(_usage(services)) == 1
    with services.session_factory() as session:
        assert session.get(SubscriptionUsageSummary, summary.id).reports_used == 1
