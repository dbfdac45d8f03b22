"""Entitlement rules as pure functions over a loaded snapshot.

Nothing here touches the database. The ledger service loads a snapshot,
asks these functions what is allowed and which source to charge, and then
performs the deduction itself.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from inspection_pipeline.core.state import UsageType


class EntitlementCode(str, Enum):
    """Result codes returned to callers of the entitlement check."""

    SUBSCRIPTION_REQUIRED = "SUBSCRIPTION_REQUIRED"
    NO_REPORTS_AVAILABLE = "NO_REPORTS_AVAILABLE"
    INSPECTION_ID_REQUIRED = "INSPECTION_ID_REQUIRED"
    DUPLICATE_USAGE = "DUPLICATE_USAGE"
    USAGE_TRACKING_FAILED = "USAGE_TRACKING_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class DeductionSource(str, Enum):
    """Where a consumed report credit comes from, in priority order."""

    PARENT_CARRYOVER = "parent_carryover"
    SUBSCRIPTION = "subscription"
    BLOCK = "block"


INSUFFICIENT_USAGE_TYPE = "insufficient"


class EntitlementRequest(BaseModel):
    """Input of a check, optionally consuming one report credit."""

    user_id: str
    require_subscription: bool = False
    check_usage_limit: bool = True
    track_usage: bool = False
    inspection_id: str | None = None
    report_id: str | None = None
    had_history: bool = False
    allow_block_usage: bool = True


class EntitlementResult(BaseModel):
    """Outcome of an entitlement check."""

    success: bool = False
    code: EntitlementCode | None = None
    error: str | None = None
    user_id: str
    has_active_subscription: bool = False
    subscription_status: str = "none"
    will_cancel_at_period_end: bool = False
    days_until_renewal: int = 0
    remaining_reports: int = 0
    subscription_reports: int = 0
    parent_carryover: int = 0
    block_reports: int = 0
    total_available_reports: int = 0
    usage_tracked: bool = False
    usage_type: str | None = None
    report_id: str | None = None

    @property
    def consumed_or_duplicate(self) -> bool:
        """True when the report is billed, now or by an earlier call."""
        return (self.success and self.usage_tracked) or self.code == EntitlementCode.DUPLICATE_USAGE


@dataclass(frozen=True)
class BlockCapacity:
    """Remaining credit of one active report block."""

    id: str
    reports_remaining: int
    with_history: bool
    expiry_date: datetime
    created_at: datetime


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Everything the entitlement rules need, loaded in one pass."""

    user_id: str
    now: datetime
    subscription_id: str | None = None
    subscription_status: str | None = None
    cancel_at_period_end: bool = False
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    reports_included: int = 0
    reports_used: int = 0
    parent_subscription_id: str | None = None
    parent_reports_included: int = 0
    parent_reports_used: int = 0
    blocks: tuple[BlockCapacity, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Availability:
    """Report credits available from each source."""

    has_active_subscription: bool
    subscription_status: str
    will_cancel_at_period_end: bool
    days_until_renewal: int
    subscription_reports: int
    parent_carryover: int
    block_reports: int

    @property
    def total(self) -> int:
        return self.parent_carryover + self.subscription_reports + self.block_reports


@dataclass(frozen=True)
class Deduction:
    """A source to charge one credit against."""

    source: DeductionSource
    usage_type: UsageType
    block_id: str | None = None


@dataclass(frozen=True)
class AccessDenied:
    code: EntitlementCode
    error: str


def compute_availability(snapshot: SubscriptionSnapshot) -> Availability:
    """Sum available credits across carryover, current quota and blocks."""
    has_subscription = snapshot.subscription_id is not None
    period_end = snapshot.current_period_end

    is_active = (
        has_subscription
        and snapshot.subscription_status == "active"
        and period_end is not None
        and period_end >= snapshot.now
    )
    days_until_renewal = (period_end - snapshot.now).days if has_subscription and period_end else 0

    subscription_reports = 0
    parent_carryover = 0
    if has_subscription:
        subscription_reports = max(0, snapshot.reports_included - snapshot.reports_used)
        if snapshot.parent_subscription_id:
            parent_carryover = max(0, snapshot.parent_reports_included - snapshot.parent_reports_used)

    block_reports = sum(
        block.reports_remaining
        for block in snapshot.blocks
        if block.reports_remaining > 0 and block.expiry_date > snapshot.now
    )

    return Availability(
        has_active_subscription=is_active,
        subscription_status=snapshot.subscription_status or "none",
        will_cancel_at_period_end=snapshot.cancel_at_period_end if has_subscription else False,
        days_until_renewal=days_until_renewal,
        subscription_reports=subscription_reports,
        parent_carryover=parent_carryover,
        block_reports=block_reports,
    )


def check_access(request: EntitlementRequest, availability: Availability) -> AccessDenied | None:
    """Apply the request's gates in order. None means the request may proceed."""
    if request.require_subscription and not availability.has_active_subscription:
        return AccessDenied(EntitlementCode.SUBSCRIPTION_REQUIRED, "Active subscription required")

    if request.check_usage_limit:
        if request.allow_block_usage and availability.total == 0:
            return AccessDenied(
                EntitlementCode.NO_REPORTS_AVAILABLE,
                "No reports available. Please purchase more reports or upgrade your subscription.",
            )
        if not request.allow_block_usage and availability.subscription_reports == 0:
            return AccessDenied(
                EntitlementCode.NO_REPORTS_AVAILABLE,
                "No subscription reports available. Report blocks not allowed in this context.",
            )

    if request.track_usage and not request.inspection_id:
        return AccessDenied(
            EntitlementCode.INSPECTION_ID_REQUIRED, "Inspection ID is required for usage tracking"
        )

    return None


def eligible_blocks(blocks: tuple[BlockCapacity, ...] | list[BlockCapacity], had_history: bool, now: datetime):
    """Blocks that can fund a report, oldest expiry first."""
    usable = [
        block
        for block in blocks
        if block.reports_remaining > 0 and block.expiry_date > now and (block.with_history or not had_history)
    ]
    return sorted(usable, key=lambda block: (block.expiry_date, block.created_at))


def deduction_candidates(
    availability: Availability,
    blocks: tuple[BlockCapacity, ...] | list[BlockCapacity],
    had_history: bool,
    allow_block_usage: bool,
    now: datetime,
) -> list[Deduction]:
    """Every source that could fund a report, in the order they are charged."""
    candidates: list[Deduction] = []
    if availability.parent_carryover > 0:
        candidates.append(Deduction(DeductionSource.PARENT_CARRYOVER, UsageType.SUBSCRIPTION_INCLUDED))
    if availability.subscription_reports > 0:
        candidates.append(Deduction(DeductionSource.SUBSCRIPTION, UsageType.SUBSCRIPTION_INCLUDED))
    if allow_block_usage:
        candidates.extend(
            Deduction(DeductionSource.BLOCK, UsageType.BLOCK, block_id=block.id)
            for block in eligible_blocks(blocks, had_history, now)
        )
    return candidates


def choose_deduction_source(
    availability: Availability,
    blocks: tuple[BlockCapacity, ...] | list[BlockCapacity],
    had_history: bool,
    allow_block_usage: bool,
    now: datetime,
) -> Deduction | None:
    """Highest-priority source with capacity, or None when nothing qualifies."""
    candidates = deduction_candidates(availability, blocks, had_history, allow_block_usage, now)
    return candidates[0] if candidates else None


def build_result(user_id: str, availability: Availability, **overrides) -> EntitlementResult:
    """Result populated with the availability context every response carries."""
    values = {
        "user_id": user_id,
        "has_active_subscription": availability.has_active_subscription,
        "subscription_status": availability.subscription_status,
        "will_cancel_at_period_end": availability.will_cancel_at_period_end,
        "days_until_renewal": availability.days_until_renewal,
        "remaining_reports": availability.total,
        "subscription_reports": availability.subscription_reports,
        "parent_carryover": availability.parent_carryover,
        "block_reports": availability.block_reports,
        "total_available_reports": availability.total,
    }
    values.update(overrides)
    return EntitlementResult(**values)
