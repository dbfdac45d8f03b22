"""Lifecycle states and pipeline ordering."""

from enum import Enum


class JobType(str, Enum):
    """Kinds of pipeline work a job can represent."""

    CHUNK_ANALYSIS = "chunk_analysis"
    FAIR_MARKET_VALUE = "fair_market_value"
    COST_FORECAST = "cost_forecast"
    EXPERT_ADVICE = "expert_advice"
    FINAL_REPORT = "final_report"


class JobStatus(str, Enum):
    """Status of a pipeline job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class InspectionStatus(str, Enum):
    """Status of an inspection as a whole."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentStatus(str, Enum):
    """Status of one agent attempt within a workflow run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class UsageType(str, Enum):
    """Entitlement source a billed report was funded from."""

    SUBSCRIPTION_INCLUDED = "subscription_included"
    BLOCK = "block"
    PAY_PER_REPORT = "pay_per_report"
    FREE_TRIAL = "free_trial"


class SubscriptionStatus(str, Enum):
    """Billing provider subscription status."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    TRIALING = "trialing"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


class OutboxStatus(str, Enum):
    """Delivery status of a recorded stage invocation."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


# Stages run in this order once every chunk has been analysed. Completing the
# last one hands over to final report generation.
STAGE_ORDER: tuple[JobType, ...] = (
    JobType.CHUNK_ANALYSIS,
    JobType.FAIR_MARKET_VALUE,
    JobType.COST_FORECAST,
    JobType.EXPERT_ADVICE,
)

AGENT_TERMINAL_STATUSES = frozenset(
    {AgentStatus.COMPLETED, AgentStatus.FAILED, AgentStatus.TIMEOUT, AgentStatus.SKIPPED, AgentStatus.CANCELLED}
)
AGENT_SUCCESS_STATUSES = frozenset({AgentStatus.COMPLETED, AgentStatus.SKIPPED})
AGENT_RETRYABLE_STATUSES = frozenset({AgentStatus.FAILED, AgentStatus.TIMEOUT})

ENTITLED_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.TRIALING,
)


def next_stage(job_type: JobType) -> JobType | None:
    """Return the stage that follows ``job_type``, or None after the last one."""
    if job_type not in STAGE_ORDER:
        return None
    index = STAGE_ORDER.index(job_type)
    if index + 1 < len(STAGE_ORDER):
        return STAGE_ORDER[index + 1]
    return None
