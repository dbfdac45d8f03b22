"""SQLAlchemy database models."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

DEFAULT_BLOCK_VALIDITY_DAYS = 90


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


class Inspection(Base):
    """A submitted vehicle inspection and its pipeline-level flags."""

    __tablename__ = "inspections"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    workflow_run_id = Column(String(100), nullable=True, index=True)
    chunk_plan = Column(JSON, nullable=True)
    total_chunks = Column(Integer, nullable=True)
    # One-shot guard claimed by whichever completion first reaches the final stage
    final_report_triggered = Column(Boolean, nullable=False, default=False)
    report_delivered = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    error_code = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="inspections_status_check",
        ),
    )

    # Relationships
    jobs = relationship(
        "Job",
        back_populates="inspection",
        cascade="all, delete-orphan",
        order_by="Job.sequence_order",
    )
    agent_executions = relationship(
        "AgentExecution", back_populates="inspection", cascade="all, delete-orphan"
    )


class Job(Base):
    """One unit of pipeline work: a chunk of analysis or a whole stage."""

    __tablename__ = "processing_jobs"

    id = Column(String(36), primary_key=True, default=new_id)
    inspection_id = Column(
        String(36), ForeignKey("inspections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    job_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    sequence_order = Column(Integer, nullable=False)
    chunk_index = Column(Integer, nullable=True)
    total_chunks = Column(Integer, nullable=True)
    chunk_data = Column(JSON, nullable=True)
    chunk_result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    cost = Column(Float, nullable=True)
    total_tokens = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("inspection_id", "sequence_order", name="processing_jobs_unique_sequence"),
        CheckConstraint(
            "job_type IN ('chunk_analysis', 'fair_market_value', 'cost_forecast', "
            "'expert_advice', 'final_report')",
            name="processing_jobs_job_type_check",
        ),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="processing_jobs_status_check",
        ),
        CheckConstraint("retry_count >= 0", name="processing_jobs_retry_count_check"),
        Index("idx_processing_jobs_recovery", "status", "started_at"),
    )

    inspection = relationship("Inspection", back_populates="jobs")


class AgentExecution(Base):
    """One attempt of one agent within a workflow run."""

    __tablename__ = "agent_executions"

    id = Column(String(36), primary_key=True, default=new_id)
    inspection_id = Column(
        String(36), ForeignKey("inspections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    workflow_run_id = Column(String(100), nullable=False, index=True)
    agent_name = Column(String(100), nullable=False)
    agent_type = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    attempt_number = Column(Integer, nullable=False, default=1)
    max_retries = Column(Integer, nullable=False, default=3)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    input_data = Column(JSON, nullable=True)
    result_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    error_code = Column(String(100), nullable=True)
    # "metadata" is reserved on declarative classes
    execution_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "inspection_id",
            "workflow_run_id",
            "agent_name",
            "attempt_number",
            name="agent_executions_unique_attempt",
        ),
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'skipped', 'timeout', 'cancelled')",
            name="agent_executions_status_check",
        ),
        CheckConstraint("attempt_number > 0", name="agent_executions_attempt_check"),
        CheckConstraint("max_retries >= 0", name="agent_executions_max_retries_check"),
        Index(
            "idx_agent_executions_latest_attempt",
            "inspection_id",
            "workflow_run_id",
            "agent_name",
            "attempt_number",
        ),
    )

    inspection = relationship("Inspection", back_populates="agent_executions")


class Plan(Base):
    """Subscription plan and the reports it includes per billing period."""

    __tablename__ = "plans"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False, unique=True)
    included_reports = Column(Integer, nullable=False, default=0)


class Subscription(Base):
    """A user's subscription to a plan."""

    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    plan_id = Column(String(36), ForeignKey("plans.id"), nullable=True)
    status = Column(String(20), nullable=False, default="active")
    # Unspent quota of the parent is carried over and spent first
    parent_subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=True)
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    plan = relationship("Plan")
    usage_summaries = relationship("SubscriptionUsageSummary", back_populates="subscription")


class SubscriptionUsageSummary(Base):
    """Reports used by one subscription in one billing period."""

    __tablename__ = "subscription_usage_summary"

    id = Column(String(36), primary_key=True, default=new_id)
    subscription_id = Column(
        String(36), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    billing_period_start = Column(Date, nullable=False)
    billing_period_end = Column(Date, nullable=False)
    reports_included = Column(Integer, nullable=False, default=0)
    reports_used = Column(Integer, nullable=False, default=0)
    last_reset_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id",
            "billing_period_start",
            "billing_period_end",
            name="subscription_usage_summary_unique_period",
        ),
        CheckConstraint("reports_used >= 0", name="subscription_usage_summary_usage_check"),
        CheckConstraint(
            "reports_used <= reports_included", name="subscription_usage_summary_capacity_check"
        ),
    )

    subscription = relationship("Subscription", back_populates="usage_summaries")

    @property
    def reports_remaining(self) -> int:
        return max(0, self.reports_included - self.reports_used)


class ReportBlock(Base):
    """A purchased, expiring pool of report credits."""

    __tablename__ = "report_blocks"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    reports_total = Column(Integer, nullable=False)
    reports_used = Column(Integer, nullable=False, default=0)
    with_history = Column(Boolean, nullable=False, default=False)
    purchase_date = Column(DateTime, default=utcnow, nullable=False)
    expiry_date = Column(DateTime, nullable=False)
    payment_reference = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("reports_used <= reports_total", name="report_blocks_usage_check"),
        CheckConstraint("reports_used >= 0", name="report_blocks_reports_used_check"),
        CheckConstraint("reports_total > 0", name="report_blocks_reports_total_check"),
        Index("idx_report_blocks_user_active_expiry", "user_id", "is_active", "expiry_date"),
    )

    @property
    def reports_remaining(self) -> int:
        return max(0, self.reports_total - self.reports_used)


@event.listens_for(ReportBlock, "before_insert")
@event.listens_for(ReportBlock, "before_update")
def _apply_block_lifecycle(mapper, connection, target: ReportBlock) -> None:
    """Default the expiry and deactivate exhausted or expired blocks."""
    if target.purchase_date is None:
        target.purchase_date = utcnow()
    if target.expiry_date is None or target.expiry_date == target.purchase_date:
        target.expiry_date = target.purchase_date + timedelta(days=DEFAULT_BLOCK_VALIDITY_DAYS)
    if (target.reports_used or 0) >= target.reports_total:
        target.is_active = False
    if target.expiry_date <= utcnow():
        target.is_active = False


class Report(Base):
    """Generated report for an inspection."""

    __tablename__ = "reports"

    id = Column(String(36), primary_key=True, default=new_id)
    inspection_id = Column(
        String(36), ForeignKey("inspections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    summary = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class ReportUsage(Base):
    """Ledger entry: exactly one row per billed report."""

    __tablename__ = "report_usage"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    inspection_id = Column(String(36), ForeignKey("inspections.id"), nullable=False, index=True)
    report_id = Column(String(36), ForeignKey("reports.id"), nullable=False)
    usage_type = Column(String(30), nullable=False)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=True)
    report_block_id = Column(String(36), ForeignKey("report_blocks.id"), nullable=True)
    had_history = Column(Boolean, nullable=False, default=False)
    billing_period_start = Column(Date, nullable=True)
    billing_period_end = Column(Date, nullable=True)
    usage_date = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("report_id", name="report_usage_unique_report"),
        CheckConstraint(
            "usage_type IN ('subscription_included', 'block', 'pay_per_report', 'free_trial')",
            name="report_usage_type_check",
        ),
    )


class OutboxEvent(Base):
    """Durable record of a stage executor invocation awaiting delivery."""

    __tablename__ = "outbox_events"

    id = Column(String(36), primary_key=True, default=new_id)
    inspection_id = Column(String(36), ForeignKey("inspections.id", ondelete="CASCADE"), nullable=False)
    job_id = Column(String(36), nullable=True)
    triggered_by = Column(String(36), nullable=True, index=True)
    endpoint = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    delivered_at = Column(DateTime, nullable=True)


class AuditLog(Base):
    """Append-only operational log."""

    __tablename__ = "function_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_component = Column(String(100), nullable=False, index=True)
    message = Column(Text, nullable=False)
    related_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
