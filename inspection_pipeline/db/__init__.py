"""Persistence layer."""

from .models import (
    AgentExecution,
    AuditLog,
    Base,
    Inspection,
    Job,
    OutboxEvent,
    Plan,
    Report,
    ReportBlock,
    ReportUsage,
    Subscription,
    SubscriptionUsageSummary,
    utcnow,
)
from .session import create_db_engine, create_session_factory, init_schema

__all__ = [
    "AgentExecution",
    "AuditLog",
    "Base",
    "Inspection",
    "Job",
    "OutboxEvent",
    "Plan",
    "Report",
    "ReportBlock",
    "ReportUsage",
    "Subscription",
    "SubscriptionUsageSummary",
    "utcnow",
    "create_db_engine",
    "create_session_factory",
    "init_schema",
]
