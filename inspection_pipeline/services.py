"""Wiring of the pipeline services around one engine and session factory."""

from dataclasses import dataclass

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from inspection_pipeline.agents.tracker import AgentExecutionTracker
from inspection_pipeline.config import Settings, get_settings
from inspection_pipeline.core.audit import AuditLogger
from inspection_pipeline.core.chainer import CompletionChainer
from inspection_pipeline.core.dispatcher import OutboxDispatcher
from inspection_pipeline.core.finalizer import ReportFinalizer
from inspection_pipeline.core.jobs import JobStateMachine
from inspection_pipeline.core.recovery import StuckJobRecovery
from inspection_pipeline.db.session import create_db_engine, create_session_factory
from inspection_pipeline.ledger.service import UsageLedger
from inspection_pipeline.tools.executor import StageExecutorClient


@dataclass
class Services:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    audit: AuditLogger
    chainer: CompletionChainer
    jobs: JobStateMachine
    tracker: AgentExecutionTracker
    dispatcher: OutboxDispatcher
    recovery: StuckJobRecovery
    ledger: UsageLedger
    finalizer: ReportFinalizer


def build_services(
    settings: Settings | None = None,
    engine: Engine | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Services:
    """Build every service once; settings and credentials are read here only."""
    settings = settings or get_settings()
    engine = engine or create_db_engine(settings.database_url, echo=settings.debug)
    session_factory = create_session_factory(engine)

    audit = AuditLogger(session_factory)
    chainer = CompletionChainer(settings)
    dispatcher = OutboxDispatcher(
        session_factory, StageExecutorClient(settings, transport=transport), audit, settings
    )
    ledger = UsageLedger(session_factory, audit, settings)

    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        audit=audit,
        chainer=chainer,
        jobs=JobStateMachine(session_factory, chainer, audit, settings),
        tracker=AgentExecutionTracker(session_factory, chainer, audit, settings),
        dispatcher=dispatcher,
        recovery=StuckJobRecovery(session_factory, dispatcher, audit, settings),
        ledger=ledger,
        finalizer=ReportFinalizer(session_factory, ledger, audit),
    )
