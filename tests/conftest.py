"""Pytest configuration and fixtures."""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Callable, Generator
from uuid import uuid4

import httpx
import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from inspection_pipeline.config import Settings
from inspection_pipeline.core.state import JobStatus, JobType
from inspection_pipeline.db.models import Inspection, Job, Plan, Subscription, SubscriptionUsageSummary, utcnow
from inspection_pipeline.db.session import create_db_engine, create_session_factory, init_schema
from inspection_pipeline.services import Services, build_services


class ExecutorRecorder:
    """Stands in for the stage executor behind an ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 202

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"accepted": self.status_code < 400})

    @property
    def endpoints(self) -> list[str]:
        return [request.url.path.rsplit("/", 1)[-1] for request in self.requests]

    @property
    def payloads(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]


@pytest.fixture
def test_settings() -> Settings:
    """Provide test settings with an in-memory database and a fake executor."""
    return Settings(
        database_url="sqlite://",
        environment="development",
        executor_base_url="http://executor.test/functions/v1",
        executor_api_key="test_executor_key",
    )


@pytest.fixture
def engine(test_settings: Settings) -> Generator[Engine, None, None]:
    engine = create_db_engine(test_settings.database_url)
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(engine)


@pytest.fixture
def executor() -> ExecutorRecorder:
    return ExecutorRecorder()


@pytest.fixture
def services(test_settings: Settings, engine: Engine, executor: ExecutorRecorder) -> Services:
    return build_services(test_settings, engine, transport=httpx.MockTransport(executor.handler))


@pytest.fixture
def make_inspection(services: Services) -> Callable[..., Inspection]:
    """Create a pending inspection."""

    def _make(user_id: str = "user-1", **values: Any) -> Inspection:
        with services.session_factory() as session, session.begin():
            inspection = Inspection(user_id=user_id, **values)
            session.add(inspection)
        return inspection

    return _make


@pytest.fixture
def make_job(services: Services) -> Callable[..., Job]:
    """Insert a job row directly, in any state."""

    def _make(
        inspection_id: str,
        job_type: JobType = JobType.CHUNK_ANALYSIS,
        status: JobStatus = JobStatus.PENDING,
        sequence_order: int = 1,
        started_minutes_ago: float | None = None,
        **values: Any,
    ) -> Job:
        started_at = utcnow() - timedelta(minutes=started_minutes_ago) if started_minutes_ago is not None else None
        with services.session_factory() as session, session.begin():
            job = Job(
                inspection_id=inspection_id,
                job_type=job_type.value,
                status=status.value,
                sequence_order=sequence_order,
                started_at=started_at,
                **values,
            )
            session.add(job)
        return job

    return _make


@pytest.fixture
def make_subscription(services: Services) -> Callable[..., Subscription]:
    """Create a subscription on a plan, optionally with usage already recorded."""

    def _make(
        user_id: str = "user-1",
        included_reports: int = 5,
        reports_used: int | None = None,
        status: str = "active",
        parent_subscription_id: str | None = None,
        created_days_ago: int = 0,
    ) -> Subscription:
        now = utcnow()
        with services.session_factory() as session, session.begin():
            plan = Plan(name=f"plan-{uuid4().hex[:12]}", included_reports=included_reports)
            session.add(plan)
            session.flush()
            subscription = Subscription(
                user_id=user_id,
                plan_id=plan.id,
                status=status,
                parent_subscription_id=parent_subscription_id,
                current_period_start=now - timedelta(days=5),
                current_period_end=now + timedelta(days=25),
                created_at=now - timedelta(days=created_days_ago),
            )
            session.add(subscription)
            session.flush()
            if reports_used is not None:
                session.add(
                    SubscriptionUsageSummary(
                        subscription_id=subscription.id,
                        billing_period_start=subscription.current_period_start.date(),
                        billing_period_end=subscription.current_period_end.date(),
                        reports_included=included_reports,
                        reports_used=reports_used,
                    )
                )
        return subscription

    return _make


@pytest.fixture
def file_services(tmp_path, test_settings: Settings, executor: ExecutorRecorder) -> Generator[Services, None, None]:
    """Services on a file database, so concurrent sessions hold separate connections."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'pipeline.db'}")
    init_schema(engine)
    yield build_services(test_settings, engine, transport=httpx.MockTransport(executor.handler))
    engine.dispose()


def _run_concurrently(*calls: Callable[[], Any]) -> list[Any]:
    """Start every call at the same moment on its own thread and collect the results."""
    barrier = threading.Barrier(len(calls))

    def _run(call: Callable[[], Any]) -> Any:
        barrier.wait()
        return call()

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        futures = [pool.submit(_run, call) for call in calls]
        return [future.result() for future in futures]


@pytest.fixture
def run_concurrently() -> Callable[..., list[Any]]:
    return _run_concurrently
