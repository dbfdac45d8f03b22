"""FastAPI application: the callbacks stage executors use, plus the entitlement RPC."""

from datetime import datetime, timezone
from functools import lru_cache

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
import structlog

from inspection_pipeline import __version__
from inspection_pipeline.api.models import (
    AgentExecutionResponse,
    AgentStatusUpdate,
    ClaimNext,
    FinalizeReport,
    InspectionCreate,
    InspectionResponse,
    JobComplete,
    JobFail,
    JobResponse,
    RecoveryResponse,
    WorkflowRunStart,
)
from inspection_pipeline.config import get_settings
from inspection_pipeline.db.models import OutboxEvent
from inspection_pipeline.db.session import init_schema
from inspection_pipeline.errors import (
    AgentExecutionNotFoundError,
    InspectionNotFoundError,
    JobNotFoundError,
    PipelineError,
)
from inspection_pipeline.ledger.entitlements import EntitlementRequest, EntitlementResult
from inspection_pipeline.services import Services, build_services

logger = structlog.get_logger()

app = FastAPI(
    title="Inspection Pipeline",
    description="Job orchestration and usage ledger for inspection reports",
    version=__version__,
)

NOT_FOUND_ERRORS = (InspectionNotFoundError, JobNotFoundError, AgentExecutionNotFoundError)


@lru_cache
def get_services() -> Services:
    """Services built once per process from the environment."""
    services = build_services(get_settings())
    init_schema(services.engine)
    return services


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    status_code = 404 if isinstance(exc, NOT_FOUND_ERRORS) else 409
    logger.info("Request rejected", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=status_code, content={"code": exc.code, "detail": exc.message})


def _dispatch_later(background_tasks: BackgroundTasks, services: Services, events: list[OutboxEvent]) -> None:
    if events:
        background_tasks.add_task(services.dispatcher.dispatch_all, events)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "message": "Inspection Pipeline API",
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post("/api/v1/entitlements/check", response_model=EntitlementResult)
def check_entitlement(
    request: EntitlementRequest,
    services: Services = Depends(get_services),
) -> EntitlementResult:
    """Check a user's report entitlement, optionally consuming one credit."""
    return services.ledger.resolve(request)


@app.post("/api/v1/inspections", response_model=InspectionResponse, status_code=201)
def submit_inspection(
    body: InspectionCreate,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> InspectionResponse:
    """Create an inspection and enqueue its first chunk."""
    inspection = services.jobs.open_inspection(body.user_id, body.inspection_id)
    transition = services.jobs.submit_inspection(inspection.id, body.chunks, body.workflow_run_id)
    _dispatch_later(background_tasks, services, transition.events)

    logger.info("Inspection created", inspection_id=inspection.id, chunks=len(body.chunks))
    return InspectionResponse.model_validate(services.jobs.get_inspection(inspection.id))


@app.get("/api/v1/inspections/{inspection_id}", response_model=InspectionResponse)
def get_inspection(inspection_id: str, services: Services = Depends(get_services)) -> InspectionResponse:
    return InspectionResponse.model_validate(services.jobs.get_inspection(inspection_id))


@app.get("/api/v1/inspections/{inspection_id}/jobs", response_model=list[JobResponse])
def list_jobs(inspection_id: str, services: Services = Depends(get_services)) -> list[JobResponse]:
    """Jobs of an inspection in sequence order."""
    services.jobs.get_inspection(inspection_id)
    return [JobResponse.model_validate(job) for job in services.jobs.list_jobs(inspection_id)]


@app.post("/api/v1/inspections/{inspection_id}/jobs/claim", response_model=JobResponse | None)
def claim_next_job(
    inspection_id: str,
    body: ClaimNext,
    services: Services = Depends(get_services),
) -> JobResponse | None:
    """Claim the next pending job, or null when there is none."""
    job = services.jobs.claim_next(inspection_id, body.after_sequence)
    return JobResponse.model_validate(job) if job else None


@app.post("/api/v1/jobs/{job_id}/claim", response_model=JobResponse)
def claim_job(job_id: str, services: Services = Depends(get_services)) -> JobResponse:
    return JobResponse.model_validate(services.jobs.claim(job_id))


@app.post("/api/v1/jobs/{job_id}/complete", response_model=JobResponse)
def complete_job(
    job_id: str,
    body: JobComplete,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> JobResponse:
    """Record a job's result; the next job is enqueued and invoked after the response."""
    transition = services.jobs.complete(job_id, body.result, body.cost, body.total_tokens)
    _dispatch_later(background_tasks, services, transition.events)
    return JobResponse.model_validate(transition.job)


@app.post("/api/v1/jobs/{job_id}/fail", response_model=JobResponse)
def fail_job(job_id: str, body: JobFail, services: Services = Depends(get_services)) -> JobResponse:
    return JobResponse.model_validate(services.jobs.fail(job_id, body.error_message))


@app.post(
    "/api/v1/inspections/{inspection_id}/agents",
    response_model=list[AgentExecutionResponse],
    status_code=201,
)
def start_workflow_run(
    inspection_id: str,
    body: WorkflowRunStart,
    services: Services = Depends(get_services),
) -> list[AgentExecutionResponse]:
    """Register attempt 1 of every agent in a workflow run."""
    executions = services.tracker.start_run(inspection_id, body.workflow_run_id, body.agents, body.input_data)
    return [AgentExecutionResponse.model_validate(execution) for execution in executions]


@app.get(
    "/api/v1/inspections/{inspection_id}/agents/{workflow_run_id}",
    response_model=list[AgentExecutionResponse],
)
def agent_history(
    inspection_id: str, workflow_run_id: str, services: Services = Depends(get_services)
) -> list[AgentExecutionResponse]:
    return [
        AgentExecutionResponse.model_validate(execution)
        for execution in services.tracker.history(inspection_id, workflow_run_id)
    ]


@app.patch("/api/v1/agent-executions/{execution_id}", response_model=AgentExecutionResponse)
def update_agent_status(
    execution_id: str,
    body: AgentStatusUpdate,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> AgentExecutionResponse:
    """Report an agent attempt's progress; the last success triggers the final report."""
    update = services.tracker.update_status(
        execution_id, body.status, body.result_data, body.error_message, body.error_code
    )
    _dispatch_later(background_tasks, services, update.events)
    return AgentExecutionResponse.model_validate(update.execution)


@app.post("/api/v1/agent-executions/{execution_id}/retry", response_model=AgentExecutionResponse, status_code=201)
def retry_agent(execution_id: str, services: Services = Depends(get_services)) -> AgentExecutionResponse:
    return AgentExecutionResponse.model_validate(services.tracker.retry(execution_id))


@app.post("/api/v1/inspections/{inspection_id}/finalize", response_model=EntitlementResult)
def finalize_report(
    inspection_id: str,
    body: FinalizeReport,
    services: Services = Depends(get_services),
) -> EntitlementResult:
    """Bill the generated report and close the inspection."""
    return services.finalizer.finalize(inspection_id, body.report_id, body.had_history)


@app.post("/api/v1/recovery/run", response_model=RecoveryResponse)
async def run_recovery(services: Services = Depends(get_services)) -> RecoveryResponse:
    """Run one recovery sweep now, outside the worker's schedule."""
    jobs = await services.recovery.run()
    agents = await services.recovery.sweep_agents()
    return RecoveryResponse(
        detected=jobs.detected,
        recovered=jobs.recovered,
        skipped=jobs.skipped,
        errors=jobs.errors,
        exhausted_inspections=jobs.exhausted_inspections,
        agents_timed_out=agents.timed_out,
        agents_retried=agents.retried,
        agent_exhausted_inspections=agents.exhausted_inspections,
    )


@app.get("/api/v1/recovery/stuck-jobs")
def stuck_jobs(services: Services = Depends(get_services)) -> list[dict]:
    return services.recovery.find_stuck_jobs()
