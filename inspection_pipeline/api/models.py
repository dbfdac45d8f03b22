"""Pydantic models for API requests and responses."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from inspection_pipeline.core.state import AgentStatus, InspectionStatus, JobStatus, JobType


class InspectionCreate(BaseModel):
    """Request model for submitting a new inspection."""

    user_id: str = Field(..., description="Owner of the inspection, billed for its report")
    chunks: list[dict[str, Any]] = Field(..., min_length=1, description="Ordered chunk inputs")
    workflow_run_id: str | None = Field(None, description="Multi-agent workflow run, if already started")
    inspection_id: str | None = Field(None, description="Client-assigned id; generated when absent")

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "6f1c2a4e-8d3b-4f6a-9c1e-2b7d5e8f0a13",
                "chunks": [{"images": ["exterior-1.jpg", "exterior-2.jpg"]}, {"images": ["obd-scan.png"]}],
            }
        }


class InspectionResponse(BaseModel):
    """Response model for inspection status."""

    id: str
    user_id: str
    status: InspectionStatus
    workflow_run_id: str | None = None
    total_chunks: int | None = None
    final_report_triggered: bool = False
    report_delivered: bool = False
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class JobResponse(BaseModel):
    """Response model for a pipeline job."""

    id: str
    inspection_id: str
    job_type: JobType
    status: JobStatus
    sequence_order: int
    chunk_index: int | None = None
    total_chunks: int | None = None
    chunk_data: dict[str, Any] | None = None
    chunk_result: dict[str, Any] | None = None
    retry_count: int
    max_retries: int
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class ClaimNext(BaseModel):
    after_sequence: int = Field(0, ge=0, description="Only claim jobs after this sequence")


class JobComplete(BaseModel):
    """Request model for reporting a finished job."""

    result: dict[str, Any] | None = None
    cost: float | None = Field(None, ge=0)
    total_tokens: int | None = Field(None, ge=0)


class JobFail(BaseModel):
    error_message: str = Field(..., min_length=1)


class WorkflowRunStart(BaseModel):
    """Request model for registering the agents of a workflow run."""

    workflow_run_id: str
    agents: dict[str, str] = Field(..., min_length=1, description="Agent name -> agent type")
    input_data: dict[str, Any] | None = None


class AgentStatusUpdate(BaseModel):
    status: AgentStatus
    result_data: dict[str, Any] | None = None
    error_message: str | None = None
    error_code: str | None = None


class AgentExecutionResponse(BaseModel):
    """Response model for one agent attempt."""

    id: str
    inspection_id: str
    workflow_run_id: str
    agent_name: str
    agent_type: str
    status: AgentStatus
    attempt_number: int
    max_retries: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    result_data: dict[str, Any] | None = None
    error_message: str | None = None
    error_code: str | None = None

    class Config:
        from_attributes = True


class FinalizeReport(BaseModel):
    report_id: str | None = None
    had_history: bool = False


class RecoveryResponse(BaseModel):
    """Response model for a recovery sweep."""

    detected: int
    recovered: int
    skipped: int
    errors: int
    exhausted_inspections: list[str]
    agents_timed_out: int
    agents_retried: int
    agent_exhausted_inspections: list[str]
