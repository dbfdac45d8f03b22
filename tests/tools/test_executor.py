"""Tests for the stage executor client."""

import httpx
import pytest

from inspection_pipeline.errors import StageInvocationError
from inspection_pipeline.tools.executor import StageExecutorClient


@pytest.mark.asyncio
async def test_invoke_posts_payload_with_bearer_token(test_settings, executor) -> None:
    """An accepted invocation returns the executor's status code."""
    # Setup
    client = StageExecutorClient(test_settings, transport=httpx.MockTransport(executor.handler))

    # Execute
    status = await client.invoke("chunk-analysis-handler", {"inspection_id": "insp-1", "completed_sequence": 0})

    # Verify
    assert status == 202
    request = executor.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "http://executor.test/functions/v1/chunk-analysis-handler"
    assert request.headers["Authorization"] == "Bearer test_executor_key"
    assert executor.payloads == [{"inspection_id": "insp-1", "completed_sequence": 0}]


@pytest.mark.asyncio
async def test_invoke_without_api_key(test_settings, executor) -> None:
    test_settings.executor_api_key = None
    client = StageExecutorClient(test_settings, transport=httpx.MockTransport(executor.handler))

    await client.invoke("final-report-handler", {"inspection_id": "insp-1"})

    assert "Authorization" not in executor.requests[0].headers


@pytest.mark.asyncio
async def test_rejected_invocation_raises(test_settings, executor) -> None:
    executor.status_code = 500
    client = StageExecutorClient(test_settings, transport=httpx.MockTransport(executor.handler))

    with pytest.raises(StageInvocationError) as exc_info:
        await client.invoke("cost-forecast-handler", {"inspection_id": "insp-1"})

    assert exc_info.value.status_code == 500
    assert "cost-forecast-handler" in exc_info.value.message


@pytest.mark.asyncio
async def test_unreachable_executor_raises(test_settings) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = StageExecutorClient(test_settings, transport=httpx.MockTransport(refuse))

    with pytest.raises(StageInvocationError) as exc_info:
        await client.invoke("expert-advice-handler", {"inspection_id": "insp-1"})

    assert exc_info.value.status_code is None
