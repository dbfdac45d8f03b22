"""HTTP client for the external stage executors."""

from typing import Any

import httpx
import structlog

from inspection_pipeline.config import Settings, get_settings
from inspection_pipeline.errors import StageInvocationError

logger = structlog.get_logger()


class StageExecutorClient:
    """Posts invocations to stage executor endpoints.

    The executor only has to accept the request; the response body is not
    interpreted. Work happens asynchronously on the executor side and is
    reported back through the job API.
    """

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.executor_base_url.rstrip("/")
        self.api_key = self.settings.executor_api_key
        self.timeout = self.settings.executor_timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def invoke(self, endpoint: str, payload: dict[str, Any]) -> int:
        """Invoke a stage endpoint.

        Args:
            endpoint: Endpoint name under the executor base URL
            payload: JSON body, at least ``inspection_id``

        Returns:
            HTTP status code of the accepted request

        Raises:
            StageInvocationError: On a non-2xx response or transport failure
        """
        url = f"{self.base_url}/{endpoint}"
        logger.info("Invoking stage executor", endpoint=endpoint, inspection_id=payload.get("inspection_id"))

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(url, headers=self._headers(), json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error("Stage executor rejected invocation", endpoint=endpoint, status=e.response.status_code)
                raise StageInvocationError(
                    f"{endpoint} returned HTTP {e.response.status_code}",
                    status_code=e.response.status_code,
                ) from e
            except httpx.HTTPError as e:
                logger.error("Stage executor unreachable", endpoint=endpoint, error=str(e))
                raise StageInvocationError(f"{endpoint} request failed: {e}") from e

        return response.status_code
