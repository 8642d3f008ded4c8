"""Narrow async client for the automation platform's REST API.

Every call carries a bounded timeout. Non-2xx responses and transport failures
are raised as UpstreamError, classified retryable (5xx, timeouts, connection
errors) or terminal (4xx). The client never retries on its own.
"""

import logging
from typing import Any

import httpx

from .config import Settings
from .errors import UpstreamError

logger = logging.getLogger("flowdoc.platform_client")

API_PREFIX = "/api/v1"
API_KEY_HEADER = "X-N8N-API-KEY"


class PlatformClient:
    """Forwards workflow, variable and project calls to the platform API."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if api_key:
            headers[API_KEY_HEADER] = api_key
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}{API_PREFIX}",
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlatformClient | None":
        if not settings.platform_configured:
            return None
        return cls(settings.api_url, settings.api_key, settings.api_timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, json_body: Any = None) -> Any:
        try:
            response = await self._client.request(method, path, json=json_body)
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {path} timed out")
            raise UpstreamError(f"Platform API timed out on {method} {path}", retryable=True) from e
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise UpstreamError(f"Platform API unreachable on {method} {path}: {e}", retryable=True) from e

        if response.is_error:
            logger.warning(f"{method} {path} returned {response.status_code}")
            raise UpstreamError(
                f"Platform API error ({response.status_code}) on {method} {path}: {response.text[:500]}",
                status=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(
                f"Platform API returned non-JSON body on {method} {path}",
                status=response.status_code,
                retryable=False,
            ) from e

    async def _list(self, path: str) -> list[dict]:
        payload = await self._request("GET", path)
        if isinstance(payload, dict):
            return payload.get("data") or []
        return payload or []

    # Workflows

    async def list_workflows(self) -> list[dict]:
        return await self._list("/workflows")

    async def get_workflow(self, workflow_id: str) -> dict:
        return await self._request("GET", f"/workflows/{workflow_id}")

    async def create_workflow(self, data: dict) -> dict:
        return await self._request("POST", "/workflows", data)

    async def update_workflow(self, workflow_id: str, data: dict) -> dict:
        return await self._request("PUT", f"/workflows/{workflow_id}", data)

    async def activate_workflow(self, workflow_id: str) -> dict:
        return await self._request("POST", f"/workflows/{workflow_id}/activate")

    async def deactivate_workflow(self, workflow_id: str) -> dict:
        return await self._request("POST", f"/workflows/{workflow_id}/deactivate")

    # Variables and projects

    async def list_variables(self) -> list[dict]:
        return await self._list("/variables")

    async def create_variable(self, key: str, value: str) -> dict | None:
        return await self._request("POST", "/variables", {"key": key, "value": value})

    async def list_projects(self) -> list[dict]:
        return await self._list("/projects")
