"""REST client for stored agent runs.

Stored runs are read back when a thread is reopened. Their model messages
use the persisted layout, where tool returns live in separate request
messages; they are folded into the streamed layout on the way in so a
loaded run is indistinguishable from a streamed one.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import Field, ValidationError

from ..agent.assembler import fold_stored_messages
from ..core.config import settings
from ..core.logging_config import get_logger
from ..core.models.base import WireSchema
from ..core.models.domain import AgentAction, AgentRun
from ..protocol.errors import AgentApiError

logger = get_logger(__name__)

AGENT_API_PREFIX = "/api/v1/agents/beaver"


class ThreadRunsResponse(WireSchema):
    runs: List[AgentRun] = Field(default_factory=list)
    agent_actions: Optional[List[AgentAction]] = None


class RunWithActionsResponse(WireSchema):
    run: AgentRun
    agent_actions: Optional[List[AgentAction]] = None


class PaginatedRunsResponse(WireSchema):
    data: List[AgentRun] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


def _normalize_run(raw: Dict[str, Any]) -> Dict[str, Any]:
    run = dict(raw)
    messages = run.get("model_messages")
    if isinstance(messages, list):
        run["model_messages"] = fold_stored_messages(str(run.get("id", "")), messages)
    return run


def _normalize_runs(raw: Any) -> Any:
    if isinstance(raw, list):
        return [_normalize_run(r) if isinstance(r, dict) else r for r in raw]
    return raw


class AgentRunService:
    """
    Thin async HTTP client for the stored-runs API.

    Responsibilities:
    - get_thread_runs
    - get_run
    - get_runs (paginated, newest first)

    Args:
        token_provider: Async callable returning the user's access token.
        base_url: HTTP base URL; defaults to ``settings.api_base_url``.
        timeout: Request timeout in seconds.
        client: Optional pre-configured ``httpx.AsyncClient`` (tests inject a MockTransport here).
    """

    def __init__(
        self,
        token_provider: Callable[[], Awaitable[Optional[str]]],
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self._token_provider = token_provider
        self._client = client or httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.request_timeout, follow_redirects=True
        )

    async def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        token = await self._token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _get(self, operation: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{AGENT_API_PREFIX}{path}"
        try:
            logger.debug("AgentRunService.%s: GET %s params=%s", operation, url, params)
            r = await self._client.get(url, headers=await self._headers(), params=params or None)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise AgentApiError(
                f"Agent API {operation} failed: {e.response.status_code}",
                status_code=e.response.status_code,
                details=e.response.text,
            ) from e
        except httpx.TransportError as e:
            raise AgentApiError(f"Agent API {operation} failed: {e}") from e
        try:
            data = r.json()
        except ValueError as e:
            raise AgentApiError(
                f"Agent API {operation} returned invalid JSON", status_code=r.status_code, details=r.text
            ) from e
        if not isinstance(data, dict):
            raise AgentApiError(f"Unexpected response shape from {operation}", status_code=r.status_code, details=data)
        return data

    async def get_thread_runs(self, thread_id: str, include_actions: bool = False) -> ThreadRunsResponse:
        params = {"include_actions": "true"} if include_actions else None
        data = await self._get("get_thread_runs", f"/threads/{thread_id}/runs", params)
        data = {**data, "runs": _normalize_runs(data.get("runs"))}
        response = self._validate("get_thread_runs", ThreadRunsResponse, data)
        logger.debug("AgentRunService.get_thread_runs: got %d runs", len(response.runs))
        return response

    async def get_run(self, run_id: str, include_actions: bool = False) -> RunWithActionsResponse:
        params = {"include_actions": "true"} if include_actions else None
        data = await self._get("get_run", f"/runs/{run_id}", params)
        if isinstance(data.get("run"), dict):
            data = {**data, "run": _normalize_run(data["run"])}
        return self._validate("get_run", RunWithActionsResponse, data)

    async def get_runs(self, limit: int = 20, after: Optional[str] = None) -> PaginatedRunsResponse:
        params: Dict[str, Any] = {"limit": limit}
        if after:
            params["after"] = after
        data = await self._get("get_runs", "/runs", params)
        data = {**data, "data": _normalize_runs(data.get("data"))}
        return self._validate("get_runs", PaginatedRunsResponse, data)

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _validate(operation: str, model: Any, data: Dict[str, Any]) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise AgentApiError(f"Unexpected response shape from {operation}", details=str(e)) from e
