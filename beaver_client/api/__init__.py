"""REST API clients."""

from .runs import AgentRunService, PaginatedRunsResponse, RunWithActionsResponse, ThreadRunsResponse

__all__ = ["AgentRunService", "PaginatedRunsResponse", "RunWithActionsResponse", "ThreadRunsResponse"]
