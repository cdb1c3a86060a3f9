"""
Agent-run WebSocket protocol.

- ``events``: the inbound tagged union (``AgentEvent``) and ``parse_event``.
- ``messages``: outbound ``chat`` requests, approval responses and connection
  options.
- ``errors``: exceptions raised by the client.
"""

from .errors import (
    ActionAlreadyResolvedError,
    ActionNotFoundError,
    AgentApiError,
    AgentConnectionError,
    BeaverClientError,
    EventParseError,
    PartOrderError,
    ProtocolViolationError,
    RunInProgressError,
    RunNotFoundError,
    RunNotResumableError,
    ThreadNotFoundError,
)

__all__ = [
    "ActionAlreadyResolvedError",
    "ActionNotFoundError",
    "AgentApiError",
    "AgentConnectionError",
    "BeaverClientError",
    "EventParseError",
    "PartOrderError",
    "ProtocolViolationError",
    "RunInProgressError",
    "RunNotFoundError",
    "RunNotResumableError",
    "ThreadNotFoundError",
]
