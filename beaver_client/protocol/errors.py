"""Error types raised by the agent-run client.

Purpose:
- Provide one exception root, ``BeaverClientError``, for every failure the
  client raises to its caller.
- Keep protocol defects (out-of-order parts, malformed frames) distinct from
  caller mistakes (sending while a run is active, resolving an action twice).

Usage:
- Transport and protocol failures observed while streaming are not raised to
  the caller; they are turned into ``ErrorEvent`` instances on the event
  channel. The exceptions here surface from commands and from the REST client.
- Catch ``AgentApiError`` for REST failures and inspect ``status_code`` or
  ``details``.
"""

from __future__ import annotations

from typing import Any, Optional


class BeaverClientError(Exception):
    pass


class AgentConnectionError(BeaverClientError):
    """The WebSocket connection could not be established or used."""


class ProtocolViolationError(BeaverClientError):
    """The server sent something the protocol does not allow."""


class EventParseError(ProtocolViolationError):
    """A frame could not be decoded into a known event shape."""


class PartOrderError(ProtocolViolationError):
    """A part event addressed a coordinate out of order or of the wrong kind.

    Args:
        run_id: Run the offending event belongs to.
        message_index: Message coordinate of the event.
        part_index: Part coordinate of the event, if it carried one.
        reason: What was wrong with the coordinate.
    """

    def __init__(self, run_id: str, message_index: int, part_index: Optional[int], reason: str) -> None:
        super().__init__(f"Out-of-order part for run '{run_id}' at ({message_index}, {part_index}): {reason}")
        self.run_id = run_id
        self.message_index = message_index
        self.part_index = part_index
        self.reason = reason


class RunInProgressError(BeaverClientError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run '{run_id}' is still in progress")
        self.run_id = run_id


class RunNotFoundError(BeaverClientError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found in thread: '{run_id}'")
        self.run_id = run_id


class RunNotResumableError(BeaverClientError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run '{run_id}' cannot be resumed")
        self.run_id = run_id


class ActionNotFoundError(BeaverClientError):
    def __init__(self, action_id: str) -> None:
        super().__init__(f"Agent action not found: '{action_id}'")
        self.action_id = action_id


class ActionAlreadyResolvedError(BeaverClientError):
    def __init__(self, action_id: str, status: str) -> None:
        super().__init__(f"Agent action '{action_id}' was already resolved (status: {status})")
        self.action_id = action_id
        self.status = status


class AgentApiError(BeaverClientError):
    """Base error for REST API failures.

    Args:
        message: Human-readable error description.
        status_code: Optional HTTP status code associated with the failure.
        details: Optional structured payload from the server (e.g., JSON body).
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class ThreadNotFoundError(BeaverClientError):
    def __init__(self, thread_id: str) -> None:
        super().__init__(f"Thread not found: '{thread_id}'")
        self.thread_id = thread_id
