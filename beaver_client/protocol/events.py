"""
Inbound events of the agent-run WebSocket protocol.

Every frame the server sends is a JSON object tagged by its ``event`` field.
The models below form one discriminated union, ``AgentEvent``, which is the
single channel the rest of the client consumes. Two client-side lifecycle
events, ``open`` and ``close``, are part of the same union so that a handler can
observe the whole connection lifecycle from one place.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter, ValidationError

from ..core.logging_config import get_logger
from ..core.models.base import WireSchema
from ..core.models.domain import (
    AgentAction,
    CitationMetadata,
    ErrorType,
    ItemReference,
    RetryPromptPart,
    RunError,
    RunUsage,
    TextPart,
    ThinkingPart,
    ToolCallPart,
    ToolReturnPart,
)
from .errors import EventParseError

logger = get_logger(__name__)


class ConnectionOpenedEvent(WireSchema):
    """Emitted by the client once the socket is open."""

    event: Literal["open"] = "open"


class ConnectionClosedEvent(WireSchema):
    """Emitted by the client exactly once when the socket closes, whatever the cause."""

    event: Literal["close"] = "close"
    code: int = 1000
    reason: str = ""
    was_clean: bool = True


class ReadyEvent(WireSchema):
    """The server validated the connection and is ready to accept a request."""

    event: Literal["ready"] = "ready"
    model_id: Optional[str] = None
    model_name: Optional[str] = None
    subscription_status: Optional[str] = None
    charge_type: Optional[str] = None
    processing_mode: Optional[str] = None
    indexing_complete: bool = False


class RequestAckEvent(WireSchema):
    """The server accepted the request and resolved the model that will serve it."""

    event: Literal["request_ack"] = "request_ack"
    run_id: str
    model_id: Optional[str] = None
    model_name: Optional[str] = None
    charge_type: Optional[str] = None


class PartEvent(WireSchema):
    event: Literal["part"] = "part"
    run_id: str
    message_index: int
    part_index: int
    part: Annotated[Union[TextPart, ThinkingPart, ToolCallPart], Field(discriminator="part_kind")]


class ToolReturnEvent(WireSchema):
    event: Literal["tool_return"] = "tool_return"
    run_id: str
    message_index: int
    part_index: Optional[int] = None
    part: Annotated[Union[ToolReturnPart, RetryPromptPart], Field(discriminator="part_kind")]


class ToolCallProgressEvent(WireSchema):
    event: Literal["tool_call_progress"] = "tool_call_progress"
    run_id: str
    tool_call_id: str
    progress: str


class RunCompleteEvent(WireSchema):
    """
    The model finished producing output for the run.

    Usage and cost are attached here. The run stays ``in_progress`` until ``done``
    because the backend may still be persisting it.
    """

    event: Literal["run_complete"] = "run_complete"
    run_id: str
    usage: Optional[RunUsage] = None
    cost: Optional[float] = None
    citations: Optional[List[CitationMetadata]] = None
    agent_actions: Optional[List[AgentAction]] = None


class DoneEvent(WireSchema):
    """The request is fully complete; the connection may be closed."""

    event: Literal["done"] = "done"
    run_id: Optional[str] = None


class ThreadEvent(WireSchema):
    event: Literal["thread"] = "thread"
    thread_id: str
    run_id: Optional[str] = None


class CitationEvent(WireSchema):
    event: Literal["citation"] = "citation"
    run_id: str
    citation: CitationMetadata


class AgentActionEvent(WireSchema):
    event: Literal["agent_action"] = "agent_action"
    run_id: str
    action: AgentAction


class AgentActionsEvent(WireSchema):
    """Batch variant of ``agent_action``."""

    event: Literal["agent_actions"] = "agent_actions"
    run_id: str
    actions: List[AgentAction] = Field(default_factory=list)


class WarningEvent(WireSchema):
    event: Literal["warning"] = "warning"
    run_id: Optional[str] = None
    type: str
    message: str
    data: Optional[Dict[str, Any]] = None


class MissingDataEvent(WireSchema):
    """Items referenced by the prompt are not available to the backend."""

    event: Literal["missing_zotero_data"] = "missing_zotero_data"
    run_id: str
    items: List[ItemReference] = Field(default_factory=list)


class ErrorEvent(WireSchema):
    """
    A failure on either side of the connection.

    Server errors carry arbitrary ``type`` strings (``llm_rate_limit``,
    ``validation_error``...). The client produces ``connection_error``,
    ``parse_error`` and ``protocol_error`` through the same event so callers have
    a single error path.
    """

    event: Literal["error"] = "error"
    type: str
    message: str
    run_id: Optional[str] = None
    details: Optional[str] = None
    is_retryable: Optional[bool] = None
    retry_after: Optional[float] = None
    is_resumable: Optional[bool] = None

    def to_run_error(self) -> RunError:
        return RunError(
            type=self.type,
            message=self.message,
            details=self.details,
            is_retryable=self.is_retryable,
            retry_after=self.retry_after,
            is_resumable=self.is_resumable,
        )

    @classmethod
    def connection_error(
        cls, message: str, *, details: Optional[str] = None, run_id: Optional[str] = None
    ) -> "ErrorEvent":
        return cls(
            type=ErrorType.connection_error.value, message=message, run_id=run_id, details=details, is_retryable=True
        )

    @classmethod
    def parse_error(cls, message: str, *, details: Optional[str] = None) -> "ErrorEvent":
        return cls(type=ErrorType.parse_error.value, message=message, details=details, is_retryable=True)

    @classmethod
    def protocol_error(
        cls, message: str, *, run_id: Optional[str] = None, details: Optional[str] = None
    ) -> "ErrorEvent":
        return cls(
            type=ErrorType.protocol_error.value, message=message, run_id=run_id, details=details, is_retryable=True
        )


class RetryEvent(WireSchema):
    """The backend is retrying a failed model request."""

    event: Literal["retry"] = "retry"
    run_id: str
    attempt: int
    max_attempts: int
    reason: str
    wait_seconds: Optional[float] = None
    reset: bool = False


ServerEvent = Annotated[
    Union[
        ReadyEvent,
        RequestAckEvent,
        PartEvent,
        ToolReturnEvent,
        ToolCallProgressEvent,
        RunCompleteEvent,
        DoneEvent,
        ThreadEvent,
        CitationEvent,
        AgentActionEvent,
        AgentActionsEvent,
        WarningEvent,
        MissingDataEvent,
        ErrorEvent,
        RetryEvent,
    ],
    Field(discriminator="event"),
]

AgentEvent = Union[ConnectionOpenedEvent, ConnectionClosedEvent, ServerEvent]

SERVER_EVENT_NAMES = frozenset(
    {
        "ready",
        "request_ack",
        "part",
        "tool_return",
        "tool_call_progress",
        "run_complete",
        "done",
        "thread",
        "citation",
        "agent_action",
        "agent_actions",
        "warning",
        "missing_zotero_data",
        "error",
        "retry",
    }
)

_server_event_adapter: TypeAdapter[Any] = TypeAdapter(ServerEvent)


def parse_event(raw: Union[str, bytes]) -> Optional[Any]:
    """
    Decode one WebSocket frame into a server event.

    Returns ``None`` for well-formed frames whose ``event`` name this client does
    not know; those are logged and dropped. Raises ``EventParseError`` when the
    frame is not JSON or does not match the shape of its event.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise EventParseError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("event"), str):
        raise EventParseError("Frame is missing the 'event' tag")

    name = data["event"]
    if name not in SERVER_EVENT_NAMES:
        logger.warning("Ignoring unknown agent event: %s", name)
        return None

    try:
        return _server_event_adapter.validate_python(data)
    except ValidationError as e:
        raise EventParseError(f"Invalid '{name}' event: {e}") from e
