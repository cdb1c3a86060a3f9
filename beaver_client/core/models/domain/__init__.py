"""Domain models and enums for agent runs.

These types are shared between:

- the wire protocol (events carry parts, actions and citations),
- the run reducer and its registries,
- the REST client for stored runs,
- the thread snapshot handed to durable storage.

The models are explicit and serializable so a thread can be persisted and
loaded back without loss.
"""

from .enums import (
    ActionStatus,
    ActionType,
    AgentRunStatus,
    ApplicationView,
    AttachmentType,
    ErrorType,
    PartKind,
)
from .models import (
    AgentAction,
    AgentRun,
    ApplicationState,
    AttachmentReference,
    CitationMetadata,
    CitationPart,
    ItemReference,
    ModelMessage,
    ModelRequestUsage,
    ReaderState,
    ReadyInfo,
    ResponsePart,
    RetryInfo,
    RetryPromptPart,
    RunError,
    RunUsage,
    RunWarning,
    SearchFilters,
    TextPart,
    ThinkingPart,
    ThreadSnapshot,
    ToolCallPart,
    ToolRequest,
    ToolResult,
    ToolReturnPart,
    UserPrompt,
)

__all__ = [
    "ActionStatus",
    "ActionType",
    "AgentAction",
    "AgentRun",
    "AgentRunStatus",
    "ApplicationState",
    "ApplicationView",
    "AttachmentReference",
    "AttachmentType",
    "CitationMetadata",
    "CitationPart",
    "ErrorType",
    "ItemReference",
    "ModelMessage",
    "ModelRequestUsage",
    "PartKind",
    "ReaderState",
    "ReadyInfo",
    "ResponsePart",
    "RetryInfo",
    "RetryPromptPart",
    "RunError",
    "RunUsage",
    "RunWarning",
    "SearchFilters",
    "TextPart",
    "ThinkingPart",
    "ThreadSnapshot",
    "ToolCallPart",
    "ToolRequest",
    "ToolResult",
    "ToolReturnPart",
    "UserPrompt",
]
