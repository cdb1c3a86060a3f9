"""Domain models for agent runs, parts, actions and citations."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Iterator, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import ConfigDict, Field, field_validator, model_validator

from ..base import BaseSchema, WireSchema
from .enums import ActionStatus, ActionType, AgentRunStatus, ApplicationView, AttachmentType


def _utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# ---------------------------------------------------------------------------
# User prompt
# ---------------------------------------------------------------------------


class ItemReference(WireSchema):
    """Reference to an item in the host application's library."""

    library_id: int
    zotero_key: str

    @property
    def key(self) -> str:
        """Deduplication key in ``"{library_id}-{zotero_key}"`` form."""
        return f"{self.library_id}-{self.zotero_key}"


class AttachmentReference(ItemReference):
    """An item forwarded with a prompt (document, annotation or note)."""

    type: AttachmentType = AttachmentType.source
    include: Optional[str] = None


class ReaderState(WireSchema):
    """Position of the reader when the current view is a document."""

    library_id: int
    zotero_key: str
    current_page: Optional[int] = None
    text_selection: Optional[Dict[str, Any]] = None


class ApplicationState(WireSchema):
    current_view: ApplicationView = ApplicationView.library
    reader_state: Optional[ReaderState] = None
    library_selection: Optional[List[ItemReference]] = None


class SearchFilters(WireSchema):
    """
    Library scoping for a prompt.

    Each dimension is ``None`` when unset; serializers drop ``None`` values so
    unset filters are omitted rather than sent as empty arrays.
    """

    libraries: Optional[List[Dict[str, Any]]] = None
    collections: Optional[List[Dict[str, Any]]] = None
    tags: Optional[List[Dict[str, Any]]] = None


class ToolRequest(WireSchema):
    """Explicit tool invocation requested by the user (e.g. web search)."""

    function: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class UserPrompt(WireSchema):
    """
    Everything the user submitted for one run.

    Frozen: a prompt never changes after its run is created. Editing a prompt
    produces a new run carrying a new prompt.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    content: str
    attachments: Optional[List[AttachmentReference]] = None
    application_state: Optional[ApplicationState] = None
    filters: Optional[SearchFilters] = None
    tool_requests: Optional[List[ToolRequest]] = None
    is_resume: Optional[bool] = None
    resumes_run_id: Optional[str] = None

    def attachment_keys(self) -> List[str]:
        return [a.key for a in self.attachments or []]


# ---------------------------------------------------------------------------
# Usage and errors
# ---------------------------------------------------------------------------


class ModelRequestUsage(WireSchema):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    details: Optional[Dict[str, int]] = None


class RunUsage(WireSchema):
    """Token accounting for a run, reported once at ``run_complete``."""

    requests: int = 0
    tool_calls: int = 0
    input_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    input_audio_tokens: int = 0
    cache_audio_read_tokens: int = 0
    output_tokens: int = 0
    model_requests: Optional[List[ModelRequestUsage]] = None
    details: Optional[Dict[str, int]] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class RunError(WireSchema):
    type: str
    message: str
    details: Optional[str] = None
    is_retryable: Optional[bool] = None
    retry_after: Optional[float] = None
    is_resumable: Optional[bool] = None


# ---------------------------------------------------------------------------
# Model message parts
# ---------------------------------------------------------------------------


class TextPart(WireSchema):
    part_kind: Literal["text"] = "text"
    content: str = ""
    part_index: int = 0


class ThinkingPart(WireSchema):
    part_kind: Literal["thinking"] = "thinking"
    content: str = ""
    part_index: int = 0


class ToolReturnPart(WireSchema):
    part_kind: Literal["tool-return"] = "tool-return"
    tool_name: str
    content: Any = None
    tool_call_id: str
    metadata: Optional[Dict[str, Any]] = None


class RetryPromptPart(WireSchema):
    """Returned instead of a tool result when the tool asks the model to retry."""

    part_kind: Literal["retry-prompt"] = "retry-prompt"
    tool_name: str
    content: Any = None
    tool_call_id: str


ToolResult = Annotated[Union[ToolReturnPart, RetryPromptPart], Field(discriminator="part_kind")]


class ToolCallPart(WireSchema):
    """
    A tool invocation made by the model.

    The call arrives complete in one event. Its return is produced by a later
    backend stage and is stored on ``result`` rather than as a separate part.
    """

    part_kind: Literal["tool-call"] = "tool-call"
    tool_name: str
    args: Union[str, Dict[str, Any], None] = None
    tool_call_id: str
    provider_details: Optional[Dict[str, Any]] = None
    progress: Optional[str] = None
    result: Optional[ToolResult] = None
    part_index: int = 0


ResponsePart = Annotated[Union[TextPart, ThinkingPart, ToolCallPart], Field(discriminator="part_kind")]


class ModelMessage(WireSchema):
    """One assistant message, addressed by its server-assigned ``message_index``."""

    message_index: int = 0
    kind: Literal["response"] = "response"
    run_id: Optional[str] = None
    parts: List[ResponsePart] = Field(default_factory=list)
    model_name: Optional[str] = None
    provider_name: Optional[str] = None
    finish_reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Agent run
# ---------------------------------------------------------------------------


class AgentRun(WireSchema):
    """
    One request/response exchange between the user and the assistant.

    The run is created as a shell (empty ``model_messages``) the moment the user
    submits, filled in by streamed events and finalized by ``done`` or an error.
    """

    id: str = Field(default_factory=new_id)
    user_id: str
    thread_id: Optional[str] = None
    agent_name: str = "beaver"

    user_prompt: UserPrompt

    status: AgentRunStatus = AgentRunStatus.in_progress
    error: Optional[RunError] = None

    model_messages: List[ModelMessage] = Field(default_factory=list)

    total_usage: Optional[RunUsage] = None
    total_cost: Optional[float] = None

    model_name: str = "unknown"
    provider_name: Optional[str] = None

    created_at: datetime = Field(default_factory=_utc_now)
    completed_at: Optional[datetime] = None

    consent_to_share: bool = False

    def text_contents(self) -> Iterator[str]:
        """Yield the content of every text part in message order."""
        for message in self.model_messages:
            for part in message.parts:
                if isinstance(part, TextPart):
                    yield part.content

    def tool_calls(self) -> Iterator[ToolCallPart]:
        for message in self.model_messages:
            for part in message.parts:
                if isinstance(part, ToolCallPart):
                    yield part


# ---------------------------------------------------------------------------
# Agent actions
# ---------------------------------------------------------------------------

_ACTION_ALIASES = {
    "runId": "run_id",
    "toolcallId": "toolcall_id",
    "userId": "user_id",
    "actionType": "action_type",
    "errorMessage": "error_message",
    "validationErrors": "error_details",
    "proposedData": "proposed_data",
    "resultData": "result_data",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}

_RESULT_ALIASES = {
    "zoteroKey": "zotero_key",
    "itemKey": "zotero_key",
    "item_key": "zotero_key",
    "libraryId": "library_id",
    "attachmentKey": "attachment_key",
    "parentKey": "parent_key",
}


class AgentAction(WireSchema):
    """
    A tool invocation that mutates external state and is gated by approval.

    Raw payloads from the backend use either snake_case or camelCase keys and
    older backends report ``pending`` instead of ``pending_approval``; both are
    normalized on validation.
    """

    id: str
    run_id: str
    toolcall_id: Optional[str] = None
    user_id: Optional[str] = None

    action_type: ActionType
    status: ActionStatus = ActionStatus.pending_approval
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None

    proposed_data: Dict[str, Any] = Field(default_factory=dict)
    result_data: Optional[Dict[str, Any]] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        out = dict(data)
        for alias, name in _ACTION_ALIASES.items():
            if alias in out:
                value = out.pop(alias)
                out.setdefault(name, value)
        if out.get("status") in (None, "pending"):
            out["status"] = ActionStatus.pending_approval.value
        result = out.get("result_data")
        if isinstance(result, dict):
            normalized = dict(result)
            for alias, name in _RESULT_ALIASES.items():
                if alias in normalized:
                    value = normalized.pop(alias)
                    normalized.setdefault(name, value)
            out["result_data"] = normalized
        return out

    @field_validator("result_data")
    @classmethod
    def _coerce_library_id(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value and value.get("library_id") is not None:
            try:
                value["library_id"] = int(value["library_id"])
            except (TypeError, ValueError):
                pass
        return value

    @property
    def is_pending(self) -> bool:
        return self.status == ActionStatus.pending_approval

    @property
    def is_annotation(self) -> bool:
        return self.action_type in (ActionType.highlight_annotation, ActionType.note_annotation)

    @property
    def has_applied_artifact(self) -> bool:
        """True when the action created something outside the client that can be undone."""
        data = self.result_data or {}
        return self.status == ActionStatus.applied and bool(data.get("zotero_key")) and bool(data.get("library_id"))

    def artifact_reference(self) -> Optional[ItemReference]:
        if not self.has_applied_artifact:
            return None
        data = self.result_data or {}
        return ItemReference(library_id=data["library_id"], zotero_key=str(data["zotero_key"]))


# ---------------------------------------------------------------------------
# Citations and warnings
# ---------------------------------------------------------------------------


class CitationPart(WireSchema):
    """A cited chunk of a document (e.g. ``BLOCK_12``)."""

    part_id: str
    locations: Optional[List[Dict[str, Any]]] = None


class CitationMetadata(WireSchema):
    citation_id: str
    run_id: Optional[str] = None

    library_id: Optional[int] = None
    zotero_key: Optional[str] = None

    external_source: Optional[str] = None
    external_source_id: Optional[str] = None

    citation_type: Optional[str] = None
    marker: Optional[str] = None
    author_year: Optional[str] = None
    preview: Optional[str] = None
    parts: List[CitationPart] = Field(default_factory=list)

    raw_tag: Optional[str] = None
    invalid: Optional[bool] = None

    @property
    def is_external(self) -> bool:
        return bool(self.external_source and self.external_source_id)

    @property
    def item_key(self) -> str:
        """
        Item-level key shared by every citation of the same source.

        ``zotero:{library_id}-{zotero_key}`` for library items,
        ``external:{external_source_id}`` for external references and ``""``
        when the citation identifies nothing.
        """
        if self.library_id and self.zotero_key:
            return f"zotero:{self.library_id}-{self.zotero_key}"
        if self.external_source_id:
            return f"external:{self.external_source_id}"
        return ""


class RunWarning(BaseSchema):
    """A dismissable, non-fatal notice attached to a run."""

    id: str = Field(default_factory=new_id)
    run_id: Optional[str] = None
    type: str
    message: str
    data: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=_utc_now)


# ---------------------------------------------------------------------------
# Connection-level information
# ---------------------------------------------------------------------------


class ReadyInfo(BaseSchema):
    """Server-validated run parameters reported by the ``ready`` event."""

    model_id: Optional[str] = None
    model_name: Optional[str] = None
    subscription_status: Optional[str] = None
    charge_type: Optional[str] = None
    processing_mode: Optional[str] = None
    indexing_complete: bool = False


class RetryInfo(BaseSchema):
    """The backend is retrying a failed model request for ``run_id``."""

    run_id: str
    attempt: int
    max_attempts: int
    reason: str
    wait_seconds: Optional[float] = None


class ThreadSnapshot(BaseSchema):
    """The shape of a thread handed to durable storage."""

    thread_id: Optional[str] = None
    runs: List[AgentRun] = Field(default_factory=list)
    agent_actions: List[AgentAction] = Field(default_factory=list)
    citations: List[CitationMetadata] = Field(default_factory=list)
