"""Domain enums for agent run models."""

from __future__ import annotations

from enum import Enum


class AgentRunStatus(str, Enum):
    """
    Lifecycle status of an agent run.

    ``in_progress`` is the only non-terminal status. Regeneration never rewinds a
    run; it creates a new one.
    """

    in_progress = "in_progress"
    completed = "completed"
    error = "error"
    canceled = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not AgentRunStatus.in_progress


class PartKind(str, Enum):
    """Discriminator values for model message parts."""

    text = "text"
    thinking = "thinking"
    tool_call = "tool-call"
    tool_return = "tool-return"
    retry_prompt = "retry-prompt"


class ActionStatus(str, Enum):
    """
    Status of an agent action in its approval lifecycle.

    ``pending_approval`` actions are waiting on the user. ``approved`` and
    ``rejected`` are the two user decisions, ``applied`` means the external
    artifact exists.
    """

    pending_approval = "pending_approval"
    approved = "approved"
    rejected = "rejected"
    applied = "applied"
    undone = "undone"
    error = "error"


class ActionType(str, Enum):
    """Kinds of side-effecting tool actions the assistant can propose."""

    highlight_annotation = "highlight_annotation"
    note_annotation = "note_annotation"
    zotero_note = "zotero_note"
    create_item = "create_item"
    edit_metadata = "edit_metadata"
    create_collection = "create_collection"
    organize_items = "organize_items"


class AttachmentType(str, Enum):
    """Kinds of host-application references forwarded with a prompt."""

    source = "source"
    annotation = "annotation"
    note = "note"


class ApplicationView(str, Enum):
    """Which view the host application is showing when a prompt is sent."""

    library = "library"
    file_reader = "file_reader"


class ErrorType(str, Enum):
    """
    Client-side error types.

    Server ``error`` events carry arbitrary type strings; these are the ones
    the client produces itself.
    """

    connection_error = "connection_error"
    parse_error = "parse_error"
    protocol_error = "protocol_error"
    validation_error = "validation_error"
