"""Build outbound run requests from the composer state.

Every function here is pure: it reads a ``ComposerState`` / ``ModelSelection``
snapshot and returns new values. Nothing is mutated, so a request can be
rebuilt for a regeneration from the same inputs.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from pydantic import ConfigDict, Field

from ..core.config import Settings, settings as default_settings
from ..core.logging_config import get_logger
from ..core.models.base import BaseSchema
from ..core.models.domain import (
    AgentRun,
    AgentRunStatus,
    ApplicationState,
    ApplicationView,
    AttachmentReference,
    AttachmentType,
    ItemReference,
    ReaderState,
    SearchFilters,
    ToolRequest,
    UserPrompt,
)
from ..core.models.domain.models import new_id
from ..protocol.messages import AgentRunRequest, ConnectionOptions, CustomChatModel

logger = get_logger(__name__)

WEB_SEARCH_FUNCTION = "search_external_references"
READER_ATTACHMENT_INCLUDE = "fulltext"


class ComposerState(BaseSchema):
    """Snapshot of what the user is about to send, read from the host application."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    content: str = ""
    attachments: List[AttachmentReference] = Field(default_factory=list)
    reader_attachment: Optional[ItemReference] = None
    reader_state: Optional[ReaderState] = None
    thread_attachment_keys: List[str] = Field(default_factory=list)
    filter_libraries: List[dict] = Field(default_factory=list)
    filter_collections: List[dict] = Field(default_factory=list)
    filter_tags: List[dict] = Field(default_factory=list)
    web_search_enabled: bool = False
    current_view: ApplicationView = ApplicationView.library
    library_selection: Optional[List[ItemReference]] = None


class ModelSelection(BaseSchema):
    """The model the user picked for the next run."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    model_id: Optional[str] = None
    name: str = "unknown"
    provider: Optional[str] = None
    access_id: Optional[str] = None
    is_custom: bool = False
    use_app_key: bool = True
    custom_model: Optional[CustomChatModel] = None


def resolve_attachments(composer: ComposerState) -> List[AttachmentReference]:
    """
    Explicit attachments first, then the document open in the reader.

    The reader document is added as a full-text source only when neither an
    explicit attachment nor an earlier run in the thread already carries it.
    """
    attachments = list(composer.attachments)
    if composer.reader_attachment is None or composer.reader_state is None:
        return attachments

    existing = {a.key for a in attachments} | set(composer.thread_attachment_keys)
    reader_key = composer.reader_attachment.key
    if reader_key in existing:
        logger.debug("Skipping reader attachment %s, already attached", reader_key)
        return attachments

    logger.debug("Adding reader attachment %s", reader_key)
    attachments.append(
        AttachmentReference(
            library_id=composer.reader_attachment.library_id,
            zotero_key=composer.reader_attachment.zotero_key,
            type=AttachmentType.source,
            include=READER_ATTACHMENT_INCLUDE,
        )
    )
    return attachments


def build_filters(composer: ComposerState) -> SearchFilters:
    return SearchFilters(
        libraries=list(composer.filter_libraries) or None,
        collections=list(composer.filter_collections) or None,
        tags=list(composer.filter_tags) or None,
    )


def build_tool_requests(composer: ComposerState) -> Optional[List[ToolRequest]]:
    if not composer.web_search_enabled:
        return None
    return [ToolRequest(function=WEB_SEARCH_FUNCTION, parameters={})]


def build_application_state(composer: ComposerState) -> ApplicationState:
    return ApplicationState(
        current_view=composer.current_view,
        reader_state=composer.reader_state,
        library_selection=composer.library_selection,
    )


def build_user_prompt(composer: ComposerState, content: Optional[str] = None) -> UserPrompt:
    """Assemble the prompt for ``content`` (defaults to the composer text)."""
    attachments = resolve_attachments(composer)
    return UserPrompt(
        content=composer.content if content is None else content,
        attachments=attachments or None,
        application_state=build_application_state(composer),
        filters=build_filters(composer),
        tool_requests=build_tool_requests(composer),
    )


def build_resume_prompt(run: AgentRun) -> UserPrompt:
    """Prompt for resuming an errored run from its point of failure."""
    return run.user_prompt.model_copy(update={"content": "", "is_resume": True, "resumes_run_id": run.id})


def user_api_key(model: ModelSelection, config: Optional[Settings] = None) -> Optional[str]:
    """
    The user's own API key for ``model``, if one applies.

    App-key models need none. Custom models carry the key from their own
    configuration; other models use the provider key from settings.
    """
    if model.use_app_key:
        return None
    if model.is_custom:
        return model.custom_model.api_key if model.custom_model else None
    return (config or default_settings).provider_api_key(model.provider)


def build_connection_options(model: Optional[ModelSelection], config: Optional[Settings] = None) -> ConnectionOptions:
    """Connection-level credentials; always empty for custom models."""
    if model is None or model.is_custom:
        return ConnectionOptions()
    return ConnectionOptions(access_id=model.access_id, api_key=user_api_key(model, config))


def build_run_request(
    run_id: str,
    thread_id: Optional[str],
    user_prompt: UserPrompt,
    model: Optional[ModelSelection] = None,
    *,
    retry_run_id: Optional[str] = None,
    custom_instructions: Optional[str] = None,
    frontend_version: Optional[str] = None,
) -> AgentRunRequest:
    custom_model = model.custom_model if model is not None and model.is_custom else None
    # A custom model replaces the server-side model id
    model_id = model.model_id if model is not None and not model.is_custom else None
    return AgentRunRequest(
        run_id=run_id,
        thread_id=thread_id,
        user_prompt=user_prompt,
        model_id=model_id,
        custom_model=custom_model,
        retry_run_id=retry_run_id,
        custom_instructions=custom_instructions or None,
        frontend_version=frontend_version,
    )


def create_run_shell(
    user_prompt: UserPrompt,
    *,
    thread_id: Optional[str],
    user_id: str,
    model: Optional[ModelSelection] = None,
    retry_run_id: Optional[str] = None,
    config: Optional[Settings] = None,
) -> Tuple[AgentRun, AgentRunRequest]:
    """
    Create the in-progress run shown immediately on send, and its request.

    The shell has a fresh run id and no messages; the request is handed to the
    connection unchanged once the server is ready.
    """
    config = config or default_settings
    run_id = new_id()
    run = AgentRun(
        id=run_id,
        user_id=user_id,
        thread_id=thread_id,
        user_prompt=user_prompt,
        status=AgentRunStatus.in_progress,
        model_name=model.name if model else "unknown",
        provider_name=model.provider if model else None,
    )
    request = build_run_request(
        run_id,
        thread_id,
        user_prompt,
        model,
        retry_run_id=retry_run_id,
        custom_instructions=config.custom_instructions,
        frontend_version=config.frontend_version,
    )
    return run, request


def thread_attachment_keys(runs: Sequence[AgentRun]) -> List[str]:
    """Attachment keys already sent by earlier runs of a thread."""
    keys: List[str] = []
    for run in runs:
        for key in run.user_prompt.attachment_keys():
            if key not in keys:
                keys.append(key)
    return keys
