"""Outbound messages of the agent-run WebSocket protocol."""

from __future__ import annotations

import json
from typing import Literal, Optional

from pydantic import Field

from ..core.models.base import BaseSchema
from ..core.models.domain import UserPrompt


class CustomChatModel(BaseSchema):
    """A user-configured model endpoint; its credentials travel in the request payload."""

    name: str
    snapshot: str
    api_key: str
    provider: str = "custom"
    api_base: Optional[str] = None
    format: Optional[Literal["openai", "anthropic"]] = None
    context_window: Optional[int] = None
    reasoning_effort: Optional[Literal["low", "medium", "high"]] = None
    supports_vision: Optional[bool] = None


class OutboundMessage(BaseSchema):
    def to_wire(self) -> str:
        """Serialize for the socket. Unset optional fields are omitted, never sent as ``null``."""
        return self.model_dump_json(exclude_none=True)


class AgentRunRequest(OutboundMessage):
    """The ``chat`` request sent once the server reports ``ready``."""

    type: Literal["chat"] = "chat"
    run_id: str
    thread_id: Optional[str] = None
    user_prompt: UserPrompt
    model_id: Optional[str] = None
    custom_model: Optional[CustomChatModel] = None
    retry_run_id: Optional[str] = None
    custom_instructions: Optional[str] = None
    frontend_version: Optional[str] = None

    def to_wire(self) -> str:
        # thread_id is part of the contract even when null
        data = self.model_dump(mode="json", exclude_none=True)
        data["thread_id"] = self.thread_id
        return json.dumps(data, separators=(",", ":"))


class ApprovalResponse(OutboundMessage):
    """The user's decision on a pending agent action."""

    type: Literal["approval_response"] = "approval_response"
    action_id: str
    approved: bool


class ConnectionOptions(BaseSchema):
    """
    Connection-level credentials, carried as query parameters rather than in the payload.

    Always empty for custom models.
    """

    access_id: Optional[str] = Field(default=None, alias="accessId")
    api_key: Optional[str] = Field(default=None, alias="apiKey")

    @property
    def is_empty(self) -> bool:
        return self.access_id is None and self.api_key is None
