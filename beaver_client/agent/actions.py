"""Action registry.

The registry tracks agent actions keyed by action id, in arrival order. It is
independent of message content: actions are surfaced for approval by status,
not by where their tool call sits in the transcript.

The registry is an immutable value. Every mutator returns a new registry so
it can live inside a ``ThreadState`` snapshot.

Notes:
    - ``upsert`` replaces an existing entry; the later status wins.
    - ``resolve`` only accepts ``pending_approval`` actions. An action is
      resolved at most once.
    - ``applied`` actions are retained so a later regeneration can find the
      artifacts they created.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import ConfigDict, Field

from ..core.logging_config import get_logger
from ..core.models.base import BaseSchema
from ..core.models.domain import ActionStatus, AgentAction
from ..protocol.errors import ActionAlreadyResolvedError, ActionNotFoundError

logger = get_logger(__name__)


class ActionRegistry(BaseSchema):
    """Ordered mapping of action ids to agent actions."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    actions: Dict[str, AgentAction] = Field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.actions)

    def __contains__(self, action_id: object) -> bool:
        return action_id in self.actions

    def all(self) -> List[AgentAction]:
        return list(self.actions.values())

    def get(self, action_id: str) -> Optional[AgentAction]:
        return self.actions.get(action_id)

    def require(self, action_id: str) -> AgentAction:
        """
        Retrieve an action by id.

        Raises:
            ActionNotFoundError: If no action with this id was received.
        """
        action = self.actions.get(action_id)
        if action is None:
            raise ActionNotFoundError(action_id)
        return action

    def upsert(self, action: AgentAction) -> "ActionRegistry":
        actions = dict(self.actions)
        previous = actions.get(action.id)
        if previous is not None and previous.status != action.status:
            logger.debug("Action %s: %s -> %s", action.id, previous.status.value, action.status.value)
        actions[action.id] = action
        return ActionRegistry(actions=actions)

    def upsert_many(self, actions: Iterable[AgentAction]) -> "ActionRegistry":
        merged = dict(self.actions)
        for action in actions:
            merged[action.id] = action
        return ActionRegistry(actions=merged)

    def pending(self) -> List[AgentAction]:
        return [a for a in self.actions.values() if a.is_pending]

    def for_run(self, run_id: str) -> List[AgentAction]:
        return [a for a in self.actions.values() if a.run_id == run_id]

    def by_toolcall(self, toolcall_id: str) -> List[AgentAction]:
        return [a for a in self.actions.values() if a.toolcall_id == toolcall_id]

    def resolve(self, action_id: str, approved: bool) -> Tuple["ActionRegistry", AgentAction]:
        """
        Record the user's decision on a pending action.

        Args:
            action_id: The action to resolve.
            approved: ``True`` to approve, ``False`` to reject.

        Returns:
            The new registry and the resolved action.

        Raises:
            ActionNotFoundError: If the action is unknown.
            ActionAlreadyResolvedError: If the action is not pending approval.
        """
        action = self.require(action_id)
        if not action.is_pending:
            raise ActionAlreadyResolvedError(action_id, action.status.value)
        status = ActionStatus.approved if approved else ActionStatus.rejected
        resolved = action.model_copy(update={"status": status})
        actions = dict(self.actions)
        actions[action_id] = resolved
        return ActionRegistry(actions=actions), resolved

    def resolve_all_pending(self, approved: bool) -> Tuple["ActionRegistry", List[AgentAction]]:
        """Resolve every pending action, whatever run produced it. Other actions are untouched."""
        status = ActionStatus.approved if approved else ActionStatus.rejected
        actions = dict(self.actions)
        resolved: List[AgentAction] = []
        for action_id, action in self.actions.items():
            if action.is_pending:
                actions[action_id] = action.model_copy(update={"status": status})
                resolved.append(actions[action_id])
        return ActionRegistry(actions=actions), resolved

    def applied_artifacts(self, run_ids: Iterable[str]) -> List[AgentAction]:
        """Actions of ``run_ids`` that created an artifact outside the client."""
        wanted = set(run_ids)
        return [a for a in self.actions.values() if a.run_id in wanted and a.has_applied_artifact]

    def drop_runs(self, run_ids: Iterable[str]) -> "ActionRegistry":
        dropped = set(run_ids)
        return ActionRegistry(actions={k: a for k, a in self.actions.items() if a.run_id not in dropped})
