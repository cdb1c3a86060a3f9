"""Collaborator interface contracts.

``AgentSession`` depends on these Protocols instead of concrete host
application code. Each collaborator is optional unless stated otherwise.

Contract guidelines
-------------------

- Async methods are awaited on the session's event loop; they must not block.
- Sources (composer, model) are plain callables returning a snapshot of the
  host application's state at the moment a run starts.
- The thread store receives the persisted shape (``ThreadSnapshot``) only;
  how it stores it is its own concern.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Protocol, Union

from ..core.models.domain import AgentAction, RetryPromptPart, ThreadSnapshot, ToolReturnPart
from .request_builder import ComposerState, ModelSelection

if TYPE_CHECKING:
    from ..api.runs import ThreadRunsResponse


class ComposerSource(Protocol):
    """Returns the current composer state (prompt text, attachments, filters...)."""

    def __call__(self) -> ComposerState: ...


class ModelSource(Protocol):
    """Returns the model selected for the next run, or ``None`` for the plan default."""

    def __call__(self) -> Optional[ModelSelection]: ...


class ArtifactDeletionConfirmer(Protocol):
    async def __call__(self, actions: List[AgentAction]) -> bool:
        """
        Ask the user whether artifacts created by ``actions`` should be deleted.

        Args:
            actions: Applied actions of the runs about to be regenerated.

        Returns:
            True to delete the artifacts, False to keep them.
        """
        ...


class ArtifactRemover(Protocol):
    """Deletes artifacts that applied actions created in the host application."""

    async def delete_artifacts(self, actions: List[AgentAction]) -> int:
        """
        Delete the artifact referenced by each action's ``result_data``.

        Returns:
            The number of artifacts actually deleted.
        """
        ...


class ToolResultProcessor(Protocol):
    """Post-processes tool returns as they arrive (e.g. to load referenced items)."""

    async def process_tool_return(self, run_id: str, part: Union[ToolReturnPart, RetryPromptPart]) -> None: ...


class ThreadStore(Protocol):
    """Durable storage for threads."""

    async def save_thread(self, snapshot: ThreadSnapshot) -> None:
        """
        Persist a thread after a run completed.

        Args:
            snapshot: Completed runs, actions and citations of the thread.
        """
        ...

    async def load_thread(self, thread_id: str) -> Optional[ThreadSnapshot]:
        """
        Load a stored thread.

        Returns:
            The snapshot if the thread is stored locally, else None.
        """
        ...


class RunService(Protocol):
    """Reads stored runs from the REST API; ``AgentRunService`` implements it."""

    async def get_thread_runs(self, thread_id: str, include_actions: bool = False) -> "ThreadRunsResponse": ...
