"""Thread state and the run state machine.

``ThreadState`` is an immutable snapshot of one conversation: the completed
runs, the single active run, and the action/citation/warning registries.
``reduce`` is the only function that applies inbound events to it, and the
command functions below (``start_run``, ``cancel_active``, regeneration...)
are the only ways the caller changes it. Each returns a new snapshot.

Run lifecycle::

    idle --start_run--> in_progress --done-------> completed
                                    --error------> error
                                    --cancel-----> canceled

A terminal run is moved into ``runs`` and the active slot is cleared. An
errored run stays in the thread so the user can see it and regenerate it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

from pydantic import ConfigDict, Field

from ..core.logging_config import get_logger
from ..core.models.base import BaseSchema
from ..core.models.domain import (
    AgentAction,
    AgentRun,
    AgentRunStatus,
    ReadyInfo,
    RetryInfo,
    RunError,
    ThreadSnapshot,
)
from ..protocol.errors import RunInProgressError, RunNotFoundError
from ..protocol.events import (
    AgentActionEvent,
    AgentActionsEvent,
    CitationEvent,
    ConnectionClosedEvent,
    ConnectionOpenedEvent,
    DoneEvent,
    ErrorEvent,
    MissingDataEvent,
    PartEvent,
    ReadyEvent,
    RequestAckEvent,
    RetryEvent,
    RunCompleteEvent,
    ThreadEvent,
    ToolCallProgressEvent,
    ToolReturnEvent,
    WarningEvent,
)
from .actions import ActionRegistry
from .assembler import apply_part, apply_tool_call_progress, apply_tool_return, reset_messages
from .citations import ActiveCitation, CitationRegistry
from .warnings import WarningRegistry

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ThreadState(BaseSchema):
    """Immutable snapshot of a thread and its in-flight run."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    thread_id: Optional[str] = None
    runs: List[AgentRun] = Field(default_factory=list)
    active_run: Optional[AgentRun] = None

    actions: ActionRegistry = Field(default_factory=ActionRegistry)
    citations: CitationRegistry = Field(default_factory=CitationRegistry)
    warnings: WarningRegistry = Field(default_factory=WarningRegistry)

    ready: Optional[ReadyInfo] = None
    retry: Optional[RetryInfo] = None
    last_error: Optional[RunError] = None

    is_pending: bool = False
    is_connected: bool = False

    @property
    def is_idle(self) -> bool:
        return self.active_run is None

    def all_runs(self) -> List[AgentRun]:
        """Completed runs followed by the active run, if any."""
        return [*self.runs, self.active_run] if self.active_run is not None else list(self.runs)

    def find_run(self, run_id: str) -> Optional[AgentRun]:
        for run in self.all_runs():
            if run.id == run_id:
                return run
        return None

    def has_run(self, run_id: Optional[str]) -> bool:
        return run_id is not None and self.find_run(run_id) is not None

    def active_citations(self) -> List[ActiveCitation]:
        texts = (text for run in self.all_runs() for text in run.text_contents())
        return self.citations.active(texts)

    def to_snapshot(self) -> ThreadSnapshot:
        return ThreadSnapshot(
            thread_id=self.thread_id,
            runs=list(self.runs),
            agent_actions=self.actions.all(),
            citations=list(self.citations.citations),
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _finalize(state: ThreadState, run: AgentRun) -> ThreadState:
    """Move ``run`` into the completed list (once) and clear the active slot."""
    if run.completed_at is None:
        run = run.model_copy(update={"completed_at": _utc_now()})
    runs = list(state.runs)
    if any(r.id == run.id for r in runs):
        logger.debug("Run %s already in thread, not appending again", run.id)
    else:
        runs.append(run)
    return state.model_copy(update={"runs": runs, "active_run": None, "is_pending": False, "retry": None})


def _active_for(state: ThreadState, run_id: Optional[str], event_name: str) -> Optional[AgentRun]:
    """The active run if ``run_id`` addresses it; otherwise log and return ``None``."""
    run = state.active_run
    if run is None:
        logger.warning("Dropping '%s' event for run %s: no active run", event_name, run_id)
        return None
    if run_id is not None and run_id != run.id:
        logger.warning("Dropping '%s' event for run %s: active run is %s", event_name, run_id, run.id)
        return None
    return run


def _with_active(state: ThreadState, run: AgentRun) -> ThreadState:
    return state.model_copy(update={"active_run": run})


def _missing_data_message(count: int) -> str:
    noun = "attachment" if count == 1 else "attachments"
    return f"Unable to process {count} {noun}: the backend has no data for them"


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------


def reduce(state: ThreadState, event: Any) -> ThreadState:
    """
    Apply one inbound event and return the next state.

    Events addressed to a run other than the active one are dropped. Part
    ordering violations propagate as ``PartOrderError``; the caller decides
    how to surface them.
    """
    if isinstance(event, ConnectionOpenedEvent):
        return state.model_copy(update={"is_connected": True})

    if isinstance(event, ConnectionClosedEvent):
        return state.model_copy(update={"is_connected": False, "is_pending": False})

    if isinstance(event, ReadyEvent):
        ready = ReadyInfo(
            model_id=event.model_id,
            model_name=event.model_name,
            subscription_status=event.subscription_status,
            charge_type=event.charge_type,
            processing_mode=event.processing_mode,
            indexing_complete=event.indexing_complete,
        )
        return state.model_copy(update={"ready": ready})

    if isinstance(event, RequestAckEvent):
        ready = state.ready or ReadyInfo()
        fields = {"model_id": event.model_id, "model_name": event.model_name, "charge_type": event.charge_type}
        update = {k: v for k, v in fields.items() if v is not None}
        return state.model_copy(update={"ready": ready.model_copy(update=update)})

    if isinstance(event, PartEvent):
        run = _active_for(state, event.run_id, event.event)
        return state if run is None else _with_active(state, apply_part(run, event))

    if isinstance(event, ToolReturnEvent):
        run = _active_for(state, event.run_id, event.event)
        return state if run is None else _with_active(state, apply_tool_return(run, event))

    if isinstance(event, ToolCallProgressEvent):
        run = _active_for(state, event.run_id, event.event)
        return state if run is None else _with_active(state, apply_tool_call_progress(run, event))

    if isinstance(event, CitationEvent):
        if not state.has_run(event.run_id):
            logger.warning("Dropping citation %s for unknown run %s", event.citation.citation_id, event.run_id)
            return state
        return state.model_copy(update={"citations": state.citations.add(event.citation, event.run_id)})

    if isinstance(event, (AgentActionEvent, AgentActionsEvent)):
        actions = [event.action] if isinstance(event, AgentActionEvent) else event.actions
        if not state.has_run(event.run_id):
            logger.warning("Dropping %d agent action(s) for unknown run %s", len(actions), event.run_id)
            return state
        return state.model_copy(update={"actions": state.actions.upsert_many(actions)})

    if isinstance(event, ThreadEvent):
        run = _active_for(state, event.run_id, event.event)
        update: dict = {}
        if state.thread_id is None:
            update["thread_id"] = event.thread_id
        if run is not None and run.thread_id is None:
            update["active_run"] = run.model_copy(update={"thread_id": event.thread_id})
        return state.model_copy(update=update) if update else state

    if isinstance(event, RunCompleteEvent):
        run = _active_for(state, event.run_id, event.event)
        if run is None:
            return state
        run = run.model_copy(update={"total_usage": event.usage, "total_cost": event.cost})
        state = state.model_copy(update={"active_run": run, "retry": None})
        if event.citations:
            state = state.model_copy(update={"citations": state.citations.add_many(event.citations, run.id)})
        if event.agent_actions:
            state = state.model_copy(update={"actions": state.actions.upsert_many(event.agent_actions)})
        return state

    if isinstance(event, DoneEvent):
        if state.active_run is None:
            return state.model_copy(update={"is_pending": False})
        run = _active_for(state, event.run_id, event.event)
        if run is None:
            return state
        if run.status == AgentRunStatus.in_progress:
            run = run.model_copy(update={"status": AgentRunStatus.completed})
        return _finalize(state, run)

    if isinstance(event, ErrorEvent):
        error = event.to_run_error()
        state = state.model_copy(update={"last_error": error, "is_pending": False, "retry": None})
        run = state.active_run
        if run is None or (event.run_id is not None and event.run_id != run.id):
            return state
        return _finalize(state, run.model_copy(update={"status": AgentRunStatus.error, "error": error}))

    if isinstance(event, WarningEvent):
        run_id = event.run_id or (state.active_run.id if state.active_run else None)
        warnings = state.warnings.add(event.type, event.message, run_id=run_id, data=event.data)
        return state.model_copy(update={"warnings": warnings})

    if isinstance(event, MissingDataEvent):
        if not event.items:
            return state
        warnings = state.warnings.add(
            "missing_zotero_data",
            _missing_data_message(len(event.items)),
            run_id=event.run_id,
            data={"items": [item.model_dump() for item in event.items]},
        )
        return state.model_copy(update={"warnings": warnings})

    if isinstance(event, RetryEvent):
        retry = RetryInfo(
            run_id=event.run_id,
            attempt=event.attempt,
            max_attempts=event.max_attempts,
            reason=event.reason,
            wait_seconds=event.wait_seconds,
        )
        state = state.model_copy(update={"retry": retry})
        run = state.active_run
        if event.reset and run is not None and run.id == event.run_id:
            logger.info("Resetting streamed content of run %s before retry", run.id)
            state = _with_active(state, reset_messages(run))
        return state

    logger.warning("Unhandled event type: %s", type(event).__name__)
    return state


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def start_run(state: ThreadState, run: AgentRun) -> ThreadState:
    """
    Make ``run`` the active run.

    Raises:
        RunInProgressError: If another run is still active.
    """
    if state.active_run is not None:
        raise RunInProgressError(state.active_run.id)
    return state.model_copy(
        update={
            "active_run": run,
            "thread_id": state.thread_id or run.thread_id,
            "is_pending": True,
            "ready": None,
            "retry": None,
            "last_error": None,
        }
    )


def cancel_active(state: ThreadState) -> ThreadState:
    """Mark the active run canceled and move it into the thread. No-op when idle."""
    run = state.active_run
    if run is None:
        return state
    if run.status == AgentRunStatus.in_progress:
        run = run.model_copy(update={"status": AgentRunStatus.canceled})
    logger.info("Run %s finalized as %s", run.id, run.status.value)
    return _finalize(state, run)


class RegenerationPlan(BaseSchema):
    """What regenerating ``target`` will remove from the thread."""

    target: AgentRun
    removed_run_ids: List[str]
    applied_actions: List[AgentAction] = Field(default_factory=list)

    @property
    def needs_confirmation(self) -> bool:
        return bool(self.applied_actions)


def plan_regeneration(state: ThreadState, run_id: str) -> RegenerationPlan:
    """
    Compute the effect of regenerating ``run_id``.

    The target and every run after it are removed. Actions of those runs
    that created an external artifact are listed so the caller can offer to
    delete them.

    Raises:
        RunNotFoundError: If the run is not part of the thread.
    """
    runs = state.all_runs()
    for position, run in enumerate(runs):
        if run.id == run_id:
            removed = [r.id for r in runs[position:]]
            return RegenerationPlan(
                target=run,
                removed_run_ids=removed,
                applied_actions=state.actions.applied_artifacts(removed),
            )
    raise RunNotFoundError(run_id)


def apply_regeneration(state: ThreadState, plan: RegenerationPlan) -> ThreadState:
    """Truncate the thread before the target and drop everything tied to the removed runs."""
    if state.active_run is not None and state.active_run.id in plan.removed_run_ids:
        state = cancel_active(state)
    removed = set(plan.removed_run_ids)
    return state.model_copy(
        update={
            "runs": [r for r in state.runs if r.id not in removed],
            "actions": state.actions.drop_runs(removed),
            "citations": state.citations.drop_runs(removed),
            "warnings": state.warnings.drop_runs(removed),
            "last_error": None,
        }
    )


def clear_thread(state: ThreadState) -> ThreadState:
    """Start a fresh thread. The active run, if any, must be finalized or closed by the caller first."""
    return ThreadState(is_connected=state.is_connected)


def load_thread(snapshot: ThreadSnapshot) -> ThreadState:
    return ThreadState(
        thread_id=snapshot.thread_id,
        runs=list(snapshot.runs),
        actions=ActionRegistry().upsert_many(snapshot.agent_actions),
        citations=CitationRegistry().add_many(snapshot.citations),
    )


def resolve_action(state: ThreadState, action_id: str, approved: bool) -> Tuple[ThreadState, AgentAction]:
    actions, resolved = state.actions.resolve(action_id, approved)
    return state.model_copy(update={"actions": actions}), resolved


def resolve_all_pending(state: ThreadState, approved: bool) -> Tuple[ThreadState, List[AgentAction]]:
    actions, resolved = state.actions.resolve_all_pending(approved)
    return state.model_copy(update={"actions": actions}), resolved


def dismiss_warning(state: ThreadState, warning_id: str) -> ThreadState:
    return state.model_copy(update={"warnings": state.warnings.dismiss(warning_id)})

