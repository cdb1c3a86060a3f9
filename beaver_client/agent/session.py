"""Presentation-facing facade over the run state machine.

``AgentSession`` owns the ``ThreadState`` of one conversation, one
``AgentConnection`` (reused object, one socket per run) and the host
application's collaborators. Commands (send, regenerate, close...) are the
only way the presentation layer changes the thread; it observes the result by
subscribing to state snapshots.

Inbound events are consumed by ``handle_event``, the single dispatch loop:
each event goes through ``reduce`` and the resulting snapshot is published.
"""

from __future__ import annotations

from typing import Callable, List, Optional

from ..core.config import Settings, settings as default_settings
from ..core.logging_config import get_logger
from ..core.models.domain import AgentAction, AgentRun, AgentRunStatus, ThreadSnapshot
from ..protocol.errors import (
    PartOrderError,
    RunInProgressError,
    RunNotFoundError,
    RunNotResumableError,
    ThreadNotFoundError,
)
from ..protocol.events import DoneEvent, ErrorEvent, ToolReturnEvent
from ..protocol.messages import ApprovalResponse
from ..transport.websocket import AgentConnection
from . import state as sm
from .interfaces import (
    ArtifactDeletionConfirmer,
    ArtifactRemover,
    ComposerSource,
    ModelSource,
    RunService,
    ThreadStore,
    ToolResultProcessor,
)
from .request_builder import (
    build_connection_options,
    build_resume_prompt,
    build_user_prompt,
    create_run_shell,
    thread_attachment_keys,
)
from .state import ThreadState

logger = get_logger(__name__)

StateListener = Callable[[ThreadState], None]

PROTOCOL_ERROR_CLOSE_CODE = 1002


class AgentSession:
    """
    Drives agent runs for one thread.

    Args:
        user_id: Id of the signed-in user; stamped on every run.
        connection: Connection manager used for every run of this session.
        composer_source: Returns the composer state when a run starts.
        model_source: Returns the selected model when a run starts.
        confirm_artifact_deletion: Asked before regeneration deletes applied artifacts.
        artifact_remover: Deletes applied artifacts once the user confirmed.
        tool_result_processor: Receives every tool return as it arrives.
        thread_store: Receives the thread snapshot after each completed run.
        run_service: REST client used to load threads that are not stored locally.
        config: Settings; defaults to the module-level ``settings``.
        state: Initial state; defaults to an empty thread.
    """

    def __init__(
        self,
        *,
        user_id: str,
        connection: AgentConnection,
        composer_source: ComposerSource,
        model_source: ModelSource,
        confirm_artifact_deletion: Optional[ArtifactDeletionConfirmer] = None,
        artifact_remover: Optional[ArtifactRemover] = None,
        tool_result_processor: Optional[ToolResultProcessor] = None,
        thread_store: Optional[ThreadStore] = None,
        run_service: Optional[RunService] = None,
        config: Optional[Settings] = None,
        state: Optional[ThreadState] = None,
    ) -> None:
        self._user_id = user_id
        self._connection = connection
        self._composer_source = composer_source
        self._model_source = model_source
        self._confirm_artifact_deletion = confirm_artifact_deletion
        self._artifact_remover = artifact_remover
        self._tool_result_processor = tool_result_processor
        self._thread_store = thread_store
        self._run_service = run_service
        self._config = config or default_settings
        self._state = state or ThreadState()
        self._listeners: List[StateListener] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ThreadState:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener`` for every new state. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, state: ThreadState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------

    async def handle_event(self, event) -> None:
        """Apply one inbound event. This is the handler given to the connection."""
        try:
            next_state = sm.reduce(self._state, event)
        except PartOrderError as e:
            logger.error("Protocol violation, closing connection: %s", e)
            self._publish(sm.reduce(self._state, ErrorEvent.protocol_error(str(e), run_id=e.run_id)))
            await self._connection.close(code=PROTOCOL_ERROR_CLOSE_CODE, reason="protocol_error")
            return

        self._publish(next_state)

        if isinstance(event, ToolReturnEvent) and self._tool_result_processor is not None:
            try:
                await self._tool_result_processor.process_tool_return(event.run_id, event.part)
            except Exception:
                logger.exception("Tool result processing failed for run %s", event.run_id)
        elif isinstance(event, DoneEvent):
            logger.info("Run complete, closing connection")
            await self._connection.close()
            await self._save_thread()
        elif isinstance(event, ErrorEvent):
            logger.warning("Run failed: %s: %s", event.type, event.message)

    async def _save_thread(self) -> None:
        # Runs inside the reader task: failures are logged, not raised.
        if self._thread_store is None or self._state.thread_id is None:
            return
        try:
            await self._thread_store.save_thread(self._state.to_snapshot())
        except Exception:
            logger.exception("Failed to save thread %s", self._state.thread_id)

    # ------------------------------------------------------------------
    # Run commands
    # ------------------------------------------------------------------

    async def _start(self, prompt, *, retry_run_id: Optional[str] = None) -> AgentRun:
        model = self._model_source()
        run, request = create_run_shell(
            prompt,
            thread_id=self._state.thread_id,
            user_id=self._user_id,
            model=model,
            retry_run_id=retry_run_id,
            config=self._config,
        )
        self._publish(sm.start_run(self._state, run))
        logger.info("Starting run %s (retry of %s)", run.id, retry_run_id)
        await self._connection.connect(request, self.handle_event, build_connection_options(model, self._config))
        return run

    async def send(self, text: Optional[str] = None, *, replace_active: bool = False) -> AgentRun:
        """
        Start a run for ``text`` (defaults to the composer's text).

        Raises:
            RunInProgressError: If a run is active and ``replace_active`` is False.
        """
        active = self._state.active_run
        if active is not None:
            if not replace_active:
                raise RunInProgressError(active.id)
            await self.close()
        composer = self._composer_source()
        if not composer.thread_attachment_keys:
            keys = thread_attachment_keys(self._state.runs)
            composer = composer.model_copy(update={"thread_attachment_keys": keys})
        return await self._start(build_user_prompt(composer, text))

    async def regenerate(self, run_id: str) -> AgentRun:
        """Replace ``run_id`` and every later run with a new run for the same prompt."""
        return await self._regenerate(run_id, content=None)

    async def regenerate_with_prompt(self, run_id: str, content: str) -> AgentRun:
        """Like ``regenerate``, with the prompt text replaced by ``content``."""
        return await self._regenerate(run_id, content=content)

    async def _regenerate(self, run_id: str, *, content: Optional[str]) -> AgentRun:
        plan = sm.plan_regeneration(self._state, run_id)
        active = self._state.active_run
        if active is not None and active.id in plan.removed_run_ids:
            await self.close()
            plan = sm.plan_regeneration(self._state, run_id)

        if plan.needs_confirmation:
            await self._offer_artifact_deletion(plan.applied_actions)

        self._publish(sm.apply_regeneration(self._state, plan))
        prompt = plan.target.user_prompt
        if content is not None:
            prompt = prompt.model_copy(update={"content": content})
        return await self._start(prompt, retry_run_id=plan.target.id)

    async def _offer_artifact_deletion(self, actions: List[AgentAction]) -> None:
        if self._confirm_artifact_deletion is None or self._artifact_remover is None:
            logger.info("Keeping %d applied artifact(s): no confirmation handler", len(actions))
            return
        if not await self._confirm_artifact_deletion(actions):
            logger.info("User kept %d applied artifact(s)", len(actions))
            return
        deleted = await self._artifact_remover.delete_artifacts(actions)
        logger.info("Deleted %d of %d applied artifact(s)", deleted, len(actions))

    async def resume(self, run_id: str) -> AgentRun:
        """
        Resume an errored run from its point of failure.

        Raises:
            RunNotFoundError: If the run is not in the thread.
            RunNotResumableError: If the run did not fail with a resumable error.
            RunInProgressError: If another run is active.
        """
        run = self._state.find_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.status != AgentRunStatus.error or run.error is None or not run.error.is_resumable:
            raise RunNotResumableError(run_id)
        if self._state.active_run is not None:
            raise RunInProgressError(self._state.active_run.id)
        return await self._start(build_resume_prompt(run))

    async def close(self) -> None:
        """Close the socket and mark the active run canceled."""
        await self._connection.close()
        self._publish(sm.cancel_active(self._state))

    async def clear_thread(self) -> None:
        if self._state.active_run is not None:
            await self.close()
        self._publish(sm.clear_thread(self._state))

    async def load_thread(self, thread_id: str) -> ThreadState:
        """
        Replace the current thread with a stored one.

        The local thread store is tried first, then the REST API.

        Raises:
            ThreadNotFoundError: If neither source knows the thread.
        """
        if self._state.active_run is not None:
            await self.close()

        snapshot: Optional[ThreadSnapshot] = None
        if self._thread_store is not None:
            snapshot = await self._thread_store.load_thread(thread_id)
        if snapshot is None and self._run_service is not None:
            response = await self._run_service.get_thread_runs(thread_id, include_actions=True)
            if response.runs:
                snapshot = ThreadSnapshot(
                    thread_id=thread_id, runs=response.runs, agent_actions=response.agent_actions or []
                )
        if snapshot is None:
            raise ThreadNotFoundError(thread_id)

        self._publish(sm.load_thread(snapshot))
        return self._state

    # ------------------------------------------------------------------
    # Approvals and warnings
    # ------------------------------------------------------------------

    async def _send_decisions(self, actions: List[AgentAction], approved: bool) -> None:
        for action in actions:
            await self._connection.send(ApprovalResponse(action_id=action.id, approved=approved))

    async def approve(self, action_id: str) -> AgentAction:
        state, action = sm.resolve_action(self._state, action_id, True)
        self._publish(state)
        await self._send_decisions([action], True)
        return action

    async def reject(self, action_id: str) -> AgentAction:
        state, action = sm.resolve_action(self._state, action_id, False)
        self._publish(state)
        await self._send_decisions([action], False)
        return action

    async def approve_all(self) -> List[AgentAction]:
        state, actions = sm.resolve_all_pending(self._state, True)
        self._publish(state)
        await self._send_decisions(actions, True)
        return actions

    async def reject_all(self) -> List[AgentAction]:
        state, actions = sm.resolve_all_pending(self._state, False)
        self._publish(state)
        await self._send_decisions(actions, False)
        return actions

    def dismiss_warning(self, warning_id: str) -> None:
        self._publish(sm.dismiss_warning(self._state, warning_id))
