from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest

from beaver_client.agent import state as sm
from beaver_client.agent.state import ThreadState, reduce
from beaver_client.core.models.domain import (
    ActionStatus,
    AgentAction,
    AgentRun,
    AgentRunStatus,
    CitationMetadata,
    TextPart,
    ThreadSnapshot,
    UserPrompt,
)
from beaver_client.protocol.errors import (
    ActionAlreadyResolvedError,
    PartOrderError,
    RunInProgressError,
    RunNotFoundError,
)
from beaver_client.protocol.events import (
    ConnectionClosedEvent,
    ConnectionOpenedEvent,
    DoneEvent,
    ErrorEvent,
    parse_event,
)


def _run(run_id: str, status: AgentRunStatus = AgentRunStatus.in_progress, content: str = "hi") -> AgentRun:
    return AgentRun(id=run_id, user_id="u1", thread_id="t1", user_prompt=UserPrompt(content=content), status=status)


def _event(payload: Dict[str, Any]) -> Any:
    return parse_event(json.dumps(payload))


def _apply(state: ThreadState, events: List[Dict[str, Any]]) -> ThreadState:
    for payload in events:
        state = reduce(state, _event(payload))
    return state


def _action(action_id: str, run_id: str, status: str, **extra: Any) -> Dict[str, Any]:
    return {"id": action_id, "run_id": run_id, "action_type": "zotero_note", "status": status, **extra}


def _applied(action_id: str, run_id: str) -> Dict[str, Any]:
    return _action(action_id, run_id, "applied", result_data={"library_id": 1, "zotero_key": f"N-{action_id}"})


def _completed_thread(*run_ids: str) -> ThreadState:
    return ThreadState(thread_id="t1", runs=[_run(r, AgentRunStatus.completed) for r in run_ids])


class TestReduceRunLifecycle:
    def test_summarize_paper_example(self) -> None:
        state = sm.start_run(ThreadState(), _run("r1", content="Summarize this paper"))
        assert state.active_run.status == AgentRunStatus.in_progress
        assert state.active_run.model_messages == []
        assert state.is_pending

        state = _apply(
            state,
            [
                {"event": "ready", "model_id": "m", "model_name": "Model", "indexing_complete": True},
                {"event": "part", "run_id": "r1", "message_index": 0, "part_index": 0,
                 "part": {"part_kind": "text", "content": "This"}},
                {"event": "part", "run_id": "r1", "message_index": 0, "part_index": 0,
                 "part": {"part_kind": "text", "content": " paper..."}},
                {"event": "run_complete", "run_id": "r1", "usage": {"requests": 1, "output_tokens": 3}, "cost": 0.01},
                {"event": "done", "run_id": "r1"},
            ],
        )

        assert state.active_run is None
        assert not state.is_pending
        latest = state.runs[-1]
        assert latest.status == AgentRunStatus.completed
        assert latest.completed_at is not None
        assert latest.total_usage.output_tokens == 3
        parts = [p for m in latest.model_messages for p in m.parts]
        assert len(parts) == 1
        assert isinstance(parts[0], TextPart)
        assert parts[0].content == "This paper..."
        assert state.ready.model_name == "Model"
        assert state.ready.indexing_complete

    def test_run_complete_keeps_run_in_progress(self) -> None:
        state = sm.start_run(ThreadState(), _run("r1"))
        state = _apply(state, [{"event": "run_complete", "run_id": "r1", "cost": 1.5}])

        assert state.active_run.status == AgentRunStatus.in_progress
        assert state.active_run.total_cost == 1.5

    def test_done_is_idempotent(self) -> None:
        state = sm.start_run(ThreadState(), _run("r1"))
        once = reduce(state, DoneEvent(run_id="r1"))
        twice = reduce(once, DoneEvent(run_id="r1"))

        assert [r.id for r in twice.runs] == ["r1"]
        assert twice.runs == once.runs

    def test_finalizing_a_run_already_in_the_thread_does_not_duplicate_it(self) -> None:
        run = _run("r1")
        state = ThreadState(runs=[run.model_copy(update={"status": AgentRunStatus.completed})], active_run=run)

        state = reduce(state, DoneEvent(run_id="r1"))

        assert [r.id for r in state.runs] == ["r1"]
        assert state.active_run is None

    def test_error_finalizes_active_run_and_keeps_it_visible(self) -> None:
        state = sm.start_run(ThreadState(), _run("r1"))
        state = _apply(
            state,
            [{"event": "error", "run_id": "r1", "type": "llm_rate_limit", "message": "Slow down", "is_resumable": True}],
        )

        assert state.active_run is None
        assert not state.is_pending
        errored = state.runs[-1]
        assert errored.status == AgentRunStatus.error
        assert errored.error.type == "llm_rate_limit"
        assert errored.error.is_resumable
        assert state.last_error.message == "Slow down"

    def test_done_after_error_does_not_complete_the_run(self) -> None:
        state = sm.start_run(ThreadState(), _run("r1"))
        state = reduce(state, ErrorEvent(type="server_error", message="boom", run_id="r1"))
        state = reduce(state, DoneEvent(run_id="r1"))

        assert len(state.runs) == 1
        assert state.runs[0].status == AgentRunStatus.error

    def test_events_for_other_runs_are_dropped(self) -> None:
        state = sm.start_run(ThreadState(), _run("r1"))
        after = _apply(
            state,
            [{"event": "part", "run_id": "other", "message_index": 0, "part_index": 0,
              "part": {"part_kind": "text", "content": "x"}}],
        )

        assert after == state

    def test_out_of_order_part_propagates(self) -> None:
        state = sm.start_run(ThreadState(), _run("r1"))
        state = _apply(
            state,
            [{"event": "part", "run_id": "r1", "message_index": 1, "part_index": 0,
              "part": {"part_kind": "text", "content": "x"}}],
        )

        with pytest.raises(PartOrderError):
            _apply(
                state,
                [{"event": "part", "run_id": "r1", "message_index": 0, "part_index": 0,
                  "part": {"part_kind": "text", "content": "y"}}],
            )

    def test_close_keeps_in_flight_run_status(self) -> None:
        state = sm.start_run(ThreadState(), _run("r1"))
        state = reduce(state, ConnectionOpenedEvent())
        assert state.is_connected

        state = reduce(state, ConnectionClosedEvent(code=1006, was_clean=False))

        assert not state.is_connected
        assert state.active_run.status == AgentRunStatus.in_progress

    def test_thread_event_binds_thread_id(self) -> None:
        run = AgentRun(id="r1", user_id="u1", user_prompt=UserPrompt(content="hi"))
        state = sm.start_run(ThreadState(), run)
        state = _apply(state, [{"event": "thread", "thread_id": "t-new", "run_id": "r1"}])

        assert state.thread_id == "t-new"
        assert state.active_run.thread_id == "t-new"

    def test_warning_never_changes_run_status(self) -> None:
        state = sm.start_run(ThreadState(), _run("r1"))
        state = _apply(
            state,
            [
                {"event": "warning", "type": "indexing", "message": "Still indexing"},
                {"event": "missing_zotero_data", "run_id": "r1", "items": [{"library_id": 1, "zotero_key": "A"}]},
            ],
        )

        assert state.active_run.status == AgentRunStatus.in_progress
        assert [w.type for w in state.warnings.warnings] == ["indexing", "missing_zotero_data"]
        assert all(w.run_id == "r1" for w in state.warnings.warnings)

    def test_retry_with_reset_clears_streamed_content(self) -> None:
        state = sm.start_run(ThreadState(), _run("r1"))
        state = _apply(
            state,
            [
                {"event": "part", "run_id": "r1", "message_index": 0, "part_index": 0,
                 "part": {"part_kind": "text", "content": "partial"}},
                {"event": "retry", "run_id": "r1", "attempt": 2, "max_attempts": 3, "reason": "overloaded",
                 "reset": True},
            ],
        )

        assert state.active_run.model_messages == []
        assert state.retry.attempt == 2

        state = _apply(state, [{"event": "run_complete", "run_id": "r1"}])
        assert state.retry is None


class TestReduceRegistries:
    def test_same_action_twice_keeps_one_entry_with_later_status(self) -> None:
        state = sm.start_run(ThreadState(), _run("r1"))
        state = _apply(
            state,
            [
                {"event": "agent_action", "run_id": "r1", "action": _action("a1", "r1", "pending_approval")},
                {"event": "agent_action", "run_id": "r1", "action": _action("a1", "r1", "applied")},
            ],
        )

        assert len(state.actions) == 1
        assert state.actions.get("a1").status == ActionStatus.applied

    def test_actions_for_completed_runs_are_accepted(self) -> None:
        state = _apply(
            _completed_thread("r1"),
            [{"event": "agent_actions", "run_id": "r1", "actions": [_action("a1", "r1", "pending")]}],
        )

        assert state.actions.get("a1").is_pending

    def test_actions_for_unknown_runs_are_dropped(self) -> None:
        state = _apply(
            _completed_thread("r1"),
            [{"event": "agent_action", "run_id": "zz", "action": _action("a1", "zz", "pending_approval")}],
        )

        assert len(state.actions) == 0

    def test_citations_from_events_and_run_complete(self) -> None:
        state = sm.start_run(ThreadState(), _run("r1"))
        state = _apply(
            state,
            [
                {"event": "citation", "run_id": "r1", "citation": {"citation_id": "c1", "library_id": 1,
                                                                   "zotero_key": "A"}},
                {"event": "run_complete", "run_id": "r1",
                 "citations": [{"citation_id": "c1", "preview": "text"}, {"citation_id": "c2"}]},
            ],
        )

        assert [c.citation_id for c in state.citations.citations] == ["c1", "c2"]
        merged = state.citations.get("c1")
        assert merged.zotero_key == "A"
        assert merged.preview == "text"
        assert all(c.run_id == "r1" for c in state.citations.citations)


class TestCommands:
    def test_start_run_rejects_second_active_run(self) -> None:
        state = sm.start_run(ThreadState(), _run("r1"))

        with pytest.raises(RunInProgressError):
            sm.start_run(state, _run("r2"))

    def test_cancel_active_finalizes_as_canceled(self) -> None:
        state = sm.cancel_active(sm.start_run(ThreadState(), _run("r1")))

        assert state.active_run is None
        assert state.runs[-1].status == AgentRunStatus.canceled

    def test_regeneration_removes_target_and_later_runs_only(self) -> None:
        state = _completed_thread("r1", "r2", "r3")
        state = state.model_copy(
            update={
                "actions": state.actions.upsert_many(
                    [
                        AgentAction.model_validate(_applied("a1", "r1")),
                        AgentAction.model_validate(_applied("a2", "r2")),
                        AgentAction.model_validate(_action("a3", "r3", "pending_approval")),
                    ]
                ),
                "citations": state.citations.add_many(
                    [CitationMetadata(citation_id="c1", run_id="r1"), CitationMetadata(citation_id="c3", run_id="r3")]
                ),
                "warnings": state.warnings.add("w", "warn", run_id="r2"),
            }
        )

        plan = sm.plan_regeneration(state, "r2")
        assert plan.target.id == "r2"
        assert plan.removed_run_ids == ["r2", "r3"]
        assert [a.id for a in plan.applied_actions] == ["a2"]
        assert plan.needs_confirmation

        after = sm.apply_regeneration(state, plan)
        assert [r.id for r in after.runs] == ["r1"]
        assert after.runs[0] == state.runs[0]
        assert [a.id for a in after.actions.all()] == ["a1"]
        assert [c.citation_id for c in after.citations.citations] == ["c1"]
        assert len(after.warnings) == 0

    def test_regenerating_later_run_keeps_citation_cited_by_earlier_run(self) -> None:
        state = sm.start_run(ThreadState(), _run("r1"))
        state = _apply(
            state,
            [
                {"event": "citation", "run_id": "r1", "citation": {"citation_id": "c1", "zotero_key": "A"}},
                {"event": "done", "run_id": "r1"},
            ],
        )
        state = sm.start_run(state, _run("r2"))
        state = _apply(
            state,
            [
                {"event": "citation", "run_id": "r2", "citation": {"citation_id": "c1", "run_id": "r1"}},
                {"event": "done", "run_id": "r2"},
            ],
        )

        after = sm.apply_regeneration(state, sm.plan_regeneration(state, "r2"))

        assert [(c.citation_id, c.run_id) for c in after.citations.citations] == [("c1", "r1")]
        assert after.citations.get("c1").zotero_key == "A"

    def test_regeneration_without_applied_artifacts_needs_no_confirmation(self) -> None:
        plan = sm.plan_regeneration(_completed_thread("r1", "r2"), "r1")

        assert plan.removed_run_ids == ["r1", "r2"]
        assert not plan.needs_confirmation

    def test_regenerating_unknown_run_fails(self) -> None:
        with pytest.raises(RunNotFoundError):
            sm.plan_regeneration(_completed_thread("r1"), "nope")

    def test_regenerating_the_active_run_cancels_it_first(self) -> None:
        state = sm.start_run(_completed_thread("r1"), _run("r2"))
        plan = sm.plan_regeneration(state, "r2")

        after = sm.apply_regeneration(state, plan)

        assert after.active_run is None
        assert [r.id for r in after.runs] == ["r1"]

    def test_resolve_all_pending_leaves_applied_actions_untouched(self) -> None:
        state = _completed_thread("r1", "r2")
        applied = AgentAction.model_validate(_applied("a1", "r1"))
        state = state.model_copy(
            update={
                "actions": state.actions.upsert_many(
                    [
                        applied,
                        AgentAction.model_validate(_action("a2", "r1", "pending_approval")),
                        AgentAction.model_validate(_action("a3", "r2", "pending_approval")),
                    ]
                )
            }
        )

        state, resolved = sm.resolve_all_pending(state, False)

        assert [a.id for a in resolved] == ["a2", "a3"]
        assert state.actions.pending() == []
        assert state.actions.get("a1") == applied
        assert state.actions.get("a2").status == ActionStatus.rejected

    def test_resolve_action_only_once(self) -> None:
        state = _completed_thread("r1")
        state = state.model_copy(
            update={"actions": state.actions.upsert(AgentAction.model_validate(_action("a1", "r1", "pending")))}
        )

        state, action = sm.resolve_action(state, "a1", True)
        assert action.status == ActionStatus.approved

        with pytest.raises(ActionAlreadyResolvedError):
            sm.resolve_action(state, "a1", True)

    def test_clear_thread_keeps_connection_flag_only(self) -> None:
        state = _completed_thread("r1").model_copy(update={"is_connected": True})

        cleared = sm.clear_thread(state)

        assert cleared.runs == []
        assert cleared.thread_id is None
        assert cleared.is_connected

    def test_load_thread_round_trips_snapshot(self) -> None:
        state = _completed_thread("r1")
        state = state.model_copy(
            update={"actions": state.actions.upsert(AgentAction.model_validate(_applied("a1", "r1")))}
        )
        snapshot = state.to_snapshot()

        loaded = sm.load_thread(ThreadSnapshot.model_validate(snapshot.model_dump()))

        assert loaded.thread_id == "t1"
        assert [r.id for r in loaded.runs] == ["r1"]
        assert loaded.actions.get("a1").has_applied_artifact
        assert loaded.active_run is None

    def test_dismiss_warning(self) -> None:
        state = ThreadState(warnings=ThreadState().warnings.add("w", "warn"))
        warning_id = state.warnings.warnings[0].id

        assert len(sm.dismiss_warning(state, warning_id).warnings) == 0
