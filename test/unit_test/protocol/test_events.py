from __future__ import annotations

import json

import pytest

from beaver_client.core.models.domain import ActionStatus, ThinkingPart, ToolReturnPart
from beaver_client.protocol.errors import EventParseError
from beaver_client.protocol.events import (
    AgentActionsEvent,
    DoneEvent,
    ErrorEvent,
    PartEvent,
    ReadyEvent,
    RunCompleteEvent,
    ToolReturnEvent,
    WarningEvent,
    parse_event,
)


def _frame(**data) -> str:
    return json.dumps(data)


class TestParseEvent:
    def test_ready_with_extra_fields(self) -> None:
        event = parse_event(_frame(event="ready", model_id="m-1", indexing_complete=True, future_field=1))

        assert isinstance(event, ReadyEvent)
        assert event.model_id == "m-1"
        assert event.indexing_complete

    def test_part_union_by_part_kind(self) -> None:
        event = parse_event(
            _frame(
                event="part",
                run_id="r1",
                message_index=0,
                part_index=1,
                part={"part_kind": "thinking", "content": "hmm"},
            )
        )

        assert isinstance(event, PartEvent)
        assert isinstance(event.part, ThinkingPart)

    def test_tool_return_without_part_index(self) -> None:
        event = parse_event(
            _frame(
                event="tool_return",
                run_id="r1",
                message_index=0,
                part={"part_kind": "tool-return", "tool_name": "search", "tool_call_id": "c1", "content": [1, 2]},
            )
        )

        assert isinstance(event, ToolReturnEvent)
        assert event.part_index is None
        assert isinstance(event.part, ToolReturnPart)

    def test_run_complete_carries_usage_and_actions(self) -> None:
        event = parse_event(
            _frame(
                event="run_complete",
                run_id="r1",
                usage={"input_tokens": 10, "output_tokens": 5},
                cost=0.01,
                agent_actions=[{"id": "a1", "run_id": "r1", "action_type": "create_item", "status": "pending"}],
            )
        )

        assert isinstance(event, RunCompleteEvent)
        assert event.usage.total_tokens == 15
        assert event.agent_actions[0].status == ActionStatus.pending_approval

    def test_batch_actions_and_done_without_run(self) -> None:
        actions = parse_event(_frame(event="agent_actions", run_id="r1", actions=[]))
        done = parse_event(_frame(event="done"))

        assert isinstance(actions, AgentActionsEvent)
        assert isinstance(done, DoneEvent)
        assert done.run_id is None

    def test_bytes_frames(self) -> None:
        event = parse_event(_frame(event="warning", type="indexing", message="Still indexing").encode())

        assert isinstance(event, WarningEvent)

    def test_unknown_event_is_dropped(self) -> None:
        assert parse_event(_frame(event="telemetry", value=1)) is None

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "[1, 2]",
            _frame(kind="part"),
            _frame(event=5),
            _frame(event="part", run_id="r1"),
            _frame(event="part", run_id="r1", message_index=0, part_index=0, part={"part_kind": "image"}),
        ],
    )
    def test_malformed_frames_raise(self, raw: str) -> None:
        with pytest.raises(EventParseError):
            parse_event(raw)


class TestErrorEvent:
    def test_server_error_to_run_error(self) -> None:
        event = parse_event(
            _frame(
                event="error",
                type="llm_rate_limit",
                message="Slow down",
                run_id="r1",
                is_retryable=True,
                retry_after=2.5,
            )
        )

        run_error = event.to_run_error()

        assert run_error.type == "llm_rate_limit"
        assert run_error.retry_after == 2.5
        assert run_error.is_retryable

    def test_client_side_error_factories(self) -> None:
        connection = ErrorEvent.connection_error("Could not connect", details="refused")
        parse = ErrorEvent.parse_error("Bad frame")
        protocol = ErrorEvent.protocol_error("Out of order", run_id="r1")

        assert (connection.type, parse.type, protocol.type) == ("connection_error", "parse_error", "protocol_error")
        assert connection.details == "refused"
        assert protocol.run_id == "r1"
        assert all(e.is_retryable for e in (connection, parse, protocol))
