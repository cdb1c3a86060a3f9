from __future__ import annotations

import asyncio
from typing import Any, List
from urllib.parse import parse_qs, urlsplit

import pytest

from beaver_client.core.models.domain import UserPrompt
from beaver_client.protocol.events import (
    ConnectionClosedEvent,
    ConnectionOpenedEvent,
    ErrorEvent,
    PartEvent,
    ReadyEvent,
)
from beaver_client.protocol.messages import (
    AgentRunRequest,
    ApprovalResponse,
    ConnectionOptions,
    CustomChatModel,
)
from beaver_client.transport.websocket import AgentConnection

WS_URL = "ws://mock/api/v1/agents/beaver/run"


def _request(**kwargs: Any) -> AgentRunRequest:
    return AgentRunRequest(run_id="run-1", thread_id=None, user_prompt=UserPrompt(content="hi"), **kwargs)


def _part(content: str) -> dict:
    return {
        "event": "part",
        "run_id": "run-1",
        "message_index": 0,
        "part_index": 0,
        "part": {"part_kind": "text", "content": content},
    }


class Recorder:
    def __init__(self) -> None:
        self.events: List[Any] = []

    async def __call__(self, event: Any) -> None:
        self.events.append(event)

    @property
    def names(self) -> List[str]:
        return [e.event for e in self.events]


@pytest.mark.asyncio
async def test_request_is_sent_after_ready_and_events_stream_in_order(token_provider, fake_server_factory) -> None:
    server = fake_server_factory(on_request=[_part("Hel"), _part("lo")], close_after_request=True)
    connection = AgentConnection(token_provider, url=WS_URL, connector=server)
    recorder = Recorder()

    await connection.connect(_request(), recorder)
    await connection.wait_closed()

    assert recorder.names == ["open", "ready", "part", "part", "close"]
    assert isinstance(recorder.events[0], ConnectionOpenedEvent)
    assert isinstance(recorder.events[1], ReadyEvent)
    assert isinstance(recorder.events[2], PartEvent)
    sent = server.last.sent_messages
    assert len(sent) == 1
    assert sent[0]["type"] == "chat"
    assert sent[0]["run_id"] == "run-1"
    assert sent[0]["thread_id"] is None
    close = recorder.events[-1]
    assert isinstance(close, ConnectionClosedEvent)
    assert close.code == 1000
    assert not connection.is_connected


@pytest.mark.asyncio
async def test_client_close_emits_close_exactly_once(token_provider, fake_server_factory, settle) -> None:
    server = fake_server_factory()
    connection = AgentConnection(token_provider, url=WS_URL, connector=server)
    recorder = Recorder()

    await connection.connect(_request(), recorder)
    await settle(lambda: server.last.sent)
    await connection.close()
    await connection.close()

    assert recorder.names.count("close") == 1
    assert recorder.events[-1].code == 1000
    assert recorder.events[-1].reason == "Client closing"
    assert server.last.close_code == 1000


@pytest.mark.asyncio
async def test_connection_failure_surfaces_as_error_event(token_provider) -> None:
    async def refuse(url: str):
        raise ConnectionRefusedError("refused")

    connection = AgentConnection(token_provider, url=WS_URL, connector=refuse)
    recorder = Recorder()

    await connection.connect(_request(), recorder)

    assert recorder.names == ["error"]
    error = recorder.events[0]
    assert isinstance(error, ErrorEvent)
    assert error.type == "connection_error"
    assert error.is_retryable
    assert "ConnectionRefusedError" in error.details
    assert not connection.is_connected


@pytest.mark.asyncio
async def test_handshake_timeout_surfaces_as_error_event(token_provider) -> None:
    async def hang(url: str):
        await asyncio.sleep(10)

    connection = AgentConnection(token_provider, url=WS_URL, connector=hang, connect_timeout=0.01)
    recorder = Recorder()

    await connection.connect(_request(), recorder)

    assert recorder.names == ["error"]
    assert recorder.events[0].type == "connection_error"


@pytest.mark.asyncio
async def test_missing_token_surfaces_as_error_event(fake_server_factory) -> None:
    async def no_token():
        return None

    server = fake_server_factory()
    connection = AgentConnection(no_token, url=WS_URL, connector=server)
    recorder = Recorder()

    await connection.connect(_request(), recorder)

    assert recorder.names == ["error"]
    assert server.sockets == []


@pytest.mark.asyncio
async def test_bad_frames_become_parse_errors_and_unknown_events_are_dropped(
    token_provider, fake_server_factory
) -> None:
    server = fake_server_factory(
        on_open=["not json", {"event": "mystery"}, {"event": "part", "run_id": "run-1"}, {"event": "ready"}],
        close_after_request=True,
    )
    connection = AgentConnection(token_provider, url=WS_URL, connector=server)
    recorder = Recorder()

    await connection.connect(_request(), recorder)
    await connection.wait_closed()

    assert recorder.names == ["open", "error", "error", "ready", "close"]
    assert {e.type for e in recorder.events[1:3]} == {"parse_error"}


@pytest.mark.asyncio
async def test_server_error_closes_with_1011(token_provider, fake_server_factory) -> None:
    server = fake_server_factory(
        on_request=[{"event": "error", "type": "validation_error", "message": "Bad request", "run_id": "run-1"}]
    )
    connection = AgentConnection(token_provider, url=WS_URL, connector=server)
    recorder = Recorder()

    await connection.connect(_request(), recorder)
    await connection.wait_closed()

    assert recorder.names == ["open", "ready", "error", "close"]
    assert server.last.close_code == 1011
    assert recorder.events[-1].code == 1011
    assert recorder.events[-1].reason == "validation_error"


@pytest.mark.asyncio
async def test_server_close_before_ready_surfaces_as_connection_error(token_provider, fake_server_factory) -> None:
    server = fake_server_factory(on_open=[])
    connection = AgentConnection(token_provider, url=WS_URL, connector=server)
    recorder = Recorder()

    await connection.connect(_request(), recorder)
    server.last.server_close(4001, "Unauthorized")
    await connection.wait_closed()

    assert recorder.names == ["open", "error", "close"]
    error = recorder.events[1]
    assert error.type == "connection_error"
    assert error.run_id == "run-1"
    assert error.details == "code=4001, reason=Unauthorized"
    assert recorder.events[-1].code == 4001
    assert server.last.sent == []


@pytest.mark.asyncio
async def test_drop_mid_run_surfaces_as_connection_error(token_provider, fake_server_factory, settle) -> None:
    server = fake_server_factory(on_request=[_part("Hel")])
    connection = AgentConnection(token_provider, url=WS_URL, connector=server)
    recorder = Recorder()

    await connection.connect(_request(), recorder)
    await settle(lambda: "part" in recorder.names)
    server.last.drop()
    await connection.wait_closed()

    assert recorder.names == ["open", "ready", "part", "error", "close"]
    assert recorder.events[3].type == "connection_error"
    assert recorder.events[3].is_retryable
    close = recorder.events[-1]
    assert close.code == 1006
    assert not close.was_clean


@pytest.mark.asyncio
async def test_clean_close_after_done_adds_no_error(token_provider, fake_server_factory) -> None:
    server = fake_server_factory(on_request=[{"event": "done", "run_id": "run-1"}], close_after_request=True)
    connection = AgentConnection(token_provider, url=WS_URL, connector=server)
    recorder = Recorder()

    await connection.connect(_request(), recorder)
    await connection.wait_closed()

    assert recorder.names == ["open", "ready", "done", "close"]


@pytest.mark.asyncio
async def test_new_connect_closes_previous_socket(token_provider, fake_server_factory) -> None:
    server = fake_server_factory()
    connection = AgentConnection(token_provider, url=WS_URL, connector=server)
    first, second = Recorder(), Recorder()

    await connection.connect(_request(), first)
    await connection.connect(_request(), second)

    assert len(server.sockets) == 2
    assert first.names[-1] == "close"
    assert server.sockets[0].close_code == 1000
    assert second.names[0] == "open"
    await connection.close()


@pytest.mark.asyncio
async def test_send_requires_open_socket(token_provider, fake_server_factory) -> None:
    connection = AgentConnection(token_provider, url=WS_URL, connector=fake_server_factory())
    approval = ApprovalResponse(action_id="a1", approved=True)

    assert await connection.send(approval) is False

    await connection.connect(_request(), Recorder())
    assert await connection.send(approval) is True
    await connection.close()


class TestBuildUrl:
    def _query(self, url: str) -> dict:
        return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}

    def test_access_id_and_api_key(self, token_provider) -> None:
        connection = AgentConnection(token_provider, url=WS_URL)

        url = connection.build_url("tok", _request(), ConnectionOptions(access_id="acc", api_key="sk"))

        assert url.startswith(WS_URL + "?")
        assert self._query(url) == {"token": "tok", "access_id": "acc", "api_key": "sk"}

    def test_custom_model_ignores_options(self, token_provider) -> None:
        connection = AgentConnection(token_provider, url=WS_URL)
        custom = CustomChatModel(name="Local", snapshot="llama", api_key="k")

        url = connection.build_url("tok", _request(custom_model=custom), ConnectionOptions(access_id="acc"))

        assert self._query(url) == {"token": "tok", "custom_model": "true"}

    def test_defaults_to_settings_url(self, token_provider) -> None:
        connection = AgentConnection(token_provider)

        assert connection.build_url("tok", _request()).split("?")[0].endswith("/api/v1/agents/beaver/run")
