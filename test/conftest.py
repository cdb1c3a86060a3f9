from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import httpx
import pytest
from dotenv import load_dotenv
from websockets.exceptions import ConnectionClosed

# Load dotenv files early so test fixtures can read settings via os.getenv
TEST_ROOT = Path(__file__).resolve().parent
load_dotenv(TEST_ROOT / ".env", override=False)
load_dotenv(TEST_ROOT / ".env.example", override=False)

# Import test settings after dotenv is loaded
from test.settings import test_settings


@pytest.fixture(scope="session")
def test_config():
    """Fixture providing test configuration from Pydantic settings model.

    Returns:
        TestSettings: Test configuration with all environment variables loaded
    """
    return test_settings


@pytest.fixture(autouse=True)
def _global_offline_http_guard(monkeypatch: pytest.MonkeyPatch):
    allowed_prefixes: Iterable[str] = (
        "http://mock",
        "https://mock",
        "http://localhost",
        "http://127.0.0.1",
    )

    orig_sync = httpx._client.Client.request
    orig_async = httpx._client.AsyncClient.request

    def _is_allowed(url_str: str) -> bool:
        return any(url_str.startswith(p) for p in allowed_prefixes)

    def offline_sync(self, method, url, *args, **kwargs):
        url_str = str(url)
        if _is_allowed(url_str):
            return orig_sync(self, method, url, *args, **kwargs)
        raise RuntimeError(f"External HTTP blocked by global offline guard: {url_str}")

    async def offline_async(self, method, url, *args, **kwargs):
        url_str = str(url)
        if _is_allowed(url_str):
            return await orig_async(self, method, url, *args, **kwargs)
        raise RuntimeError(f"External HTTP blocked by global offline guard (async): {url_str}")

    monkeypatch.setattr(httpx._client.Client, "request", offline_sync, raising=True)
    monkeypatch.setattr(httpx._client.AsyncClient, "request", offline_async, raising=True)


# ---------------------------------------------------------------------------
# Fake WebSocket server
# ---------------------------------------------------------------------------

_END = object()
_DROP = object()

# Placeholder replaced by the client-generated run id in scripted frames
RUN_ID = "$run"


class FakeSocket:
    """
    In-memory stand-in for a websockets client connection.

    ``on_open`` frames are queued as soon as the socket is created; ``on_request``
    frames are queued when the client sends its ``chat`` request, with ``RUN_ID``
    replaced by the request's run id. Closing from either side ends iteration;
    ``drop`` ends it with ``ConnectionClosed`` as a lost connection does.
    """

    def __init__(
        self,
        url: str,
        on_open: List[Any],
        on_request: List[Any],
        close_after_request: bool = False,
    ) -> None:
        self.url = url
        self._close_after_request = close_after_request
        self.sent: List[str] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_request = on_request
        for frame in on_open:
            self.push(frame)

    def push(self, frame: Any, run_id: Optional[str] = None) -> None:
        raw = frame if isinstance(frame, str) else json.dumps(frame)
        if run_id is not None:
            raw = raw.replace(json.dumps(RUN_ID), json.dumps(run_id))
        self._queue.put_nowait(raw)

    def server_close(self, code: int = 1000, reason: str = "") -> None:
        self.close_code, self.close_reason = code, reason
        self._queue.put_nowait(_END)

    def drop(self) -> None:
        """Lose the connection without a closing handshake."""
        self._queue.put_nowait(_DROP)

    @property
    def sent_messages(self) -> List[Dict[str, Any]]:
        return [json.loads(m) for m in self.sent]

    async def send(self, message: str) -> None:
        self.sent.append(message)
        payload = json.loads(message)
        if payload.get("type") == "chat":
            for frame in self._on_request:
                self.push(frame, payload["run_id"])
            if self._close_after_request:
                self.server_close(1000, "Server done")

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.close_code is None:
            self.close_code, self.close_reason = code, reason
        self._queue.put_nowait(_END)

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        if item is _DROP:
            raise ConnectionClosed(None, None)
        return item


class FakeServer:
    """Connector factory that records every socket it opens."""

    def __init__(
        self,
        on_open: Optional[List[Any]] = None,
        on_request: Optional[List[Any]] = None,
        close_after_request: bool = False,
    ) -> None:
        self.on_open = on_open if on_open is not None else [{"event": "ready", "model_id": "m-1"}]
        self.on_request = on_request or []
        self.close_after_request = close_after_request
        self.sockets: List[FakeSocket] = []

    async def __call__(self, url: str) -> FakeSocket:
        socket = FakeSocket(url, list(self.on_open), list(self.on_request), self.close_after_request)
        self.sockets.append(socket)
        return socket

    @property
    def last(self) -> FakeSocket:
        return self.sockets[-1]


@pytest.fixture
def fake_server_factory():
    return FakeServer


@pytest.fixture
def token_provider(test_config):
    async def _provide() -> Optional[str]:
        return test_config.backend.access_token

    return _provide


@pytest.fixture
def settle():
    """Yield to the event loop until ``predicate()`` holds."""

    async def _settle(predicate, attempts: int = 200) -> None:
        for _ in range(attempts):
            if predicate():
                return
            await asyncio.sleep(0)
        raise AssertionError("Condition not reached while the event loop settled")

    return _settle
