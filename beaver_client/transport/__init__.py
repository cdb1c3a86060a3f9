"""WebSocket transport for agent runs."""

from .websocket import AgentConnection, SocketLike

__all__ = ["AgentConnection", "SocketLike"]
