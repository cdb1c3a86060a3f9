"""
Client engine for streaming agent runs.

The package drives one conversational agent run at a time against the backend
assistant over a WebSocket connection: it builds the run request, streams the
response events, reassembles message parts, tracks tool actions awaiting
approval and citations, and reconciles the thread when a run is regenerated.

Subpackages:

- ``core``: configuration, logging and the pydantic domain models.
- ``protocol``: wire events, outbound messages and the error taxonomy.
- ``transport``: the WebSocket connection manager.
- ``agent``: request builder, part assembler, registries, the run reducer and
  the ``AgentSession`` facade.
- ``api``: REST client for stored runs.
"""

from beaver_client.agent.session import AgentSession
from beaver_client.agent.state import ThreadState, reduce
from beaver_client.api.runs import AgentRunService
from beaver_client.core.config import Settings, settings
from beaver_client.transport.websocket import AgentConnection

__all__ = [
    "AgentConnection",
    "AgentRunService",
    "AgentSession",
    "Settings",
    "ThreadState",
    "reduce",
    "settings",
]
