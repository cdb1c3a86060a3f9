"""
Agent-run engine.

- ``request_builder``: composer state to ``UserPrompt`` / ``AgentRunRequest``.
- ``assembler``: folds part events into a run's model messages.
- ``actions``, ``citations``, ``warnings``: immutable per-thread registries.
- ``state``: ``ThreadState``, the ``reduce`` function and thread commands.
- ``session``: ``AgentSession``, the facade the presentation layer drives.
"""

from .actions import ActionRegistry
from .citations import ActiveCitation, CitationRegistry
from .request_builder import ComposerState, ModelSelection
from .state import RegenerationPlan, ThreadState, reduce
from .warnings import WarningRegistry
from .session import AgentSession

__all__ = [
    "ActionRegistry",
    "ActiveCitation",
    "AgentSession",
    "CitationRegistry",
    "ComposerState",
    "ModelSelection",
    "RegenerationPlan",
    "ThreadState",
    "WarningRegistry",
    "reduce",
]
