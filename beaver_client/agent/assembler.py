"""Incremental reconstruction of model messages from part events.

Messages are addressed by ``message_index`` and parts by ``part_index``; both
coordinates are assigned by the server and stored on each element. The server
delivers coordinates in non-decreasing order, so the assembler only appends
or extends:

- a new coordinate must come after the last one created (gaps are fine);
- text and thinking deltas extend the most recent part and are concatenated
  in arrival order;
- a tool-call part arrives complete, and its return is merged onto it as
  ``result`` instead of becoming a part of its own.

Anything else is a protocol violation and raises ``PartOrderError``.

All functions return a new ``AgentRun``; the input run is never modified.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Union

from ..core.logging_config import get_logger
from ..core.models.domain import (
    AgentRun,
    ModelMessage,
    RetryPromptPart,
    TextPart,
    ThinkingPart,
    ToolCallPart,
    ToolReturnPart,
)
from ..protocol.errors import PartOrderError
from ..protocol.events import PartEvent, ToolCallProgressEvent, ToolReturnEvent

logger = get_logger(__name__)

StreamPart = Union[TextPart, ThinkingPart, ToolCallPart]
ReturnPart = Union[ToolReturnPart, RetryPromptPart]


def _find_message(messages: List[ModelMessage], message_index: int) -> Optional[int]:
    for pos, message in enumerate(messages):
        if message.message_index == message_index:
            return pos
    return None


def _find_part(parts: List[StreamPart], part_index: int) -> Optional[int]:
    for pos, part in enumerate(parts):
        if part.part_index == part_index:
            return pos
    return None


def _replace_message(run: AgentRun, pos: int, message: ModelMessage) -> AgentRun:
    messages = list(run.model_messages)
    messages[pos] = message
    return run.model_copy(update={"model_messages": messages})


def apply_part(run: AgentRun, event: PartEvent) -> AgentRun:
    """Create or extend the part at ``(message_index, part_index)``."""
    mi, pi = event.message_index, event.part_index
    incoming = event.part.model_copy(update={"part_index": pi})
    messages = run.model_messages

    msg_pos = _find_message(messages, mi)
    if msg_pos is None:
        if messages and mi <= messages[-1].message_index:
            raise PartOrderError(run.id, mi, pi, f"message {mi} precedes message {messages[-1].message_index}")
        message = ModelMessage(message_index=mi, run_id=run.id, parts=[incoming])
        return run.model_copy(update={"model_messages": [*messages, message]})

    message = messages[msg_pos]
    parts = list(message.parts)
    part_pos = _find_part(parts, pi)

    if part_pos is None:
        if msg_pos != len(messages) - 1:
            raise PartOrderError(run.id, mi, pi, "new part in a message that is no longer the latest")
        if parts and pi <= parts[-1].part_index:
            raise PartOrderError(run.id, mi, pi, f"part {pi} precedes part {parts[-1].part_index}")
        parts.append(incoming)
        return _replace_message(run, msg_pos, message.model_copy(update={"parts": parts}))

    existing = parts[part_pos]
    if existing.part_kind != incoming.part_kind:
        raise PartOrderError(
            run.id, mi, pi, f"part kind changed from '{existing.part_kind}' to '{incoming.part_kind}'"
        )

    if isinstance(existing, ToolCallPart):
        # Re-delivery finalizes name and arguments; streamed progress and the result stay.
        parts[part_pos] = incoming.model_copy(update={"progress": existing.progress, "result": existing.result})
    else:
        if msg_pos != len(messages) - 1 or part_pos != len(parts) - 1:
            raise PartOrderError(run.id, mi, pi, "delta for a part that is no longer the latest")
        parts[part_pos] = existing.model_copy(update={"content": existing.content + incoming.content})

    return _replace_message(run, msg_pos, message.model_copy(update={"parts": parts}))


def _locate_tool_call(
    message: ModelMessage, tool_call_id: str, part_index: Optional[int]
) -> Optional[int]:
    for pos, part in enumerate(message.parts):
        if isinstance(part, ToolCallPart) and part.tool_call_id == tool_call_id:
            return pos
    if part_index is not None:
        pos = _find_part(message.parts, part_index)
        if pos is not None and isinstance(message.parts[pos], ToolCallPart):
            return pos
    return None


def apply_tool_return(run: AgentRun, event: ToolReturnEvent) -> AgentRun:
    """Attach a tool return to its tool-call part. Re-applying the same return is a no-op."""
    mi = event.message_index
    ret = event.part

    msg_pos = _find_message(run.model_messages, mi)
    if msg_pos is None:
        raise PartOrderError(run.id, mi, event.part_index, f"tool return for unknown message {mi}")
    message = run.model_messages[msg_pos]

    part_pos = _locate_tool_call(message, ret.tool_call_id, event.part_index)
    if part_pos is None:
        raise PartOrderError(run.id, mi, event.part_index, f"no tool call '{ret.tool_call_id}' to return to")

    call = message.parts[part_pos]
    if call.result == ret:
        logger.debug("Ignoring repeated tool return for %s", ret.tool_call_id)
        return run
    if call.result is not None:
        logger.warning("Replacing tool return for %s", ret.tool_call_id)

    parts = list(message.parts)
    parts[part_pos] = call.model_copy(update={"result": ret})
    return _replace_message(run, msg_pos, message.model_copy(update={"parts": parts}))


def apply_tool_call_progress(run: AgentRun, event: ToolCallProgressEvent) -> AgentRun:
    """Update the progress label of the tool call with ``event.tool_call_id``; unknown ids are ignored."""
    for msg_pos, message in enumerate(run.model_messages):
        for part_pos, part in enumerate(message.parts):
            if isinstance(part, ToolCallPart) and part.tool_call_id == event.tool_call_id:
                parts = list(message.parts)
                parts[part_pos] = part.model_copy(update={"progress": event.progress})
                return _replace_message(run, msg_pos, message.model_copy(update={"parts": parts}))
    logger.debug("Progress for unknown tool call %s ignored", event.tool_call_id)
    return run


def reset_messages(run: AgentRun) -> AgentRun:
    return run.model_copy(update={"model_messages": []})


def _stored_result(part: Dict[str, Any]) -> ReturnPart:
    if part["part_kind"] == "retry-prompt":
        return RetryPromptPart.model_validate(part)
    return ToolReturnPart.model_validate(part)


def fold_stored_messages(run_id: str, raw_messages: Iterable[Dict[str, Any]]) -> List[ModelMessage]:
    """
    Convert stored model messages into the streamed shape.

    Stored runs keep tool returns in separate ``request`` messages; they are
    folded onto the matching tool-call part of the responses, exactly as if they
    had been streamed.
    """
    responses: List[ModelMessage] = []
    results: Dict[str, ReturnPart] = {}
    for position, raw in enumerate(raw_messages):
        raw_parts = [p for p in raw.get("parts") or [] if isinstance(p, dict)]
        if raw.get("kind", "response") == "request":
            for part in raw_parts:
                if part.get("part_kind") in ("tool-return", "retry-prompt"):
                    result = _stored_result(part)
                    results[result.tool_call_id] = result
            continue
        parts = [
            {**part, "part_index": part.get("part_index", index)}
            for index, part in enumerate(raw_parts)
            if part.get("part_kind") in ("text", "thinking", "tool-call")
        ]
        message = {**raw, "kind": "response", "run_id": run_id, "parts": parts}
        message.setdefault("message_index", position)
        responses.append(ModelMessage.model_validate(message))

    if not results:
        return responses
    return [
        message.model_copy(
            update={
                "parts": [
                    p.model_copy(update={"result": results[p.tool_call_id]})
                    if isinstance(p, ToolCallPart) and p.tool_call_id in results
                    else p
                    for p in message.parts
                ]
            }
        )
        for message in responses
    ]
