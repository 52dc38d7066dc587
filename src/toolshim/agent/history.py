"""Fold tool-use conversation events into the user/assistant messages a completion API accepts."""

import logging
from typing import (
    Any,
    Iterable,
    List,
    Mapping,
    Union,
)

from pydantic import TypeAdapter

from toolshim.core.schema import (
    ConversationEvent,
    Message,
    ToolInputEvent,
    ToolOutputEvent,
)
from toolshim.tools.prompt import render_function_results
from toolshim.tools.tool_call_parser import complete_function_calls

logger = logging.getLogger(__name__)

_EVENT_ADAPTER: TypeAdapter = TypeAdapter(ConversationEvent)


class HistoryError(ValueError):
    """Raised when the event sequence cannot be projected (e.g. orphan tool outputs)."""


def to_event(raw: Union[Mapping[str, Any], Message, ToolInputEvent, ToolOutputEvent]):
    """Validate a dict (or pass through a model) as a conversation event."""
    if isinstance(raw, (Message, ToolInputEvent, ToolOutputEvent)):
        return raw
    return _EVENT_ADAPTER.validate_python(raw)


def project_history(events: Iterable[Any]) -> List[Message]:
    """
    Project *events* onto alternating user/assistant messages.

    User and assistant turns pass through.  A tool-input event opens an assistant turn, or is
    appended to the assistant turn it trails, with its ``<function_calls>`` block closed.  A
    tool-output event appends its ``<function_results>`` block to the last assistant turn.

    Raises
    ------
    HistoryError
        If a tool-output event does not follow an assistant turn.
    """
    projected: List[Message] = []

    for raw in events:
        event = to_event(raw)

        if isinstance(event, Message):
            projected.append(Message(role=event.role, content=event.content))

        elif isinstance(event, ToolInputEvent):
            content = complete_function_calls(event.content)
            if projected and projected[-1].role == "assistant":
                last = projected[-1]
                projected[-1] = Message(role="assistant", content=last.content + content)
            else:
                projected.append(Message(role="assistant", content=content))

        elif isinstance(event, ToolOutputEvent):
            if not projected or projected[-1].role != "assistant":
                raise HistoryError("Tool outputs must follow an assistant message.")
            last = projected[-1]
            results = render_function_results(event.tool_outputs)
            projected[-1] = Message(role="assistant", content=last.content + results)

        else:  # pragma: no cover
            raise HistoryError(f"Unknown conversation event {event!r}")

    logger.debug("Projected %d message(s)", len(projected))
    return projected
