"""
OpenAI chat-completions front door for the text tool-use protocol.

Callers that already speak the OpenAI ``chat.completions.create`` dialect can hand their keyword
arguments to :func:`create_chat_completion`.  The request is reshaped into a
:class:`~toolshim.agent.agent_loop.ToolSession`, run once in manual mode, and the outcome comes
back as an ``openai.types.chat.ChatCompletion``:

- a plain answer -> ``finish_reason="stop"``;
- tool invocations -> ``finish_reason="tool_calls"`` with one function call per invocation.

Earlier tool round-trips in ``messages`` (assistant ``tool_calls`` followed by ``tool`` messages)
are replayed as ``<function_calls>`` / ``<function_results>`` text.
"""

import json
import logging
import time
import uuid
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
)

from openai.types.chat import ChatCompletion

from toolshim.agent.agent_loop import ToolSession
from toolshim.agent.completion_client import CompletionClient
from toolshim.core.schema import (
    AssistantReply,
    Invocation,
    Message,
    Tool,
    ToolInputEvent,
    ToolInputs,
    ToolOutput,
    ToolOutputEvent,
    ToolUseError,
)
from toolshim.tools.prompt import render_function_calls

logger = logging.getLogger(__name__)


class ToolUseFailed(RuntimeError):
    """Raised when the model's tool invocation could not be parsed or dispatched."""


# ---------------------------------------------------------------------------
# Request reshaping
# ---------------------------------------------------------------------------
def _text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, Mapping) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return " ".join(parts)


def tools_from_params(
    tools: Optional[Iterable[Mapping[str, Any]]],
    functions: Optional[Iterable[Mapping[str, Any]]],
) -> List[Tool]:
    """Read ``tools=[{"type": "function", "function": {...}}]`` or legacy ``functions=[...]``."""
    if tools:
        return [
            Tool.model_validate(tool["function"])
            for tool in tools
            if tool.get("type", "function") == "function"
        ]
    if functions:
        return [Tool.model_validate(function) for function in functions]
    raise ValueError("tools or functions are required for this wrapper")


def events_from_messages(messages: Iterable[Mapping[str, Any]]) -> Tuple[str, List[Any]]:
    """Split OpenAI messages into a system prompt and tool-use conversation events."""
    system_parts: List[str] = []
    events: List[Any] = []
    call_names: Dict[str, str] = {}

    for message in messages:
        role = message.get("role")
        content = _text(message.get("content"))

        if role in ("system", "developer"):
            system_parts.append(content)

        elif role == "user":
            events.append(Message(role="user", content=content))

        elif role == "assistant":
            tool_calls = message.get("tool_calls") or []
            if content or not tool_calls:
                events.append(Message(role="assistant", content=content))
            if tool_calls:
                invocations = []
                for call in tool_calls:
                    function = call["function"]
                    call_names[call.get("id", "")] = function["name"]
                    invocations.append(
                        Invocation(
                            tool_name=function["name"],
                            parameters=json.loads(function.get("arguments") or "{}"),
                        )
                    )
                events.append(
                    ToolInputEvent(
                        content=render_function_calls(invocations), tool_inputs=invocations
                    )
                )

        elif role in ("tool", "function"):
            name = call_names.get(message.get("tool_call_id", ""), message.get("name", ""))
            output = ToolOutput(tool_name=name, tool_result=content)
            if events and isinstance(events[-1], ToolOutputEvent):
                events[-1] = ToolOutputEvent(tool_outputs=[*events[-1].tool_outputs, output])
            else:
                events.append(ToolOutputEvent(tool_outputs=[output]))

        else:
            logger.warning("Unknown message role: %s", role)

    return "\n\n".join(part for part in system_parts if part), events


# ---------------------------------------------------------------------------
# Response shaping
# ---------------------------------------------------------------------------
def _completion(model: str, finish_reason: str, message: Dict[str, Any]) -> ChatCompletion:
    return ChatCompletion.model_validate(
        {
            "id": f"chatcmpl-{uuid.uuid4().hex}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": model,
            "choices": [
                {
                    "index": 0,
                    "finish_reason": finish_reason,
                    "logprobs": None,
                    "message": message,
                }
            ],
        }
    )


def to_chat_completion(model: str, result: Any) -> ChatCompletion:
    """
    Shape a session result like an OpenAI chat completion.

    Raises
    ------
    ToolUseFailed
        For a :class:`ToolUseError` result.
    """
    if isinstance(result, ToolUseError):
        raise ToolUseFailed(result.message)

    if isinstance(result, AssistantReply):
        return _completion(model, "stop", {"role": "assistant", "content": result.content})

    if isinstance(result, ToolInputs):
        tool_calls = [
            {
                "id": f"call_{uuid.uuid4().hex[:24]}",
                "type": "function",
                "function": {
                    "name": invocation.tool_name,
                    "arguments": json.dumps(invocation.parameters),
                },
            }
            for invocation in result.tool_inputs
        ]
        message = {"role": "assistant", "content": result.prefix_content, "tool_calls": tool_calls}
        return _completion(model, "tool_calls", message)

    raise TypeError(f"Unexpected tool-use result {result!r}")


async def create_chat_completion(
    client: CompletionClient,
    *,
    model: str,
    messages: Iterable[Mapping[str, Any]],
    max_tokens: Optional[int] = None,
    tools: Optional[Iterable[Mapping[str, Any]]] = None,
    functions: Optional[Iterable[Mapping[str, Any]]] = None,
    temperature: Optional[float] = None,
    top_p: Optional[float] = None,
    stream: bool = False,
    **unsupported: Any,
) -> ChatCompletion:
    """
    Run one tool-use completion from OpenAI ``chat.completions.create`` arguments.

    Raises
    ------
    ValueError
        Without tools/functions, without ``max_tokens``, or with ``stream=True``.
    ToolUseFailed
        If the model's invocation markup is malformed or names an unknown tool.
    """
    if stream:
        raise ValueError("Streaming is not supported for tool calling")
    tool_list = tools_from_params(tools, functions)
    if not max_tokens:
        raise ValueError("max_tokens is required")
    if unsupported:
        logger.debug("Ignoring unsupported parameters: %s", sorted(unsupported))

    system, events = events_from_messages(messages)
    session = ToolSession(
        client,
        tool_list,
        events,
        model=model,
        max_tokens=max_tokens,
        system=system or None,
        temperature=temperature,
        top_p=top_p,
    )
    result = await session.manual()
    return to_chat_completion(model, result)
