"""Dispatches parsed invocations to the session's tool callbacks, one at a time."""

import inspect
import logging
from typing import (
    Any,
    Iterable,
    List,
    Mapping,
)

from toolshim.core.schema import (
    Invocation,
    ToolOutput,
)
from toolshim.tools import ToolCallback

logger = logging.getLogger(__name__)


class ToolExecutionError(RuntimeError):
    """Raised when a declared tool has no callback to run it."""


def check_callbacks(tool_names: Iterable[str], callbacks: Mapping[str, ToolCallback]) -> None:
    """
    Make sure every declared tool can be dispatched.

    Raises
    ------
    ToolExecutionError
        Naming the tools that have no callback.
    """
    missing = [name for name in tool_names if name not in callbacks]
    if missing:
        raise ToolExecutionError(f"No callback registered for tool(s): {', '.join(missing)}")


async def execute_tool(invocation: Invocation, callbacks: Mapping[str, ToolCallback]) -> Any:
    """
    Run the callback registered under ``invocation.tool_name``.

    The callback gets the reduced parameter mapping as its single argument.  If it returns an
    awaitable, that is awaited before returning.  Exceptions raised by the callback propagate
    unchanged.

    Raises
    ------
    ToolExecutionError
        If no callback is registered under the name.
    """
    callback = callbacks.get(invocation.tool_name)
    if callback is None:
        raise ToolExecutionError(f"Tool '{invocation.tool_name}' has no callback.")

    logger.debug("Executing tool '%s' with params=%s", invocation.tool_name, invocation.parameters)
    try:
        result = callback(invocation.parameters)
        if inspect.isawaitable(result):
            result = await result
    except Exception:
        logger.exception("Unhandled error in tool '%s'", invocation.tool_name)
        raise
    logger.info("Tool '%s' returned: %s", invocation.tool_name, result)
    return result


async def execute_tools(
    invocations: Iterable[Invocation], callbacks: Mapping[str, ToolCallback]
) -> List[ToolOutput]:
    """Run *invocations* sequentially, returning their outputs in the same order."""
    outputs: List[ToolOutput] = []
    for invocation in invocations:
        result = await execute_tool(invocation, callbacks)
        outputs.append(ToolOutput(tool_name=invocation.tool_name, tool_result=result))
    return outputs
