"""
Tool registry for toolshim.

A :class:`ToolRegistry` pairs the :class:`~toolshim.core.schema.Tool` descriptions a session shows
to the model with the callbacks that run when the model invokes them.  Each session gets its own
registry, so tool sets of concurrent sessions never mix.
"""

import inspect
import logging
import typing
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    get_type_hints,
)

from toolshim.core.schema import Tool

logger = logging.getLogger(__name__)

ToolCallback = Callable[[Any], Any]
"""A callback receives the reduced parameter mapping and returns a value or an awaitable."""

_JSON_TYPES: Dict[Any, str] = {
    str: "string",
    int: "number",
    float: "number",
    bool: "boolean",
}


def _json_schema_for(annotation: Any) -> Dict[str, Any]:
    origin = typing.get_origin(annotation)
    if origin is list or annotation is list:
        args = typing.get_args(annotation)
        item = _json_schema_for(args[0]) if args else {"type": "string"}
        return {"type": "array", "items": item}
    if origin is typing.Literal:
        return {"type": "string", "enum": [str(a) for a in typing.get_args(annotation)]}
    return {"type": _JSON_TYPES.get(origin or annotation, "string")}


def tool_from_function(
    fn: Callable, name: Optional[str] = None, description: Optional[str] = None
) -> Tool:
    """
    Describe *fn* as a :class:`Tool` using its signature and type hints.

    Each parameter becomes a property of the root object schema; ``list[X]`` maps to an array of
    ``X``, ``Literal[...]`` to a string enum, unknown annotations to ``string``.  Parameters
    without a default are listed as ``required``.
    """
    sig = inspect.signature(fn)
    type_hints = get_type_hints(fn)
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for param_name, param in sig.parameters.items():
        properties[param_name] = _json_schema_for(type_hints.get(param_name, str))
        if param.default is inspect.Parameter.empty:
            required.append(param_name)
    return Tool(
        name=name or fn.__name__,
        description=description if description is not None else inspect.getdoc(fn),
        parameters={"type": "object", "properties": properties, "required": required},
    )


class ToolRegistry:
    """Name -> (tool description, callback) mapping for one tool-use session."""

    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}
        self._callbacks: Dict[str, ToolCallback] = {}

    def add(self, tool: Tool, callback: ToolCallback) -> None:
        """
        Register *callback* to run when the model invokes *tool*.

        Raises
        ------
        ValueError
            If a tool with the same name is already registered.
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered.")
        logger.debug("Registering tool '%s'", tool.name)
        self._tools[tool.name] = tool
        self._callbacks[tool.name] = callback

    def register(
        self,
        name: Optional[str] = None,
        *,
        description: Optional[str] = None,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> Callable[[ToolCallback], ToolCallback]:
        """
        Decorator registering a callback, like this:

            @registry.register("emailUser", parameters={...})
            def email_user(params):
                return "sent"

        Without *parameters* the schema is derived from the decorated function's signature by
        :func:`tool_from_function`; with them, the callback receives the parameter mapping as its
        single argument.
        """

        def wrapper(fn: ToolCallback) -> ToolCallback:
            if parameters is None:
                derived = tool_from_function(fn, name=name, description=description)
                self.add(derived, lambda params: fn(**params))
            else:
                tool = Tool(
                    name=name or fn.__name__,
                    description=description if description is not None else inspect.getdoc(fn),
                    parameters=dict(parameters),
                )
                self.add(tool, fn)
            return fn

        return wrapper

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def tools(self) -> List[Tool]:
        """Registered tools, in registration order."""
        return list(self._tools.values())

    def callbacks(self) -> Dict[str, ToolCallback]:
        """A copy of the name -> callback mapping, for automatic mode."""
        return dict(self._callbacks)
