"""
Prompt rendering for the text tool-use protocol.

Tools are described to the model with nested ``<tool_description>`` markup, the model answers
with a ``<function_calls>`` block, and tool results are fed back in a ``<function_results>``
block.  Everything that produces protocol text lives here so the wording stays in one place.
"""

import json
import logging
import re
from typing import (
    Any,
    Iterable,
    List,
    Sequence,
)
from xml.sax.saxutils import escape

from pydantic import BaseModel

from toolshim.core.schema import (
    ArrayParameter,
    Invocation,
    ObjectParameter,
    ParameterNode,
    ScalarParameter,
    Tool,
    ToolOutput,
)

logger = logging.getLogger(__name__)

INDENT = "    "

# Tags the parser gives a meaning of their own; a parameter with one of these names has to be
# written in the explicit ``<parameter>`` form.
RESERVED_TAGS = frozenset(
    {"name", "type", "value", "enum", "parameter", "array-parameter", "object-parameter"}
)
_TAG_NAME = re.compile(r"^[A-Za-z_$][\w.$-]*$")

TOOL_USE_SYSTEM_PROMPT = """\
In this environment you have access to a set of tools you can use to answer the user's question.
You may call them like this:
<function_calls>
<invoke>
<tool_name>$TOOL_NAME</tool_name>
<parameters>
<$PARAMETER_NAME><type>$PARAMETER_TYPE</type><value>$PARAMETER_VALUE</value></$PARAMETER_NAME>
...
</parameters>
</invoke>
</function_calls>

Array and object parameters are written as nested blocks holding their items or properties:
<array-parameter><name>$PARAMETER_NAME</name>...</array-parameter>
<object-parameter><name>$PARAMETER_NAME</name>...</object-parameter>

Here are the tools available:
"""


# ---------------------------------------------------------------------------
# Tool descriptions
# ---------------------------------------------------------------------------
def _render_parameter(indent: str, name: str, node: ParameterNode) -> str:
    if isinstance(node, ArrayParameter):
        rendered = f"{indent}<array-parameter>\n{indent}<name>{name}</name>\n"
        for item in node.items:
            rendered += _render_parameter(indent, name, item)
        return rendered + f"{indent}</array-parameter>\n"

    if isinstance(node, ObjectParameter):
        rendered = f"{indent}<object-parameter>\n{indent}<name>{name}</name>\n"
        rendered += _render_properties(indent, node)
        return rendered + f"{indent}</object-parameter>\n"

    if isinstance(node, ScalarParameter):
        rendered = f"{indent}<parameter>\n{indent}<name>{name}</name>\n"
        rendered += f"{indent}<type>{node.type}</type>\n"
        if node.enum:
            rendered += f"{indent}<enum>{'|'.join(str(v) for v in node.enum)}</enum>\n"
        return rendered + f"{indent}</parameter>\n"

    raise TypeError(f"Unknown parameter node {node!r}")


def _render_properties(indent: str, node: ObjectParameter) -> str:
    return "".join(
        _render_parameter(indent, name, child) for name, child in node.properties.items()
    )


def render_tool(tool: Tool) -> str:
    """
    Describe one tool in ``<tool_description>`` markup.

    The root object of the parameter schema has no wrapper of its own; its properties are listed
    directly inside ``<parameters>``.

    Raises
    ------
    SchemaError
        If any array in the schema lacks ``items`` or any object lacks ``properties``.
    """
    tree = tool.parameter_tree()
    lines = [
        f"{INDENT}<tool_description>",
        f"{INDENT}<tool_name>{tool.name}</tool_name>",
    ]
    if tool.description:
        lines.append(f"{INDENT}<description>{tool.description}</description>")
    lines.append(f"{INDENT}<parameters>")
    body = _render_properties(INDENT * 2, tree)
    return "\n".join(lines) + "\n" + body + f"{INDENT}</parameters>\n{INDENT}</tool_description>"


def build_system_prompt(tools: Sequence[Tool]) -> str:
    """Return the calling-convention instructions followed by every tool description."""
    descriptions = "\n".join(f"<tools>\n{render_tool(tool)}\n</tools>" for tool in tools)
    logger.debug("Built tool-use system prompt for %d tools", len(tools))
    return TOOL_USE_SYSTEM_PROMPT + descriptions


# ---------------------------------------------------------------------------
# Results block
# ---------------------------------------------------------------------------
def stringify_result(result: Any) -> str:
    """Text the model sees for a tool result: strings verbatim, anything else as JSON."""
    if isinstance(result, str):
        return result
    if isinstance(result, BaseModel):
        return result.model_dump_json()
    return json.dumps(result, default=str)


def render_function_results(outputs: Iterable[ToolOutput]) -> str:
    """Render a ``<function_results>`` block listing each output in order."""
    results = "\n".join(
        "<result>\n"
        f"<tool_name>{output.tool_name}</tool_name>\n"
        "<stdout>\n"
        f"{stringify_result(output.tool_result)}\n"
        "</stdout>\n"
        "</result>"
        for output in outputs
    )
    return f"<function_results>\n{results}\n</function_results>"


# ---------------------------------------------------------------------------
# Invocation block (what the model is asked to write)
# ---------------------------------------------------------------------------
def _scalar_type_and_text(value: Any) -> tuple[str, str]:
    if isinstance(value, bool):
        return "boolean", "true" if value else "false"
    if isinstance(value, (int, float)):
        return "number", repr(value)
    if isinstance(value, str):
        return "string", value
    return "object", json.dumps(value, default=str)


def _render_value(name: str, value: Any) -> List[str]:
    if isinstance(value, dict):
        lines = ["<object-parameter>", f"<name>{name}</name>"]
        for key, child in value.items():
            lines.extend(_render_value(key, child))
        return lines + ["</object-parameter>"]

    if isinstance(value, (list, tuple)):
        lines = ["<array-parameter>", f"<name>{name}</name>"]
        for item in value:
            lines.extend(_render_value(name, item))
        return lines + ["</array-parameter>"]

    type_name, text = _scalar_type_and_text(value)
    text = escape(text)
    if name in RESERVED_TAGS or not _TAG_NAME.match(name):
        return [
            f"<parameter><name>{name}</name><type>{type_name}</type>"
            f"<value>{text}</value></parameter>"
        ]
    return [f"<{name}><type>{type_name}</type><value>{text}</value></{name}>"]


def render_function_calls(invocations: Iterable[Invocation]) -> str:
    """
    Write *invocations* as the ``<function_calls>`` block a well-behaved model would emit.

    Values are XML-escaped; the parser decodes them again.
    """
    lines = ["<function_calls>"]
    for invocation in invocations:
        lines.extend(["<invoke>", f"<tool_name>{invocation.tool_name}</tool_name>", "<parameters>"])
        for name, value in invocation.parameters.items():
            lines.extend(_render_value(name, value))
        lines.extend(["</parameters>", "</invoke>"])
    lines.append("</function_calls>")
    return "\n".join(lines)
