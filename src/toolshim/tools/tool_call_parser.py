"""
Parser for tool calls embedded in free-text completions.

It expects a completion that may contain a block formatted like:
    <function_calls>
    <invoke>
    <tool_name>NAME</tool_name>
    <parameters>
    <subject>Hi</subject>
    <count><type>number</type><value>3</value></count>
    <array-parameter><name>to</name> ... </array-parameter>
    <object-parameter><name>options</name> ... </object-parameter>
    </parameters>
    </invoke>
    </function_calls>
and returns the invocations it holds with their parameters reduced to plain Python values.
"""

import logging
import re
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Union,
)
from xml.sax.saxutils import unescape

from toolshim.core.schema import (
    ArrayParameter,
    Invocation,
    NoCalls,
    ObjectParameter,
    ParameterNode,
    ParsedCalls,
    ParseFailure,
    ParseResult,
    ScalarParameter,
    Tool,
)
from toolshim.tools.coercion import convert_value

logger = logging.getLogger(__name__)

FUNCTION_CALLS_OPEN = "<function_calls>"
FUNCTION_CALLS_CLOSE = "</function_calls>"

_PROTOCOL_TAGS = re.compile(r"</?(?:function_calls|invoke|tool_name|parameters)>")
_TAG = re.compile(r"<(/?)([A-Za-z_$][\w.$-]*)>")

# Deepest tag nesting a block may use; the reduction recurses once per level.
MAX_NESTING = 64
_OPAQUE_TAGS = frozenset({"value"})
_ENTITIES = {"&quot;": '"', "&apos;": "'"}


class ToolCallParseError(RuntimeError):
    """Raised when a ``<function_calls>`` block cannot be turned into invocations."""


# ---------------------------------------------------------------------------
# Tag tree
# ---------------------------------------------------------------------------
@dataclass
class _Element:
    name: str
    start: int
    end: int = -1
    inner_start: int = -1
    inner: str = ""
    children: List["_Element"] = field(default_factory=list)
    text_parts: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.text_parts).strip()

    @property
    def leaf_text(self) -> str:
        """Source between the open and close tags, trimmed, with XML entities decoded."""
        return unescape(self.inner.strip(), _ENTITIES)

    def child(self, name: str) -> Optional["_Element"]:
        return next((c for c in self.children if c.name == name), None)


def _parse_block(text: str, start: int) -> _Element:
    """Build the element tree of the tag block opening at *start*."""
    stack: List[_Element] = []
    pos = start
    match = _TAG.search(text, start)
    while match is not None:
        if stack:
            stack[-1].text_parts.append(text[pos : match.start()])
        closing, name = match.group(1), match.group(2)

        if not closing:
            element = _Element(name=name, start=match.start(), inner_start=match.end())
            if stack:
                stack[-1].children.append(element)
            stack.append(element)
            if len(stack) > MAX_NESTING:
                raise ToolCallParseError(f"Tags nested deeper than {MAX_NESTING} levels")
            pos = match.end()
            if name in _OPAQUE_TAGS:
                # Markup inside a value is content, so jump straight to its close tag
                close = text.find(f"</{name}>", pos)
                if close < 0:
                    raise ToolCallParseError(f"Unclosed tag <{name}>")
                match = _TAG.search(text, close)
            else:
                match = _TAG.search(text, pos)
            continue

        if not stack or stack[-1].name != name:
            expected = f"</{stack[-1].name}>" if stack else "nothing"
            raise ToolCallParseError(
                f"Unexpected closing tag </{name}> at pos {match.start()}, expected {expected}"
            )
        element = stack.pop()
        element.end = match.end()
        element.inner = text[element.inner_start : match.start()]
        if not stack:
            return element
        pos = match.end()
        match = _TAG.search(text, pos)

    unclosed = stack[-1].name if stack else FUNCTION_CALLS_OPEN
    raise ToolCallParseError(f"Unclosed tag <{unclosed}>")


# ---------------------------------------------------------------------------
# Parsed value nodes
# ---------------------------------------------------------------------------
@dataclass
class LeafNode:
    value: Any


@dataclass
class ArrayNode:
    children: List["ValueNode"] = field(default_factory=list)


@dataclass
class ObjectNode:
    children: Dict[str, "ValueNode"] = field(default_factory=dict)


ValueNode = Union[LeafNode, ArrayNode, ObjectNode]


def node_to_value(node: ValueNode) -> Any:
    """Reduce a value node to plain ``dict``/``list``/scalar values."""
    if isinstance(node, LeafNode):
        return node.value
    if isinstance(node, ArrayNode):
        return [node_to_value(child) for child in node.children]
    if isinstance(node, ObjectNode):
        return {key: node_to_value(child) for key, child in node.children.items()}
    raise TypeError(f"Unknown value node {node!r}")


# ---------------------------------------------------------------------------
# Reduction
# ---------------------------------------------------------------------------
class _Reducer:
    """Turns the element tree of one ``<invoke>`` into value nodes."""

    def __init__(self, source: str) -> None:
        self.source = source

    def fragment(self, element: _Element) -> str:
        return self.source[element.start : element.end]

    def collect(
        self,
        container: _Element,
        node: Union[ArrayNode, ObjectNode],
        schema: Optional[ParameterNode],
        name_element: Optional[_Element] = None,
    ) -> None:
        """Fill *node* from the children of *container*, in document order."""
        for child in container.children:
            if child is name_element:
                continue
            if child.name == "array-parameter":
                self._attach(node, child, ArrayNode(), schema)
            elif child.name == "object-parameter":
                self._attach(node, child, ObjectNode(), schema)
            elif child.name == "parameter":
                name, value = self._explicit_leaf(child)
                self._store(node, name, LeafNode(value))
            else:
                value = self._named_leaf(child, _child_schema(schema, node, child.name))
                self._store(node, child.name, LeafNode(value))

    def _attach(
        self,
        parent: Union[ArrayNode, ObjectNode],
        element: _Element,
        node: Union[ArrayNode, ObjectNode],
        schema: Optional[ParameterNode],
    ) -> None:
        name_element = element.child("name")
        if name_element is None and isinstance(parent, ObjectNode):
            raise ToolCallParseError(f"Missing <name> in {self.fragment(element)}")
        name = name_element.text if name_element is not None else ""
        self.collect(element, node, _child_schema(schema, parent, name), name_element)
        self._store(parent, name, node)

    @staticmethod
    def _store(parent: Union[ArrayNode, ObjectNode], name: str, node: ValueNode) -> None:
        if isinstance(parent, ArrayNode):
            parent.children.append(node)
        else:
            parent.children[name] = node

    def _reject_compound(self, element: _Element) -> None:
        if element.child("array-parameter") is not None:
            raise ToolCallParseError(
                f"Cannot have array as leaf node: {self.fragment(element)}"
            )
        if element.child("object-parameter") is not None:
            raise ToolCallParseError(
                f"Cannot have object as leaf node: {self.fragment(element)}"
            )

    def _explicit_leaf(self, element: _Element) -> tuple[str, Any]:
        # <parameter><name>N</name><type>T</type><value>V</value></parameter>
        self._reject_compound(element)
        name_el, type_el, value_el = (element.child(t) for t in ("name", "type", "value"))
        if name_el is None or type_el is None or value_el is None or not name_el.text:
            raise ToolCallParseError(f"Invalid parameter {self.fragment(element)}")
        return name_el.text, convert_value(value_el.leaf_text, type_el.text)

    def _named_leaf(self, element: _Element, schema: Optional[ParameterNode]) -> Any:
        self._reject_compound(element)
        type_el, value_el = element.child("type"), element.child("value")
        if type_el is None and value_el is None:
            # <N>V</N>: markup inside V is part of the value; the schema, when known, gives the type
            return convert_value(element.leaf_text, _declared_type(schema))

        # <N><type>T</type><value>V</value></N>
        if type_el is None or value_el is None:
            raise ToolCallParseError(f"Invalid parameter {self.fragment(element)}")
        return convert_value(value_el.leaf_text, type_el.text)


def _child_schema(
    schema: Optional[ParameterNode], parent: Union[ArrayNode, ObjectNode], name: str
) -> Optional[ParameterNode]:
    if isinstance(schema, ObjectParameter) and isinstance(parent, ObjectNode):
        return schema.properties.get(name)
    if isinstance(schema, ArrayParameter) and isinstance(parent, ArrayNode):
        index = min(len(parent.children), len(schema.items) - 1)
        return schema.items[index]
    return None


def _declared_type(schema: Optional[ParameterNode]) -> str:
    if isinstance(schema, ScalarParameter):
        return schema.type
    if isinstance(schema, ArrayParameter):
        return "array"
    if isinstance(schema, ObjectParameter):
        return "object"
    return "string"


def _reduce_invoke(
    source: str, invoke: _Element, tools: Mapping[str, Tool]
) -> Invocation:
    name_element = invoke.child("tool_name")
    if name_element is None or not name_element.text:
        raise ToolCallParseError(f"Missing <tool_name> in {source[invoke.start : invoke.end]}")
    tool_name = name_element.text

    tool = tools.get(tool_name)
    schema = tool.parameter_tree() if tool is not None else None

    root = ObjectNode()
    parameters = invoke.child("parameters")
    if parameters is not None:
        _Reducer(source).collect(parameters, root, schema)
    return Invocation(tool_name=tool_name, parameters=node_to_value(root))


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------
def has_function_call_tags(text: str) -> bool:
    """Whether *text* holds any of the calling-convention delimiter tags."""
    return _PROTOCOL_TAGS.search(text) is not None


def complete_function_calls(text: str) -> str:
    """
    Append the closing ``</function_calls>`` when the block was opened but never closed.

    The close delimiter is a stop sequence, so the model's output usually ends right before it.
    """
    if FUNCTION_CALLS_OPEN in text and FUNCTION_CALLS_CLOSE not in text:
        return text + FUNCTION_CALLS_CLOSE
    return text


def parse_function_calls(text: str, tools: Optional[Iterable[Tool]] = None) -> ParseResult:
    """
    Recover the invocations of the first ``<function_calls>`` block in *text*.

    Returns
    -------
    NoCalls
        No delimiter tag at all: the completion is a plain answer.
    ParseFailure
        The markup is malformed; ``reason`` quotes the offending fragment.
    ParsedCalls
        The invocations in source order, and the text preceding the block as
        ``prefix_content``.

    Unknown tool names are not rejected here; *tools* only lends its schemas to the type
    coercion of bare ``<name>value</name>`` leaves.
    """
    if not has_function_call_tags(text):
        return NoCalls()

    text = complete_function_calls(text)
    start = text.find(FUNCTION_CALLS_OPEN)
    if start < 0:
        logger.warning("Protocol tags without a %s block", FUNCTION_CALLS_OPEN)
        return ParseFailure(reason="No function calls found")

    by_name = {tool.name: tool for tool in tools or ()}
    try:
        block = _parse_block(text, start)
        invokes = [child for child in block.children if child.name == "invoke"]
        if not invokes:
            raise ToolCallParseError("No <invoke> blocks found in <function_calls>")
        invocations = [_reduce_invoke(text, invoke, by_name) for invoke in invokes]
    except ToolCallParseError as exc:
        logger.warning("Could not parse function calls: %s", exc)
        return ParseFailure(reason=str(exc))

    logger.debug(
        "Parsed %d invocation(s): %s", len(invocations), [i.tool_name for i in invocations]
    )
    return ParsedCalls(invocations=invocations, prefix_content=text[:start])
