"""
Schema definitions for tool <-> parser <-> session messages.

These data models are the contract between the prompt serializer, the invocation parser, the
history projector and the tool-use loop.  They are kept apart from runtime logic so they can be
imported anywhere without side-effects.
"""

from typing import (
    Annotated,
    Any,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


class SchemaError(ValueError):
    """Raised when a tool's parameter schema cannot be described to the model."""


# ---------------------------------------------------------------------------
# Parameter schema tree
# ---------------------------------------------------------------------------
class ScalarParameter(BaseModel):
    """A leaf parameter: string, number, boolean, ..."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["scalar"] = "scalar"
    type: str = "string"
    enum: Optional[List[Any]] = None


class ArrayParameter(BaseModel):
    """An ordered list whose items follow one (or several alternative) item schemas."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["array"] = "array"
    items: List["ParameterNode"]


class ObjectParameter(BaseModel):
    """A named mapping of child parameters."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["object"] = "object"
    properties: Dict[str, "ParameterNode"]


ParameterNode = Union[ScalarParameter, ArrayParameter, ObjectParameter]

ArrayParameter.model_rebuild()
ObjectParameter.model_rebuild()


def _scalar_type(declared: Any) -> str:
    # JSON Schema allows ["string", "null"]; the prompt only carries one type.
    if isinstance(declared, (list, tuple)):
        declared = next((t for t in declared if t != "null"), None)
    return str(declared) if declared else "string"


def parameter_from_json_schema(schema: Mapping[str, Any], *, root: bool = False) -> ParameterNode:
    """
    Build the tagged parameter tree for a JSON-Schema-like mapping.

    Parameters
    ----------
    schema:
        The raw schema mapping (``{"type": "object", "properties": {...}}`` and so on).
    root:
        ``True`` for a tool's top-level schema, which may declare an empty ``properties``
        mapping so that zero-argument tools can be described.

    Raises
    ------
    SchemaError
        If an array declares no ``items`` or an object declares no ``properties``.
    """
    declared = schema.get("type")

    if declared == "array":
        items = schema.get("items")
        if not items:
            raise SchemaError("Array parameters must declare items.")
        alternatives = items if isinstance(items, list) else [items]
        return ArrayParameter(items=[parameter_from_json_schema(item) for item in alternatives])

    if declared == "object":
        properties = schema.get("properties")
        if properties is None or (not properties and not root):
            raise SchemaError("Object parameters must declare properties.")
        return ObjectParameter(
            properties={
                name: parameter_from_json_schema(child) for name, child in properties.items()
            }
        )

    enum = schema.get("enum")
    return ScalarParameter(
        type=_scalar_type(declared),
        enum=list(enum) if enum is not None else None,
    )


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------
def _empty_object_schema() -> Dict[str, Any]:
    return {"type": "object", "properties": {}}


class Tool(BaseModel):
    """A tool the model may call, described by a JSON-Schema-like parameter mapping."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Unique tool name")
    description: Optional[str] = Field(None, description="Human readable description")
    parameters: Dict[str, Any] = Field(
        default_factory=_empty_object_schema, description="JSON Schema of the arguments"
    )

    @field_validator("parameters", mode="before")
    @classmethod
    def _default_parameters(cls, value: Any) -> Any:
        return _empty_object_schema() if value is None else value

    def parameter_tree(self) -> ObjectParameter:
        """Return the tagged parameter tree of this tool."""
        tree = parameter_from_json_schema(self.parameters, root=True)
        if not isinstance(tree, ObjectParameter):
            raise SchemaError(f"Parameters of tool '{self.name}' must be an object schema.")
        return tree


# ---------------------------------------------------------------------------
# Invocations and conversation events
# ---------------------------------------------------------------------------
class Invocation(BaseModel):
    """One ``<invoke>`` block recovered from a completion."""

    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ToolOutput(BaseModel):
    """The value a tool callback returned for one invocation."""

    tool_name: str
    tool_result: Any = None


class Message(BaseModel):
    """A user or assistant turn, as sent to the completion client."""

    role: Literal["user", "assistant"]
    content: str


class ToolInputEvent(BaseModel):
    """The raw completion text that contained invocations, with the invocations it held."""

    role: Literal["tool_inputs"] = "tool_inputs"
    content: str
    tool_inputs: List[Invocation] = Field(default_factory=list)


class ToolOutputEvent(BaseModel):
    """Results of executing the invocations of the preceding :class:`ToolInputEvent`."""

    role: Literal["tool_outputs"] = "tool_outputs"
    tool_outputs: List[ToolOutput] = Field(default_factory=list)


ConversationEvent = Annotated[
    Union[Message, ToolInputEvent, ToolOutputEvent],
    Field(discriminator="role"),
]


# ---------------------------------------------------------------------------
# Parser outcomes
# ---------------------------------------------------------------------------
class NoCalls(BaseModel):
    """The completion contains no calling-convention tags: it is a final answer."""

    status: Literal["no_calls"] = "no_calls"


class ParseFailure(BaseModel):
    """The completion tried to call tools but the markup could not be recovered."""

    status: Literal["failure"] = "failure"
    reason: str


class ParsedCalls(BaseModel):
    """Invocations recovered from a completion, plus the text that preceded them."""

    status: Literal["calls"] = "calls"
    invocations: List[Invocation]
    prefix_content: str = ""


ParseResult = Union[NoCalls, ParseFailure, ParsedCalls]


# ---------------------------------------------------------------------------
# Session outcomes
# ---------------------------------------------------------------------------
class AssistantReply(BaseModel):
    """The model answered without requesting a tool."""

    status: Literal["done"] = "done"
    role: Literal["assistant"] = "assistant"
    content: str


class ToolInputs(BaseModel):
    """Manual mode: invocations handed back to the caller for dispatch."""

    status: Literal["tool_inputs"] = "tool_inputs"
    role: Literal["tool_inputs"] = "tool_inputs"
    content: str = Field(..., description="Completion text, closing delimiter included")
    prefix_content: str = ""
    tool_inputs: List[Invocation]

    def as_event(self) -> ToolInputEvent:
        """The history event a caller appends before its tool outputs to resume the dialogue."""
        return ToolInputEvent(content=self.content, tool_inputs=list(self.tool_inputs))


class ToolUseError(BaseModel):
    """The loop stopped on a parse or dispatch error."""

    status: Literal["error"] = "error"
    message: str


ToolUseResult = Union[AssistantReply, ToolInputs, ToolUseError]
