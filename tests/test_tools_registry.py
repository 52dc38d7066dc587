"""
Tool registry and the demo tool set.

Run with:
$ pytest -q
"""

import asyncio
from typing import (
    List,
    Literal,
)

import pytest

from toolshim.agent.agent_loop import ToolSession
from toolshim.core.schema import (
    AssistantReply,
    ToolInputs,
    ToolUseError,
)
from toolshim.main import (
    build_registry,
    report,
)
from toolshim.tools import (
    ToolRegistry,
    tool_from_function,
)


def get_weather(city: str, days: int, units: Literal["c", "f"] = "c", tags: List[str] = ()):
    """Forecast for a city."""
    return f"{city}:{days}:{units}:{len(tags)}"


def test_tool_from_function_schema() -> None:
    tool = tool_from_function(get_weather)

    assert tool.name == "get_weather"
    assert tool.description == "Forecast for a city."
    assert tool.parameters == {
        "type": "object",
        "properties": {
            "city": {"type": "string"},
            "days": {"type": "number"},
            "units": {"type": "string", "enum": ["c", "f"]},
            "tags": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["city", "days"],
    }


def test_register_derives_schema_and_spreads_parameters() -> None:
    registry = ToolRegistry()
    registry.register("weather")(get_weather)

    assert "weather" in registry
    assert len(registry) == 1
    callback = registry.callbacks()["weather"]
    assert callback({"city": "Oslo", "days": 2}) == "Oslo:2:c:0"


def test_register_with_explicit_parameters_passes_the_mapping() -> None:
    registry = ToolRegistry()

    @registry.register("echo", description="Echo", parameters={"type": "object", "properties": {}})
    def echo(params):
        return params

    assert registry.tools()[0].description == "Echo"
    assert registry.callbacks()["echo"]({"a": 1}) == {"a": 1}


def test_duplicate_names_are_rejected() -> None:
    registry = ToolRegistry()
    registry.register("weather")(get_weather)

    with pytest.raises(ValueError, match="already registered"):
        registry.register("weather")(get_weather)


def test_demo_registry_drives_a_session(scripted_client, capsys) -> None:
    registry = build_registry()
    client = scripted_client(
        "<function_calls><invoke><tool_name>emailUser</tool_name><parameters>"
        "<array-parameter><name>to</name>"
        "<object-parameter><email>zack@scalar.video</email>"
        "<parameter><name>name</name><type>string</type><value>Zack</value></parameter>"
        "</object-parameter>"
        "</array-parameter><subject>CRDTs</subject><body>Hi</body>"
        "</parameters></invoke>",
        "Email sent.",
    )
    session = ToolSession(client, registry.tools(), [{"role": "user", "content": "Email Zack"}])

    result = asyncio.run(session.automatic(registry.callbacks()))

    assert result == AssistantReply(content="Email sent.")
    assert "Zack <zack@scalar.video>" in capsys.readouterr().out
    assert "Sent an email to Zack <zack@scalar.video>" in client.requests[1].messages[-1].content


def test_report_exit_codes(capsys) -> None:
    assert report(AssistantReply(content="hello")) == 0
    assert report(ToolInputs(content="", tool_inputs=[])) == 0
    assert report(ToolUseError(message="broken")) == 1
    assert "broken" in capsys.readouterr().out
