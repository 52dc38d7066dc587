"""
Parsing of <function_calls> blocks out of completion text.

Run with:
$ pytest -q
"""

import pytest

from toolshim.core.schema import (
    Invocation,
    NoCalls,
    ParsedCalls,
    ParseFailure,
    Tool,
)
from toolshim.tools.prompt import render_function_calls
from toolshim.tools.tool_call_parser import (
    complete_function_calls,
    MAX_NESTING,
    has_function_call_tags,
    parse_function_calls,
)


def _calls(text: str, tools=None) -> ParsedCalls:
    result = parse_function_calls(text, tools)
    assert isinstance(result, ParsedCalls), result
    return result


def _failure(text: str, tools=None) -> ParseFailure:
    result = parse_function_calls(text, tools)
    assert isinstance(result, ParseFailure), result
    return result


@pytest.mark.parametrize(
    "text",
    [
        "",
        "The weather in Paris is sunny.",
        "Use <b>bold</b> and <name>tags</name> freely",
        "function_calls and invoke are just words here",
    ],
)
def test_plain_text_has_no_calls(text: str) -> None:
    assert not has_function_call_tags(text)
    assert isinstance(parse_function_calls(text), NoCalls)


def test_truncated_block_is_completed() -> None:
    """The stop sequence eats </function_calls>; the parser puts it back."""

    text = (
        "I will check.<function_calls><invoke><tool_name>emailUser</tool_name>"
        "<parameters><subject>Hi</subject><body>Hello</body></parameters></invoke>"
    )

    result = _calls(text)

    assert result.invocations == [
        Invocation(tool_name="emailUser", parameters={"subject": "Hi", "body": "Hello"})
    ]
    assert result.prefix_content == "I will check."


def test_complete_function_calls_is_idempotent() -> None:
    opened = "<function_calls><invoke>"
    assert complete_function_calls(opened) == opened + "</function_calls>"
    assert complete_function_calls(opened + "</function_calls>") == opened + "</function_calls>"
    assert complete_function_calls("no block") == "no block"


def test_typed_leaf_forms_are_coerced() -> None:
    text = """Sure.
<function_calls>
<invoke>
<tool_name>getWeather</tool_name>
<parameters>
<city><type>string</type><value>Paris</value></city>
<days><type>number</type><value> 3 </value></days>
<parameter><name>metric</name><type>boolean</type><value>True</value></parameter>
</parameters>
</invoke>
</function_calls>"""

    result = _calls(text)

    assert result.invocations[0].parameters == {"city": "Paris", "days": 3, "metric": True}
    assert result.prefix_content == "Sure.\n"


def test_bare_leaves_use_the_tool_schema(weather_tool: Tool) -> None:
    text = (
        "<function_calls><invoke><tool_name>getWeather</tool_name><parameters>"
        "<city>Oslo</city><days>2</days></parameters></invoke></function_calls>"
    )

    assert _calls(text, [weather_tool]).invocations[0].parameters == {"city": "Oslo", "days": 2}
    # Without the schema every bare leaf is a string
    assert _calls(text).invocations[0].parameters == {"city": "Oslo", "days": "2"}


def test_nested_arrays_and_objects_keep_source_order() -> None:
    text = """<function_calls>
<invoke>
<tool_name>emailUser</tool_name>
<parameters>
<array-parameter>
<name>to</name>
<object-parameter>
<name>to</name>
<parameter><name>email</name><type>string</type><value>rahul@scalar.video</value></parameter>
<parameter><name>name</name><type>string</type><value>Rahul</value></parameter>
</object-parameter>
<object-parameter>
<name>to</name>
<parameter><name>email</name><type>string</type><value>zack@scalar.video</value></parameter>
<parameter><name>name</name><type>string</type><value>Zack</value></parameter>
</object-parameter>
</array-parameter>
<subject><type>string</type><value>CRDTs</value></subject>
<object-parameter>
<name>options</name>
<array-parameter>
<name>tags</name>
<parameter><name>tags</name><type>string</type><value>cold</value></parameter>
<parameter><name>tags</name><type>number</type><value>7</value></parameter>
</array-parameter>
</object-parameter>
</parameters>
</invoke>
</function_calls>"""

    parameters = _calls(text).invocations[0].parameters

    assert parameters == {
        "to": [
            {"email": "rahul@scalar.video", "name": "Rahul"},
            {"email": "zack@scalar.video", "name": "Zack"},
        ],
        "subject": "CRDTs",
        "options": {"tags": ["cold", 7]},
    }
    assert list(parameters) == ["to", "subject", "options"]


def test_bare_json_leaf_for_compound_schema(email_tool: Tool) -> None:
    text = (
        "<function_calls><invoke><tool_name>emailUser</tool_name><parameters>"
        '<to>[{"email": "a@b.c", "name": "A"}]</to>'
        "</parameters></invoke></function_calls>"
    )

    parameters = _calls(text, [email_tool]).invocations[0].parameters

    assert parameters == {"to": [{"email": "a@b.c", "name": "A"}]}


def test_multiple_invokes_and_unknown_tools() -> None:
    """The parser does not care whether the tool exists."""

    text = (
        "<function_calls>"
        "<invoke><tool_name>sendSms</tool_name><parameters><to>123</to></parameters></invoke>"
        "<invoke><tool_name>emailUser</tool_name><parameters></parameters></invoke>"
        "<invoke><tool_name>ping</tool_name></invoke>"
        "</function_calls> trailing text is ignored"
    )

    invocations = _calls(text).invocations

    assert [i.tool_name for i in invocations] == ["sendSms", "emailUser", "ping"]
    assert invocations[1].parameters == {}
    assert invocations[2].parameters == {}


def test_leaf_without_type_fails() -> None:
    text = (
        "<function_calls><invoke><tool_name>emailUser</tool_name><parameters>"
        "<subject><value>Hi</value></subject>"
        "</parameters></invoke></function_calls>"
    )

    failure = _failure(text)

    assert "Invalid parameter" in failure.reason
    assert "<subject><value>Hi</value></subject>" in failure.reason


@pytest.mark.parametrize(
    "leaf",
    [
        "<parameter><type>string</type><value>x</value></parameter>",
        "<parameter><name>a</name><value>x</value></parameter>",
        "<parameter><name>a</name><type>string</type></parameter>",
    ],
)
def test_explicit_leaf_needs_name_type_and_value(leaf: str) -> None:
    text = (
        "<function_calls><invoke><tool_name>t</tool_name><parameters>"
        f"{leaf}</parameters></invoke></function_calls>"
    )

    assert leaf in _failure(text).reason


def test_compound_inside_leaf_fails() -> None:
    array_in_leaf = (
        "<function_calls><invoke><tool_name>t</tool_name><parameters>"
        "<a><type>string</type><value>x</value>"
        "<array-parameter><name>b</name></array-parameter></a>"
        "</parameters></invoke></function_calls>"
    )
    object_in_leaf = array_in_leaf.replace("array-parameter", "object-parameter")

    assert "Cannot have array as leaf node" in _failure(array_in_leaf).reason
    assert "Cannot have object as leaf node" in _failure(object_in_leaf).reason


def test_malformed_markup_fails() -> None:
    mismatched = (
        "<function_calls><invoke><tool_name>t</parameters></invoke></function_calls>"
    )
    cut_mid_invoke = "<function_calls><invoke><tool_name>t</tool_name><parameters>"

    assert "Unexpected closing tag </parameters>" in _failure(mismatched).reason
    assert "Unexpected closing tag </function_calls>" in _failure(cut_mid_invoke).reason


def test_tags_without_block_or_invoke_fail() -> None:
    assert _failure("<invoke><tool_name>t</tool_name></invoke>").reason == (
        "No function calls found"
    )
    assert "No <invoke>" in _failure("<function_calls></function_calls>").reason
    assert "Missing <tool_name>" in _failure(
        "<function_calls><invoke><parameters></parameters></invoke></function_calls>"
    ).reason


def test_object_parameter_needs_a_name() -> None:
    text = (
        "<function_calls><invoke><tool_name>t</tool_name><parameters>"
        "<object-parameter><a>1</a></object-parameter>"
        "</parameters></invoke></function_calls>"
    )

    assert "Missing <name>" in _failure(text).reason


def test_round_trip_through_rendered_calls() -> None:
    """
    Whatever a well-behaved model writes for these invocations parses back to them.

    Leaf text is whitespace-trimmed, so string values with leading or trailing whitespace are
    the one thing that does not survive the trip.
    """

    invocations = [
        Invocation(
            tool_name="emailUser",
            parameters={
                "to": [{"email": "a@b.c", "name": "A"}, {"email": "d@e.f", "name": "D"}],
                "subject": "Hello",
                "urgent": False,
                "retries": 2,
                "score": 0.5,
                "meta": {"thread": None, "labels": ["x", "y"]},
            },
        ),
        Invocation(tool_name="ping", parameters={}),
    ]

    result = _calls("Let me do that. " + render_function_calls(invocations))

    assert result.invocations == invocations
    assert result.prefix_content == "Let me do that. "


def test_round_trip_keeps_markup_and_entities_in_strings() -> None:
    invocations = [
        Invocation(
            tool_name="emailUser",
            parameters={
                "body": "use <b>bold</b> here & <i>there</i>",
                "subject": 'Tom & Jerry <3 "quoted"',
                "to": [{"name": "<unknown>", "email": "a&b@c.d"}],
            },
        )
    ]

    assert _calls(render_function_calls(invocations)).invocations == invocations


def test_markup_inside_values_is_kept_verbatim() -> None:
    text = (
        "<function_calls><invoke><tool_name>emailUser</tool_name><parameters>"
        "<body><type>string</type><value>use <b>bold</b> here</value></body>"
        "<footer><type>string</type><value>line<br>break</value></footer>"
        "<subject>Re: <i>CRDTs</i></subject>"
        "</parameters></invoke></function_calls>"
    )

    assert _calls(text).invocations[0].parameters == {
        "body": "use <b>bold</b> here",
        "footer": "line<br>break",
        "subject": "Re: <i>CRDTs</i>",
    }


def test_xml_entities_are_decoded() -> None:
    text = (
        "<function_calls><invoke><tool_name>emailUser</tool_name><parameters>"
        "<body>Tom &amp; Jerry &lt;3</body>"
        "<parameter><name>sig</name><type>string</type>"
        "<value>&quot;A&quot; &apos;B&apos; &gt;</value></parameter>"
        "</parameters></invoke></function_calls>"
    )

    assert _calls(text).invocations[0].parameters == {
        "body": "Tom & Jerry <3",
        "sig": "\"A\" 'B' >",
    }


def _nested_arrays(depth: int) -> str:
    return (
        "<function_calls><invoke><tool_name>t</tool_name><parameters>"
        + "<array-parameter><name>a</name>" * depth
        + "</array-parameter>" * depth
        + "</parameters></invoke></function_calls>"
    )


def test_nested_arrays_within_the_limit() -> None:
    expected = []
    for _ in range(19):
        expected = [expected]

    assert _calls(_nested_arrays(20)).invocations[0].parameters == {"a": expected}


def test_excessive_nesting_is_a_parse_failure() -> None:
    """Runaway nesting ends in a failure result instead of exhausting the stack."""

    failure = _failure(_nested_arrays(1500))

    assert f"nested deeper than {MAX_NESTING}" in failure.reason
