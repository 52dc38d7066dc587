"""Shared fixtures: a scripted completion client and the ``emailUser`` tool."""

from typing import (
    Iterable,
    List,
)

import pytest

from toolshim.agent.completion_client import (
    CompletionClient,
    CompletionRequest,
)
from toolshim.core.schema import Tool


class ScriptedClient(CompletionClient):
    """Returns the given completions in order and records every request."""

    def __init__(self, completions: Iterable[str]) -> None:
        self.completions = list(completions)
        self.requests: List[CompletionRequest] = []

    async def complete(self, request: CompletionRequest) -> str:
        self.requests.append(request)
        if not self.completions:
            raise AssertionError("ScriptedClient ran out of completions")
        return self.completions.pop(0)


EMAIL_TOOL = Tool(
    name="emailUser",
    description="Send an email to a user",
    parameters={
        "type": "object",
        "properties": {
            "to": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "email": {"type": "string"},
                        "name": {"type": "string"},
                    },
                },
            },
            "subject": {"type": "string"},
            "body": {"type": "string"},
        },
    },
)

WEATHER_TOOL = Tool(
    name="getWeather",
    description="Current weather for a city",
    parameters={
        "type": "object",
        "properties": {
            "city": {"type": "string"},
            "days": {"type": "number"},
            "unit": {"type": "string", "enum": ["celsius", "fahrenheit"]},
        },
    },
)


@pytest.fixture
def email_tool() -> Tool:
    return EMAIL_TOOL


@pytest.fixture
def weather_tool() -> Tool:
    return WEATHER_TOOL


@pytest.fixture
def scripted_client():
    """Factory: ``scripted_client("first", "second")``."""

    def factory(*completions: str) -> ScriptedClient:
        return ScriptedClient(completions)

    return factory
