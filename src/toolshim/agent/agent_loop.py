"""Tool-use loop: completion -> parse -> dispatch -> re-inject, until the model answers."""

from __future__ import annotations

import logging
from enum import Enum
from typing import (
    Any,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Union,
)

from toolshim.agent.completion_client import (
    CompletionClient,
    CompletionRequest,
)
from toolshim.agent.history import (
    project_history,
    to_event,
)
from toolshim.agent.tool_executor import (
    check_callbacks,
    execute_tools,
)
from toolshim.common import preview
from toolshim.config import (
    StopSequences,
    settings,
)
from toolshim.core.schema import (
    AssistantReply,
    NoCalls,
    ParseFailure,
    Tool,
    ToolInputEvent,
    ToolInputs,
    ToolOutputEvent,
    ToolUseError,
    ToolUseResult,
)
from toolshim.tools import ToolCallback
from toolshim.tools.prompt import build_system_prompt
from toolshim.tools.tool_call_parser import (
    complete_function_calls,
    parse_function_calls,
)

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """States of one tool-use loop."""

    AWAITING_COMPLETION = "awaiting_completion"
    CHECKING_STOP_SEQUENCE = "checking_stop_sequence"
    PARSING = "parsing"
    DISPATCHING = "dispatching"
    DONE = "done"
    ERROR = "error"


TERMINAL_STATES = frozenset({SessionState.DONE, SessionState.ERROR})


class ToolSession:
    """
    One conversation with a set of tools.

    The session owns a copy of the caller's history and appends tool-input / tool-output events
    to it while it runs.  It runs a single loop: call :meth:`automatic` or :meth:`manual` once.

    Parameters
    ----------
    client:
        Completion back-end.
    tools:
        :class:`Tool` instances (or mappings validated into them).  Names must be unique.
    messages:
        Initial history: user/assistant messages, optionally with tool-input/tool-output events
        from an earlier manual round.
    model, max_tokens:
        Default to ``settings.ANTHROPIC_MODEL`` and ``settings.MAX_TOKENS``.
    system:
        Caller instructions placed before the tool-use prompt.
    max_iterations:
        Optional cap on tool round-trips in automatic mode (``None``: no cap).

    Raises
    ------
    SchemaError
        If a tool's parameter schema cannot be rendered.
    ValueError
        If two tools share a name.
    """

    def __init__(
        self,
        client: CompletionClient,
        tools: Iterable[Union[Tool, Mapping[str, Any]]],
        messages: Iterable[Any],
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        system: Optional[str] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        top_k: Optional[int] = None,
        max_iterations: Optional[int] = None,
    ) -> None:
        self.client = client
        self.tools: List[Tool] = [
            tool if isinstance(tool, Tool) else Tool.model_validate(tool) for tool in tools
        ]
        names = [tool.name for tool in self.tools]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate tool name(s): {', '.join(duplicates)}")

        self.history = [to_event(message) for message in messages]
        self.model = model or settings.ANTHROPIC_MODEL
        self.max_tokens = max_tokens or settings.MAX_TOKENS
        self.sampling = {"temperature": temperature, "top_p": top_p, "top_k": top_k}
        self.max_iterations = (
            max_iterations if max_iterations is not None else settings.MAX_ITERATIONS
        )

        tool_prompt = build_system_prompt(self.tools)
        self.system_prompt = f"{system}\n\n{tool_prompt}" if system else tool_prompt
        self.state = SessionState.AWAITING_COMPLETION
        self._started = False

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------
    async def automatic(
        self,
        callbacks: Mapping[str, ToolCallback],
        *,
        force_function_call: Optional[bool] = None,
    ) -> ToolUseResult:
        """
        Run the loop, executing every requested tool through *callbacks*.

        Callbacks run one at a time, in the order the model listed the invocations; awaitable
        results are awaited before the next callback starts.

        Returns
        -------
        AssistantReply
            Once the model answers without calling a tool.
        ToolUseError
            On malformed invocation markup or an unknown tool name.
        """
        check_callbacks([tool.name for tool in self.tools], callbacks)
        return await self._run(callbacks, force_function_call)

    async def manual(self, *, force_function_call: Optional[bool] = None) -> ToolUseResult:
        """
        Request a single completion and return what the model asked for without executing it.

        Returns :class:`AssistantReply`, :class:`ToolInputs` or :class:`ToolUseError`.  To carry
        on after a :class:`ToolInputs`, append ``result.as_event()`` and a
        :class:`ToolOutputEvent` to the history of a new session.
        """
        return await self._run(None, force_function_call)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    @property
    def finished(self) -> bool:
        """Whether the loop reached DONE or ERROR."""
        return self.state in TERMINAL_STATES

    def _transition(self, state: SessionState) -> None:
        logger.debug("Session state %s -> %s", self.state.value, state.value)
        self.state = state

    def _finish(self, state: SessionState, result: ToolUseResult) -> ToolUseResult:
        self._transition(state)
        return result

    def _request(self, stop_sequences: Sequence[str]) -> CompletionRequest:
        return CompletionRequest(
            model=self.model,
            messages=project_history(self.history),
            system=self.system_prompt,
            stop_sequences=list(stop_sequences),
            max_tokens=self.max_tokens,
            **self.sampling,
        )

    async def _run(
        self, callbacks: Optional[Mapping[str, ToolCallback]], force_function_call: Optional[bool]
    ) -> ToolUseResult:
        if self._started:
            raise RuntimeError(f"Tool session already ran (state: {self.state.value}).")
        self._started = True

        if force_function_call is None:
            force_function_call = settings.FORCE_FUNCTION_CALL
        stop_sequences = StopSequences.select(force_function_call)
        known = {tool.name for tool in self.tools}
        rounds = 0

        while True:
            self._transition(SessionState.AWAITING_COMPLETION)
            raw = await self.client.complete(self._request(stop_sequences))
            logger.debug("Completion: %s", preview(raw))

            self._transition(SessionState.CHECKING_STOP_SEQUENCE)
            content = complete_function_calls(raw)

            self._transition(SessionState.PARSING)
            parsed = parse_function_calls(content, self.tools)

            if isinstance(parsed, NoCalls):
                return self._finish(SessionState.DONE, AssistantReply(content=raw))

            if isinstance(parsed, ParseFailure):
                return self._finish(SessionState.ERROR, ToolUseError(message=parsed.reason))

            for invocation in parsed.invocations:
                if invocation.tool_name not in known:
                    logger.warning("Model invoked unknown tool '%s'", invocation.tool_name)
                    return self._finish(
                        SessionState.ERROR,
                        ToolUseError(
                            message=(
                                f"No tool named <tool_name>{invocation.tool_name}</tool_name>"
                                " available."
                            )
                        ),
                    )

            if callbacks is None:
                return self._finish(
                    SessionState.DONE,
                    ToolInputs(
                        content=content,
                        prefix_content=parsed.prefix_content,
                        tool_inputs=parsed.invocations,
                    ),
                )

            if self.max_iterations is not None and rounds >= self.max_iterations:
                return self._finish(
                    SessionState.ERROR,
                    ToolUseError(message=f"Stopped after {rounds} tool round-trip(s)."),
                )

            self._transition(SessionState.DISPATCHING)
            logger.info(
                "Model requested %d tool call(s): %s",
                len(parsed.invocations),
                [invocation.tool_name for invocation in parsed.invocations],
            )
            self.history.append(ToolInputEvent(content=content, tool_inputs=parsed.invocations))
            outputs = await execute_tools(parsed.invocations, callbacks)
            self.history.append(ToolOutputEvent(tool_outputs=outputs))
            rounds += 1
