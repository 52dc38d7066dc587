"""
toolshim demo entry point.

This file handles startup concerns (arg-parsing, logging) and runs one tool-use session against
the configured completion back-end with a built-in ``emailUser`` tool.
"""

import argparse
import asyncio
import logging
import sys
from typing import (
    Any,
    Dict,
    List,
)

from toolshim.agent.agent_loop import ToolSession
from toolshim.agent.completion_client import load_client
from toolshim.common import (
    AnsiColors,
    colored_print,
)
from toolshim.config import settings
from toolshim.core.schema import (
    AssistantReply,
    ToolInputs,
    ToolUseError,
    ToolUseResult,
)
from toolshim.tools import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = (
    "Send an email to rahul, zack and malay from scalar.video. I want to talk to them about how "
    "they built the CRDTs for their video editor; I am reaching out cold."
)

EMAIL_USER_PARAMETERS: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "to": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "email": {"type": "string", "format": "email"},
                    "name": {"type": "string"},
                },
                "required": ["email", "name"],
            },
        },
        "subject": {"type": "string"},
        "body": {"type": "string"},
    },
    "required": ["to", "subject", "body"],
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)


def build_registry() -> ToolRegistry:
    """Registry holding the demo ``emailUser`` tool."""
    registry = ToolRegistry()

    @registry.register(
        "emailUser", description="Send an email to a user", parameters=EMAIL_USER_PARAMETERS
    )
    def email_user(params: Dict[str, Any]) -> str:
        recipients = ", ".join(
            f"{person.get('name')} <{person.get('email')}>" for person in params.get("to", [])
        )
        message = (
            f"Sent an email to {recipients} with subject {params.get('subject')} "
            f"and body {params.get('body')}"
        )
        colored_print(f"[emailUser] {message}", AnsiColors.GREEN)
        return message

    return registry


def report(result: ToolUseResult) -> int:
    """Print a session result; return the process exit code."""
    if isinstance(result, AssistantReply):
        colored_print(result.content, AnsiColors.YELLOW)
        return 0
    if isinstance(result, ToolInputs):
        if result.prefix_content.strip():
            colored_print(result.prefix_content.strip(), AnsiColors.YELLOW)
        for invocation in result.tool_inputs:
            colored_print(f"{invocation.tool_name}: {invocation.parameters}", AnsiColors.BLUE)
        return 0
    if isinstance(result, ToolUseError):
        colored_print(f"⚠️ {result.message}", AnsiColors.RED)
        return 1
    raise TypeError(f"Unexpected result {result!r}")


async def run(prompt: str, mode: str, backend: str, force_function_call: bool) -> ToolUseResult:
    """Run one session of the demo tool set."""
    registry = build_registry()
    session = ToolSession(
        load_client(backend),
        registry.tools(),
        [{"role": "user", "content": prompt}],
    )
    if mode == "manual":
        return await session.manual(force_function_call=force_function_call)
    return await session.automatic(registry.callbacks(), force_function_call=force_function_call)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: List[str] | None = None) -> None:
    """
    Main entry point for the toolshim demo.

    Parses the command line, initializes logging and runs a single tool-use session in either
    automatic or manual mode.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Run a text-protocol tool-use session")
    parser.add_argument("--prompt", default=DEFAULT_PROMPT, help="User message to start with")
    parser.add_argument(
        "--mode",
        choices=["automatic", "manual"],
        type=str.lower,
        default="automatic",
        help="Execute tools locally or just print the invocations (default: %(default)s)",
    )
    parser.add_argument(
        "--backend",
        choices=["anthropic", "tgi"],
        type=str.lower,
        default=settings.COMPLETION_BACKEND,
        help="Completion back-end (default from env: %(default)s)",
    )
    parser.add_argument(
        "--force-function-call",
        action="store_true",
        default=settings.FORCE_FUNCTION_CALL,
        help="Also stop at turn markers to push the model into calling a tool",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    args = parser.parse_args(argv)

    settings.LOG_LEVEL = args.log_level
    _init_logging(settings.LOG_LEVEL)

    logger.info("Starting toolshim [%s mode, %s back-end]", args.mode, args.backend)
    logger.debug("Settings: %s", settings.model_dump(exclude={"ANTHROPIC_API_KEY"}))

    colored_print(f"🧑 You: {args.prompt}", AnsiColors.BLUE)
    result = asyncio.run(run(args.prompt, args.mode, args.backend, args.force_function_call))
    sys.exit(report(result))


if __name__ == "__main__":
    main()
