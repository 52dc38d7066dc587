"""Small helpers shared by the demo CLI and the tool-use loop."""

from enum import Enum
from typing import Any


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print *text* wrapped in the escape code of *color*.

    Extra positional and keyword arguments are forwarded to :func:`print`.
    """
    print(f"{color.value}{text}\033[0m", *args, **kwargs)  # ANSI reset at the end


def preview(text: str, limit: int = 200) -> str:
    """Shorten *text* for log lines, keeping the head and marking the cut."""
    flat = text.replace("\n", "\\n")
    if len(flat) <= limit:
        return flat
    return f"{flat[:limit]}... (+{len(flat) - limit} chars)"
