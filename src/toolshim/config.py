"""Configuration settings for toolshim."""

from typing import (
    ClassVar,
    List,
)

from pydantic_settings import BaseSettings


class StopSequences:
    """Stop-sequence sets sent with every tool-use completion request."""

    CLOSE_DELIMITER: ClassVar[str] = "</function_calls>"

    # Only stop once the model closes its invocation block.
    DEFAULT: ClassVar[List[str]] = [CLOSE_DELIMITER]

    # Also stop at conversational turn markers, pushing the model to call a tool
    # instead of continuing the dialogue on its own.
    FORCED: ClassVar[List[str]] = ["\n\nHuman:", "\n\nAssistant", CLOSE_DELIMITER]

    @classmethod
    def select(cls, force_function_call: bool = False) -> List[str]:
        """Return a fresh copy of the stop list for the requested mode."""
        return list(cls.FORCED if force_function_call else cls.DEFAULT)


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Loaded from environment variables or a .env file if not provided
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Completion backend
    COMPLETION_BACKEND: str = "anthropic"  # Options: anthropic, tgi
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-3-haiku-20240307"
    TGI_ENDPOINT: str = "http://tgi:8080/generate"
    REQUEST_TIMEOUT: float = 60.0

    # Tool-use loop
    MAX_TOKENS: int = 2000
    FORCE_FUNCTION_CALL: bool = False
    MAX_ITERATIONS: int | None = None  # None: loop until the model stops calling tools

    class Config:
        """Configuration for Pydantic settings."""

        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
