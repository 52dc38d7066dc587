"""
Completion clients for toolshim.

This module is the only place that *directly* calls an LLM.  The tool-use loop only needs "send
these messages with this system prompt and these stop sequences, give me back text", so every
back-end is reduced to :meth:`CompletionClient.complete`.

We support two back-ends out of the box:

1. **Anthropic** Messages API via the official SDK (requires ``ANTHROPIC_API_KEY``).
2. **Hugging Face Text-Generation-Inference (TGI)** for self-hosted models, driven as a plain
   text completion endpoint.

Additional providers can be added by subclassing :class:`CompletionClient` and registering via
:func:`register_client`.
"""

import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Type,
)

import httpx
from pydantic import (
    BaseModel,
    Field,
)

from toolshim.common import preview
from toolshim.config import settings
from toolshim.core.schema import Message

logger = logging.getLogger(__name__)


class CompletionError(RuntimeError):
    """Raised when a back-end answers with something that is not a completion."""


class CompletionRequest(BaseModel):
    """Everything a back-end needs for one tool-use completion."""

    model: str
    messages: List[Message]
    system: str = ""
    stop_sequences: List[str] = Field(default_factory=list)
    max_tokens: int = 2000
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None

    def sampling(self) -> Dict[str, Any]:
        """Sampling options the caller actually set."""
        return {
            key: value
            for key, value in (
                ("temperature", self.temperature),
                ("top_p", self.top_p),
                ("top_k", self.top_k),
            )
            if value is not None
        }


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_CLIENT_REGISTRY: dict[str, Type["CompletionClient"]] = {}


def register_client(name: str) -> Callable:
    """Decorator to register a completion client class under *name*."""

    def wrapper(cls: Type["CompletionClient"]) -> Type["CompletionClient"]:
        _CLIENT_REGISTRY[name] = cls
        return cls

    return wrapper


def load_client(name: str | None = None, **kwargs: Any) -> "CompletionClient":
    """
    Factory that returns an instantiated completion client.

    Fallback order:
    1. *name* arg
    2. ``settings.COMPLETION_BACKEND`` env option
    3. default: ``"anthropic"``

    Keyword arguments are passed to the client constructor.
    """
    target = name or getattr(settings, "COMPLETION_BACKEND", "anthropic")
    cls = _CLIENT_REGISTRY.get(target.lower())
    if cls is None:
        raise ValueError(f"Completion client '{target}' is not registered.")
    return cls(**kwargs)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class CompletionClient(ABC):
    """Abstract back-end: request in, completion text out."""

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> str:
        """Return the text of a single completion.  Transport errors propagate."""


# ---------------------------------------------------------------------------
# Concrete clients
# ---------------------------------------------------------------------------
@register_client("anthropic")
class AnthropicCompletionClient(CompletionClient):
    """Anthropic Messages API client."""

    def __init__(self, client: Any = None, api_key: str | None = None) -> None:
        if client is None:
            import anthropic  # pylint: disable=import-outside-toplevel

            client = anthropic.AsyncAnthropic(
                api_key=api_key or settings.ANTHROPIC_API_KEY,
                timeout=settings.REQUEST_TIMEOUT,
            )
        self._client = client

    async def complete(self, request: CompletionRequest) -> str:
        kwargs = request.sampling()
        if request.system:
            kwargs["system"] = request.system
        response = await self._client.messages.create(
            model=request.model,
            max_tokens=request.max_tokens,
            messages=[message.model_dump() for message in request.messages],
            stop_sequences=request.stop_sequences,
            stream=False,
            **kwargs,
        )

        # Handle different content block types from Anthropic API
        texts = [block.text for block in response.content if block.type == "text"]
        if not texts:
            # Happens when a stop sequence is hit before any token
            logger.warning(
                "Anthropic returned no text block (stop_reason=%s)", response.stop_reason
            )
            return ""

        content = texts[0]
        logger.debug("Anthropic completion: %s", preview(content))
        return content


def _render_transcript(request: CompletionRequest) -> str:
    prompt = request.system
    for message in request.messages:
        speaker = "Human" if message.role == "user" else "Assistant"
        prompt += f"\n\n{speaker}: {message.content}"
    # A trailing assistant message is a prefill the model continues from
    if not request.messages or request.messages[-1].role == "user":
        prompt += "\n\nAssistant:"
    return prompt


def _strip_stop_sequence(text: str, stop_sequences: List[str]) -> str:
    for stop in stop_sequences:
        if text.endswith(stop):
            return text[: -len(stop)]
    return text


@register_client("tgi")
class TGICompletionClient(CompletionClient):
    """Text-Generation-Inference client over httpx."""

    def __init__(self, endpoint: str | None = None, transport: Any = None) -> None:
        self.endpoint = endpoint or settings.TGI_ENDPOINT
        self._transport = transport

    async def complete(self, request: CompletionRequest) -> str:
        parameters: Dict[str, Any] = {
            "max_new_tokens": request.max_tokens,
            "stop": request.stop_sequences,
            **request.sampling(),
        }
        payload = {"inputs": _render_transcript(request), "parameters": parameters}

        async with httpx.AsyncClient(
            timeout=settings.REQUEST_TIMEOUT, transport=self._transport
        ) as client:
            resp = await client.post(self.endpoint, json=payload)
            resp.raise_for_status()
            body = resp.json()

        if isinstance(body, list):
            body = body[0] if body else {}
        if not isinstance(body, dict) or "generated_text" not in body:
            raise CompletionError(f"Unexpected TGI response: {body!r}")

        content = _strip_stop_sequence(body["generated_text"], request.stop_sequences)
        logger.debug("TGI completion: %s", preview(content))
        return content
