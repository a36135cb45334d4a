"""Generation backend: async chat-model calls with a uniform failure surface.

Every transport problem (connection error, non-success status, timeout) is
raised as TransportFailure so the StageRunner can back off and retry without
knowing which provider SDK sits underneath.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, Protocol

import httpx
from langchain_anthropic import ChatAnthropic
from langchain_google_genai import ChatGoogleGenerativeAI

from aps.config import get_config
from aps.errors import TransportFailure

PROVIDERS = ("anthropic", "google")

_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "unavailable",
    "overloaded",
    "rate limit",
    "too many requests",
    "429",
    "500",
    "502",
    "503",
    "529",
)


@dataclass(frozen=True)
class Generation:
    text: str
    model: str


class GenerationBackend(Protocol):
    name: str

    async def generate(
        self,
        messages: list[dict],
        *,
        temperature: float,
        top_p: float,
        max_tokens: int,
        timeout: float,
    ) -> Generation: ...


def _is_transport_error(exc: BaseException) -> bool:
    """Return True if a provider SDK exception is a transport-level failure."""
    if isinstance(exc, (asyncio.TimeoutError, httpx.HTTPError, ConnectionError)):
        return True
    if isinstance(getattr(exc, "status_code", None), int):
        return True  # Non-success HTTP status surfaced by the SDK.
    name = type(exc).__name__.lower()
    if "connection" in name or "timeout" in name:
        return True
    msg = str(exc).lower()
    return any(marker in msg for marker in _TRANSIENT_MARKERS)


def _message_text(content) -> str:
    """Flatten a chat-model message content (str or content blocks) to text."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class ChatModelBackend:
    """GenerationBackend over a LangChain chat model class.

    A fresh model is built per call; temperature differs between the first
    generation and the repair call.
    """

    def __init__(self, name: str, model_name: str, factory: Callable[..., object]) -> None:
        self.name = name
        self.model_name = model_name
        self._factory = factory

    async def generate(
        self,
        messages: list[dict],
        *,
        temperature: float,
        top_p: float,
        max_tokens: int,
        timeout: float,
    ) -> Generation:
        llm = self._factory(
            model_name=self.model_name,
            temperature=temperature,
            top_p=top_p,
            max_tokens=max_tokens,
        )
        try:
            response = await asyncio.wait_for(llm.ainvoke(messages), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TransportFailure(f"{self.name}: request timeout after {timeout:.0f}s") from exc
        except Exception as exc:
            if _is_transport_error(exc):
                raise TransportFailure(f"{self.name}: {exc}") from exc
            raise

        metadata = getattr(response, "response_metadata", None) or {}
        model = metadata.get("model_name") or metadata.get("model") or self.model_name
        return Generation(text=_message_text(response.content), model=str(model))


def _anthropic(model_name: str, temperature: float, top_p: float, max_tokens: int):
    kwargs = {"model": model_name, "temperature": temperature, "max_tokens": max_tokens, "max_retries": 0}
    if top_p < 1.0:
        kwargs["top_p"] = top_p
    return ChatAnthropic(**kwargs)


def _google(model_name: str, temperature: float, top_p: float, max_tokens: int):
    return ChatGoogleGenerativeAI(
        model=model_name,
        temperature=temperature,
        top_p=top_p,
        max_output_tokens=max_tokens,
        max_retries=0,
    )


_FACTORIES = {"anthropic": _anthropic, "google": _google}


def build_backend(provider: str | None = None) -> ChatModelBackend:
    """Return the generation backend for a provider selector.

    None uses the configured default provider.
    Raises ValueError for unknown selectors.
    """
    config = get_config()
    provider = provider or config.get("provider", "anthropic")
    if provider not in _FACTORIES:
        raise ValueError(f"Unsupported provider '{provider}'. Must be one of: {PROVIDERS}")
    model_name = config.get("models", {}).get(provider)
    if not model_name:
        raise ValueError(f"No model configured for provider '{provider}'.")
    return ChatModelBackend(provider, model_name, _FACTORIES[provider])
