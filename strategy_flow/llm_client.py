from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama
from langchain_openai import ChatOpenAI

from strategy_flow.settings import AppSettings


LOGGER = logging.getLogger(__name__)
MODEL_TIERS = ("cheap", "deep")
REASONING_MODEL_MARKERS = ("o1", "o3")


class LLMCallError(RuntimeError):
    """Raised when the LLM call fails after retries."""


class LanguageModel(Protocol):
    async def generate(
        self,
        prompt: str,
        tier: str = "cheap",
        system_prompt: str | None = None,
    ) -> str: ...


@dataclass(slots=True)
class OpenAILLMConfig:
    api_key: str
    model: str
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.2
    timeout_seconds: int = 90
    retry_attempts: int = 3
    retry_backoff_seconds: float = 1.5


@dataclass(slots=True)
class OllamaLLMConfig:
    base_url: str
    model: str
    temperature: float = 0.2
    timeout_seconds: int = 90
    retry_attempts: int = 3
    retry_backoff_seconds: float = 1.5


def supports_temperature(model: str) -> bool:
    return not model.strip().lower().startswith(REASONING_MODEL_MARKERS)


class ChatModelClient:
    """LangChain chat model wrapper with retry controls."""

    def __init__(
        self,
        model: BaseChatModel,
        *,
        model_name: str,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 1.5,
    ) -> None:
        self._model = model
        self._model_name = model_name
        self._retry_attempts = max(1, retry_attempts)
        self._retry_backoff_seconds = retry_backoff_seconds

    @property
    def model_name(self) -> str:
        return self._model_name

    async def invoke(self, messages: Sequence[BaseMessage]) -> AIMessage:
        last_error: Exception | None = None

        for attempt in range(1, self._retry_attempts + 1):
            try:
                response = await self._model.ainvoke(list(messages))
                if not isinstance(response, AIMessage):
                    raise LLMCallError(
                        f"Unexpected response type from LLM: {type(response).__name__}"
                    )
                return response
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                if attempt >= self._retry_attempts:
                    break
                delay = self._retry_backoff_seconds * attempt
                LOGGER.debug(
                    "LLM call attempt %s/%s failed (%s). Retrying in %.1fs",
                    attempt,
                    self._retry_attempts,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)

        raise LLMCallError(f"LLM call failed after retries: {last_error}")


def build_openai_client(config: OpenAILLMConfig) -> ChatModelClient:
    kwargs: dict[str, object] = {
        "api_key": config.api_key,
        "base_url": config.base_url,
        "model": config.model,
        "timeout": config.timeout_seconds,
        "max_retries": 0,
    }
    if supports_temperature(config.model):
        kwargs["temperature"] = config.temperature
    return ChatModelClient(
        ChatOpenAI(**kwargs),
        model_name=config.model,
        retry_attempts=config.retry_attempts,
        retry_backoff_seconds=config.retry_backoff_seconds,
    )


def build_ollama_client(config: OllamaLLMConfig) -> ChatModelClient:
    return ChatModelClient(
        ChatOllama(
            base_url=config.base_url,
            model=config.model,
            temperature=config.temperature,
            client_kwargs={"timeout": config.timeout_seconds},
        ),
        model_name=config.model,
        retry_attempts=config.retry_attempts,
        retry_backoff_seconds=config.retry_backoff_seconds,
    )


class TieredLLMClient:
    """Routes prompts to a cheap or a deep model."""

    def __init__(self, clients: dict[str, ChatModelClient]) -> None:
        if "cheap" not in clients:
            raise ValueError("A 'cheap' tier client is required.")
        self._clients = dict(clients)

    def model_for(self, tier: str) -> str:
        return self._client_for(tier).model_name

    async def generate(
        self,
        prompt: str,
        tier: str = "cheap",
        system_prompt: str | None = None,
    ) -> str:
        client = self._client_for(tier)
        messages: list[BaseMessage] = []
        if isinstance(system_prompt, str) and system_prompt.strip():
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=prompt))

        response = await client.invoke(messages)
        return _extract_text_content(response.content)

    def _client_for(self, tier: str) -> ChatModelClient:
        if tier not in MODEL_TIERS:
            LOGGER.warning("Unknown model tier %r; using the cheap tier.", tier)
            tier = "cheap"
        return self._clients.get(tier) or self._clients["cheap"]


def _extract_text_content(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    return str(content)


def build_llm_client(settings: AppSettings) -> TieredLLMClient:
    clients: dict[str, ChatModelClient] = {}
    for tier, model in (("cheap", settings.model_cheap), ("deep", settings.model_deep)):
        if settings.llm_provider == "ollama":
            clients[tier] = build_ollama_client(
                OllamaLLMConfig(
                    base_url=settings.ollama_base_url,
                    model=model,
                    temperature=settings.llm_temperature,
                    timeout_seconds=settings.llm_request_timeout_seconds,
                    retry_attempts=settings.llm_retry_attempts,
                    retry_backoff_seconds=settings.llm_retry_backoff_seconds,
                )
            )
        else:
            clients[tier] = build_openai_client(
                OpenAILLMConfig(
                    api_key=settings.openai_api_key,
                    model=model,
                    base_url=settings.openai_base_url,
                    temperature=settings.llm_temperature,
                    timeout_seconds=settings.llm_request_timeout_seconds,
                    retry_attempts=settings.llm_retry_attempts,
                    retry_backoff_seconds=settings.llm_retry_backoff_seconds,
                )
            )
    return TieredLLMClient(clients)
