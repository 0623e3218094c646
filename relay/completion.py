"""Completion API access through LangChain chat models.

Wraps a chat model so the coordinator only deals with plain text chunks,
and fetches the authoritative request cost from OpenRouter.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence

import httpx
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama
from langchain_openai import ChatOpenAI

from relay.history import ASSISTANT_ROLE, Turn
from utils.config import BotConfig


class CompletionError(RuntimeError):
    """Raised when the completion API fails during a request or stream."""


@dataclass(frozen=True)
class ChatChunk:
    """A piece of model output.

    Attributes:
        text: Text produced since the previous chunk
        response_id: Provider identifier of the response, when known
    """

    text: str
    response_id: Optional[str] = None


def build_chat_model(config: BotConfig) -> BaseChatModel:
    """Create the LangChain chat model for the configured provider.

    Ollama runs locally; everything else goes through the
    OpenAI-compatible endpoint at ``config.base_url``.
    """
    if config.model_type == "ollama":
        return ChatOllama(
            model=config.model_name,
            base_url=config.base_url,
            temperature=config.model_temperature,
        )
    return ChatOpenAI(
        model=config.model_name,
        api_key=config.openai_api_key,
        base_url=config.base_url,
        temperature=config.model_temperature,
    )


def build_messages(system_prompt: str, turns: Sequence[Turn], prompt: str) -> List[BaseMessage]:
    """Assemble the request context: system prompt, history, new prompt."""
    messages: List[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    for turn in turns:
        if turn.role == ASSISTANT_ROLE:
            messages.append(AIMessage(content=turn.text))
        else:
            messages.append(HumanMessage(content=turn.text))
    messages.append(HumanMessage(content=prompt))
    return messages


def _content_text(content) -> str:
    """Flatten LangChain message content (string or content blocks) to text."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class CompletionClient:
    """Runs completions against a chat model.

    Args:
        model: LangChain chat model to invoke
        model_type: Provider flavour; only ``openrouter`` reports costs
        base_url: API base URL used for the cost lookup
        api_key: Bearer token for the cost lookup
        http_client: Optional shared httpx client (tests inject a mock)
        cost_retries: Attempts while the provider has not published stats
        cost_retry_delay: Seconds to wait between attempts
    """

    def __init__(
        self,
        model: BaseChatModel,
        *,
        model_type: str = "openrouter",
        base_url: str = "",
        api_key: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
        cost_retries: int = 3,
        cost_retry_delay: float = 1.0,
    ) -> None:
        self._model = model
        self.model_type = model_type
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._http_client = http_client
        self._cost_retries = max(cost_retries, 1)
        self._cost_retry_delay = cost_retry_delay

    @classmethod
    def from_config(cls, config: BotConfig) -> "CompletionClient":
        return cls(
            build_chat_model(config),
            model_type=config.model_type,
            base_url=config.base_url,
            api_key=config.openai_api_key,
        )

    async def stream(self, messages: Sequence[BaseMessage]) -> AsyncIterator[ChatChunk]:
        """Yield the reply incrementally.

        Raises:
            CompletionError: If the model call fails at any point
        """
        try:
            async for chunk in self._model.astream(list(messages)):
                yield ChatChunk(text=_content_text(chunk.content), response_id=chunk.id)
        except Exception as exc:
            raise CompletionError(f"Streaming completion failed: {exc}") from exc

    async def complete(self, messages: Sequence[BaseMessage]) -> ChatChunk:
        """Return the whole reply in one piece.

        Raises:
            CompletionError: If the model call fails
        """
        try:
            reply = await self._model.ainvoke(list(messages))
        except Exception as exc:
            raise CompletionError(f"Completion failed: {exc}") from exc
        return ChatChunk(text=_content_text(reply.content), response_id=reply.id)

    async def fetch_cost(self, response_id: Optional[str]) -> Optional[float]:
        """Look up what a finished response cost.

        Only OpenRouter exposes this; other providers always return None.

        Raises:
            CompletionError: If the lookup fails for a reason other than the
                stats not being available yet
        """
        if self.model_type != "openrouter" or not response_id:
            return None
        if self._http_client is not None:
            return await self._query_cost(self._http_client, response_id)
        async with httpx.AsyncClient(timeout=10.0) as client:
            return await self._query_cost(client, response_id)

    async def _query_cost(self, client: httpx.AsyncClient, response_id: str) -> Optional[float]:
        url = f"{self._base_url}/generation"
        headers = {"Authorization": f"Bearer {self._api_key}"}
        for attempt in range(1, self._cost_retries + 1):
            try:
                response = await client.get(url, params={"id": response_id}, headers=headers)
            except httpx.HTTPError as exc:
                raise CompletionError(f"Cost lookup for {response_id} failed: {exc}") from exc
            if response.status_code == 404 and attempt < self._cost_retries:
                # Generation stats appear shortly after the stream ends.
                await asyncio.sleep(self._cost_retry_delay)
                continue
            try:
                response.raise_for_status()
                data = response.json()["data"]
                return float(data["total_cost"])
            except (httpx.HTTPStatusError, KeyError, TypeError, ValueError) as exc:
                raise CompletionError(f"Cost lookup for {response_id} failed: {exc}") from exc
        return None
