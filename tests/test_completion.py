"""Tests for the LangChain completion adapter and OpenRouter cost lookup."""

from datetime import timedelta

import httpx
import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama
from langchain_openai import ChatOpenAI

from conftest import make_config
from relay.completion import (
    CompletionClient,
    CompletionError,
    build_chat_model,
    build_messages,
)
from relay.history import Turn
from relay.ledger import utcnow


class ExplodingChatModel(GenericFakeChatModel):
    """Chat model whose every call fails like a dropped connection."""

    def _generate(self, *args, **kwargs):
        raise ConnectionError("upstream down")

    async def _agenerate(self, *args, **kwargs):
        raise ConnectionError("upstream down")

    def _stream(self, *args, **kwargs):
        raise ConnectionError("upstream down")
        yield  # pragma: no cover

    async def _astream(self, *args, **kwargs):
        raise ConnectionError("upstream down")
        yield  # pragma: no cover


def fake_model(text: str = "hello streaming world") -> GenericFakeChatModel:
    """Chat model that replies with ``text`` once, streamed word by word."""
    return GenericFakeChatModel(messages=iter([AIMessage(content=text)]))


def test_build_messages_orders_context() -> None:
    """System prompt first, then history in order, then the new prompt.

    Tests that:
    - assistant turns become AIMessage and user turns HumanMessage
    - the new prompt is always the last message
    """
    now = utcnow()
    turns = [
        Turn(role="user", text="hi", timestamp=now - timedelta(minutes=2)),
        Turn(role="assistant", text="hello", timestamp=now - timedelta(minutes=1)),
    ]

    messages = build_messages("Be brief.", turns, "how are you?")

    assert [type(m) for m in messages] == [SystemMessage, HumanMessage, AIMessage, HumanMessage]
    assert [m.content for m in messages] == ["Be brief.", "hi", "hello", "how are you?"]


def test_build_chat_model_selects_provider() -> None:
    """Remote model types use ChatOpenAI, ollama uses ChatOllama.

    Tests that:
    - openrouter gets the OpenAI-compatible client
    - ollama without an explicit URL talks to the local server, not OpenRouter
    """
    assert isinstance(build_chat_model(make_config(model_type="openrouter")), ChatOpenAI)

    ollama = build_chat_model(make_config(model_type="ollama", openai_api_key=""))

    assert isinstance(ollama, ChatOllama)
    assert ollama.base_url == "http://localhost:11434"


@pytest.mark.asyncio
async def test_stream_yields_text_chunks() -> None:
    """Streaming yields several chunks that join to the full reply."""
    client = CompletionClient(fake_model(), model_type="openai")

    chunks = [chunk async for chunk in client.stream([HumanMessage(content="hi")])]

    assert len(chunks) > 1
    assert "".join(chunk.text for chunk in chunks) == "hello streaming world"


@pytest.mark.asyncio
async def test_complete_returns_whole_reply() -> None:
    """Non-streaming mode returns the reply as one chunk."""
    client = CompletionClient(fake_model("single reply"), model_type="openai")

    reply = await client.complete([HumanMessage(content="hi")])

    assert reply.text == "single reply"


@pytest.mark.asyncio
async def test_model_failures_become_completion_errors() -> None:
    """Provider exceptions surface as CompletionError in both modes."""
    client = CompletionClient(ExplodingChatModel(messages=iter([])), model_type="openai")

    with pytest.raises(CompletionError):
        await client.complete([HumanMessage(content="hi")])
    with pytest.raises(CompletionError):
        async for _ in client.stream([HumanMessage(content="hi")]):
            pass


@pytest.mark.asyncio
async def test_fetch_cost_from_openrouter() -> None:
    """The generation endpoint is queried with the response id.

    Tests that:
    - a 404 (stats not published yet) is retried
    - the bearer token and id are sent
    - total_cost is returned as a float
    """
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json={"data": {"id": "gen-1", "total_cost": 0.00042}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = CompletionClient(
            fake_model(),
            model_type="openrouter",
            base_url="https://openrouter.ai/api/v1/",
            api_key="sk-test",
            http_client=http_client,
            cost_retry_delay=0,
        )
        cost = await client.fetch_cost("gen-1")

    assert cost == pytest.approx(0.00042)
    assert len(calls) == 2
    assert calls[-1].url.path == "/api/v1/generation"
    assert calls[-1].url.params["id"] == "gen-1"
    assert calls[-1].headers["Authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_fetch_cost_errors_are_reported() -> None:
    """Server errors other than 404 are raised, not retried or ignored."""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "boom"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = CompletionClient(
            fake_model(), model_type="openrouter", base_url="https://x.test", http_client=http_client
        )
        with pytest.raises(CompletionError):
            await client.fetch_cost("gen-1")


@pytest.mark.asyncio
async def test_other_providers_never_query_cost() -> None:
    """Only OpenRouter responses with an id trigger a cost lookup.

    Tests that:
    - non-OpenRouter model types return None without an HTTP call
    - a missing response id returns None without an HTTP call
    """
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover
        raise AssertionError("cost endpoint must not be called")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = CompletionClient(fake_model(), model_type="openai", http_client=http_client)
        assert await client.fetch_cost("chatcmpl-1") is None

        openrouter = CompletionClient(fake_model(), model_type="openrouter", http_client=http_client)
        assert await openrouter.fetch_cost(None) is None
