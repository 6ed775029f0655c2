from datetime import datetime, timedelta, timezone

import httpx
import pytest

from chatrelay.core.config import ProviderModel
from chatrelay.core.exceptions import (
    MalformedResponseError,
    ProviderAuthInvalidError,
    ProviderError,
    RateLimitedError,
    ServiceUnavailableError,
)
from chatrelay.providers.base import AuthInvalid, ChatMessage, ProviderFailure, RateLimited
from chatrelay.providers.openai import OpenAICompatibleAdapter

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _provider(**overrides) -> ProviderModel:
    data = {
        "code": "openai",
        "display_name": "OpenAI",
        "adapter": "openai",
        "endpoint": "https://api.openai.example/v1/chat/completions",
        "default_model": "gpt-test",
    }
    data.update(overrides)
    return ProviderModel(**data)


def test_build_request_passes_messages_and_bearer_auth():
    adapter = OpenAICompatibleAdapter(_provider())
    prepared = adapter.build_request(
        "sk-test",
        "gpt-test",
        [
            ChatMessage(role="system", content="be brief"),
            ChatMessage(role="user", content="hi"),
        ],
        {"temperature": 0.2, "unrelated": True},
    )

    assert prepared.url == "https://api.openai.example/v1/chat/completions"
    assert prepared.headers["Authorization"] == "Bearer sk-test"
    assert prepared.params == {}
    assert prepared.body == {
        "model": "gpt-test",
        "messages": [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
        ],
        "temperature": 0.2,
    }


def test_extract_text_and_usage():
    adapter = OpenAICompatibleAdapter(_provider())
    body = {
        "choices": [{"message": {"role": "assistant", "content": "hello"}}],
        "usage": {"prompt_tokens": 3, "completion_tokens": 2},
    }

    assert adapter.extract_text(body) == "hello"
    assert adapter.extract_token_usage(body) == 5
    assert adapter.extract_token_usage({"choices": []}) == 0


@pytest.mark.parametrize(
    "body",
    [
        {"choices": []},
        {"choices": [{"message": {"content": None}}]},
        {"object": "chat.completion"},
        ["not", "an", "object"],
    ],
)
def test_extract_text_rejects_unexpected_shapes(body):
    adapter = OpenAICompatibleAdapter(_provider())

    with pytest.raises(MalformedResponseError):
        adapter.extract_text(body)


def test_classify_rate_limit_uses_reset_header():
    adapter = OpenAICompatibleAdapter(_provider())
    reset = int((NOW + timedelta(minutes=5)).timestamp())

    outcome = adapter.classify_error(429, {"X-RateLimit-Reset": str(reset)}, None, now=NOW)

    assert outcome == RateLimited(reset_at=NOW + timedelta(minutes=5))


def test_classify_rate_limit_without_hints_uses_configured_cooldown():
    adapter = OpenAICompatibleAdapter(_provider(), default_cooldown=timedelta(minutes=10))

    outcome = adapter.classify_error(429, {}, {"error": {"message": "slow down"}}, now=NOW)

    assert outcome == RateLimited(reset_at=NOW + timedelta(minutes=10))


def test_classify_auth_and_generic_failures():
    adapter = OpenAICompatibleAdapter(_provider())

    assert isinstance(adapter.classify_error(401, {}, None, now=NOW), AuthInvalid)
    assert isinstance(adapter.classify_error(403, {}, None, now=NOW), AuthInvalid)

    failure = adapter.classify_error(
        500, {}, {"error": {"type": "server_error", "message": "upstream exploded"}}, now=NOW
    )
    assert failure == ProviderFailure(status=500, message="server_error - upstream exploded")


@pytest.mark.asyncio
async def test_send_round_trip(stub_provider):
    adapter = OpenAICompatibleAdapter(_provider(), timeout=15)

    completion = await adapter.send("sk-test", [ChatMessage(role="user", content="echo me")])

    assert completion.text == "echo me"
    assert completion.token_count == 7
    call = stub_provider.calls[0]
    assert call["json"]["model"] == "gpt-test"
    assert call["headers"]["Authorization"] == "Bearer sk-test"
    assert call["params"] is None
    assert stub_provider.timeouts == [15]


@pytest.mark.asyncio
async def test_send_maps_error_statuses(stub_provider):
    adapter = OpenAICompatibleAdapter(_provider())
    stub_provider.respond(429, {"error": {"message": "rate"}}, headers={"retry-after": "30"})
    stub_provider.respond(401, {"error": {"message": "bad key"}})
    stub_provider.respond(503, text="Service Unavailable")
    messages = [ChatMessage(role="user", content="hi")]

    with pytest.raises(RateLimitedError) as rate_limited:
        await adapter.send("sk", messages, now=NOW)
    assert rate_limited.value.reset_at == NOW + timedelta(seconds=30)
    assert rate_limited.value.provider_id == "openai"

    with pytest.raises(ProviderAuthInvalidError):
        await adapter.send("sk", messages, now=NOW)

    with pytest.raises(ProviderError) as provider_error:
        await adapter.send("sk", messages, now=NOW)
    assert provider_error.value.status == 503
    assert provider_error.value.message == "Service Unavailable"


@pytest.mark.asyncio
async def test_send_maps_transport_failures_to_unavailable(stub_provider):
    adapter = OpenAICompatibleAdapter(_provider())
    stub_provider.error = httpx.ConnectTimeout("timed out")

    with pytest.raises(ServiceUnavailableError) as excinfo:
        await adapter.send("sk", [ChatMessage(role="user", content="hi")])

    assert "timed out" in excinfo.value.message


@pytest.mark.asyncio
async def test_send_rejects_non_json_success(stub_provider):
    adapter = OpenAICompatibleAdapter(_provider())
    stub_provider.respond(200, text="<html>ok</html>")

    with pytest.raises(MalformedResponseError):
        await adapter.send("sk", [ChatMessage(role="user", content="hi")])
