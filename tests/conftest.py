from __future__ import annotations

import json as _json
from http import HTTPStatus
from typing import Any, Callable

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chatrelay.core import encryption
from chatrelay.core.config import ProviderModel
from chatrelay.storage import catalog, database
from chatrelay.storage import models  # noqa: F401
from chatrelay.storage.database import Base

ENDPOINTS = {
    "openai": "https://api.openai.example/v1/chat/completions",
    "anthropic": "https://api.anthropic.example/v1/messages",
    "gemini": "https://gemini.example/v1beta/models/{model}",
}


class FakeResponse:
    def __init__(
        self,
        status_code: int,
        payload: Any = None,
        text: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status_code = status_code
        self._payload = payload
        self._text = text
        self.headers = headers or {}

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload

    @property
    def is_error(self) -> bool:
        return self.status_code >= HTTPStatus.BAD_REQUEST

    @property
    def text(self) -> str:
        if self._text is not None:
            return self._text
        if self._payload is None:
            return ""
        return _json.dumps(self._payload)


def echo_payload(adapter: str, body: dict[str, Any]) -> dict[str, Any]:
    """Build a provider-shaped success body that echoes the last turn of ``body``."""
    if adapter == "gemini":
        text = body["contents"][-1]["parts"][0]["text"]
        return {
            "candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}],
            "usageMetadata": {"totalTokenCount": 7},
        }
    text = body["messages"][-1]["content"]
    if adapter == "anthropic":
        return {
            "content": [{"type": "text", "text": text}],
            "usage": {"input_tokens": 3, "output_tokens": 4},
        }
    return {
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}}],
        "usage": {"total_tokens": 7},
    }


class StubProvider:
    """Stands in for the provider's HTTP endpoint and records every call."""

    def __init__(self, adapter: str = "openai") -> None:
        self.adapter = adapter
        self.calls: list[dict[str, Any]] = []
        self.timeouts: list[Any] = []
        self._queued: list[FakeResponse] = []
        self.error: Exception | None = None

    def respond(
        self,
        status_code: int,
        payload: Any = None,
        *,
        headers: dict[str, str] | None = None,
        text: str | None = None,
    ) -> None:
        self._queued.append(FakeResponse(status_code, payload, text=text, headers=headers))

    def client_class(self) -> type:
        stub = self

        class _DummyAsyncClient:
            def __init__(self, *args, **kwargs) -> None:
                stub.timeouts.append(kwargs.get("timeout"))

            async def __aenter__(self):
                return self

            async def __aexit__(self, exc_type, exc, tb):
                return False

            async def post(self, url, json=None, headers=None, params=None):
                stub.calls.append({"url": url, "json": json, "headers": headers, "params": params})
                if stub.error is not None:
                    raise stub.error
                if stub._queued:
                    return stub._queued.pop(0)
                return FakeResponse(HTTPStatus.OK, echo_payload(stub.adapter, json))

        return _DummyAsyncClient


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    monkeypatch.setenv("KEY_ENCRYPTION_KEY", Fernet.generate_key().decode())
    monkeypatch.setattr(encryption, "_fernet", None)


@pytest.fixture
def db(monkeypatch):
    """Provide an isolated in-memory database shared across threads."""

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    TestingSession = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    Base.metadata.create_all(engine)
    monkeypatch.setattr(database, "SessionLocal", TestingSession)

    yield engine

    engine.dispose()


@pytest.fixture
def seed_provider(db) -> Callable[..., ProviderModel]:
    def _seed(
        code: str = "openai",
        adapter: str = "openai",
        *,
        default_model: str = "test-model",
        enabled: bool = True,
        options: dict[str, Any] | None = None,
    ) -> ProviderModel:
        provider = ProviderModel(
            code=code,
            display_name=code.title(),
            enabled=enabled,
            adapter=adapter,
            endpoint=ENDPOINTS.get(adapter, ENDPOINTS["openai"]),
            default_model=default_model,
            options=options or {},
        )
        catalog.sync_providers([provider])
        return provider

    return _seed


@pytest.fixture
def stub_provider(monkeypatch) -> StubProvider:
    stub = StubProvider()
    monkeypatch.setattr("chatrelay.providers.base.httpx.AsyncClient", stub.client_class())
    return stub
