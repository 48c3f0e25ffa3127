"""Pytest configuration and fixtures."""
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from sheetllm.config import load_config
from sheetllm.connector.connector_genai import CredentialStore
from sheetllm.tasker.genai_tasker import Session


def openai_body(text: str) -> Dict[str, Any]:
    """A minimal chat.completion response body."""
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 0,
        "model": "test-model",
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": text},
            "finish_reason": "stop",
        }],
    }


class FakeProvider:
    """
    Records every request and answers through ``reply(request, body)``.

    ``reply`` may return a string (wrapped in an OpenAI body), a dict (sent as
    JSON), an httpx.Response, or raise an exception (raised by the transport).
    """

    def __init__(self, reply: Optional[Callable[[httpx.Request, Any], Any]] = None):
        self.requests: List[httpx.Request] = []
        self.reply = reply or (lambda request, body: "ok")

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content) if request.content else None
        result = self.reply(request, body)
        if isinstance(result, httpx.Response):
            return result
        if isinstance(result, dict):
            return httpx.Response(200, json=result)
        return httpx.Response(200, json=openai_body(result))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def bodies(self) -> List[Any]:
        return [json.loads(r.content) for r in self.requests if r.content]


@pytest.fixture
def config():
    """Packaged defaults only (environment ignored)."""
    return load_config(env_prefix=None)


@pytest.fixture
def credentials() -> CredentialStore:
    return CredentialStore.from_payload({
        "providers": [
            {"name": "openai", "bearerToken": "sk-test-0000000000"},
            {"name": "myhost", "bearerToken": "host-token-123456"},
            {"name": "clova", "clientId": "client-id", "clientSecret": "client-secret"},
        ]
    })


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def session(credentials, config, fake_provider) -> Session:
    return Session(credentials=credentials, config=config, transport=fake_provider.transport)


@pytest.fixture
def sample_rows() -> List[Dict[str, Any]]:
    """Sample sheet rows."""
    return [
        {"system": "Answer briefly.", "question": "What is 2+2?", "answer": "4"},
        {"system": "Answer briefly.", "question": "Capital of France?", "answer": "Paris"},
        {"system": "", "question": "Colour of the sky?", "answer": "Blue"},
    ]


@pytest.fixture
def provider_factory() -> Callable[..., FakeProvider]:
    """Builds additional fake providers (e.g. a remote /llm endpoint)."""
    return FakeProvider
