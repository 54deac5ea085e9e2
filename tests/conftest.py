"""Shared fixtures for all tests."""

import base64

import anthropic
import httpx
import pytest
from fastapi.testclient import TestClient
from langchain_core.messages import AIMessage

from halochat.core.config import Settings
from halochat.core.llm_adapter import LLMAdapter
from halochat.core.model_registry import ModelRegistry
from halochat.main import create_app

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
PNG_B64 = base64.b64encode(PNG_BYTES).decode("ascii")


def ai_message(text="Hello there!", input_tokens=1000, output_tokens=2000, stop_reason="end_turn"):
    """AIMessage shaped like a ChatAnthropic reply."""
    usage = None
    if input_tokens is not None:
        usage = {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
        }
    return AIMessage(
        content=text,
        usage_metadata=usage,
        response_metadata={"stop_reason": stop_reason},
    )


def not_found_error(model_id: str) -> anthropic.NotFoundError:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    response = httpx.Response(404, request=request)
    return anthropic.NotFoundError(
        f"model: {model_id}",
        response=response,
        body={"type": "error", "error": {"type": "not_found_error", "message": f"model: {model_id}"}},
    )


def server_error() -> anthropic.InternalServerError:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    response = httpx.Response(500, request=request)
    return anthropic.InternalServerError("overloaded", response=response, body=None)


class FakeChatModel:
    """Stands in for ChatAnthropic; replays scripted outcomes in order.

    The last outcome repeats once the script is exhausted.
    """

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def ainvoke(self, messages):
        self.calls.append(messages)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeAdapter(LLMAdapter):
    """Real fallback logic, scripted chat models."""

    def __init__(self):
        super().__init__("test-key")
        self.fakes: dict[str, FakeChatModel] = {}

    def script(self, model_id: str, *outcomes) -> FakeChatModel:
        self.fakes[model_id] = FakeChatModel(outcomes)
        return self.fakes[model_id]

    def get_chat_model(self, profile):
        if profile.model_id not in self.fakes:
            self.script(profile.model_id, ai_message())
        return self.fakes[profile.model_id]

    @property
    def call_count(self) -> int:
        return sum(len(fake.calls) for fake in self.fakes.values())


def make_settings(**overrides) -> Settings:
    values = {
        "anthropic_api_key": "test-key",
        "rate_limit_max_requests": 1000,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def registry(settings) -> ModelRegistry:
    return ModelRegistry.from_settings(settings)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def make_client(fake_adapter):
    """Factory: TestClient for an app built with the given settings overrides."""
    def _make(**overrides) -> TestClient:
        return TestClient(create_app(make_settings(**overrides), llm_adapter=fake_adapter))
    return _make


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()
