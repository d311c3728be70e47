import json
from types import SimpleNamespace

import pytest
from pydantic import BaseModel

from luggage_cache import llm_utils
from luggage_cache.config import ModelConfig
from luggage_cache.errors import ComputeFailure, LLMConfigurationError, LLMRequestError


class StructuredSchema(BaseModel):
    value: str


class FakeGeminiModels:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def generate_content(self, model, contents, config):
        self.calls.append({"model": model, "contents": contents, "config": config})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeGeminiClient:
    def __init__(self, outcomes):
        self.models = FakeGeminiModels(outcomes)


class FakeCompletions:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=outcome))])


class FakeOpenAIClient:
    def __init__(self, outcomes):
        self.chat = SimpleNamespace(completions=FakeCompletions(outcomes))


def gemini_response(parsed=None, text=None):
    return SimpleNamespace(parsed=parsed, text=text)


@pytest.fixture(autouse=True)
def fake_types(monkeypatch):
    class FakeGenerateContentConfig:
        def __init__(self, **kwargs):
            self.kwargs = kwargs

    class FakePart:
        @staticmethod
        def from_bytes(data, mime_type):
            return ("part", data, mime_type)

    monkeypatch.setattr(
        llm_utils,
        "types",
        SimpleNamespace(GenerateContentConfig=FakeGenerateContentConfig, Part=FakePart),
    )


@pytest.fixture(autouse=True)
def sleeps(monkeypatch):
    recorded = []
    monkeypatch.setattr(llm_utils.time, "sleep", recorded.append)
    return recorded


def make_model_config(provider="gemini", max_retries=3):
    config = ModelConfig()
    config.update_from_config({"provider": provider, "name": "test-model", "temperature": 0.2, "max_retries": max_retries})
    return config


def test_gemini_structured_happy_path():
    gemini = FakeGeminiClient([gemini_response(parsed=StructuredSchema(value="ok"))])
    client = llm_utils.LLMClient(make_model_config(), gemini_client=gemini)

    result = client.query_structured("prompt", "system", StructuredSchema, temperature=0.4)

    assert result == StructuredSchema(value="ok")
    call = gemini.models.calls[0]
    assert call["model"] == "models/test-model"
    assert call["contents"] == "prompt"
    assert call["config"].kwargs["temperature"] == 0.4
    assert call["config"].kwargs["system_instruction"] == "system"
    assert call["config"].kwargs["response_schema"] is StructuredSchema


def test_gemini_falls_back_to_text_when_not_parsed():
    gemini = FakeGeminiClient([gemini_response(text=json.dumps({"value": "from text"}))])
    client = llm_utils.LLMClient(make_model_config(), gemini_client=gemini)

    assert client.query_structured("p", "s", StructuredSchema).value == "from text"


def test_gemini_retries_on_transient_error(sleeps):
    gemini = FakeGeminiClient([Exception("boom"), gemini_response(parsed=StructuredSchema(value="recovered"))])
    client = llm_utils.LLMClient(make_model_config(), gemini_client=gemini)

    result = client.query_structured("retry", "system", StructuredSchema)

    assert result.value == "recovered"
    assert len(gemini.models.calls) == 2
    assert sleeps == [1.0]


def test_gives_up_after_max_retries(sleeps):
    last = RuntimeError("still down")
    gemini = FakeGeminiClient([RuntimeError("down"), RuntimeError("down"), last])
    client = llm_utils.LLMClient(make_model_config(max_retries=3), gemini_client=gemini)

    with pytest.raises(LLMRequestError) as excinfo:
        client.query_structured("prompt", "system", StructuredSchema)

    assert isinstance(excinfo.value, ComputeFailure)
    assert excinfo.value.__cause__ is last
    assert sleeps == [1.0, 2.0]


def test_malformed_structured_response_is_retried():
    gemini = FakeGeminiClient([gemini_response(text="not json"), gemini_response(parsed=StructuredSchema(value="ok"))])
    client = llm_utils.LLMClient(make_model_config(), gemini_client=gemini)

    assert client.query_structured("p", "s", StructuredSchema).value == "ok"
    assert len(gemini.models.calls) == 2


def test_gemini_sends_image_parts():
    gemini = FakeGeminiClient([gemini_response(parsed=StructuredSchema(value="photo"))])
    client = llm_utils.LLMClient(make_model_config(), gemini_client=gemini)

    client.query_structured("what is this", "s", StructuredSchema, image=llm_utils.ImageInput(b"\x89PNG", "image/png"))

    assert gemini.models.calls[0]["contents"] == [("part", b"\x89PNG", "image/png"), "what is this"]


def test_query_text_returns_plain_text():
    gemini = FakeGeminiClient([gemini_response(text="free form")])
    client = llm_utils.LLMClient(make_model_config(), gemini_client=gemini)

    assert client.query_text("p", "s") == "free form"
    assert gemini.models.calls[0]["config"].kwargs["response_schema"] is None


def test_openai_structured_uses_json_response_format():
    openai_client = FakeOpenAIClient([json.dumps({"value": "openai"})])
    client = llm_utils.LLMClient(make_model_config(provider="openai"), openai_client=openai_client)

    result = client.query_structured("prompt", "system", StructuredSchema)

    assert result.value == "openai"
    call = openai_client.chat.completions.calls[0]
    assert call["model"] == "test-model"
    assert call["response_format"] == {"type": "json_object"}
    assert call["messages"][0] == {"role": "system", "content": "system"}
    assert call["temperature"] == 0.2


def test_openai_sends_image_as_data_url():
    openai_client = FakeOpenAIClient([json.dumps({"value": "seen"})])
    client = llm_utils.LLMClient(make_model_config(provider="openai"), openai_client=openai_client)

    client.query_structured("describe", "system", StructuredSchema, image=llm_utils.ImageInput(b"abc", "image/jpeg"))

    content = openai_client.chat.completions.calls[0]["messages"][1]["content"]
    assert content[0] == {"type": "text", "text": "describe"}
    assert content[1]["image_url"]["url"] == "data:image/jpeg;base64,YWJj"


def test_missing_api_key_is_a_configuration_error(monkeypatch, sleeps):
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    client = llm_utils.LLMClient(make_model_config())

    with pytest.raises(LLMConfigurationError):
        client.query_text("p", "s")
    assert sleeps == []


def test_unknown_provider_is_rejected():
    client = llm_utils.LLMClient(make_model_config(provider="carrier-pigeon"))

    with pytest.raises(LLMConfigurationError):
        client.query_text("p", "s")


@pytest.mark.parametrize("attempt,expected", [(0, 1.0), (1, 2.0), (3, 8.0), (4, 10.0), (10, 10.0)])
def test_backoff_is_capped(attempt, expected):
    assert llm_utils.backoff_delay(attempt) == expected
