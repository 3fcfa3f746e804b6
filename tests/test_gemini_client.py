from __future__ import annotations

from dataclasses import replace
from types import SimpleNamespace

import pytest
from google.api_core import exceptions as google_exceptions

from wellness_agent import gemini_client
from wellness_agent.errors import (
    AuthenticationError,
    GenerationServiceError,
    RateLimitError,
    TransientGenerationError,
)
from wellness_agent.gemini_client import GeminiClient


class FakeModel:
    instances = []

    def __init__(self, model_name, system_instruction=None):
        self.model_name = model_name
        self.system_instruction = system_instruction
        self.calls = []
        self.response = SimpleNamespace(text=" Halo Kak ", usage_metadata=SimpleNamespace(total_token_count=42))
        self.error = None
        FakeModel.instances.append(self)

    def generate_content(self, contents, generation_config=None, safety_settings=None):
        self.calls.append({"contents": contents, "generation_config": generation_config})
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def client(monkeypatch, settings):
    FakeModel.instances = []
    configured = {}
    monkeypatch.setattr(gemini_client.genai, "configure", lambda **kwargs: configured.update(kwargs))
    monkeypatch.setattr(gemini_client.genai, "GenerativeModel", FakeModel)
    instance = GeminiClient(replace(settings, gemini_model="models/gemini-2.5-flash"))
    assert configured == {"api_key": "test-key"}
    return instance


HISTORY = [
    {"role": "user", "content": "halo"},
    {"role": "assistant", "content": "Halo Kak"},
    {"role": "user", "content": "  "},
    {"role": "user", "content": "superfood rasa apa?"},
]


def test_generate_maps_roles_and_usage(client):
    result = client.generate("Kamu asisten toko.", HISTORY)

    assert result.text == "Halo Kak"
    assert result.token_usage == 42
    model = FakeModel.instances[0]
    assert model.model_name == "gemini-2.5-flash"
    assert model.system_instruction == "Kamu asisten toko."
    contents = model.calls[0]["contents"]
    assert [content["role"] for content in contents] == ["user", "model", "user"]
    assert contents[-1]["parts"] == ["superfood rasa apa?"]


def test_models_are_reused_per_prompt(client):
    client.generate("prompt A", HISTORY)
    client.generate("prompt A", HISTORY)
    client.generate("prompt B", HISTORY)
    assert len(FakeModel.instances) == 2


def test_empty_history_is_rejected(client):
    with pytest.raises(ValueError):
        client.generate("prompt", [{"role": "user", "content": ""}])


@pytest.mark.parametrize(
    "error, expected",
    [
        (google_exceptions.ResourceExhausted("quota"), RateLimitError),
        (google_exceptions.TooManyRequests("slow down"), RateLimitError),
        (google_exceptions.PermissionDenied("denied"), AuthenticationError),
        (google_exceptions.InvalidArgument("API key not valid"), AuthenticationError),
        (google_exceptions.InvalidArgument("bad contents"), GenerationServiceError),
        (google_exceptions.ServiceUnavailable("down"), TransientGenerationError),
        (google_exceptions.DeadlineExceeded("timeout"), TransientGenerationError),
        (ValueError("response was blocked"), GenerationServiceError),
    ],
)
def test_sdk_errors_are_translated(client, error, expected):
    client.generate("prompt", HISTORY)
    FakeModel.instances[0].error = error

    with pytest.raises(expected) as excinfo:
        client.generate("prompt", HISTORY)
    if expected is GenerationServiceError:
        assert type(excinfo.value) is GenerationServiceError


def test_empty_text_is_an_error(client):
    client.generate("prompt", HISTORY)
    FakeModel.instances[0].response = SimpleNamespace(text="", usage_metadata=None)

    with pytest.raises(GenerationServiceError):
        client.generate("prompt", HISTORY)


def test_missing_api_key(settings):
    with pytest.raises(ValueError):
        GeminiClient(replace(settings, gemini_api_key=""))
