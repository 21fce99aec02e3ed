"""Tests for the LiteLLM embedding and generation providers."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import litellm
import pytest

from concierge.config import ConciergeConfig
from concierge.errors import DimensionMismatchError, ProviderError, ProviderTimeoutError
from concierge.providers import (
    LiteLLMEmbeddingProvider,
    LiteLLMGenerationProvider,
    build_providers,
    validate_api_key,
)


@pytest.fixture(autouse=True)
def _keys(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("GEMINI_API_KEY", "test")


def _embedding_response(vector: list[float]):
    response = MagicMock()
    response.data = [{"embedding": vector}]
    return response


def _completion_response(content: str | None):
    response = MagicMock()
    response.choices[0].message.content = content
    return response


def _timeout():
    return litellm.exceptions.Timeout(message="slow", model="m", llm_provider="openai")


# ------------------------------------------------------------------
# validate_api_key
# ------------------------------------------------------------------


def test_validate_api_key_missing(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    with pytest.raises(ProviderError, match="GEMINI_API_KEY"):
        validate_api_key("gemini/text-embedding-004")


def test_validate_api_key_bare_model_is_openai(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ProviderError, match="OPENAI_API_KEY"):
        validate_api_key("gpt-4o-mini")


def test_validate_api_key_local_provider():
    validate_api_key("ollama/nomic-embed-text")


# ------------------------------------------------------------------
# Embedding
# ------------------------------------------------------------------


def test_embed_returns_vector():
    provider = LiteLLMEmbeddingProvider("openai/text-embedding-3-small", dimensions=3)
    with patch("concierge.providers.litellm.embedding", return_value=_embedding_response([0.1, 0.2, 0.3])) as mock:
        assert provider.embed("hello", timeout=5) == [0.1, 0.2, 0.3]
    assert mock.call_args.kwargs["input"] == ["hello"]
    assert mock.call_args.kwargs["timeout"] == 5


def test_embed_dimension_mismatch():
    provider = LiteLLMEmbeddingProvider("openai/text-embedding-3-small", dimensions=4)
    with patch("concierge.providers.litellm.embedding", return_value=_embedding_response([0.1])):
        with pytest.raises(DimensionMismatchError):
            provider.embed("hello")


def test_embed_timeout():
    provider = LiteLLMEmbeddingProvider("openai/text-embedding-3-small", dimensions=3)
    with patch("concierge.providers.litellm.embedding", side_effect=_timeout()):
        with pytest.raises(ProviderTimeoutError):
            provider.embed("hello")


def test_embed_failure():
    provider = LiteLLMEmbeddingProvider("openai/text-embedding-3-small", dimensions=3)
    with patch("concierge.providers.litellm.embedding", side_effect=RuntimeError("boom")):
        with pytest.raises(ProviderError, match="boom"):
            provider.embed("hello")


# ------------------------------------------------------------------
# Generation
# ------------------------------------------------------------------


def test_generate_returns_content():
    provider = LiteLLMGenerationProvider("openai/gpt-4o-mini", max_tokens=200)
    with patch("concierge.providers.litellm.completion", return_value=_completion_response("Hi!")) as mock:
        assert provider.generate("Say hi") == "Hi!"
    kwargs = mock.call_args.kwargs
    assert kwargs["messages"] == [{"role": "user", "content": "Say hi"}]
    assert kwargs["max_tokens"] == 200


def test_generate_empty_content():
    provider = LiteLLMGenerationProvider("openai/gpt-4o-mini")
    with patch("concierge.providers.litellm.completion", return_value=_completion_response(None)):
        assert provider.generate("Say hi") == ""


def test_generate_timeout():
    provider = LiteLLMGenerationProvider("openai/gpt-4o-mini")
    with patch("concierge.providers.litellm.completion", side_effect=_timeout()):
        with pytest.raises(ProviderTimeoutError):
            provider.generate("Say hi")


def test_image_text_uses_vision_model():
    provider = LiteLLMGenerationProvider("openai/gpt-4o-mini", vision_model="openai/gpt-4o")
    with patch("concierge.providers.litellm.completion", return_value=_completion_response("Menu")) as mock:
        assert provider.extract_image_text(b"\x89PNG", "image/png") == "Menu"
    kwargs = mock.call_args.kwargs
    assert kwargs["model"] == "openai/gpt-4o"
    image_part = kwargs["messages"][0]["content"][1]
    assert image_part["image_url"]["url"].startswith("data:image/png;base64,")


def test_build_providers_from_config():
    embedder, generator = build_providers(ConciergeConfig())
    assert embedder.dimensions == 768
    assert generator.model == "gemini/gemini-2.5-flash"
