"""Embedding and generation providers.

All LLM + embedding calls route through the provider interfaces below; the
implementation is chosen once at construction time and injected. The LiteLLM
implementations use LiteLLM's built-in retry (``num_retries``) and a bounded
per-call ``timeout``; API key presence is validated before the first call.
"""

from __future__ import annotations

import base64
import os
from abc import ABC, abstractmethod

import litellm

from concierge.db.vectors import check_dimensions
from concierge.errors import ProviderError, ProviderTimeoutError

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True

_IMAGE_PROMPT = (
    "Extract ALL text from this image (menus, prices, policies, hours, contact info).\n"
    "Return plain text; preserve prices exactly as shown."
)


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "google": "GOOGLE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        ProviderError: If the required key is missing from environment.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return

    if not os.getenv(env_var):
        raise ProviderError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


class EmbeddingProvider(ABC):
    """Maps text to a fixed-length vector."""

    dimensions: int

    @abstractmethod
    def embed(self, text: str, timeout: float | None = None) -> list[float]:
        """Return the embedding of *text*.

        Raises:
            ProviderError: On failure after retries.
            ProviderTimeoutError: When the call exceeds its deadline.
            DimensionMismatchError: When the vector length is not ``dimensions``.
        """


class GenerationProvider(ABC):
    """Generates text from a prompt."""

    @abstractmethod
    def generate(self, prompt: str, timeout: float | None = None) -> str:
        """Return the model's answer to *prompt*."""

    def extract_image_text(self, data: bytes, mime_type: str) -> str:
        """Return the text visible in an image. Unsupported unless overridden."""
        raise ProviderError(f"{type(self).__name__} cannot read images.")


class LiteLLMEmbeddingProvider(EmbeddingProvider):
    def __init__(
        self, model: str, dimensions: int, timeout: float = 20.0, num_retries: int = 3
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout
        self.num_retries = num_retries
        self._key_checked = False

    def embed(self, text: str, timeout: float | None = None) -> list[float]:
        self._check_key()
        try:
            response = litellm.embedding(
                model=self.model,
                input=[text],
                num_retries=self.num_retries,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except litellm.exceptions.Timeout as exc:
            raise ProviderTimeoutError(f"Embedding timed out: {exc}") from exc
        except Exception as exc:
            raise ProviderError(f"Embedding failed: {exc}") from exc

        vector = list(response.data[0]["embedding"])
        check_dimensions(vector, self.dimensions)
        return vector

    def _check_key(self) -> None:
        if not self._key_checked:
            validate_api_key(self.model)
            self._key_checked = True


class LiteLLMGenerationProvider(GenerationProvider):
    def __init__(
        self,
        model: str,
        vision_model: str | None = None,
        timeout: float = 30.0,
        max_tokens: int = 500,
        temperature: float = 0.7,
        num_retries: int = 3,
    ) -> None:
        self.model = model
        self.vision_model = vision_model or model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.num_retries = num_retries

    def generate(self, prompt: str, timeout: float | None = None) -> str:
        return self._complete(
            self.model,
            [{"role": "user", "content": prompt}],
            timeout=timeout,
        )

    def extract_image_text(self, data: bytes, mime_type: str) -> str:
        encoded = base64.b64encode(data).decode("ascii")
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": _IMAGE_PROMPT},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
                    },
                ],
            }
        ]
        return self._complete(self.vision_model, messages, max_tokens=4096, temperature=0.0)

    def _complete(
        self,
        model: str,
        messages: list[dict],
        timeout: float | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        validate_api_key(model)
        try:
            response = litellm.completion(
                model=model,
                messages=messages,
                max_tokens=max_tokens or self.max_tokens,
                temperature=self.temperature if temperature is None else temperature,
                num_retries=self.num_retries,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except litellm.exceptions.Timeout as exc:
            raise ProviderTimeoutError(f"Generation timed out: {exc}") from exc
        except Exception as exc:
            raise ProviderError(f"Generation failed: {exc}") from exc
        return response.choices[0].message.content or ""


def build_providers(config) -> tuple[EmbeddingProvider, GenerationProvider]:
    """Construct the LiteLLM providers described by a ``ConciergeConfig``."""
    embedder = LiteLLMEmbeddingProvider(
        model=config.embedding.model,
        dimensions=config.embedding.dimensions,
        timeout=config.embedding.timeout,
    )
    generator = LiteLLMGenerationProvider(
        model=config.generation.model,
        vision_model=config.generation.vision_model,
        timeout=config.generation.timeout,
        max_tokens=config.generation.max_tokens,
        temperature=config.generation.temperature,
    )
    return embedder, generator
