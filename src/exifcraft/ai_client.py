"""
AI response generators: one strategy per provider, chosen once from the model config.

Each generator turns ``(image bytes, prompt)`` into generated text or raises
GenerationError with a descriptive message. Calls are never retried.
"""

import base64
import os
import time
from typing import Protocol

import httpx
from loguru import logger
from pydantic_ai import Agent, BinaryContent, ModelSettings
from pydantic_ai.exceptions import AgentRunError, ModelHTTPError
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider

from exifcraft.config import ModelConfig
from exifcraft.errors import GenerationError


DEFAULT_OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
DEFAULT_OLLAMA_TEMPERATURE = 0.7
DEFAULT_OLLAMA_NUM_PREDICT = 200
ABNORMAL_FORMAT = "AI API returned abnormal format"

MOCK_RESPONSES = (
    ("title", "Beautiful sunset over mountains"),
    (
        "description",
        "A stunning landscape photograph featuring golden hour light illuminating "
        "snow-capped peaks with dramatic clouds in the background",
    ),
    (
        "keyword",
        "landscape, nature, mountains, sunset, golden hour, photography, outdoor, "
        "scenic, dramatic, beautiful",
    ),
)
MOCK_FALLBACK = "Mock AI response for testing purposes"


class ResponseGenerator(Protocol):
    """Provider strategy used by the batch processor."""

    provider: str

    def generate(self, image_bytes: bytes, prompt: str) -> str: ...

    def close(self) -> None: ...


class OllamaGenerator:
    """Call Ollama's native ``/api/generate`` endpoint."""

    provider = "ollama"

    def __init__(self, config: ModelConfig, *, client: httpx.Client | None = None) -> None:
        self._config = config
        self._client = client or httpx.Client(timeout=config.timeout)

    def _payload(self, image_bytes: bytes, prompt: str) -> dict[str, object]:
        options = self._config.options
        return {
            "model": self._config.model,
            "prompt": prompt,
            "images": [base64.b64encode(image_bytes).decode("ascii")],
            "stream": False,
            "options": {
                "temperature": (
                    DEFAULT_OLLAMA_TEMPERATURE
                    if options.temperature is None
                    else options.temperature
                ),
                "num_predict": options.max_tokens or DEFAULT_OLLAMA_NUM_PREDICT,
            },
        }

    def generate(self, image_bytes: bytes, prompt: str) -> str:
        endpoint = self._config.endpoint
        headers = {"Content-Type": "application/json"}
        if self._config.key:
            headers["Authorization"] = f"Bearer {self._config.key}"

        try:
            response = self._client.post(
                endpoint,
                json=self._payload(image_bytes, prompt),
                headers=headers,
                timeout=self._config.timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            msg = f"Ollama request timed out after {self._config.timeout:g}s ({endpoint})"
            raise GenerationError(msg) from exc
        except httpx.ConnectError as exc:
            msg = f"Unable to connect to Ollama service, please ensure Ollama is running ({endpoint})"
            raise GenerationError(msg) from exc
        except httpx.HTTPStatusError as exc:
            msg = f"Ollama API error: {exc.response.status_code} - {_error_detail(exc.response)}"
            raise GenerationError(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"Failed to call Ollama API: {exc}"
            raise GenerationError(msg) from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise GenerationError(ABNORMAL_FORMAT) from exc

        text = body.get("response") if isinstance(body, dict) else None
        if not isinstance(text, str):
            raise GenerationError(ABNORMAL_FORMAT)
        return text.strip()

    def close(self) -> None:
        self._client.close()


def _error_detail(response: httpx.Response) -> str:
    """Prefer the server's ``error`` field, then the reason phrase."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.reason_phrase or response.text


def _create_agent(config: ModelConfig) -> Agent:
    api_key = config.key or DEFAULT_OPENAI_API_KEY or "api-key-not-set"
    logger.debug("setting_up_llm_agent", url=config.endpoint, model=config.model)
    provider = OpenAIProvider(base_url=config.endpoint, api_key=api_key)
    chat_model = OpenAIChatModel(model_name=config.model, provider=provider)
    return Agent(chat_model, output_type=str, retries=0)


class OpenAIGenerator:
    """Call an OpenAI-compatible chat completion API through a pydantic-ai agent."""

    provider = "openai"

    def __init__(self, config: ModelConfig, *, agent: Agent | None = None) -> None:
        self._config = config
        self._agent = agent or _create_agent(config)

    def _settings(self) -> ModelSettings:
        settings = ModelSettings(timeout=self._config.timeout)
        if self._config.options.temperature is not None:
            settings["temperature"] = self._config.options.temperature
        if self._config.options.max_tokens is not None:
            settings["max_tokens"] = self._config.options.max_tokens
        return settings

    def generate(self, image_bytes: bytes, prompt: str) -> str:
        try:
            result = self._agent.run_sync(
                [
                    prompt,
                    BinaryContent(data=image_bytes, media_type="image/jpeg"),
                ],
                model_settings=self._settings(),
            )
        except ModelHTTPError as exc:
            msg = f"OpenAI API error: {exc.status_code} - {exc.body or exc.message}"
            raise GenerationError(msg) from exc
        except AgentRunError as exc:
            msg = f"OpenAI API returned an unusable response: {exc}"
            raise GenerationError(msg) from exc
        except Exception as exc:  # noqa: BLE001
            msg = f"Failed to call OpenAI API ({self._config.endpoint}): {exc}"
            raise GenerationError(msg) from exc

        if not isinstance(result.output, str):
            raise GenerationError(ABNORMAL_FORMAT)
        return result.output.strip()

    def close(self) -> None:
        return None


class MockGenerator:
    """Deterministic answers keyed on prompt wording, for runs without a model server."""

    provider = "mock"

    def generate(self, image_bytes: bytes, prompt: str) -> str:  # noqa: ARG002
        lowered = prompt.lower()
        for keyword, answer in MOCK_RESPONSES:
            if keyword in lowered:
                return answer
        return MOCK_FALLBACK

    def close(self) -> None:
        return None


def create_generator(config: ModelConfig) -> ResponseGenerator:
    """Return the generator strategy for the configured provider."""
    logger.info(
        "provider_config_resolved",
        provider=config.provider,
        url=config.endpoint,
        model=config.model,
        timeout=config.timeout,
    )
    if config.provider == "ollama":
        return OllamaGenerator(config)
    if config.provider == "openai":
        return OpenAIGenerator(config)
    if config.provider == "mock":
        return MockGenerator()
    msg = f"Unsupported AI model provider: {config.provider}"
    raise GenerationError(msg)


def generate_response(
    generator: ResponseGenerator,
    image_bytes: bytes,
    prompt: str,
) -> str:
    """Run one generation with timing and logging around the provider call."""
    t0 = time.perf_counter()
    text = generator.generate(image_bytes, prompt)
    logger.debug(
        "ai_inference_completed",
        provider=generator.provider,
        seconds=round(time.perf_counter() - t0, 3),
        chars=len(text),
    )
    return text
