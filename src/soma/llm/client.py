"""Completion backend clients.

The memory core only needs two things from a language model: complete a
text prompt, and describe an image. Both are behind the CompletionClient
Protocol so the service does not depend on a specific provider. Transport
failures surface as UpstreamUnavailable.
"""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING, Any, Protocol

import groq
import httpx
from groq import AsyncGroq

from ..errors import UpstreamUnavailable

if TYPE_CHECKING:
    from ..config import LLMConfig


class CompletionClient(Protocol):
    """Protocol for the external completion backend."""

    async def complete(self, prompt: str, system: str | None = None) -> str:
        """Complete a prompt and return the text response."""
        ...

    async def describe_image(self, prompt: str, image: bytes) -> str:
        """Run a vision prompt against an image and return the text response."""
        ...


def _image_mime_type(image: bytes) -> str:
    if image.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if image.startswith(b"GIF8"):
        return "image/gif"
    if image[:4] == b"RIFF" and image[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


class GroqCompletionClient:
    """CompletionClient implementation that wraps AsyncGroq.

    Example:
        from groq import AsyncGroq
        from soma.llm import GroqCompletionClient

        groq = AsyncGroq(api_key="...")
        llm = GroqCompletionClient(groq, model="llama-3.1-70b-versatile")
        text = await llm.complete("Hello")
    """

    def __init__(
        self,
        client: AsyncGroq,
        model: str = "llama-3.1-70b-versatile",
        vision_model: str = "llama-3.2-11b-vision-preview",
    ) -> None:
        """Initialize the Groq client wrapper.

        Args:
            client: The AsyncGroq client instance to wrap.
            model: The model to use for text completions.
            vision_model: The model to use for image descriptions.
        """
        self._client = client
        self._model = model
        self._vision_model = vision_model

    async def _create(self, model: str, messages: list[dict[str, Any]]) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=messages,
            )
        except groq.APIConnectionError as e:
            raise UpstreamUnavailable(f"Groq unreachable: {e}") from e
        except (groq.InternalServerError, groq.RateLimitError) as e:
            raise UpstreamUnavailable(f"Groq unavailable: {e}") from e

        return response.choices[0].message.content or ""

    async def complete(self, prompt: str, system: str | None = None) -> str:
        """Complete a prompt and return the text response.

        Args:
            prompt: The user prompt to complete.
            system: Optional system prompt to set context.

        Returns:
            The LLM's text response.
        """
        messages: list[dict[str, Any]] = []

        if system:
            messages.append({"role": "system", "content": system})

        messages.append({"role": "user", "content": prompt})

        return await self._create(self._model, messages)

    async def describe_image(self, prompt: str, image: bytes) -> str:
        """Send an image as a data URL alongside the prompt."""
        encoded = base64.b64encode(image).decode("ascii")
        url = f"data:{_image_mime_type(image)};base64,{encoded}"
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": url}},
                ],
            }
        ]
        return await self._create(self._vision_model, messages)

    @property
    def model(self) -> str:
        """Return the model being used."""
        return self._model

    @property
    def vision_model(self) -> str:
        return self._vision_model


class OllamaCompletionClient:
    """CompletionClient for a local Ollama server (`/api/generate`)."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.1:8b",
        vision_model: str = "llava",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._vision_model = vision_model
        self._timeout = timeout
        self._client = client

    async def _generate(self, payload: dict[str, Any]) -> str:
        url = f"{self._base_url}/api/generate"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(f"Ollama timed out after {self._timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise UpstreamUnavailable(f"Ollama returned HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise UpstreamUnavailable(f"Ollama request failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamUnavailable("Ollama returned invalid JSON") from e
        return str(data.get("response") or "").strip()

    async def complete(self, prompt: str, system: str | None = None) -> str:
        payload: dict[str, Any] = {"model": self._model, "prompt": prompt, "stream": False}
        if system:
            payload["system"] = system
        return await self._generate(payload)

    async def describe_image(self, prompt: str, image: bytes) -> str:
        payload = {
            "model": self._vision_model,
            "prompt": prompt,
            "images": [base64.b64encode(image).decode("ascii")],
            "stream": False,
            "options": {"num_predict": 120, "temperature": 0.2},
        }
        return await self._generate(payload)

    @property
    def model(self) -> str:
        return self._model

    @property
    def vision_model(self) -> str:
        return self._vision_model


def create_completion_client(config: LLMConfig) -> CompletionClient:
    """Build the configured completion backend."""
    if config.backend == "groq":
        return GroqCompletionClient(
            AsyncGroq(api_key=config.groq_api_key, timeout=config.timeout, max_retries=0),
            model=config.chat_model,
            vision_model=config.vision_model,
        )
    if config.backend == "ollama":
        return OllamaCompletionClient(
            base_url=config.ollama_url,
            model=config.chat_model,
            vision_model=config.vision_model,
            timeout=config.timeout,
        )
    raise ValueError(f"Unknown completion backend: {config.backend}")
