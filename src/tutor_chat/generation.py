"""Generation client contract, request message schema and provider adapters."""

from __future__ import annotations

import base64
from collections.abc import AsyncIterator, Awaitable, Sequence
from dataclasses import dataclass
import inspect
import logging
from typing import Any, Literal, Protocol, Union

from google import genai
from google.genai import types as genai_types
import httpx
from ollama import AsyncClient as OllamaAsyncClient

from .config import DEFAULT_MODELS
from .exceptions import (
    GenerationError,
    MissingCredentialError,
    UnrecognizedResponseError,
)

LOGGER = logging.getLogger(__name__)

WireRole = Literal["user", "assistant"]


@dataclass(frozen=True)
class InlineData:
    data: str
    mime_type: str


@dataclass(frozen=True)
class MessagePart:
    """Either a text part or a base64 inline-data part."""

    text: str | None = None
    inline_data: InlineData | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.inline_data is not None:
            return {
                "inlineData": {
                    "data": self.inline_data.data,
                    "mimeType": self.inline_data.mime_type,
                }
            }
        return {"text": self.text or ""}


@dataclass(frozen=True)
class ChatMessage:
    role: WireRole
    parts: tuple[MessagePart, ...]

    @classmethod
    def text_only(cls, role: WireRole, text: str) -> ChatMessage:
        return cls(role=role, parts=(MessagePart(text=text),))

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if part.text)

    @property
    def inline_parts(self) -> list[InlineData]:
        return [part.inline_data for part in self.parts if part.inline_data]

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "parts": [part.to_dict() for part in self.parts]}


GenerationResult = Union[str, AsyncIterator[str]]


class GenerationClient(Protocol):
    """External collaborator producing a reply for an ordered message list.

    ``generate`` returns a completed string or an async iterator of text
    chunks whose concatenation is the reply; either may be awaitable.
    Provider failures are raised with the provider's message text.
    """

    def generate(
        self, system_instruction: str, messages: Sequence[ChatMessage]
    ) -> GenerationResult | Awaitable[GenerationResult]: ...


async def iterate_chunks(
    result: GenerationResult | Awaitable[GenerationResult],
) -> AsyncIterator[str]:
    """Normalize any generation result into an async stream of text chunks."""
    if inspect.isawaitable(result):
        result = await result
    if isinstance(result, str):
        if result:
            yield result
        return
    async for chunk in result:
        if isinstance(chunk, str):
            yield chunk


class GeminiGenerationClient:
    """Stream replies from Gemini through the google-genai async API."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODELS["gemini"],
        client: Any | None = None,
    ) -> None:
        self.model = model
        self._api_key = api_key.strip()
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            if not self._api_key:
                raise MissingCredentialError(
                    "API key not valid: no Gemini API key is configured."
                )
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    @staticmethod
    def to_contents(messages: Sequence[ChatMessage]) -> list[dict[str, Any]]:
        """Convert wire messages into google-genai content dicts."""
        contents: list[dict[str, Any]] = []
        for message in messages:
            parts: list[dict[str, Any]] = []
            for part in message.parts:
                if part.inline_data is not None:
                    parts.append(
                        {
                            "inline_data": {
                                "data": base64.b64decode(part.inline_data.data),
                                "mime_type": part.inline_data.mime_type,
                            }
                        }
                    )
                else:
                    parts.append({"text": part.text or ""})
            role = "model" if message.role == "assistant" else "user"
            contents.append({"role": role, "parts": parts})
        return contents

    async def generate(
        self, system_instruction: str, messages: Sequence[ChatMessage]
    ) -> AsyncIterator[str]:
        client = self._get_client()
        config = genai_types.GenerateContentConfig(
            system_instruction=system_instruction or None
        )
        LOGGER.info(
            "generation.request.start",
            extra={
                "event": "generation.request.start",
                "provider": "gemini",
                "model": self.model,
                "messages": len(messages),
            },
        )
        try:
            stream = await client.aio.models.generate_content_stream(
                model=self.model,
                contents=self.to_contents(messages),
                config=config,
            )
            async for chunk in stream:
                text = getattr(chunk, "text", None)
                if isinstance(text, str) and text:
                    yield text
        except GenerationError:
            raise
        except Exception as exc:  # noqa: BLE001 - provider SDK raises many types.
            raise GenerationError(str(exc)) from exc


class OllamaGenerationClient:
    """Stream replies from a local Ollama host."""

    def __init__(
        self,
        host: str,
        model: str,
        timeout: int = 120,
        client: Any | None = None,
    ) -> None:
        self.host = host
        self.model = model
        self._client = client or OllamaAsyncClient(host=host, timeout=timeout)

    @staticmethod
    def to_messages(
        system_instruction: str, messages: Sequence[ChatMessage]
    ) -> list[dict[str, Any]]:
        """Flatten wire messages into Ollama chat messages with base64 images."""
        payload: list[dict[str, Any]] = []
        if system_instruction.strip():
            payload.append({"role": "system", "content": system_instruction.strip()})
        for message in messages:
            entry: dict[str, Any] = {"role": message.role, "content": message.text}
            images = [
                item.data
                for item in message.inline_parts
                if item.mime_type.startswith("image/")
            ]
            if images:
                entry["images"] = images
            payload.append(entry)
        return payload

    @staticmethod
    def _extract_chunk_text(chunk: Any) -> str:
        """Pull streamed content text from an SDK object or a plain dict."""
        message_obj = getattr(chunk, "message", None)
        if message_obj is not None and not isinstance(chunk, dict):
            value = getattr(message_obj, "content", None)
            return value if isinstance(value, str) else ""
        if isinstance(chunk, dict):
            message = chunk.get("message")
            if isinstance(message, dict):
                value = message.get("content")
                return value if isinstance(value, str) else ""
            value = chunk.get("response")
            return value if isinstance(value, str) else ""
        return ""

    def _map_exception(self, exc: Exception) -> GenerationError:
        if isinstance(exc, GenerationError):
            return exc
        if isinstance(
            exc,
            (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout, httpx.NetworkError),
        ):
            return GenerationError(f"Unable to connect to Ollama host {self.host}.")
        return GenerationError(str(exc))

    async def generate(
        self, system_instruction: str, messages: Sequence[ChatMessage]
    ) -> AsyncIterator[str]:
        LOGGER.info(
            "generation.request.start",
            extra={
                "event": "generation.request.start",
                "provider": "ollama",
                "model": self.model,
                "messages": len(messages),
            },
        )
        try:
            stream = await self._client.chat(
                model=self.model,
                messages=self.to_messages(system_instruction, messages),
                stream=True,
            )
            async for chunk in stream:
                text = self._extract_chunk_text(chunk)
                if text:
                    yield text
        except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
            raise self._map_exception(exc) from exc


def parse_completion_payload(payload: Any) -> str:
    """Extract reply text from a completion endpoint's JSON payload.

    Accepted shapes, first match wins:
    1. ``{"excuse": str}``
    2. ``{"output": str}``
    3. ``[{"output": str}, ...]``

    Raises:
        UnrecognizedResponseError: for every other shape
    """
    if isinstance(payload, dict):
        for key in ("excuse", "output"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value
    elif isinstance(payload, list) and payload and isinstance(payload[0], dict):
        value = payload[0].get("output")
        if isinstance(value, str) and value.strip():
            return value
    raise UnrecognizedResponseError(
        "Unrecognized response payload from generation endpoint."
    )


class EndpointGenerationClient:
    """Ask a plain JSON endpoint for one completed answer."""

    def __init__(
        self,
        endpoint: str,
        timeout: int = 120,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self._client = client

    async def _post(self, body: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.endpoint, json=body)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.endpoint, json=body)

    async def generate(
        self, system_instruction: str, messages: Sequence[ChatMessage]
    ) -> str:
        if not self.endpoint:
            raise GenerationError("No generation endpoint is configured.")
        question = messages[-1].text if messages else ""
        LOGGER.info(
            "generation.request.start",
            extra={
                "event": "generation.request.start",
                "provider": "endpoint",
                "messages": len(messages),
            },
        )
        try:
            response = await self._post({"question": question})
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise GenerationError(
                f"Failed to get response from {self.endpoint}: {exc}"
            ) from exc
        except ValueError as exc:
            raise UnrecognizedResponseError(
                "Generation endpoint returned a body that is not JSON."
            ) from exc
        return parse_completion_payload(payload)


def build_generation_client(config: dict[str, Any]) -> GenerationClient:
    """Create the adapter selected by ``[generation].provider``."""
    section = config.get("generation", {})
    provider = str(section.get("provider", "gemini")).strip().lower()
    timeout = int(section.get("timeout", 120))
    model = str(section.get("model") or "").strip() or DEFAULT_MODELS.get(provider, "")

    if provider == "ollama":
        return OllamaGenerationClient(
            host=str(section.get("host", "http://localhost:11434")),
            model=model,
            timeout=timeout,
        )
    if provider == "endpoint":
        return EndpointGenerationClient(
            endpoint=str(section.get("endpoint", "")), timeout=timeout
        )
    return GeminiGenerationClient(api_key=str(section.get("api_key", "")), model=model)
