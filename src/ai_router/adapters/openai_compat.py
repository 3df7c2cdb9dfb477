"""Adapter for OpenAI-compatible HTTP APIs.

Covers OpenAI itself and the many vendors exposing the same Chat Completions
and Images endpoints (OpenRouter, Perplexity, Ollama's /v1 shim, ...).
Capabilities are enabled by configuring a model for them: a provider with no
``search`` model does not advertise SEARCH.
"""

import base64
import json
import logging
import time
from typing import Any, AsyncIterator, Dict, FrozenSet, List, Mapping, Optional

import httpx

from ..errors import (
    AdapterTimeoutError,
    MalformedResponseError,
    TransportError,
    UnsupportedCapabilityError,
)
from ..types import (
    Capability,
    ImageGenRequest,
    ProviderResponse,
    TextRequest,
    VisionRequest,
)
from .http import HttpProviderAdapter

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"

DEFAULT_MODELS: Dict[Capability, str] = {
    Capability.TEXT: "gpt-4o-mini",
    Capability.VISION: "gpt-4o",
    Capability.AUDIO: "gpt-4o-audio-preview",
    Capability.IMAGE_GEN: "gpt-image-1",
}

_AUDIO_FORMATS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
}


def _data_url(mime_type: str, payload: bytes) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(payload).decode('ascii')}"


class OpenAICompatibleAdapter(HttpProviderAdapter):
    """OpenAI-compatible adapter implementing the ProviderAdapter contract."""

    def __init__(
        self,
        provider_id: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        models: Optional[Mapping[Capability, str]] = None,
        max_retries: int = 2,
        backoff_base_seconds: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(
            provider_id,
            base_url=base_url or DEFAULT_BASE_URL,
            api_key=api_key,
            max_retries=max_retries,
            backoff_base_seconds=backoff_base_seconds,
            client=client,
        )
        self._models: Dict[Capability, str] = dict(DEFAULT_MODELS if models is None else models)

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        return frozenset(self._models)

    def _model_for(self, capability: Capability) -> str:
        model = self._models.get(capability)
        if model is None:
            raise UnsupportedCapabilityError(
                f"no model configured for {capability.value}",
                provider_id=self.provider_id,
            )
        return model

    # -- payload builders -------------------------------------------------------

    def _chat_messages(self, capability: Capability, request: Any) -> List[Dict[str, Any]]:
        if capability is Capability.TEXT:
            messages = []
            if request.system_prompt:
                messages.append({"role": "system", "content": request.system_prompt})
            messages.append({"role": "user", "content": request.prompt})
            return messages
        if capability is Capability.SEARCH:
            return [{"role": "user", "content": request.query}]
        if capability is Capability.VISION:
            return [{
                "role": "user",
                "content": [
                    {"type": "text", "text": request.prompt},
                    {"type": "image_url", "image_url": {"url": _data_url(request.mime_type, request.image_bytes)}},
                ],
            }]
        if capability is Capability.AUDIO:
            fmt = _AUDIO_FORMATS.get(request.mime_type.lower())
            if fmt is None:
                raise UnsupportedCapabilityError(
                    f"audio format {request.mime_type} not supported",
                    provider_id=self.provider_id,
                )
            content: List[Dict[str, Any]] = []
            if request.prompt:
                content.append({"type": "text", "text": request.prompt})
            content.append({
                "type": "input_audio",
                "input_audio": {"data": base64.b64encode(request.audio_bytes).decode("ascii"), "format": fmt},
            })
            return [{"role": "user", "content": content}]
        raise UnsupportedCapabilityError(
            f"{capability.value} is not a chat capability",
            provider_id=self.provider_id,
        )

    def _chat_payload(self, capability: Capability, request: Any, stream: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._model_for(capability),
            "messages": self._chat_messages(capability, request),
        }
        if isinstance(request, TextRequest):
            if request.max_tokens is not None:
                payload["max_tokens"] = request.max_tokens
            if request.temperature is not None:
                payload["temperature"] = request.temperature
        elif isinstance(request, VisionRequest):
            payload["temperature"] = 0.2
        if stream:
            payload["stream"] = True
        return payload

    # -- response parsing -------------------------------------------------------

    def _parse_chat(self, data: Dict[str, Any], capability: Capability, latency_ms: int) -> ProviderResponse:
        try:
            message = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedResponseError(f"missing choices: {e}", provider_id=self.provider_id) from e

        metadata: Dict[str, Any] = {}
        if data.get("usage"):
            metadata["usage"] = data["usage"]
        if data.get("citations"):
            metadata["citations"] = data["citations"]

        return ProviderResponse(
            provider_id=self.provider_id,
            capability=capability,
            content=message.get("content") or "",
            model=data.get("model") or self._models.get(capability),
            latency_ms=latency_ms,
            metadata=metadata,
        )

    def _parse_image(self, data: Dict[str, Any], latency_ms: int) -> ProviderResponse:
        try:
            item = data["data"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedResponseError(f"missing image data: {e}", provider_id=self.provider_id) from e

        image_bytes = None
        if item.get("b64_json"):
            try:
                image_bytes = base64.b64decode(item["b64_json"])
            except ValueError as e:
                raise MalformedResponseError(f"bad base64 image: {e}", provider_id=self.provider_id) from e
        url = item.get("url")
        if image_bytes is None and not url:
            raise MalformedResponseError("image generation returned no image", provider_id=self.provider_id)

        return ProviderResponse(
            provider_id=self.provider_id,
            capability=Capability.IMAGE_GEN,
            content=item.get("revised_prompt") or "",
            data=image_bytes,
            url=url,
            model=self._models.get(Capability.IMAGE_GEN),
            latency_ms=latency_ms,
        )

    # -- contract ---------------------------------------------------------------

    async def call(self, capability: Capability, request: Any, deadline: float) -> ProviderResponse:
        """Execute one request against the Chat Completions or Images API."""
        start = time.monotonic()

        if capability is Capability.IMAGE_GEN:
            payload: Dict[str, Any] = {
                "model": self._model_for(capability),
                "prompt": request.prompt,
                "n": 1,
                "size": "1024x1024",
            }
            if isinstance(request, ImageGenRequest) and request.reference_image_bytes:
                # Reference images need the multipart /images/edits endpoint.
                raise UnsupportedCapabilityError(
                    "reference images are not supported",
                    provider_id=self.provider_id,
                )
            data = await self._post_json("images/generations", payload, deadline)
            return self._parse_image(data, int((time.monotonic() - start) * 1000))

        payload = self._chat_payload(capability, request)
        data = await self._post_json("chat/completions", payload, deadline)
        return self._parse_chat(data, capability, int((time.monotonic() - start) * 1000))

    def supports_streaming(self, capability: Capability) -> bool:
        return capability in (Capability.TEXT, Capability.SEARCH) and capability in self._models

    async def stream(self, capability: Capability, request: Any, deadline: float) -> AsyncIterator[str]:
        """Stream text deltas from a server-sent-events chat completion."""
        if not self.supports_streaming(capability):
            raise UnsupportedCapabilityError(
                f"streaming not supported for {capability.value}",
                provider_id=self.provider_id,
            )
        payload = self._chat_payload(capability, request, stream=True)
        remaining = self._remaining(deadline)
        if remaining <= 0:
            raise AdapterTimeoutError("deadline exceeded", provider_id=self.provider_id)

        try:
            async with self._client.stream(
                "POST",
                self._url("chat/completions"),
                headers=self._headers(),
                json=payload,
                timeout=remaining,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._raise_for_status(response)
                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    chunk = line[len("data: "):]
                    if chunk.strip() == "[DONE]":
                        return
                    try:
                        parsed = json.loads(chunk)
                    except ValueError:
                        logger.debug("Skipping malformed stream chunk from %s", self.provider_id)
                        continue
                    choices = parsed.get("choices") or [{}]
                    delta = (choices[0].get("delta") or {}).get("content")
                    if delta:
                        yield delta
        except httpx.TimeoutException as e:
            raise AdapterTimeoutError(f"stream timed out: {e}", provider_id=self.provider_id) from e
        except httpx.HTTPError as e:
            raise TransportError(f"stream failed: {e}", provider_id=self.provider_id) from e


__all__ = [
    "OpenAICompatibleAdapter",
    "DEFAULT_MODELS",
    "DEFAULT_BASE_URL",
]
