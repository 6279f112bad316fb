"""Text generation service client."""

from typing import Optional, Protocol, runtime_checkable

import httpx
import structlog

from ..core.config import LLMConfig
from ..core.errors import TransportError


logger = structlog.get_logger()


@runtime_checkable
class TextGenerator(Protocol):
    async def generate(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        ...


class OllamaTextGenerator:
    """Chat completion against a local Ollama server."""

    def __init__(self, config: LLMConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client

    async def generate(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        url = f"{self.config.base_url.rstrip('/')}/api/chat"
        payload = {
            "model": self.config.model,
            "stream": False,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "options": {"num_predict": max_tokens},
        }

        try:
            if self._client is not None:
                response = await self._client.post(
                    url, json=payload, timeout=self.config.timeout_seconds
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        url, json=payload, timeout=self.config.timeout_seconds
                    )
        except httpx.HTTPError as e:
            raise TransportError(f"Text generation request failed: {e}", url=url)

        if response.is_error:
            raise TransportError(
                f"Text generation failed: HTTP {response.status_code}",
                url=url,
                status_code=response.status_code,
            )

        content = response.json().get("message", {}).get("content")
        if not isinstance(content, str):
            raise TransportError("Unexpected response from text generation service", url=url)

        logger.debug("text_generated", model=self.config.model, chars=len(content))
        return content
