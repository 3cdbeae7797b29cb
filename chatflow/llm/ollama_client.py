"""
Ollama client for local LLM inference.
Handles HTTP session management and text generation requests.
"""

import logging
from typing import Any, AsyncGenerator, Dict, List, Optional
import json

import aiohttp

from chatflow.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class OllamaConnectionError(Exception):
    """Raised when connection to Ollama server fails."""
    pass


class OllamaModelError(Exception):
    """Raised when the server rejects a model or generation request."""
    pass


class OllamaClient:
    """Async client for Ollama LLM inference."""

    def __init__(
        self,
        host: Optional[str] = None,
        timeout: Optional[int] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or default_settings
        self.host = (host or self.settings.OLLAMA_HOST).rstrip("/")
        self.timeout = timeout or self.settings.OLLAMA_TIMEOUT
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def connect(self):
        """Initialize HTTP session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )

    async def close(self):
        """Close HTTP session."""
        if self.session and not self.session.closed:
            await self.session.close()

    async def health_check(self) -> bool:
        """Check if Ollama server is running and healthy."""
        try:
            await self.connect()
            async with self.session.get(f"{self.host}/") as response:
                if response.status == 200:
                    text = await response.text()
                    return "Ollama is running" in text
                return False
        except aiohttp.ClientError as e:
            logger.error(f"Health check failed: {e}")
            return False

    async def list_models(self) -> List[Dict[str, Any]]:
        """Get list of available models."""
        try:
            await self.connect()
            async with self.session.get(f"{self.host}/api/tags") as response:
                if response.status == 200:
                    data = await response.json()
                    return data.get("models", [])
                raise OllamaConnectionError(f"Failed to list models: {response.status}")
        except aiohttp.ClientError as e:
            raise OllamaConnectionError(f"Connection error: {e}") from e

    async def generate(
        self,
        model: str,
        prompt: str,
        system: Optional[str] = None,
        stream: bool = False,
        keep_alive: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None
    ) -> AsyncGenerator[Dict[str, Any], None]:
        """Generate text using Ollama model."""
        try:
            await self.connect()

            payload: Dict[str, Any] = {
                "model": model,
                "prompt": prompt,
                "stream": stream
            }

            if system:
                payload["system"] = system
            if keep_alive:
                payload["keep_alive"] = keep_alive
            if options:
                payload["options"] = options

            async with self.session.post(
                f"{self.host}/api/generate",
                json=payload
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise OllamaModelError(f"Generation failed: {response.status} - {error_text}")

                if stream:
                    async for line in response.content:
                        if line:
                            try:
                                yield json.loads(line.decode('utf-8'))
                            except json.JSONDecodeError:
                                continue
                else:
                    yield await response.json()

        except aiohttp.ClientError as e:
            raise OllamaConnectionError(f"Connection error during generation: {e}") from e
