"""
Text responders used by generation nodes.

A responder resolves every call with text. Provider failures are recorded on
`last_error` and answered with a fallback apology instead of an exception.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

import aiohttp

from .ollama_client import OllamaClient, OllamaConnectionError, OllamaModelError
from chatflow.conversation.variables import interpolate
from chatflow.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

FALLBACK_RESPONSE = (
    "I'm sorry, I can't process your request right now. Please try again later."
)


@dataclass
class GenerationOptions:
    """Per-call generation options taken from the node properties."""
    model: Optional[str] = None
    temperature: Optional[float] = None
    provider: Optional[str] = None
    system_prompt: Optional[str] = None
    max_tokens: Optional[int] = None
    variables: Mapping[str, Any] = field(default_factory=dict)


class TextResponder(ABC):
    """Capability port: prompt in, generated text out."""

    def __init__(self):
        self.last_error: Optional[str] = None

    @abstractmethod
    async def generate(self, prompt: str, options: Optional[GenerationOptions] = None) -> str:
        """Return generated text for the prompt."""

    def _record_error(self, error: BaseException) -> None:
        self.last_error = f"{type(error).__name__}: {error}"


class OllamaTextResponder(TextResponder):
    """Responder backed by a local Ollama server."""

    def __init__(self, client: Optional[OllamaClient] = None, settings: Optional[Settings] = None):
        super().__init__()
        self.settings = settings or default_settings
        self.client = client or OllamaClient(settings=self.settings)
        self.stats = {
            "requests": 0,
            "failures": 0,
            "total_processing_time_ms": 0.0
        }

    async def generate(self, prompt: str, options: Optional[GenerationOptions] = None) -> str:
        options = options or GenerationOptions()
        full_prompt = interpolate(prompt, options.variables)
        start_time = time.time()
        self.stats["requests"] += 1

        generation_options = {
            "temperature": options.temperature if options.temperature is not None
            else self.settings.OLLAMA_TEMPERATURE,
            "num_predict": options.max_tokens or self.settings.OLLAMA_MAX_TOKENS,
        }

        try:
            response_content = ""
            async for chunk in self.client.generate(
                model=options.model or self.settings.OLLAMA_MODEL,
                prompt=full_prompt,
                system=options.system_prompt,
                stream=False,
                keep_alive=self.settings.OLLAMA_KEEP_ALIVE,
                options=generation_options
            ):
                response_content += chunk.get("response", "")

            self.last_error = None
            return response_content.strip() or FALLBACK_RESPONSE

        except (OllamaConnectionError, OllamaModelError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.stats["failures"] += 1
            self._record_error(e)
            logger.error(f"Error generating response: {e}")
            return FALLBACK_RESPONSE

        finally:
            self.stats["total_processing_time_ms"] += (time.time() - start_time) * 1000

    async def health_check(self) -> Dict[str, Any]:
        """Report whether the Ollama server is reachable."""
        healthy = await self.client.health_check()
        return {
            "healthy": healthy,
            "model": self.settings.OLLAMA_MODEL,
            "last_error": self.last_error,
            "stats": dict(self.stats),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    async def close(self):
        await self.client.close()


class CannedTextResponder(TextResponder):
    """Offline responder answering from keyword rules, for flow previews."""

    DEFAULT_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
        (("voice agent",),
         "Hi, I'm the company's voice assistant. I can answer your questions "
         "about our products and services or book an appointment for you."),
        (("greeting", "welcome"),
         "Hello! Welcome to {{business_name}}. I'm the virtual assistant. How can I help you today?"),
        (("product", "service", "offer"),
         "We offer a range of products and services. Would you like details on a specific category?"),
        (("hours", "schedule", "open"),
         "We're open Monday to Friday from 9:00 to 18:00 and Saturdays from 10:00 to 14:00."),
        (("appointment", "book", "reserve"),
         "To book an appointment I need your name, a phone number and your preferred date and time."),
        (("price", "cost", "rate"),
         "Prices depend on the service. Would you like a personalised quote?"),
        (("thanks", "thank you"),
         "It was a pleasure to help. Have a great day!"),
    )

    DEFAULT_RESPONSE = (
        "Thanks for your question. I can tell you about our services, opening hours, "
        "location and bookings. What would you like to know?"
    )

    def __init__(
        self,
        rules: Optional[List[Tuple[Tuple[str, ...], str]]] = None,
        default_response: Optional[str] = None,
        delay_ms: int = 0
    ):
        super().__init__()
        self.rules = list(rules) if rules is not None else list(self.DEFAULT_RULES)
        self.default_response = default_response or self.DEFAULT_RESPONSE
        self.delay_ms = delay_ms

    async def generate(self, prompt: str, options: Optional[GenerationOptions] = None) -> str:
        options = options or GenerationOptions()
        if self.delay_ms:
            await asyncio.sleep(self.delay_ms / 1000)

        variables = dict(options.variables)
        variables.setdefault("business_name", "our company")

        lowered = interpolate(prompt, variables).lower()
        for keywords, response in self.rules:
            if any(keyword in lowered for keyword in keywords):
                return interpolate(response, variables)
        return interpolate(self.default_response, variables)
