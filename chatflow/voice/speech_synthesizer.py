"""
Speech synthesis for voice flows.

`SpeechSynthesizer.speak` renders text with a speech engine and plays it back,
firing on_start followed by exactly one of on_end/on_error. A new call cancels
the utterance in flight, which then ends with on_end. Without an engine the
callback sequence is emulated with a duration estimated from the text length.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import aiohttp

from chatflow.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class SpeechOutcome(Enum):
    """How a speak() call finished."""
    ENDED = "ended"
    ERROR = "error"
    CANCELLED = "cancelled"


class SpeechSynthesisError(Exception):
    """Raised by engines and playback when an utterance cannot be rendered."""
    pass


@dataclass
class SpeechOptions:
    """Voice options taken from the node properties."""
    voice: Optional[str] = None
    rate: float = 1.0
    language: Optional[str] = None


@dataclass
class SpeechAudio:
    """Rendered utterance."""
    audio_data: bytes
    audio_format: str
    duration_ms: float
    text: str
    voice_id: Optional[str] = None
    processing_time_ms: float = 0.0


class SpeechEngine(ABC):
    """Renders text to audio."""

    @abstractmethod
    async def synthesize(self, text: str, options: SpeechOptions) -> SpeechAudio:
        """Return the rendered audio for text."""


class Playback(ABC):
    """Plays rendered audio and returns when playback has finished."""

    @abstractmethod
    async def play(self, audio: SpeechAudio) -> None:
        """Play audio to completion."""


class TimedPlayback(Playback):
    """Holds for the clip duration; used where audio is streamed to a remote client."""

    def __init__(self, speed_factor: float = 1.0):
        self.speed_factor = speed_factor

    async def play(self, audio: SpeechAudio) -> None:
        await asyncio.sleep(max(0.0, audio.duration_ms) / 1000 / self.speed_factor)


class HttpSpeechEngine(SpeechEngine):
    """ElevenLabs-compatible text-to-speech over HTTP."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model_id: Optional[str] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or default_settings
        self.api_key = api_key or self.settings.TTS_API_KEY
        self.base_url = (base_url or self.settings.TTS_API_URL).rstrip("/")
        self.model_id = model_id or self.settings.TTS_MODEL_ID
        self.available = bool(self.api_key)

    async def synthesize(self, text: str, options: SpeechOptions) -> SpeechAudio:
        if not self.available:
            raise SpeechSynthesisError("Speech API key not configured")

        start_time = time.time()
        headers = {
            "xi-api-key": self.api_key,
            "Content-Type": "application/json"
        }
        data = {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.5,
                "speed": options.rate,
            }
        }
        voice_id = options.voice or self.settings.TTS_DEFAULT_VOICE
        url = f"{self.base_url}/text-to-speech/{voice_id}"

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(url, headers=headers, json=data) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        raise SpeechSynthesisError(f"Speech API error {response.status}: {error_text}")
                    audio_data = await response.read()
        except aiohttp.ClientError as e:
            raise SpeechSynthesisError(f"Speech API connection error: {e}") from e

        # MP3 carries no cheap duration header; estimate from text length
        duration_ms = len(text) * self.settings.TTS_MS_PER_CHARACTER / max(options.rate, 0.1)

        return SpeechAudio(
            audio_data=audio_data,
            audio_format="mp3",
            duration_ms=duration_ms,
            text=text,
            voice_id=voice_id,
            processing_time_ms=(time.time() - start_time) * 1000
        )


class SpeechSynthesizer:
    """Speaks one utterance at a time; the latest call wins."""

    def __init__(
        self,
        engine: Optional[SpeechEngine] = None,
        playback: Optional[Playback] = None,
        on_start: Optional[Callable[[], Any]] = None,
        on_end: Optional[Callable[[], Any]] = None,
        on_error: Optional[Callable[[BaseException], Any]] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or default_settings
        self.engine = engine
        self.playback = playback or TimedPlayback()
        self.on_start = on_start
        self.on_end = on_end
        self.on_error = on_error

        self.is_speaking = False
        self.last_error: Optional[str] = None
        self._current: Optional[asyncio.Task] = None
        self.stats = {
            "utterances": 0,
            "completed": 0,
            "errors": 0,
            "cancelled": 0,
            "watchdog_expired": 0,
            "emulated": 0
        }

    @property
    def available(self) -> bool:
        return self.engine is not None

    def estimate_duration_ms(self, text: str) -> float:
        """Emulated utterance length."""
        return max(
            float(self.settings.TTS_MIN_FALLBACK_MS),
            len(text) * float(self.settings.TTS_MS_PER_CHARACTER)
        )

    def watchdog_ms(self, text: str) -> float:
        """Upper bound on playback before an end is forced."""
        return max(
            float(self.settings.TTS_MIN_WATCHDOG_MS),
            len(text) * float(self.settings.TTS_MS_PER_CHARACTER)
        )

    async def speak(self, text: str, options: Optional[SpeechOptions] = None) -> SpeechOutcome:
        """Speak text and wait for the utterance to finish."""
        previous = self._current
        self.cancel()
        if previous is not None:
            # Let the interrupted utterance fire its end before this one starts
            await asyncio.gather(previous, return_exceptions=True)
        self.last_error = None

        if not text or not text.strip():
            logger.warning("No text to speak")
            return SpeechOutcome.ENDED

        options = options or SpeechOptions(rate=self.settings.TTS_RATE)
        self.stats["utterances"] += 1

        task = asyncio.create_task(self._utter(text, options))
        self._current = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            if self._current is task:
                self._current = None

        if task.cancelled():
            self.stats["cancelled"] += 1
            return SpeechOutcome.CANCELLED
        return task.result()

    def cancel(self) -> None:
        """Stop the utterance in flight, if any. Safe to call repeatedly."""
        task = self._current
        self._current = None
        if task is not None and not task.done():
            logger.debug("Cancelling utterance in flight")
            task.cancel()
        self.is_speaking = False

    async def _utter(self, text: str, options: SpeechOptions) -> SpeechOutcome:
        if self.engine is None:
            return await self._emulate(text)

        self.is_speaking = True
        self._fire(self.on_start)
        try:
            try:
                await asyncio.wait_for(
                    self._render_and_play(text, options),
                    timeout=self.watchdog_ms(text) / 1000
                )
            except asyncio.TimeoutError:
                self.stats["watchdog_expired"] += 1
                logger.warning("Speech did not report completion, forcing end")

            self.is_speaking = False
            self.stats["completed"] += 1
            self._fire(self.on_end)
            return SpeechOutcome.ENDED

        except asyncio.CancelledError:
            self.is_speaking = False
            self._fire(self.on_end)
            raise

        except Exception as e:
            self.is_speaking = False
            self.stats["errors"] += 1
            self.last_error = f"{type(e).__name__}: {e}"
            logger.error(f"Speech synthesis error: {e}")
            self._fire(self.on_error, e)
            return SpeechOutcome.ERROR

    async def _emulate(self, text: str) -> SpeechOutcome:
        self.stats["emulated"] += 1
        logger.info("Speech engine unavailable, emulating playback")
        self.is_speaking = True
        self._fire(self.on_start)
        try:
            await asyncio.sleep(self.estimate_duration_ms(text) / 1000)
        except asyncio.CancelledError:
            self.is_speaking = False
            self._fire(self.on_end)
            raise
        self.is_speaking = False
        self.stats["completed"] += 1
        self._fire(self.on_end)
        return SpeechOutcome.ENDED

    async def _render_and_play(self, text: str, options: SpeechOptions) -> None:
        audio = await self.engine.synthesize(text, options)
        await self.playback.play(audio)

    def _fire(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Error in speech callback: {e}")

    def get_stats(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        stats["is_speaking"] = self.is_speaking
        stats["engine_available"] = self.available
        return stats
