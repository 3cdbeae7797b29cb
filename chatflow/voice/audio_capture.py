"""
Audio capture for speech-to-text nodes.

The capturer reads PCM16 mono frames from an AudioSource, keeps a running
recording bounded by a maximum duration and publishes amplitude/frequency
levels for visualization.
"""

import asyncio
import io
import logging
import time
import wave
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Callable, List, Optional

import numpy as np

from chatflow.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

MIC_DENIED_MESSAGE = "Could not access the microphone. Check the device permissions."


class AudioSource(ABC):
    """Recording device yielding PCM16 mono frames."""

    sample_rate: int = 16000

    @abstractmethod
    async def open(self) -> None:
        """Acquire the device; raise PermissionError when access is refused."""

    @abstractmethod
    def frames(self) -> AsyncGenerator[bytes, None]:
        """Iterate captured frames until the source ends."""

    async def close(self) -> None:
        """Release the device."""


class QueueAudioSource(AudioSource):
    """Source fed by the host, e.g. from a websocket audio stream."""

    def __init__(self, sample_rate: int = 16000):
        self.sample_rate = sample_rate
        self._queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue()
        self.opened = False

    async def open(self) -> None:
        self.opened = True

    def feed(self, frame: bytes) -> None:
        self._queue.put_nowait(frame)

    async def close(self) -> None:
        self._queue.put_nowait(None)

    async def frames(self) -> AsyncGenerator[bytes, None]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


class DeniedAudioSource(AudioSource):
    """Source whose device access is always refused."""

    async def open(self) -> None:
        raise PermissionError("microphone access denied")

    async def frames(self) -> AsyncGenerator[bytes, None]:
        return
        yield b""


@dataclass
class AudioLevel:
    """Live level sample for the recording visualizer."""
    rms: float
    peak_frequency_hz: float
    elapsed_seconds: float


@dataclass
class RecordedClip:
    """A finished recording."""
    data: bytes
    sample_rate: int
    duration_seconds: float
    timestamp: float

    def to_wav(self) -> bytes:
        buffer = io.BytesIO()
        with wave.open(buffer, 'wb') as wav_file:
            wav_file.setnchannels(1)
            wav_file.setsampwidth(2)
            wav_file.setframerate(self.sample_rate)
            wav_file.writeframes(self.data)
        return buffer.getvalue()

    def to_array(self) -> np.ndarray:
        """Samples as float32 in [-1, 1]."""
        return np.frombuffer(self.data, dtype=np.int16).astype(np.float32) / 32767.0


def compute_level(frame: bytes, sample_rate: int, fft_size: int, elapsed_seconds: float = 0.0) -> AudioLevel:
    """RMS amplitude and dominant frequency of a PCM16 frame."""
    samples = np.frombuffer(frame[: len(frame) - len(frame) % 2], dtype=np.int16).astype(np.float32) / 32767.0
    if samples.size == 0:
        return AudioLevel(rms=0.0, peak_frequency_hz=0.0, elapsed_seconds=elapsed_seconds)

    rms = float(np.sqrt(np.mean(samples ** 2)))

    window = samples[-fft_size:] if fft_size else samples
    spectrum = np.abs(np.fft.rfft(window * np.hanning(window.size))) if window.size > 1 else np.zeros(1)
    if spectrum.size > 1 and spectrum[1:].max() > 0:
        freqs = np.fft.rfftfreq(window.size, d=1.0 / sample_rate)
        peak = float(freqs[1:][int(np.argmax(spectrum[1:]))])
    else:
        peak = 0.0

    return AudioLevel(rms=rms, peak_frequency_hz=peak, elapsed_seconds=elapsed_seconds)


class AudioCapturer:
    """Records one clip at a time from an audio source."""

    def __init__(
        self,
        source: AudioSource,
        max_duration_seconds: Optional[float] = None,
        on_complete: Optional[Callable[[RecordedClip], Any]] = None,
        on_error: Optional[Callable[[str], Any]] = None,
        on_level: Optional[Callable[[AudioLevel], Any]] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or default_settings
        self.source = source
        self.max_duration_seconds = (
            max_duration_seconds if max_duration_seconds is not None
            else float(self.settings.AUDIO_MAX_RECORDING_SECONDS)
        )
        self.fft_size = self.settings.AUDIO_FFT_SIZE
        self.on_complete = on_complete
        self.on_error = on_error
        self.on_level = on_level

        self.permission_granted = False
        self.must_fall_back_to_text = False
        self.error_message: Optional[str] = None

        self.is_recording = False
        self._chunks: List[bytes] = []
        self._captured_samples = 0
        self._reader: Optional[asyncio.Task] = None
        self._clip_future: Optional[asyncio.Future] = None
        self._level_subscribers: List[asyncio.Queue] = []

    @property
    def sample_rate(self) -> int:
        return getattr(self.source, "sample_rate", self.settings.AUDIO_SAMPLE_RATE)

    @property
    def elapsed_seconds(self) -> float:
        """Recorded audio length of the current recording."""
        return self._captured_samples / float(self.sample_rate)

    async def request_permission(self) -> bool:
        """Open the device once; a refusal sticks for the rest of the run."""
        if self.permission_granted:
            return True
        if self.must_fall_back_to_text:
            return False

        try:
            await self.source.open()
        except PermissionError as e:
            logger.warning(f"Microphone permission denied: {e}")
            self.must_fall_back_to_text = True
            self._report_error(MIC_DENIED_MESSAGE)
            return False

        self.permission_granted = True
        return True

    async def start_recording(self) -> bool:
        """Begin a recording; returns False when the device is unusable."""
        if self.is_recording:
            return True
        if not await self.request_permission():
            return False

        self.error_message = None
        self._chunks = []
        self._captured_samples = 0
        self._clip_future = asyncio.get_running_loop().create_future()
        self.is_recording = True
        self._reader = asyncio.create_task(self._read_frames())
        logger.info("Recording started")
        return True

    async def stop_recording(self) -> Optional[RecordedClip]:
        """Finish the recording; no-op when not recording."""
        if not self.is_recording:
            return None

        reader = self._reader
        self._reader = None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        return self._finish()

    async def wait_for_clip(self) -> Optional[RecordedClip]:
        """Wait until the current recording stops, manually or at the time limit."""
        if self._clip_future is None:
            return None
        return await asyncio.shield(self._clip_future)

    async def cancel(self) -> None:
        """Abort a recording without delivering a clip."""
        if not self.is_recording:
            return
        reader = self._reader
        self._reader = None
        if reader is not None and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        self.is_recording = False
        self._chunks = []
        if self._clip_future is not None and not self._clip_future.done():
            self._clip_future.set_result(None)
        logger.info("Recording cancelled")

    async def levels(self) -> AsyncIterator[AudioLevel]:
        """Live level feed for the current and following recordings."""
        queue: "asyncio.Queue[Optional[AudioLevel]]" = asyncio.Queue()
        self._level_subscribers.append(queue)
        try:
            while True:
                level = await queue.get()
                if level is None:
                    return
                yield level
        finally:
            self._level_subscribers.remove(queue)

    async def close(self) -> None:
        await self.cancel()
        for queue in self._level_subscribers:
            queue.put_nowait(None)
        await self.source.close()

    async def _read_frames(self) -> None:
        frames = self.source.frames()
        try:
            async for frame in frames:
                if not self.is_recording:
                    break
                self._append_frame(frame)
                if self.elapsed_seconds >= self.max_duration_seconds:
                    logger.info(f"Maximum recording duration of {self.max_duration_seconds}s reached")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error reading audio frames: {e}")
            self._report_error("Error while recording audio.")
        finally:
            await frames.aclose()

        if self.is_recording:
            self._reader = None
            self._finish()

    def _append_frame(self, frame: bytes) -> None:
        remaining = int(self.max_duration_seconds * self.sample_rate) - self._captured_samples
        if remaining <= 0:
            return
        # Whole 16-bit samples only
        frame = frame[: min(len(frame) // 2, remaining) * 2]
        if not frame:
            return
        self._chunks.append(frame)
        self._captured_samples += len(frame) // 2

        level = compute_level(frame, self.sample_rate, self.fft_size, self.elapsed_seconds)
        if self.on_level is not None:
            try:
                self.on_level(level)
            except Exception as e:
                logger.error(f"Error in level handler: {e}")
        for queue in self._level_subscribers:
            queue.put_nowait(level)

    def _finish(self) -> RecordedClip:
        self.is_recording = False
        clip = RecordedClip(
            data=b"".join(self._chunks),
            sample_rate=self.sample_rate,
            duration_seconds=self.elapsed_seconds,
            timestamp=time.time()
        )
        self._chunks = []
        logger.info(f"Recording finished: {clip.duration_seconds:.2f}s")

        if self.on_complete is not None:
            try:
                self.on_complete(clip)
            except Exception as e:
                logger.error(f"Error in recording completion handler: {e}")
                self._report_error("Error processing the recorded audio.")

        if self._clip_future is not None and not self._clip_future.done():
            self._clip_future.set_result(clip)
        return clip

    def _report_error(self, message: str) -> None:
        self.error_message = message
        if self.on_error is not None:
            try:
                self.on_error(message)
            except Exception as e:
                logger.error(f"Error in capture error handler: {e}")
