"""
Speech-to-text port used when a flow collects voice input.
"""

from abc import ABC, abstractmethod

from .audio_capture import RecordedClip


class TranscriptionError(Exception):
    """Raised when a recorded clip cannot be transcribed."""
    pass


class Transcriber(ABC):
    """Turns a recorded clip into text."""

    @abstractmethod
    async def transcribe(self, clip: RecordedClip) -> str:
        """Return the recognized text; raise TranscriptionError on failure."""
