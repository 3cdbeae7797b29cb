"""
Voice module for the chatflow engine.
Contains speech synthesis, audio capture and the transcription port.
"""

from .speech_synthesizer import (
    HttpSpeechEngine,
    Playback,
    SpeechAudio,
    SpeechEngine,
    SpeechOptions,
    SpeechOutcome,
    SpeechSynthesisError,
    SpeechSynthesizer,
    TimedPlayback
)
from .audio_capture import (
    AudioCapturer,
    AudioLevel,
    AudioSource,
    DeniedAudioSource,
    QueueAudioSource,
    RecordedClip
)
from .transcriber import Transcriber, TranscriptionError

__all__ = [
    'HttpSpeechEngine',
    'Playback',
    'SpeechAudio',
    'SpeechEngine',
    'SpeechOptions',
    'SpeechOutcome',
    'SpeechSynthesisError',
    'SpeechSynthesizer',
    'TimedPlayback',
    'AudioCapturer',
    'AudioLevel',
    'AudioSource',
    'DeniedAudioSource',
    'QueueAudioSource',
    'RecordedClip',
    'Transcriber',
    'TranscriptionError'
]
