import asyncio
from typing import Any, Dict, List, Optional

import pytest

from chatflow.conversation.interpreter import FlowInterpreter
from chatflow.core.config import Settings
from chatflow.llm.text_responder import GenerationOptions, TextResponder
from chatflow.voice.audio_capture import RecordedClip
from chatflow.voice.speech_synthesizer import (
    Playback,
    SpeechAudio,
    SpeechEngine,
    SpeechOptions,
    SpeechSynthesisError,
    SpeechSynthesizer,
)
from chatflow.voice.transcriber import Transcriber


class FakeTextResponder(TextResponder):
    """Responder returning a fixed reply and recording its calls."""

    def __init__(self, response: str = "Generated reply", error: Optional[Exception] = None):
        super().__init__()
        self.response = response
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, prompt: str, options: Optional[GenerationOptions] = None) -> str:
        self.calls.append({"prompt": prompt, "options": options})
        if self.error is not None:
            raise self.error
        return self.response


class FakeSpeechEngine(SpeechEngine):
    """Engine producing short silent clips, or failing on demand."""

    def __init__(self, duration_ms: float = 10, fail: bool = False):
        self.duration_ms = duration_ms
        self.fail = fail
        self.calls: List[Dict[str, Any]] = []

    async def synthesize(self, text: str, options: SpeechOptions) -> SpeechAudio:
        self.calls.append({"text": text, "options": options})
        if self.fail:
            raise SpeechSynthesisError("engine unavailable")
        return SpeechAudio(
            audio_data=b"\x00" * 32,
            audio_format="pcm",
            duration_ms=self.duration_ms,
            text=text,
            voice_id=options.voice
        )


class HangingPlayback(Playback):
    """Playback that never reports completion."""

    async def play(self, audio: SpeechAudio) -> None:
        await asyncio.Event().wait()


class HangingSpeechEngine(SpeechEngine):
    """Engine whose requests never return."""

    async def synthesize(self, text: str, options: SpeechOptions) -> SpeechAudio:
        await asyncio.Event().wait()


class FakeTranscriber(Transcriber):

    def __init__(self, text: str = "hello", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.clips: List[RecordedClip] = []

    async def transcribe(self, clip: RecordedClip) -> str:
        self.clips.append(clip)
        if self.error is not None:
            raise self.error
        return self.text


@pytest.fixture
def test_settings():
    """Settings with short timings for fast tests."""
    return Settings(
        FLOW_NODE_DELAY_MS=0,
        TTS_MS_PER_CHARACTER=1,
        TTS_MIN_FALLBACK_MS=10,
        TTS_MIN_WATCHDOG_MS=50,
        AUDIO_MAX_RECORDING_SECONDS=1,
        AUDIO_FFT_SIZE=256,
        TTS_API_KEY=None
    )


@pytest.fixture
def responder():
    return FakeTextResponder()


@pytest.fixture
def speech_engine():
    return FakeSpeechEngine()


@pytest.fixture
def synthesizer(speech_engine, test_settings):
    return SpeechSynthesizer(engine=speech_engine, settings=test_settings)


@pytest.fixture
def interpreter(responder, test_settings):
    """Text-only interpreter without pacing delays."""
    return FlowInterpreter(responder, node_delay_ms=0, settings=test_settings)


def build_flow(nodes: List[tuple], edges: List[tuple]) -> Dict[str, Any]:
    """Build a flow document from (id, type, props) and (source, target[, handle]) tuples."""
    return {
        "nodes": [
            {"id": node_id, "type": node_type, "data": props}
            for node_id, node_type, props in nodes
        ],
        "edges": [
            {
                "source": edge[0],
                "target": edge[1],
                **({"sourceHandle": edge[2]} if len(edge) > 2 else {})
            }
            for edge in edges
        ]
    }


@pytest.fixture
def make_flow():
    return build_flow
