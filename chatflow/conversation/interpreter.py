"""
Flow interpreter: drives a conversation through a FlowGraph node by node.

The run loop executes in an internal task. Caller-facing coroutines such as
`start` and `submit_user_input` return once the run suspends for input or
terminates. Capability calls (text generation, speech synthesis, recording)
are awaited inline, so only one node is ever in flight.
"""

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Dict, Optional, Union

from .context import ExecutionContext
from .graph import (
    FlowGraph,
    FlowLoader,
    GraphError,
    Node,
    NodeType,
    choice_options,
    condition_branches,
)
from .transcript import Sender, Transcript
from .variables import VariableStore
from chatflow.core.config import Settings, settings as default_settings
from chatflow.llm.text_responder import GenerationOptions, TextResponder
from chatflow.voice.audio_capture import MIC_DENIED_MESSAGE, AudioCapturer
from chatflow.voice.speech_synthesizer import SpeechOptions, SpeechOutcome, SpeechSynthesizer
from chatflow.voice.transcriber import Transcriber

logger = logging.getLogger(__name__)

NO_CONNECTION_MESSAGE = "End of flow: this node has no outgoing connection."
PROCESSING_MESSAGE = "Thinking..."
GENERATION_FAILED_MESSAGE = "Sorry, I couldn't generate a response. Let's continue."
SPEECH_FAILED_MESSAGE = "Audio playback failed. Continuing without voice."
TRANSCRIPTION_FAILED_MESSAGE = "Could not understand the recording. Please type your answer instead."
NO_SPEECH_TEXT = "No text to synthesize."


class InterpreterState(Enum):
    """Lifecycle of a run as seen by the caller."""
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_INPUT = "awaiting_input"
    TERMINATED = "terminated"
    STALLED = "stalled"


class InternalConsistencyError(Exception):
    """Raised when the current node id does not resolve to a node of the graph."""
    pass


class FlowInterpreter:
    """Executes one conversation flow at a time."""

    def __init__(
        self,
        text_responder: TextResponder,
        speech_synthesizer: Optional[SpeechSynthesizer] = None,
        audio_capturer: Optional[AudioCapturer] = None,
        transcriber: Optional[Transcriber] = None,
        *,
        voice_enabled: Optional[bool] = None,
        tts_enabled: Optional[bool] = None,
        node_delay_ms: Optional[int] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or default_settings
        self.text_responder = text_responder
        self.speech_synthesizer = speech_synthesizer
        self.audio_capturer = audio_capturer
        self.transcriber = transcriber

        self.voice_enabled = (
            voice_enabled if voice_enabled is not None else self.settings.FLOW_VOICE_ENABLED
        )
        self.tts_enabled = tts_enabled if tts_enabled is not None else self.settings.TTS_ENABLED
        self.node_delay_ms = (
            node_delay_ms if node_delay_ms is not None else self.settings.FLOW_NODE_DELAY_MS
        )

        self.transcript = Transcript()
        self.graph: Optional[FlowGraph] = None
        self.run_id: Optional[str] = None
        self.state = InterpreterState.IDLE

        self.awaiting_text_input = False
        self.awaiting_voice_input = False
        self.awaiting_choice = False
        self.current_prompt: Optional[str] = None

        self._context = ExecutionContext()
        self._start_node_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._responses: Dict[str, str] = {}
        self._mic_denial_reported = False

    # Observable state

    @property
    def context(self) -> ExecutionContext:
        return self._context

    @property
    def current_node_id(self) -> Optional[str]:
        return self._context.current_node_id

    @property
    def variables(self) -> VariableStore:
        return self._context.variables

    @property
    def is_processing(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_suspended(self) -> bool:
        return self.awaiting_text_input or self.awaiting_voice_input or self.awaiting_choice

    # Caller-facing operations

    async def start(self, graph: Union[FlowGraph, Dict[str, Any]]) -> None:
        """Start a run at the Start node of graph."""
        if not isinstance(graph, FlowGraph):
            graph = FlowLoader.load_flow_from_dict(graph)

        start_node = graph.find_start_node()
        if start_node is None:
            raise GraphError("no start node")

        await self._cancel_in_flight()
        self.graph = graph
        self._start_node_id = start_node.id
        self._seed()
        logger.info(
            f"Starting flow run at node '{start_node.id}' ({len(graph)} nodes)",
            extra={"run_id": self.run_id}
        )
        await self._drive()

    def advance(self, from_node_id: str, handle: Optional[str] = None) -> Optional[str]:
        """Move to the target of the first matching outgoing edge of from_node_id."""
        graph = self._require_graph()
        if from_node_id not in graph:
            raise GraphError(f"cannot advance from unknown node '{from_node_id}'")

        edges = graph.outgoing(from_node_id)
        if handle is not None:
            edges = [edge for edge in edges if edge.handle == handle or edge.handle is None]

        if not edges:
            logger.info(
                f"Node '{from_node_id}' has no outgoing edge for handle {handle!r}, ending run",
                extra={"run_id": self.run_id, "node_id": from_node_id}
            )
            self.transcript.append(NO_CONNECTION_MESSAGE, Sender.SYSTEM)
            self._context = self._context.terminated()
            return None

        target = edges[0].target
        self._context = self._context.move_to(target)
        return target

    async def submit_user_input(self, text: str) -> bool:
        """Deliver user text to the suspended node; ignored unless input is awaited."""
        if not (self.awaiting_text_input or self.awaiting_voice_input):
            logger.debug("Ignoring user input, no node is waiting for it")
            return False
        if text is None or not text.strip():
            return False

        node = self._current_node()
        text = text.strip()

        if node.type in (NodeType.BUTTONS, NodeType.LIST):
            handle = self._match_choice(node, text)
            self.transcript.append(text, Sender.USER)
            self._clear_awaiting()
            self.advance(node.id, handle)
        else:
            variable_name = node.get("variableName")
            if variable_name:
                self._context = self._context.with_variable(variable_name, text)
            self.transcript.append(text, Sender.USER)
            self._clear_awaiting()
            self.advance(node.id)

        await self._drive()
        return True

    async def report_button_choice(self, handle: str) -> bool:
        """Deliver the option chosen on a suspended Buttons/List node."""
        if not self.awaiting_choice:
            logger.debug(f"Ignoring choice '{handle}', no choice is pending")
            return False

        node = self._current_node()
        label = handle
        for option_label, _value, option_handle in choice_options(node):
            if option_handle == handle:
                label = option_label
                break

        self.transcript.append(label, Sender.USER)
        self._clear_awaiting()
        self.advance(node.id, handle)
        await self._drive()
        return True

    async def capture_voice_input(self) -> bool:
        """Record, transcribe and submit one voice answer."""
        if not self.awaiting_voice_input:
            return False
        if self.audio_capturer is None or self.transcriber is None:
            self._fall_back_to_text()
            return False

        if not await self.audio_capturer.start_recording():
            self._report_microphone_denied()
            self._fall_back_to_text()
            return False

        clip = await self.audio_capturer.wait_for_clip()
        if clip is None or not self.awaiting_voice_input:
            return False

        try:
            text = await self.transcriber.transcribe(clip)
        except Exception as e:
            logger.error(f"Transcription failed: {e}", extra={"run_id": self.run_id})
            text = ""

        if not text or not text.strip():
            self.transcript.append(TRANSCRIPTION_FAILED_MESSAGE, Sender.SYSTEM)
            self._fall_back_to_text()
            return False

        return await self.submit_user_input(text)

    async def stop_voice_capture(self) -> None:
        if self.audio_capturer is not None:
            await self.audio_capturer.stop_recording()

    async def reset(self) -> None:
        """
        Discard the current run and rewind to the Start node.

        In-flight speech and recording are cancelled. The fresh run stays IDLE
        with an empty transcript until `resume` is called.
        """
        self._require_graph()
        await self._cancel_in_flight()
        logger.info("Resetting flow run", extra={"run_id": self.run_id})
        self._seed()

    async def resume(self) -> bool:
        """Run a reset flow from its current node; False when there is nothing to run."""
        self._require_graph()
        if self.state != InterpreterState.IDLE or self.is_processing or self.is_suspended:
            return False
        if self._context.is_terminated:
            return False
        await self._drive()
        return True

    async def close(self) -> None:
        """Cancel in-flight work without restarting."""
        await self._cancel_in_flight()
        self._clear_awaiting()
        if self.state in (InterpreterState.RUNNING, InterpreterState.AWAITING_INPUT):
            self.state = InterpreterState.IDLE

    # Run loop

    def _seed(self) -> None:
        self.transcript.clear()
        self._clear_awaiting()
        self._responses = {}
        self._mic_denial_reported = False
        self._context = ExecutionContext.seeded(self._start_node_id)
        self.run_id = uuid.uuid4().hex[:12]
        self.state = InterpreterState.IDLE

    async def _drive(self) -> None:
        task = asyncio.create_task(self._run_loop())
        self._task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._task is task:
                self._task = None

        if not task.cancelled():
            # Fatal errors surface to the caller
            task.result()

    async def _run_loop(self) -> None:
        self.state = InterpreterState.RUNNING
        graph = self._require_graph()

        while not self._context.is_terminated and not self.is_suspended:
            node_id = self._context.current_node_id
            node = graph.get_node(node_id)
            if node is None:
                raise InternalConsistencyError(f"current node '{node_id}' is not in the graph")

            self._context, first_visit = self._context.mark_processed(node_id)
            if not first_visit:
                logger.warning(
                    f"Node '{node_id}' was already processed in this run, stopping",
                    extra={"run_id": self.run_id, "node_id": node_id}
                )
                self.state = InterpreterState.STALLED
                return

            await self._pace(node)
            logger.debug(
                f"Executing {node.type.value} node '{node_id}'",
                extra={"run_id": self.run_id, "node_id": node_id}
            )
            await self._execute_node(node)

        if self._context.is_terminated:
            self.state = InterpreterState.TERMINATED
            logger.info("Flow run finished", extra={"run_id": self.run_id})
        else:
            self.state = InterpreterState.AWAITING_INPUT

    async def _pace(self, node: Node) -> None:
        delay = node.get("delay")
        try:
            delay_ms = float(delay) if delay is not None else float(self.node_delay_ms)
        except (TypeError, ValueError):
            logger.warning(f"Invalid delay {delay!r} on node '{node.id}'")
            delay_ms = float(self.node_delay_ms)
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)

    async def _execute_node(self, node: Node) -> None:
        if node.type == NodeType.START:
            self.advance(node.id)
        elif node.type == NodeType.MESSAGE:
            self._handle_message(node)
        elif node.type == NodeType.INPUT:
            self._handle_input(node)
        elif node.type == NodeType.CONDITION:
            self._handle_condition(node)
        elif node.type == NodeType.TEXT_GENERATION:
            await self._handle_text_generation(node)
        elif node.type == NodeType.COMBINED_VOICE_AGENT:
            await self._handle_voice_agent(node)
        elif node.type == NodeType.TEXT_TO_SPEECH:
            await self._handle_text_to_speech(node)
        elif node.type == NodeType.SPEECH_TO_TEXT:
            await self._handle_speech_to_text(node)
        elif node.type in (NodeType.BUTTONS, NodeType.LIST):
            self._handle_choice(node)
        elif node.type == NodeType.END:
            self._handle_end(node)
        elif node.type == NodeType.ROUTER:
            self._append_system(node.get("message", "Switching to another flow..."))
            self.advance(node.id)
        elif node.type == NodeType.ACTION:
            self._append_system(f"[Action] Running {node.get('actionType', 'action')}...")
            self.advance(node.id)
        else:
            logger.warning(
                f"Unknown node type '{node.raw_type}' on node '{node.id}', passing through",
                extra={"run_id": self.run_id, "node_id": node.id}
            )
            self.advance(node.id)

    # Node handlers

    def _handle_message(self, node: Node) -> None:
        self._append_agent(node.get("message", "Message not configured"))
        if node.get("waitForResponse", False):
            self.awaiting_text_input = True
        else:
            self.advance(node.id)

    def _handle_input(self, node: Node) -> None:
        question = node.get("question", "What would you like to ask?")
        self._append_agent(question)
        self.current_prompt = self.variables.render(question)
        self.awaiting_text_input = True

    def _handle_condition(self, node: Node) -> None:
        """Branch on the first declared option; the expression itself is not evaluated."""
        condition = node.get("condition", "")
        label, handle = condition_branches(node)[0]
        self._append_system(f"[Condition] {condition} -> {label}")
        self.advance(node.id, handle)

    async def _handle_text_generation(self, node: Node) -> None:
        response = await self._generate(node)
        if response is not None:
            successors = self._require_graph().successors(node.id)
            speaks_next = len(successors) == 1 and successors[0].type == NodeType.TEXT_TO_SPEECH
            if not speaks_next:
                self.transcript.append(response, Sender.AGENT)
        self.advance(node.id)

    async def _handle_voice_agent(self, node: Node) -> None:
        response = await self._generate(node)
        if response is not None:
            if self.voice_enabled and self.tts_enabled and self.speech_synthesizer is not None:
                voice_only = node.get("responseMode") == "voice_only"
                self.transcript.append(
                    "" if voice_only else response,
                    Sender.AGENT,
                    has_audio=True,
                    voice_label=node.get("voice")
                )
                await self._speak(response, node)
            else:
                self.transcript.append(response, Sender.AGENT)
        self.advance(node.id)

    async def _handle_text_to_speech(self, node: Node) -> None:
        text = self._resolve_speech_text(node)
        if self.tts_enabled and self.speech_synthesizer is not None:
            self.transcript.append(text, Sender.AGENT, has_audio=True, voice_label=node.get("voice"))
            await self._speak(text, node)
        else:
            self.transcript.append(text, Sender.AGENT)
        self.advance(node.id)

    async def _handle_speech_to_text(self, node: Node) -> None:
        prompt = node.get("prompt", "Please say your answer.")
        self._append_agent(prompt)
        self.current_prompt = self.variables.render(prompt)

        if await self._voice_input_available():
            self.awaiting_voice_input = True
        else:
            self.awaiting_text_input = True

    def _handle_choice(self, node: Node) -> None:
        options = choice_options(node)
        self._append_agent(
            node.get("message", ""),
            options=tuple(label for label, _value, _handle in options)
        )
        if node.get("waitForResponse", True):
            self.awaiting_choice = True
            self.awaiting_text_input = True
        else:
            self.advance(node.id, "handle-0")

    def _handle_end(self, node: Node) -> None:
        self._append_agent(node.get("message", "End of conversation"))
        self._context = self._context.terminated()

    # Capabilities

    async def _generate(self, node: Node) -> Optional[str]:
        """Call the text responder; None when it failed and an apology was shown."""
        self.transcript.append(PROCESSING_MESSAGE, Sender.SYSTEM, transient=True)
        options = GenerationOptions(
            model=node.get("model"),
            temperature=_as_float(node.get("temperature")),
            provider=node.get("provider"),
            system_prompt=node.get("systemPrompt"),
            max_tokens=node.get("maxTokens"),
            variables=self.variables.as_dict()
        )

        try:
            response = await self.text_responder.generate(node.get("prompt", ""), options)
        except Exception as e:
            logger.error(
                f"Text generation failed on node '{node.id}': {e}",
                extra={"run_id": self.run_id, "node_id": node.id}
            )
            self.transcript.remove_transient()
            self.transcript.append(GENERATION_FAILED_MESSAGE, Sender.SYSTEM)
            return None

        self.transcript.remove_transient()
        response = response or ""
        self._responses[node.id] = response

        variable_name = node.get("responseVariableName")
        if variable_name:
            self._context = self._context.with_variable(variable_name, response)
        return response

    async def _speak(self, text: str, node: Node) -> SpeechOutcome:
        options = SpeechOptions(
            voice=node.get("voice") or self.settings.TTS_DEFAULT_VOICE,
            rate=_as_float(node.get("speed")) or self.settings.TTS_RATE,
            language=node.get("language")
        )
        try:
            outcome = await self.speech_synthesizer.speak(text, options)
        except Exception as e:
            logger.error(
                f"Speech synthesizer raised on node '{node.id}': {e}",
                extra={"run_id": self.run_id, "node_id": node.id}
            )
            outcome = SpeechOutcome.ERROR

        if outcome == SpeechOutcome.ERROR:
            logger.warning(
                f"Speech synthesis failed on node '{node.id}', continuing",
                extra={"run_id": self.run_id, "node_id": node.id}
            )
            self.transcript.append(SPEECH_FAILED_MESSAGE, Sender.SYSTEM)
        return outcome

    def _resolve_speech_text(self, node: Node) -> str:
        graph = self._require_graph()
        incoming = graph.incoming(node.id)
        if incoming:
            source = graph.get_node(incoming[0].source)
            if source is not None and source.type == NodeType.TEXT_GENERATION:
                variable_name = source.get("responseVariableName")
                if variable_name and variable_name in self.variables:
                    return str(self.variables.get(variable_name))
                if source.id in self._responses:
                    return self._responses[source.id]

        variable_name = node.get("textVariableName")
        if variable_name and variable_name in self.variables:
            return str(self.variables.get(variable_name))

        return self.variables.render(node.get("text")) or NO_SPEECH_TEXT

    async def _voice_input_available(self) -> bool:
        if not self.voice_enabled or self.audio_capturer is None or self.transcriber is None:
            return False
        if await self.audio_capturer.request_permission():
            return True
        self._report_microphone_denied()
        return False

    def _report_microphone_denied(self) -> None:
        if self._mic_denial_reported:
            return
        self._mic_denial_reported = True
        message = MIC_DENIED_MESSAGE
        if self.audio_capturer is not None and self.audio_capturer.error_message:
            message = self.audio_capturer.error_message
        self.transcript.append(message, Sender.SYSTEM)

    def _fall_back_to_text(self) -> None:
        self.awaiting_voice_input = False
        self.awaiting_text_input = True

    # Helpers

    def _match_choice(self, node: Node, text: str) -> str:
        lowered = text.lower()
        for label, value, handle in choice_options(node):
            if handle is not None and lowered in (label.lower(), value.lower()):
                return handle
        return "handle-0"

    def _append_agent(self, content: str, **kwargs: Any) -> None:
        self.transcript.append(content, Sender.AGENT, self.variables.as_dict(), **kwargs)

    def _append_system(self, content: str) -> None:
        self.transcript.append(content, Sender.SYSTEM, self.variables.as_dict())

    def _clear_awaiting(self) -> None:
        self.awaiting_text_input = False
        self.awaiting_voice_input = False
        self.awaiting_choice = False
        self.current_prompt = None

    def _current_node(self) -> Node:
        node_id = self._context.current_node_id
        node = self._require_graph().get_node(node_id) if node_id is not None else None
        if node is None:
            raise InternalConsistencyError(f"current node '{node_id}' is not in the graph")
        return node

    def _require_graph(self) -> FlowGraph:
        if self.graph is None:
            raise GraphError("no flow has been started")
        return self.graph

    async def _cancel_in_flight(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self.speech_synthesizer is not None:
            self.speech_synthesizer.cancel()
        if self.audio_capturer is not None:
            await self.audio_capturer.cancel()


def _as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric value {value!r}")
        return None
