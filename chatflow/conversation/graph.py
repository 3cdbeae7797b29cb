"""
Graph model for conversation flows.
Nodes carry a closed type tag normalized from the authoring aliases at load time.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Raised when a flow graph is malformed or cannot be started."""
    pass


class NodeType(Enum):
    """Canonical node types understood by the interpreter."""
    START = "start"
    MESSAGE = "message"
    INPUT = "input"
    CONDITION = "condition"
    TEXT_GENERATION = "text_generation"
    COMBINED_VOICE_AGENT = "combined_voice_agent"
    TEXT_TO_SPEECH = "text_to_speech"
    SPEECH_TO_TEXT = "speech_to_text"
    BUTTONS = "buttons"
    LIST = "list"
    END = "end"
    ROUTER = "router"
    ACTION = "action"
    UNKNOWN = "unknown"


NODE_TYPE_ALIASES: Dict[str, NodeType] = {
    'startNode': NodeType.START,
    'start': NodeType.START,
    'messageNode': NodeType.MESSAGE,
    'message': NodeType.MESSAGE,
    'text': NodeType.MESSAGE,
    'inputNode': NodeType.INPUT,
    'input': NodeType.INPUT,
    'capture': NodeType.INPUT,
    'conditionNode': NodeType.CONDITION,
    'conditional': NodeType.CONDITION,
    'condition': NodeType.CONDITION,
    'aiNode': NodeType.TEXT_GENERATION,
    'ai': NodeType.TEXT_GENERATION,
    'ai_response': NodeType.TEXT_GENERATION,
    'aiVoiceAgentNode': NodeType.COMBINED_VOICE_AGENT,
    'ai-voice-agent': NodeType.COMBINED_VOICE_AGENT,
    'ai_voice_agent': NodeType.COMBINED_VOICE_AGENT,
    'agenteVozIA': NodeType.COMBINED_VOICE_AGENT,
    'AgenteVozIA': NodeType.COMBINED_VOICE_AGENT,
    'agente-voz-ia': NodeType.COMBINED_VOICE_AGENT,
    'tts': NodeType.TEXT_TO_SPEECH,
    'ttsNode': NodeType.TEXT_TO_SPEECH,
    'text-to-speech': NodeType.TEXT_TO_SPEECH,
    'stt': NodeType.SPEECH_TO_TEXT,
    'sttNode': NodeType.SPEECH_TO_TEXT,
    'speech-to-text': NodeType.SPEECH_TO_TEXT,
    'buttonsNode': NodeType.BUTTONS,
    'buttons': NodeType.BUTTONS,
    'listNode': NodeType.LIST,
    'list': NodeType.LIST,
    'endNode': NodeType.END,
    'end': NodeType.END,
    'routerNode': NodeType.ROUTER,
    'router': NodeType.ROUTER,
    'actionNode': NodeType.ACTION,
    'action': NodeType.ACTION,
}


def normalize_node_type(raw_type: Optional[str]) -> NodeType:
    """Map an authoring type tag to its canonical NodeType."""
    if not raw_type:
        return NodeType.UNKNOWN

    if raw_type in NODE_TYPE_ALIASES:
        return NODE_TYPE_ALIASES[raw_type]

    # Spelling variants of the voice agent node
    lowered = raw_type.lower()
    if 'voice' in lowered and 'ai' in lowered:
        logger.info(f"Treating node type '{raw_type}' as a combined voice agent")
        return NodeType.COMBINED_VOICE_AGENT

    return NodeType.UNKNOWN


@dataclass(frozen=True)
class Node:
    """A typed node with a free-form property bag."""
    id: str
    type: NodeType
    properties: Mapping[str, Any] = field(default_factory=dict)
    raw_type: Optional[str] = None

    def get(self, key: str, default: Any = None) -> Any:
        """Read a property, treating empty values as missing."""
        value = self.properties.get(key)
        if value is None or value == "":
            return default
        return value


@dataclass(frozen=True)
class Edge:
    """Directed connection between two nodes, optionally tagged with a handle."""
    source: str
    target: str
    handle: Optional[str] = None


LIST_HANDLE_LIMIT = 5


def condition_branches(node: Node) -> List[Tuple[str, str]]:
    """(label, handle) per declared condition option."""
    options = node.get("options") or []
    if not options:
        return [("true", "true"), ("false", "false")]

    branches = []
    for index, option in enumerate(options):
        if isinstance(option, dict):
            label = str(option.get("label") or option.get("value") or "")
            handle = str(option.get("value") or f"handle-{index}")
        else:
            label = handle = str(option)
        branches.append((label, handle))
    return branches


def choice_options(node: Node) -> List[Tuple[str, str, Optional[str]]]:
    """(label, value, handle) per option; list nodes give handles to the first five items."""
    key = "listItems" if node.type == NodeType.LIST else "buttons"
    options = []
    for index, item in enumerate(node.get(key) or []):
        if isinstance(item, dict):
            label = str(item.get("text") or item.get("label") or item.get("value") or "")
            value = str(item.get("value") or label)
        else:
            label = value = str(item)
        if node.type == NodeType.LIST and index >= LIST_HANDLE_LIMIT:
            handle = None
        else:
            handle = f"handle-{index}"
        options.append((label, value, handle))
    return options


def branch_handles(node: Node) -> Optional[Set[str]]:
    """Handles a branching node may be connected on; None for other node types."""
    if node.type == NodeType.CONDITION:
        return {handle for _label, handle in condition_branches(node)}
    if node.type in (NodeType.BUTTONS, NodeType.LIST):
        return {handle for _label, _value, handle in choice_options(node) if handle is not None}
    return None


class FlowGraph:
    """Immutable node/edge description of one conversation flow."""

    def __init__(self, nodes: List[Node], edges: List[Edge]):
        self.nodes: Tuple[Node, ...] = tuple(nodes)
        self.edges: Tuple[Edge, ...] = tuple(edges)
        self._index: Dict[str, Node] = {}

        for node in self.nodes:
            if node.id in self._index:
                raise GraphError(f"duplicate node id: {node.id}")
            self._index[node.id] = node

        self._validate_edges()

    def _validate_edges(self) -> None:
        seen_handles = set()
        for edge in self.edges:
            if edge.source not in self._index:
                raise GraphError(f"edge source '{edge.source}' is not a node")
            if edge.target not in self._index:
                raise GraphError(f"edge target '{edge.target}' is not a node")
            if edge.handle is not None:
                allowed = branch_handles(self._index[edge.source])
                if allowed is not None and edge.handle not in allowed:
                    raise GraphError(
                        f"edge from '{edge.source}' uses handle '{edge.handle}', "
                        f"expected one of {sorted(allowed)}"
                    )
                key = (edge.source, edge.handle)
                if key in seen_handles:
                    raise GraphError(
                        f"node '{edge.source}' has more than one edge on handle '{edge.handle}'"
                    )
                seen_handles.add(key)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._index

    def __len__(self) -> int:
        return len(self.nodes)

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._index.get(node_id)

    def find_start_node(self) -> Optional[Node]:
        """First START node in declaration order."""
        starts = [node for node in self.nodes if node.type == NodeType.START]
        if len(starts) > 1:
            logger.warning(f"Flow has {len(starts)} start nodes, using '{starts[0].id}'")
        return starts[0] if starts else None

    def outgoing(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def successors(self, node_id: str) -> List[Node]:
        """Distinct successor nodes in edge declaration order."""
        result: List[Node] = []
        for edge in self.outgoing(node_id):
            node = self._index[edge.target]
            if node not in result:
                result.append(node)
        return result


class NodeDocument(BaseModel):
    """Serialized node as produced by the authoring surface."""
    id: str = Field(..., min_length=1)
    type: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def accept_data_alias(cls, values: Any) -> Any:
        if isinstance(values, dict) and 'properties' not in values and 'data' in values:
            values = dict(values)
            values['properties'] = values.pop('data') or {}
        return values


class EdgeDocument(BaseModel):
    """Serialized edge; `sourceHandle` is accepted for `handle`."""
    source: str
    target: str
    handle: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def accept_source_handle_alias(cls, values: Any) -> Any:
        if isinstance(values, dict) and 'handle' not in values and 'sourceHandle' in values:
            values = dict(values)
            values['handle'] = values.pop('sourceHandle')
        return values


class GraphDocument(BaseModel):
    """Serializable `{nodes, edges}` flow document."""
    nodes: List[NodeDocument] = Field(default_factory=list)
    edges: List[EdgeDocument] = Field(default_factory=list)


class FlowLoader:
    """Loads flow graphs from documents and files."""

    @staticmethod
    def load_flow_from_dict(flow_data: Dict[str, Any]) -> FlowGraph:
        """Build a FlowGraph from a `{nodes, edges}` document."""
        try:
            document = GraphDocument.model_validate(flow_data)
        except ValidationError as e:
            logger.error(f"Invalid flow document: {e}")
            raise GraphError(f"invalid flow document: {e}") from e

        nodes = [
            Node(
                id=node_doc.id,
                type=normalize_node_type(node_doc.type),
                properties=MappingProxyType(dict(node_doc.properties)),
                raw_type=node_doc.type,
            )
            for node_doc in document.nodes
        ]
        edges = [
            Edge(source=edge_doc.source, target=edge_doc.target, handle=edge_doc.handle)
            for edge_doc in document.edges
        ]

        graph = FlowGraph(nodes, edges)
        logger.debug(f"Loaded flow with {len(nodes)} nodes and {len(edges)} edges")
        return graph

    @staticmethod
    def load_flow_from_file(file_path: Union[str, Path]) -> FlowGraph:
        """Load a flow graph from a JSON or YAML file."""
        path = Path(file_path)
        try:
            with open(path, 'r', encoding='utf-8') as file:
                if path.suffix.lower() in ('.yaml', '.yml'):
                    flow_data = yaml.safe_load(file)
                else:
                    flow_data = json.load(file)
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
            logger.error(f"Error loading flow from {path}: {e}")
            raise GraphError(f"cannot read flow file {path}: {e}") from e

        if not isinstance(flow_data, dict):
            raise GraphError(f"flow file {path} does not contain a mapping")

        return FlowLoader.load_flow_from_dict(flow_data)
