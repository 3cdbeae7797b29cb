"""
Conversation module for the chatflow engine.
Contains the graph model, variables, transcript and the flow interpreter.
"""

from .graph import (
    Edge,
    FlowGraph,
    FlowLoader,
    GraphError,
    Node,
    NodeType,
    normalize_node_type
)
from .variables import VariableStore, interpolate
from .transcript import Sender, Transcript, TranscriptEntry
from .context import ExecutionContext
from .interpreter import FlowInterpreter, InterpreterState, InternalConsistencyError

__all__ = [
    'Edge',
    'FlowGraph',
    'FlowLoader',
    'GraphError',
    'Node',
    'NodeType',
    'normalize_node_type',
    'VariableStore',
    'interpolate',
    'Sender',
    'Transcript',
    'TranscriptEntry',
    'ExecutionContext',
    'FlowInterpreter',
    'InterpreterState',
    'InternalConsistencyError'
]
