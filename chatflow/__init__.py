"""
Chatflow engine: executes conversation flows built from typed nodes and edges.
"""

from .conversation import (
    FlowGraph,
    FlowInterpreter,
    FlowLoader,
    GraphError,
    InternalConsistencyError,
    InterpreterState,
)

__version__ = "0.1.0"

__all__ = [
    'FlowGraph',
    'FlowInterpreter',
    'FlowLoader',
    'GraphError',
    'InternalConsistencyError',
    'InterpreterState',
]
