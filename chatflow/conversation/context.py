"""
Execution context for a flow run.

The context is a value: every transition returns a new ExecutionContext and
leaves the previous one untouched, so a run can be replayed step by step.
"""

from dataclasses import dataclass, field, replace
from typing import FrozenSet, Optional, Tuple

from .variables import Scalar, VariableStore


@dataclass(frozen=True)
class ExecutionContext:
    """Current node pointer, processed node ids and flow variables."""
    current_node_id: Optional[str] = None
    processed_nodes: FrozenSet[str] = frozenset()
    variables: VariableStore = field(default_factory=VariableStore)

    @classmethod
    def seeded(cls, start_node_id: str) -> "ExecutionContext":
        """Fresh context positioned at the start node."""
        return cls(current_node_id=start_node_id)

    @property
    def is_terminated(self) -> bool:
        return self.current_node_id is None

    def has_processed(self, node_id: str) -> bool:
        return node_id in self.processed_nodes

    def mark_processed(self, node_id: str) -> Tuple["ExecutionContext", bool]:
        """Record a node as processed; the flag is False on a repeat visit."""
        if node_id in self.processed_nodes:
            return self, False
        return replace(self, processed_nodes=self.processed_nodes | {node_id}), True

    def move_to(self, node_id: str) -> "ExecutionContext":
        return replace(self, current_node_id=node_id)

    def terminated(self) -> "ExecutionContext":
        return replace(self, current_node_id=None)

    def with_variable(self, name: str, value: Scalar) -> "ExecutionContext":
        variables = self.variables.copy()
        variables.set(name, value)
        return replace(self, variables=variables)
