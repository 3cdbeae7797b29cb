"""
Flow variables and `{{name}}` template interpolation.
"""

import logging
import re
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

logger = logging.getLogger(__name__)

Scalar = Union[str, int, float, bool]

VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")


def clean_variable_name(name: str) -> str:
    """Strip the `$` prefix used by the authoring surface."""
    return name[1:] if name.startswith('$') else name


def interpolate(text: Optional[str], variables: Mapping[str, Any]) -> str:
    """Replace `{{name}}` tokens; unknown names are left as they are."""
    if not text:
        return ""

    def _replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return str(variables[name])
        return match.group(0)

    return VARIABLE_PATTERN.sub(_replace, text)


def contains_variables(text: Optional[str]) -> bool:
    return bool(text) and VARIABLE_PATTERN.search(text) is not None


def extract_variable_names(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return [match.group(1) for match in VARIABLE_PATTERN.finditer(text)]


class VariableStore:
    """Mapping of variable name to scalar value."""

    def __init__(self, initial: Optional[Mapping[str, Scalar]] = None):
        self._values: Dict[str, Scalar] = {}
        for name, value in (initial or {}).items():
            self.set(name, value)

    def set(self, name: str, value: Scalar) -> None:
        if not isinstance(value, (str, int, float, bool)):
            raise TypeError(f"variable '{name}' must be a string, number or boolean")
        clean_name = clean_variable_name(name)
        if not clean_name:
            raise ValueError("variable name must not be empty")
        self._values[clean_name] = value

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(clean_variable_name(name), default)

    def render(self, text: Optional[str]) -> str:
        return interpolate(text, self._values)

    def as_dict(self) -> Dict[str, Scalar]:
        return dict(self._values)

    def copy(self) -> "VariableStore":
        return VariableStore(self._values)

    def clear(self) -> None:
        self._values.clear()

    def __contains__(self, name: str) -> bool:
        return clean_variable_name(name) in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, VariableStore):
            return self._values == other._values
        return NotImplemented

    def __repr__(self) -> str:
        return f"VariableStore({self._values!r})"
