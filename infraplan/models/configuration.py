from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from infraplan.models.resource import Resource


@dataclass
class Variable:
    name: str
    default: Any = None
    has_default: bool = False
    description: str = ""
    source_file: str = ""


@dataclass
class Configuration:
    """Everything read from a set of input files, before variables are applied."""

    resources: List[Resource] = field(default_factory=list)
    variables: Dict[str, Variable] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    files: List[str] = field(default_factory=list)

    def merge(self, other: "Configuration") -> None:
        self.resources.extend(other.resources)
        self.variables.update(other.variables)
        self.outputs.update(other.outputs)
        self.files.extend(other.files)

    def get(self, address: str) -> Optional[Resource]:
        return next((r for r in self.resources if r.address == address), None)
