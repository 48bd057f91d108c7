from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Reference:
    resource_type: str     # e.g. "azurerm_virtual_network"
    name: str              # e.g. "main"
    attribute: Optional[str] = None   # None for depends_on edges
    source_attribute: Optional[str] = None  # attribute on the referencing resource

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"


def _as_list(val: Any) -> List[Any]:
    """``ignore_changes = all`` is a scalar; attribute lists are lists."""
    if val is None:
        return []
    if isinstance(val, (list, tuple)):
        return list(val)
    return [val]


@dataclass
class Lifecycle:
    prevent_destroy: bool = False
    create_before_destroy: bool = False
    ignore_changes: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "prevent_destroy": self.prevent_destroy,
            "create_before_destroy": self.create_before_destroy,
            "ignore_changes": list(self.ignore_changes),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Lifecycle":
        data = data or {}
        return cls(
            prevent_destroy=bool(data.get("prevent_destroy", False)),
            create_before_destroy=bool(data.get("create_before_destroy", False)),
            ignore_changes=_as_list(data.get("ignore_changes")),
        )


@dataclass
class Resource:
    provider: str          # "azurerm", "aws", "google", "local"
    resource_type: str     # e.g. "azurerm_subnet"
    name: str              # logical name in the configuration
    attributes: Dict[str, Any] = field(default_factory=dict)
    source_format: str = ""      # "terraform", "manifest"
    source_file: str = ""
    references: List[Reference] = field(default_factory=list)
    depends_on: List[str] = field(default_factory=list)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    namespace: str = "default"

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"

    @property
    def identity(self) -> tuple:
        return (self.namespace, self.resource_type, self.name)

    def dependencies(self) -> List[str]:
        """Addresses this resource depends on, from references and depends_on."""
        deps = {ref.address for ref in self.references}
        deps.update(self.depends_on)
        return sorted(deps)


def infer_provider(resource_type: str) -> str:
    """Provider name is the type prefix: ``azurerm_subnet`` -> ``azurerm``."""
    prefix, sep, _ = resource_type.partition("_")
    return prefix if sep else "unknown"
