import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

STATE_FORMAT_VERSION = 1


@dataclass
class StateRecord:
    """Last-applied attributes of one resource, keyed by its address."""

    resource_type: str
    name: str
    provider: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    prevent_destroy: bool = False
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"

    @property
    def id(self) -> Optional[str]:
        return self.outputs.get("id")

    def value(self, attribute: str) -> Any:
        """Computed outputs win over the inputs they were derived from."""
        if attribute in self.outputs:
            return self.outputs[attribute]
        return self.attributes.get(attribute)

    def touch(self) -> None:
        now = time.time()
        if self.created_at is None:
            self.created_at = now
        self.updated_at = now

    def to_dict(self) -> dict:
        d: Dict[str, Any] = {
            "resource_type": self.resource_type,
            "name": self.name,
            "provider": self.provider,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "dependencies": list(self.dependencies),
        }
        if self.prevent_destroy:
            d["prevent_destroy"] = True
        if self.created_at is not None:
            d["created_at"] = self.created_at
        if self.updated_at is not None:
            d["updated_at"] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "StateRecord":
        return cls(
            resource_type=data["resource_type"],
            name=data["name"],
            provider=data.get("provider", "unknown"),
            attributes=dict(data.get("attributes", {})),
            outputs=dict(data.get("outputs", {})),
            dependencies=list(data.get("dependencies", [])),
            prevent_destroy=bool(data.get("prevent_destroy", False)),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class StateDocument:
    namespace: str = "default"
    serial: int = 0
    lineage: str = field(default_factory=lambda: str(uuid.uuid4()))
    version: int = STATE_FORMAT_VERSION
    resources: Dict[str, StateRecord] = field(default_factory=dict)

    def get(self, address: str) -> Optional[StateRecord]:
        return self.resources.get(address)

    def put(self, record: StateRecord) -> None:
        self.resources[record.address] = record

    def remove(self, address: str) -> Optional[StateRecord]:
        return self.resources.pop(address, None)

    def addresses(self) -> List[str]:
        return sorted(self.resources)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "serial": self.serial,
            "lineage": self.lineage,
            "namespace": self.namespace,
            "resources": {addr: r.to_dict() for addr, r in sorted(self.resources.items())},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StateDocument":
        return cls(
            namespace=data.get("namespace", "default"),
            serial=int(data.get("serial", 0)),
            lineage=data.get("lineage") or str(uuid.uuid4()),
            version=int(data.get("version", STATE_FORMAT_VERSION)),
            resources={
                addr: StateRecord.from_dict(r) for addr, r in data.get("resources", {}).items()
            },
        )
