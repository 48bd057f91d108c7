from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from infraplan.expressions import decode_unknowns, encode_unknowns

PLAN_FORMAT_VERSION = 1


class Action(str, Enum):
    CREATE  = "create"
    UPDATE  = "update"
    REPLACE = "replace"
    DELETE  = "delete"
    NO_OP   = "no-op"


@dataclass
class AttributeDiff:
    attribute: str
    before: Any
    after: Any
    forces_replacement: bool = False

    def to_dict(self) -> dict:
        return {
            "attribute": self.attribute,
            "before": encode_unknowns(self.before),
            "after": encode_unknowns(self.after),
            "forces_replacement": self.forces_replacement,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AttributeDiff":
        return cls(
            attribute=data["attribute"],
            before=decode_unknowns(data.get("before")),
            after=decode_unknowns(data.get("after")),
            forces_replacement=bool(data.get("forces_replacement", False)),
        )


@dataclass
class ResourceChange:
    address: str
    resource_type: str
    name: str
    provider: str
    action: Action
    before: Optional[Dict[str, Any]] = None   # attributes recorded in state
    after: Optional[Dict[str, Any]] = None    # desired attributes, references resolved where known
    config: Optional[Dict[str, Any]] = None   # desired attributes with references unresolved
    diffs: List[AttributeDiff] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "resource_type": self.resource_type,
            "name": self.name,
            "provider": self.provider,
            "action": self.action.value,
            "before": self.before,
            "after": encode_unknowns(self.after),
            "config": self.config,
            "diffs": [d.to_dict() for d in self.diffs],
            "dependencies": list(self.dependencies),
            "create_before_destroy": self.create_before_destroy,
            "prevent_destroy": self.prevent_destroy,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResourceChange":
        return cls(
            address=data["address"],
            resource_type=data["resource_type"],
            name=data["name"],
            provider=data["provider"],
            action=Action(data["action"]),
            before=data.get("before"),
            after=decode_unknowns(data.get("after")),
            config=data.get("config"),
            diffs=[AttributeDiff.from_dict(d) for d in data.get("diffs", [])],
            dependencies=list(data.get("dependencies", [])),
            create_before_destroy=bool(data.get("create_before_destroy", False)),
            prevent_destroy=bool(data.get("prevent_destroy", False)),
            reason=data.get("reason", ""),
        )


@dataclass
class Plan:
    changes: List[ResourceChange] = field(default_factory=list)
    namespace: str = "default"
    state_serial: int = 0
    state_lineage: str = ""
    destroy: bool = False
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    )

    @property
    def pending(self) -> List[ResourceChange]:
        """Changes the executor has to carry out, in plan order."""
        return [c for c in self.changes if c.action != Action.NO_OP]

    @property
    def has_changes(self) -> bool:
        return bool(self.pending)

    def get(self, address: str) -> Optional[ResourceChange]:
        return next((c for c in self.changes if c.address == address), None)

    def summary(self) -> Dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for c in self.changes:
            counts[c.action.value] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            "format_version": PLAN_FORMAT_VERSION,
            "namespace": self.namespace,
            "state_serial": self.state_serial,
            "state_lineage": self.state_lineage,
            "destroy": self.destroy,
            "created_at": self.created_at,
            "changes": [c.to_dict() for c in self.changes],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Plan":
        return cls(
            changes=[ResourceChange.from_dict(c) for c in data.get("changes", [])],
            namespace=data.get("namespace", "default"),
            state_serial=int(data.get("state_serial", 0)),
            state_lineage=data.get("state_lineage", ""),
            destroy=bool(data.get("destroy", False)),
            created_at=data.get("created_at", ""),
        )
