"""
Simulated cloud used by the CLI when no real provider is registered, and by tests.

Objects are keyed by their generated id, so a create-before-destroy
replacement can hold the old and the new object at the same time. They live
in memory and, when a path is given, in a JSON file so that successive CLI
runs see the same "cloud".
"""
import json
import logging
import os
import threading
import uuid
from typing import Any, Dict, Optional

from infraplan.errors import ProviderError
from infraplan.models.state import StateRecord

logger = logging.getLogger(__name__)


class LocalProvider:
    name = "local"

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.Lock()
        self.objects: Dict[str, Dict[str, Any]] = self._load()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError) as exc:
            raise ProviderError(f"cannot read local provider data {self.path}: {exc}")

    def _persist(self) -> None:
        if not self.path:
            return
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        with open(self.path, "w", encoding="utf-8", newline="\n") as fh:
            json.dump(self.objects, fh, indent=2, sort_keys=True)

    def find(self, resource_type: str, name: str) -> list:
        """Ids of every object with this type and name."""
        with self._lock:
            return sorted(
                oid for oid, obj in self.objects.items()
                if obj["resource_type"] == resource_type and obj["name"] == name
            )

    def create(self, resource_type: str, name: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        object_id = f"/local/{resource_type}/{name}/{uuid.uuid4().hex[:8]}"
        with self._lock:
            self.objects[object_id] = {
                "resource_type": resource_type,
                "name": name,
                "attributes": dict(attributes),
            }
            self._persist()
        logger.debug("local: created %s.%s (%s)", resource_type, name, object_id)
        return dict(attributes, id=object_id)

    def update(
        self, resource_type: str, name: str, attributes: Dict[str, Any], prior: StateRecord
    ) -> Dict[str, Any]:
        with self._lock:
            obj = self.objects.get(prior.id or "")
            if obj is None:
                raise ProviderError(f"{resource_type}.{name} ({prior.id}) does not exist")
            obj["attributes"] = dict(attributes)
            self._persist()
        logger.debug("local: updated %s.%s (%s)", resource_type, name, prior.id)
        return dict(attributes, id=prior.id)

    def delete(self, resource_type: str, name: str, prior: StateRecord) -> None:
        with self._lock:
            self.objects.pop(prior.id or "", None)
            self._persist()
        logger.debug("local: deleted %s.%s (%s)", resource_type, name, prior.id)

    def read(self, resource_type: str, name: str, prior: StateRecord) -> Optional[Dict[str, Any]]:
        with self._lock:
            obj = self.objects.get(prior.id or "")
            if obj is None:
                return None
            return {
                "attributes": dict(obj["attributes"]),
                "outputs": dict(obj["attributes"], id=prior.id),
            }
