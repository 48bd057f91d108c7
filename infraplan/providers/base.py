"""Provider interface.

A provider turns create/update/delete/read requests for one resource into
calls against some infrastructure API. The engine never looks inside the
attributes; providers own their meaning.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from infraplan.errors import ProviderError
from infraplan.models.state import StateRecord

logger = logging.getLogger(__name__)


@runtime_checkable
class Provider(Protocol):
    """Protocol for provider implementations."""

    name: str

    def create(self, resource_type: str, name: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Create the object; return computed outputs (must include ``id``)."""

    def update(
        self, resource_type: str, name: str, attributes: Dict[str, Any], prior: StateRecord
    ) -> Dict[str, Any]:
        """Update the object in place; return computed outputs."""

    def delete(self, resource_type: str, name: str, prior: StateRecord) -> None:
        """Delete the object. Deleting something already gone is not an error."""

    def read(self, resource_type: str, name: str, prior: StateRecord) -> Optional[Dict[str, Any]]:
        """Return current ``{"attributes": ..., "outputs": ...}`` or None if gone."""


class ProviderRegistry:
    """Maps provider names (``azurerm``, ``aws``...) to provider instances.

    Resources whose provider has no registration go to the default provider,
    when one is set.
    """

    def __init__(self, default: Optional[Provider] = None):
        self._providers: Dict[str, Provider] = {}
        self.default = default

    def register(self, name: str, provider: Provider) -> None:
        self._providers[name] = provider

    def names(self) -> list:
        return sorted(self._providers)

    def get(self, name: str) -> Provider:
        """Look up a provider.

        Raises:
            ProviderError: If neither a registration nor a default exists
        """
        provider = self._providers.get(name)
        if provider is not None:
            return provider
        if self.default is not None:
            logger.debug("No provider registered for '%s', using default", name)
            return self.default
        raise ProviderError(f"no provider configured for '{name}'")


ENTRY_POINT_GROUP = "infraplan.providers"


def load_entry_points(registry: ProviderRegistry, group: str = ENTRY_POINT_GROUP) -> List[str]:
    """Register providers published by installed packages.

    Each entry point names a provider (``aws = mypkg.aws:AwsProvider``) and
    loads to a zero-argument callable returning the provider instance.
    """
    loaded = []
    for ep in entry_points(group=group):
        try:
            factory = ep.load()
            registry.register(ep.name, factory())
        except Exception as exc:
            raise ProviderError(f"cannot load provider '{ep.name}' from {ep.value}: {exc}")
        logger.debug("Registered provider '%s' from %s", ep.name, ep.value)
        loaded.append(ep.name)
    return loaded
