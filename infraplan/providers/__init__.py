from infraplan.providers.base import Provider, ProviderRegistry
from infraplan.providers.local import LocalProvider

__all__ = ["LocalProvider", "Provider", "ProviderRegistry"]
