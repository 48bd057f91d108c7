"""
Provider tests: registry lookup, the local simulated cloud and entry-point plugins.
"""
import json

import pytest

from infraplan.errors import ProviderError
from infraplan.models.state import StateRecord
from infraplan.providers import LocalProvider, Provider, ProviderRegistry
from infraplan.providers import base


class _FakeEntryPoint:
    def __init__(self, name, factory):
        self.name = name
        self.value = f"fake:{name}"
        self._factory = factory

    def load(self):
        if isinstance(self._factory, Exception):
            raise self._factory
        return self._factory


def _prior(outputs):
    return StateRecord(resource_type="local_vm", name="web", provider="local",
                       attributes={}, outputs=outputs)


class TestRegistry:
    def test_registered_provider_wins(self):
        local, other = LocalProvider(), LocalProvider()
        registry = ProviderRegistry(default=local)
        registry.register("azurerm", other)
        assert registry.get("azurerm") is other
        assert registry.get("aws") is local
        assert registry.names() == ["azurerm"]

    def test_no_default_raises(self):
        with pytest.raises(ProviderError, match="no provider configured for 'aws'"):
            ProviderRegistry().get("aws")

    def test_local_provider_satisfies_protocol(self):
        assert isinstance(LocalProvider(), Provider)


class TestLocalProvider:
    def test_create_read_update_delete(self):
        provider = LocalProvider()
        outputs = provider.create("local_vm", "web", {"size": "small"})
        assert outputs["id"].startswith("/local/local_vm/web/")
        prior = _prior(outputs)

        assert provider.read("local_vm", "web", prior)["attributes"] == {"size": "small"}
        assert provider.update("local_vm", "web", {"size": "large"}, prior)["size"] == "large"

        provider.delete("local_vm", "web", prior)
        assert provider.read("local_vm", "web", prior) is None
        # deleting twice is fine
        provider.delete("local_vm", "web", prior)

    def test_update_missing_object(self):
        with pytest.raises(ProviderError, match="does not exist"):
            LocalProvider().update("local_vm", "web", {}, _prior({"id": "/local/gone"}))

    def test_persisted_between_instances(self, tmp_path):
        path = str(tmp_path / "cloud" / "local.json")
        outputs = LocalProvider(path).create("local_vm", "web", {"size": "small"})
        again = LocalProvider(path)
        assert again.find("local_vm", "web") == [outputs["id"]]

    def test_corrupt_data_file(self, tmp_path):
        path = tmp_path / "local.json"
        path.write_text("{broken")
        with pytest.raises(ProviderError, match="cannot read"):
            LocalProvider(str(path))

    def test_data_file_is_json(self, tmp_path):
        path = tmp_path / "local.json"
        LocalProvider(str(path)).create("local_vm", "web", {"size": "small"})
        data = json.loads(path.read_text())
        assert [o["name"] for o in data.values()] == ["web"]


class TestEntryPoints:
    def test_plugins_registered(self, monkeypatch):
        plugin = LocalProvider()
        monkeypatch.setattr(
            base, "entry_points", lambda group: [_FakeEntryPoint("aws", lambda: plugin)]
        )
        registry = ProviderRegistry()
        assert base.load_entry_points(registry) == ["aws"]
        assert registry.get("aws") is plugin

    def test_broken_plugin_raises(self, monkeypatch):
        monkeypatch.setattr(
            base, "entry_points", lambda group: [_FakeEntryPoint("gcp", ImportError("no module"))]
        )
        with pytest.raises(ProviderError, match="cannot load provider 'gcp'"):
            base.load_entry_points(ProviderRegistry())
