"""
Resource graph tests: ordering, validation errors and rendering.
"""
import os

import pytest

from infraplan.errors import DependencyCycleError, DuplicateResourceError, UnresolvedReferenceError
from infraplan.expressions import find_references
from infraplan.graph import ResourceGraph, find_cycle, topological_sort
from infraplan.models.resource import Resource
from infraplan.parsers import terraform

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


def _res(rtype, name, /, depends_on=None, **attributes):
    return Resource(
        provider="local",
        resource_type=rtype,
        name=name,
        attributes=attributes,
        source_format="manifest",
        source_file="test.yaml",
        references=find_references(attributes),
        depends_on=list(depends_on or []),
    )


class TestTopologicalSort:
    def test_dependencies_first(self):
        order = topological_sort({"c": ["b"], "b": ["a"], "a": []})
        assert order == ["a", "b", "c"]

    def test_ties_broken_by_name(self):
        order = topological_sort({"z": [], "m": [], "a": [], "b": ["z"]})
        assert order == ["a", "m", "z", "b"]

    def test_edges_to_unknown_nodes_ignored(self):
        assert topological_sort({"a": ["ghost"], "b": ["a"]}) == ["a", "b"]


class TestFindCycle:
    def test_acyclic(self):
        assert find_cycle({"a": ["b"], "b": []}) is None

    def test_two_node_cycle(self):
        assert find_cycle({"a": ["b"], "b": ["a"]}) == ["a", "b", "a"]

    def test_self_loop(self):
        assert find_cycle({"a": ["a"]}) == ["a", "a"]

    def test_cycle_not_at_start(self):
        cycle = find_cycle({"a": ["b"], "b": ["c"], "c": ["d"], "d": ["b"]})
        assert cycle == ["b", "c", "d", "b"]


class TestResourceGraph:
    def setup_method(self):
        resources = terraform.parse_file(os.path.join(FIXTURES, "azure_network.tf"))
        self.graph = ResourceGraph.build(resources)

    def test_node_count(self):
        assert len(self.graph) == 7
        assert "azurerm_lb.web" in self.graph

    def test_topological_order_respects_edges(self):
        order = self.graph.topological_order()
        position = {a: i for i, a in enumerate(order)}
        for src, dst in self.graph.edges():
            assert position[dst] < position[src], f"{dst} must come before {src}"
        assert order[0] == "azurerm_resource_group.main"
        assert order[-1] == "azurerm_lb.web"

    def test_reverse_order(self):
        assert self.graph.reverse_order() == list(reversed(self.graph.topological_order()))

    def test_levels(self):
        levels = self.graph.levels()
        assert levels[0] == ["azurerm_resource_group.main"]
        assert levels[1] == [
            "azurerm_network_security_group.web",
            "azurerm_public_ip.lb",
            "azurerm_virtual_network.main",
        ]
        assert levels[-1] == ["azurerm_lb.web"]

    def test_dependents(self):
        assert self.graph.dependents("azurerm_subnet.internal") == [
            "azurerm_subnet_network_security_group_association.internal"
        ]
        assert "azurerm_lb.web" in self.graph.transitive_dependents("azurerm_virtual_network.main")

    def test_depends_on_creates_edge(self):
        assert "azurerm_subnet_network_security_group_association.internal" in \
            self.graph.dependencies("azurerm_lb.web")

    def test_to_dict(self):
        d = self.graph.to_dict()
        assert len(d["nodes"]) == 7
        assert {"from": "azurerm_subnet.internal", "to": "azurerm_virtual_network.main"} in d["edges"]

    def test_to_mermaid(self):
        text = self.graph.to_mermaid({"azurerm_lb.web": "fill:#f00"})
        assert text.startswith("flowchart LR")
        assert "azurerm_subnet_internal --> azurerm_virtual_network_main" in text
        assert "style azurerm_lb_web fill:#f00" in text

    def test_to_dot(self):
        text = self.graph.to_dot()
        assert text.startswith("digraph infraplan {")
        assert '"azurerm_subnet.internal" -> "azurerm_virtual_network.main";' in text


class TestGraphErrors:
    def test_cycle_fixture(self):
        resources = terraform.parse_file(os.path.join(FIXTURES, "cyclic.tf"))
        with pytest.raises(DependencyCycleError) as exc:
            ResourceGraph.build(resources)
        assert exc.value.cycle == ["local_queue.a", "local_queue.b", "local_queue.a"]

    def test_unresolved_fixture(self):
        resources = terraform.parse_file(os.path.join(FIXTURES, "unresolved.tf"))
        with pytest.raises(UnresolvedReferenceError) as exc:
            ResourceGraph.build(resources)
        assert exc.value.target == "local_subnet.missing"
        assert exc.value.attribute == "subnet_id"

    def test_unresolved_depends_on(self):
        with pytest.raises(UnresolvedReferenceError, match="local_db.main"):
            ResourceGraph.build([_res("local_vm", "web", depends_on=["local_db.main"])])

    def test_duplicate(self):
        with pytest.raises(DuplicateResourceError):
            ResourceGraph.build([_res("local_vm", "web"), _res("local_vm", "web")])

    def test_self_reference_is_cycle(self):
        r = _res("local_vm", "web", peer="${local_vm.web.name}")
        with pytest.raises(DependencyCycleError):
            ResourceGraph.build([r])

    def test_empty(self):
        graph = ResourceGraph.build([])
        assert len(graph) == 0
        assert graph.topological_order() == []
        assert graph.levels() == []
