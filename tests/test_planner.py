"""
Planner tests — diffing desired resources against recorded state.
"""
import pytest

from infraplan.config import Settings, TypeSchema
from infraplan.errors import PreventDestroyError
from infraplan.expressions import UNKNOWN, find_references
from infraplan.graph import ResourceGraph
from infraplan.models.change import Action, Plan
from infraplan.models.resource import Lifecycle, Resource
from infraplan.models.state import StateDocument, StateRecord
from infraplan.planner import Planner


def _res(rtype, name, /, lifecycle=None, depends_on=None, **attributes):
    return Resource(
        provider="local",
        resource_type=rtype,
        name=name,
        attributes=attributes,
        references=find_references(attributes),
        depends_on=list(depends_on or []),
        lifecycle=lifecycle or Lifecycle(),
    )


def _record(rtype, name, /, dependencies=None, **attributes):
    return StateRecord(
        resource_type=rtype,
        name=name,
        provider="local",
        attributes=dict(attributes),
        outputs=dict(attributes, id=f"/local/{rtype}/{name}/0001"),
        dependencies=list(dependencies or []),
    )


def _network_resources(**overrides):
    net = dict(name="net", cidr="10.0.0.0/16")
    net.update(overrides)
    return [
        _res("local_network", "main", **net),
        _res("local_subnet", "app", name="app", network_id="${local_network.main.id}",
             cidr="${local_network.main.cidr}"),
    ]


def _applied_state():
    state = StateDocument(serial=4)
    state.put(_record("local_network", "main", name="net", cidr="10.0.0.0/16"))
    state.put(_record("local_subnet", "app", dependencies=["local_network.main"],
                      name="app", network_id="/local/local_network/main/0001", cidr="10.0.0.0/16"))
    return state


class TestPlannerCreate:
    def setup_method(self):
        self.planner = Planner(Settings())
        self.graph = ResourceGraph.build(_network_resources())

    def test_everything_created_in_dependency_order(self):
        plan = self.planner.plan(self.graph, StateDocument())
        assert [c.address for c in plan.changes] == ["local_network.main", "local_subnet.app"]
        assert all(c.action == Action.CREATE for c in plan.changes)
        assert plan.changes[0].reason == "not in state"

    def test_id_of_new_resource_is_unknown(self):
        plan = self.planner.plan(self.graph, StateDocument())
        subnet = plan.get("local_subnet.app")
        assert subnet.after["network_id"] is UNKNOWN

    def test_configured_attribute_of_new_resource_is_known(self):
        plan = self.planner.plan(self.graph, StateDocument())
        assert plan.get("local_subnet.app").after["cidr"] == "10.0.0.0/16"

    def test_dependencies_recorded(self):
        plan = self.planner.plan(self.graph, StateDocument())
        assert plan.get("local_subnet.app").dependencies == ["local_network.main"]

    def test_plan_carries_state_identity(self):
        state = StateDocument(serial=7)
        plan = self.planner.plan(self.graph, state)
        assert plan.state_serial == 7
        assert plan.state_lineage == state.lineage

    def test_summary(self):
        plan = self.planner.plan(self.graph, StateDocument())
        assert plan.summary()["create"] == 2
        assert plan.has_changes


class TestPlannerDiff:
    def setup_method(self):
        self.planner = Planner(Settings())

    def test_no_changes(self):
        plan = self.planner.plan(ResourceGraph.build(_network_resources()), _applied_state())
        assert [c.action for c in plan.changes] == [Action.NO_OP, Action.NO_OP]
        assert not plan.has_changes

    def test_mutable_attribute_is_update(self):
        graph = ResourceGraph.build(_network_resources(cidr="10.1.0.0/16"))
        plan = self.planner.plan(graph, _applied_state())
        net = plan.get("local_network.main")
        assert net.action == Action.UPDATE
        assert [d.attribute for d in net.diffs] == ["cidr"]
        # the subnet copies the new cidr
        assert plan.get("local_subnet.app").action == Action.UPDATE

    def test_force_new_attribute_is_replace(self):
        graph = ResourceGraph.build(_network_resources(name="net2"))
        plan = self.planner.plan(graph, _applied_state())
        net = plan.get("local_network.main")
        assert net.action == Action.REPLACE
        assert net.reason == "name cannot be changed in place"
        assert net.diffs[0].forces_replacement

    def test_replacement_cascades_through_force_new_reference(self):
        settings = Settings(schema={"local_subnet": TypeSchema(force_new=["network_id"])})
        graph = ResourceGraph.build(_network_resources(name="net2"))
        plan = Planner(settings).plan(graph, _applied_state())
        subnet = plan.get("local_subnet.app")
        assert subnet.action == Action.REPLACE
        assert subnet.after["network_id"] is UNKNOWN

    def test_replacement_without_force_new_reference_updates_dependent(self):
        graph = ResourceGraph.build(_network_resources(name="net2"))
        plan = self.planner.plan(graph, _applied_state())
        assert plan.get("local_subnet.app").action == Action.UPDATE

    def test_mutable_override_of_name(self):
        settings = Settings(schema={"local_network": TypeSchema(mutable=["name"])})
        graph = ResourceGraph.build(_network_resources(name="net2"))
        plan = Planner(settings).plan(graph, _applied_state())
        assert plan.get("local_network.main").action == Action.UPDATE

    def test_ignore_changes_keeps_recorded_value(self):
        resources = _network_resources(cidr="10.9.0.0/16")
        resources[0].lifecycle = Lifecycle(ignore_changes=["cidr"])
        plan = self.planner.plan(ResourceGraph.build(resources), _applied_state())
        assert plan.get("local_network.main").action == Action.NO_OP
        assert plan.get("local_network.main").after["cidr"] == "10.0.0.0/16"

    def test_ignore_changes_all(self):
        resources = _network_resources(name="other", cidr="10.9.0.0/16")
        resources[0].lifecycle = Lifecycle(ignore_changes=["all"])
        plan = self.planner.plan(ResourceGraph.build(resources), _applied_state())
        assert plan.get("local_network.main").action == Action.NO_OP

    def test_ignore_changes_all_as_scalar(self):
        resources = _network_resources(name="other", cidr="10.9.0.0/16")
        resources[0].lifecycle = Lifecycle.from_dict({"ignore_changes": "all"})
        assert resources[0].lifecycle.ignore_changes == ["all"]
        plan = self.planner.plan(ResourceGraph.build(resources), _applied_state())
        assert plan.get("local_network.main").action == Action.NO_OP

    def test_create_before_destroy_flag_carried(self):
        resources = _network_resources(name="net2")
        resources[0].lifecycle = Lifecycle(create_before_destroy=True)
        plan = self.planner.plan(ResourceGraph.build(resources), _applied_state())
        assert plan.get("local_network.main").create_before_destroy


class TestPlannerDelete:
    def setup_method(self):
        self.planner = Planner(Settings())

    def test_orphan_is_deleted(self):
        graph = ResourceGraph.build(_network_resources()[:1])
        plan = self.planner.plan(graph, _applied_state())
        subnet = plan.get("local_subnet.app")
        assert subnet.action == Action.DELETE
        assert subnet.reason == "not in configuration"
        assert plan.changes[0] is subnet

    def test_destroy_deletes_dependents_first(self):
        plan = self.planner.plan(ResourceGraph.build([]), _applied_state(), destroy=True)
        assert [c.address for c in plan.changes] == ["local_subnet.app", "local_network.main"]
        assert all(c.action == Action.DELETE for c in plan.changes)
        assert plan.changes[0].reason == "destroy requested"
        assert plan.destroy

    def test_destroy_of_empty_state(self):
        plan = self.planner.plan(ResourceGraph.build([]), StateDocument(), destroy=True)
        assert plan.changes == []

    def test_prevent_destroy_blocks_replace(self):
        resources = _network_resources(name="net2")
        resources[0].lifecycle = Lifecycle(prevent_destroy=True)
        with pytest.raises(PreventDestroyError) as exc:
            self.planner.plan(ResourceGraph.build(resources), _applied_state())
        assert exc.value.address == "local_network.main"
        assert exc.value.action == "replace"

    def test_prevent_destroy_blocks_destroy(self):
        resources = _network_resources()
        resources[0].lifecycle = Lifecycle(prevent_destroy=True)
        with pytest.raises(PreventDestroyError):
            self.planner.plan(ResourceGraph.build(resources), _applied_state(), destroy=True)

    def test_prevent_destroy_allows_update(self):
        resources = _network_resources(cidr="10.1.0.0/16")
        resources[0].lifecycle = Lifecycle(prevent_destroy=True)
        plan = self.planner.plan(ResourceGraph.build(resources), _applied_state())
        assert plan.get("local_network.main").action == Action.UPDATE

    def test_recorded_protection_blocks_destroy_without_configuration(self):
        state = _applied_state()
        state.get("local_network.main").prevent_destroy = True
        with pytest.raises(PreventDestroyError) as exc:
            self.planner.plan(ResourceGraph.build([]), state, destroy=True)
        assert exc.value.address == "local_network.main"

    def test_recorded_protection_blocks_orphan_delete(self):
        state = _applied_state()
        state.get("local_subnet.app").prevent_destroy = True
        with pytest.raises(PreventDestroyError):
            self.planner.plan(ResourceGraph.build(_network_resources()[:1]), state)

    def test_configuration_overrides_recorded_protection(self):
        state = _applied_state()
        state.get("local_network.main").prevent_destroy = True
        plan = self.planner.plan(ResourceGraph.build(_network_resources()), state)
        change = plan.get("local_network.main")
        assert change.action == Action.UPDATE
        assert change.reason == "prevent_destroy changed"
        assert change.diffs == []
        assert not change.prevent_destroy

    def test_protection_matching_state_is_no_op(self):
        state = _applied_state()
        state.get("local_network.main").prevent_destroy = True
        resources = _network_resources()
        resources[0].lifecycle = Lifecycle(prevent_destroy=True)
        plan = self.planner.plan(ResourceGraph.build(resources), state)
        assert plan.get("local_network.main").action == Action.NO_OP


class TestPlanSerialization:
    def test_round_trip_keeps_unknowns(self):
        plan = Planner().plan(ResourceGraph.build(_network_resources()), StateDocument())
        data = plan.to_dict()
        assert data["changes"][1]["after"]["network_id"] == "(known after apply)"
        restored = Plan.from_dict(data)
        assert restored.get("local_subnet.app").after["network_id"] is UNKNOWN
        assert restored.state_lineage == plan.state_lineage
        assert [c.action for c in restored.changes] == [c.action for c in plan.changes]
