"""Planner.

Diffs the desired resource graph against the last-applied state and produces
an ordered change-set:

1. deletes, dependents before their dependencies (using the dependencies
   recorded in state, since deleted resources are no longer in the graph);
2. creates, updates and replacements in dependency order.

An attribute that refers to a resource which does not exist yet resolves to
UNKNOWN and is settled by the executor at apply time.
"""

import logging
from typing import Any, Dict, List, Optional

from infraplan.config import Settings
from infraplan.errors import PreventDestroyError
from infraplan.expressions import UNKNOWN, is_unknown, substitute
from infraplan.graph import ResourceGraph, topological_sort
from infraplan.models.change import Action, AttributeDiff, Plan, ResourceChange
from infraplan.models.resource import Resource
from infraplan.models.state import StateDocument, StateRecord

logger = logging.getLogger(__name__)

IGNORE_ALL = "all"


def _diff_attributes(
    before: Dict[str, Any],
    after: Dict[str, Any],
    resource_type: str,
    settings: Settings,
) -> List[AttributeDiff]:
    diffs = []
    for attr in sorted(set(before) | set(after)):
        old = before.get(attr)
        new = after.get(attr)
        if not is_unknown(new) and old == new:
            continue
        diffs.append(AttributeDiff(
            attribute=attr,
            before=old,
            after=new,
            forces_replacement=settings.is_force_new(resource_type, attr),
        ))
    return diffs


class Planner:
    """Computes a Plan from a graph and a state document."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()

    def plan(self, graph: ResourceGraph, state: StateDocument, destroy: bool = False) -> Plan:
        """Build the change-set.

        Raises:
            PreventDestroyError: If a resource with lifecycle.prevent_destroy
                would be deleted or replaced
        """
        plan = Plan(
            namespace=state.namespace,
            state_serial=state.serial,
            state_lineage=state.lineage,
            destroy=destroy,
        )

        changes: Dict[str, ResourceChange] = {}
        if not destroy:
            for address in graph.topological_order():
                changes[address] = self._plan_resource(graph, address, state, changes)

        doomed = [
            rec for addr, rec in state.resources.items()
            if destroy or addr not in graph
        ]
        deletes = [self._plan_delete(rec, destroy, graph) for rec in doomed]

        for change in deletes + list(changes.values()):
            if change.action in (Action.DELETE, Action.REPLACE) and change.prevent_destroy:
                raise PreventDestroyError(change.address, change.action.value)

        plan.changes = self._order_deletes(deletes) + list(changes.values())
        logger.info("Plan: %s", ", ".join(f"{n} to {a}" for a, n in plan.summary().items() if n))
        return plan

    # ------------------------------------------------------------------ desired resources

    def _lookup(self, state: StateDocument, changes: Dict[str, ResourceChange]):
        def lookup(resource_type: str, name: str, attribute: str) -> Any:
            target = f"{resource_type}.{name}"
            change = changes.get(target)
            if change is not None:
                if attribute != "id" and change.after and attribute in change.after:
                    return change.after[attribute]
                if change.action in (Action.CREATE, Action.REPLACE):
                    return UNKNOWN
            record = state.get(target)
            if record is None:
                return UNKNOWN
            return record.value(attribute)
        return lookup

    def _plan_resource(
        self,
        graph: ResourceGraph,
        address: str,
        state: StateDocument,
        changes: Dict[str, ResourceChange],
    ) -> ResourceChange:
        r: Resource = graph.get(address)
        after = substitute(r.attributes, self._lookup(state, changes))
        change = ResourceChange(
            address=address,
            resource_type=r.resource_type,
            name=r.name,
            provider=r.provider,
            action=Action.CREATE,
            after=after,
            config=r.attributes,
            dependencies=graph.dependencies(address),
            create_before_destroy=r.lifecycle.create_before_destroy,
            prevent_destroy=r.lifecycle.prevent_destroy,
        )

        record = state.get(address)
        if record is None:
            change.reason = "not in state"
            return change

        change.before = record.attributes
        ignored = r.lifecycle.ignore_changes
        if IGNORE_ALL in ignored:
            ignored = list(set(record.attributes) | set(after))
        for attr in ignored:
            # keep what was applied last time
            if attr in record.attributes:
                after[attr] = record.attributes[attr]
            else:
                after.pop(attr, None)

        change.diffs = _diff_attributes(record.attributes, after, r.resource_type, self.settings)
        forcing = [d.attribute for d in change.diffs if d.forces_replacement]
        if forcing:
            change.action = Action.REPLACE
            change.reason = f"{', '.join(forcing)} cannot be changed in place"
        elif change.diffs:
            change.action = Action.UPDATE
            change.reason = f"{len(change.diffs)} attribute(s) changed"
        elif record.prevent_destroy != r.lifecycle.prevent_destroy:
            # nothing to send but the recorded protection must follow the configuration
            change.action = Action.UPDATE
            change.reason = "prevent_destroy changed"
        else:
            change.action = Action.NO_OP
        return change

    # ------------------------------------------------------------------ deletions

    @staticmethod
    def _plan_delete(record: StateRecord, destroy: bool, graph: ResourceGraph) -> ResourceChange:
        # the configuration, when it still declares the resource, overrides the recorded flag
        if record.address in graph:
            protected = graph.get(record.address).lifecycle.prevent_destroy
        else:
            protected = record.prevent_destroy
        return ResourceChange(
            address=record.address,
            resource_type=record.resource_type,
            name=record.name,
            provider=record.provider,
            action=Action.DELETE,
            before=record.attributes,
            dependencies=list(record.dependencies),
            prevent_destroy=protected,
            reason="destroy requested" if destroy else "not in configuration",
        )

    @staticmethod
    def _order_deletes(deletes: List[ResourceChange]) -> List[ResourceChange]:
        by_address = {c.address: c for c in deletes}
        order = list(reversed(topological_sort({c.address: c.dependencies for c in deletes})))
        # anything left out by a (corrupt) cyclic state goes last, by address
        order += sorted(set(by_address) - set(order))
        return [by_address[a] for a in order]
