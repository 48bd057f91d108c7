from collections import defaultdict
from typing import Dict, List, Optional

from infraplan.config import Rule, Settings
from infraplan.graph import find_cycle
from infraplan.models.diagnostic import Diagnostic, Severity
from infraplan.models.resource import Resource
from infraplan.planner import IGNORE_ALL

_SEVERITY_ORDER = {"ERROR": 0, "WARNING": 1, "INFO": 2}


def _make(
    check: str,
    severity: Severity,
    resource: Resource,
    message: str,
    hint: str = "",
    attribute: Optional[str] = None,
) -> Diagnostic:
    return Diagnostic(
        diagnostic_id="",
        check=check,
        severity=severity,
        address=resource.address,
        message=message,
        hint=hint,
        attribute=attribute,
        source_file=resource.source_file,
    )


def check_duplicates(resources: List[Resource]) -> List[Diagnostic]:
    found = []
    by_identity: Dict[tuple, List[Resource]] = defaultdict(list)
    for r in resources:
        by_identity[r.identity].append(r)
    for dupes in by_identity.values():
        for r in dupes[1:]:
            found.append(_make(
                "duplicate-resource", Severity.ERROR, r,
                f"'{r.address}' is declared more than once "
                f"(first in {dupes[0].source_file or 'input'}).",
                "Give each resource of a type a unique name.",
            ))
    return found


def check_references(resources: List[Resource]) -> List[Diagnostic]:
    """Every reference and depends_on entry must name a declared resource."""
    found = []
    declared = {r.address for r in resources}
    for r in resources:
        for ref in r.references:
            if ref.address == r.address:
                found.append(_make(
                    "self-reference", Severity.ERROR, r,
                    f"'{r.address}' references its own attribute '{ref.attribute}'.",
                    "A resource cannot depend on itself.",
                    attribute=ref.source_attribute,
                ))
            elif ref.address not in declared:
                found.append(_make(
                    "unresolved-reference", Severity.ERROR, r,
                    f"'{r.address}' references undeclared resource '{ref.address}'.",
                    f"Declare '{ref.address}' or fix the reference.",
                    attribute=ref.source_attribute,
                ))
        for dep in r.depends_on:
            if dep == r.address:
                found.append(_make(
                    "self-reference", Severity.ERROR, r,
                    f"'{r.address}' lists itself in depends_on.",
                    "A resource cannot depend on itself.",
                    attribute="depends_on",
                ))
            elif dep not in declared:
                found.append(_make(
                    "unresolved-depends-on", Severity.ERROR, r,
                    f"'{r.address}' depends_on undeclared resource '{dep}'.",
                    f"Declare '{dep}' or remove it from depends_on.",
                    attribute="depends_on",
                ))
    return found


def check_cycles(resources: List[Resource]) -> List[Diagnostic]:
    declared = {r.address: r for r in resources}
    adjacency = {
        a: [d for d in r.dependencies() if d in declared and d != a]
        for a, r in declared.items()
    }
    cycle = find_cycle(adjacency)
    if not cycle:
        return []
    return [_make(
        "dependency-cycle", Severity.ERROR, declared[cycle[0]],
        "Dependency cycle: " + " -> ".join(cycle) + ".",
        "Break the cycle by removing one of the references or depends_on entries.",
    )]


def check_lifecycle(resources: List[Resource]) -> List[Diagnostic]:
    found = []
    for r in resources:
        for attr in r.lifecycle.ignore_changes:
            if attr != IGNORE_ALL and attr not in r.attributes:
                found.append(_make(
                    "unknown-ignore-changes", Severity.WARNING, r,
                    f"lifecycle.ignore_changes lists '{attr}', which '{r.address}' does not set.",
                    "Remove the entry or set the attribute.",
                    attribute=attr,
                ))
        if r.lifecycle.prevent_destroy and r.lifecycle.create_before_destroy:
            found.append(_make(
                "conflicting-lifecycle", Severity.INFO, r,
                f"'{r.address}' sets both prevent_destroy and create_before_destroy; "
                "replacements will be refused.",
            ))
    return found


def check_isolated(resources: List[Resource]) -> List[Diagnostic]:
    """Resources that neither reference nor are referenced by anything."""
    if len(resources) < 2:
        return []
    referenced = {d for r in resources for d in r.dependencies()}
    return [
        _make(
            "isolated-resource", Severity.INFO, r,
            f"'{r.address}' has no references to or from other resources.",
        )
        for r in resources
        if not r.dependencies() and r.address not in referenced
    ]


def _rule_applies(rule: Rule, r: Resource) -> bool:
    return rule.resource_type in ("*", r.resource_type)


def run_custom_rules(resources: List[Resource], rules: List[Rule]) -> List[Diagnostic]:
    """Rules from the config file: attribute must be set, optionally to ``expected``."""
    found = []
    for rule in rules:
        for r in resources:
            if not _rule_applies(rule, r):
                continue
            present = rule.attribute in r.attributes
            val = r.attributes.get(rule.attribute)
            if present and (not rule.has_expected or val == rule.expected):
                continue
            if not present:
                default_msg = f"'{r.address}' does not set '{rule.attribute}'."
            else:
                default_msg = f"'{r.address}' sets '{rule.attribute}' to {val!r}, expected {rule.expected!r}."
            found.append(_make(
                "custom-rule", Severity(rule.severity), r,
                rule.message or default_msg,
                rule.hint,
                attribute=rule.attribute,
            ))
    return found


CHECKS = [check_duplicates, check_references, check_cycles, check_lifecycle, check_isolated]


def run(resources: List[Resource], settings: Optional[Settings] = None) -> List[Diagnostic]:
    """
    Run all built-in checks and custom rules.
    Assign sequential diagnostic IDs and sort by severity.
    """
    settings = settings or Settings()
    diagnostics: List[Diagnostic] = []
    seen = set()

    for fn in CHECKS:
        for d in fn(resources):
            key = (d.check, d.address, d.attribute, d.message)
            if key not in seen:
                seen.add(key)
                diagnostics.append(d)

    for d in run_custom_rules(resources, settings.rules):
        key = (d.check, d.address, d.attribute, d.message)
        if key not in seen:
            seen.add(key)
            diagnostics.append(d)

    diagnostics.sort(
        key=lambda d: (
            _SEVERITY_ORDER.get(d.severity.value, 99),
            d.address,
        )
    )

    for i, d in enumerate(diagnostics, 1):
        d.diagnostic_id = f"D-{i:03d}"

    return diagnostics


def has_errors(diagnostics: List[Diagnostic]) -> bool:
    return any(d.severity == Severity.ERROR for d in diagnostics)
