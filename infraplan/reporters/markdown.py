"""
Markdown + Mermaid plan report generator.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict

from jinja2 import Environment

from infraplan import __version__
from infraplan.expressions import encode_unknowns
from infraplan.graph import sanitize_node_id
from infraplan.models.change import Action, Plan, ResourceChange

_ACTION_EMOJI = {
    "create": "🟢",
    "update": "🟡",
    "replace": "🟠",
    "delete": "🔴",
    "no-op": "⚪",
}

_ACTION_ASCII = {
    "create": "[+]",
    "update": "[~]",
    "replace": "[-/+]",
    "delete": "[-]",
    "no-op": "[ ]",
}

_ACTION_STYLE = {
    "create": "fill:#88cc00,color:#000",
    "update": "fill:#ffcc00,color:#000",
    "replace": "fill:#ff8800,color:#fff",
    "delete": "fill:#ff4444,color:#fff",
}

_ACTION_ORDER = ["create", "update", "replace", "delete", "no-op"]


def _node_shape(c: ResourceChange) -> str:
    """Return a Mermaid node definition string (without ID)."""
    label = c.address
    if c.action == Action.DELETE:
        return f"[/{label}/]"
    if c.action == Action.REPLACE:
        return f"{{{{{label}}}}}"
    if c.action == Action.NO_OP:
        return f"({label})"
    return f"[{label}]"


def _build_mermaid(plan: Plan) -> str:
    in_plan = {c.address for c in plan.changes}
    lines = ["flowchart LR"]

    for c in plan.changes:
        lines.append(f"    {sanitize_node_id(c.address)}{_node_shape(c)}")

    added_edges = set()
    for c in plan.changes:
        src_id = sanitize_node_id(c.address)
        for dep in c.dependencies:
            if dep not in in_plan:
                continue
            edge_key = (src_id, sanitize_node_id(dep))
            if edge_key not in added_edges and edge_key[0] != edge_key[1]:
                added_edges.add(edge_key)
                lines.append(f"    {edge_key[0]} --> {edge_key[1]}")

    for c in plan.changes:
        style = _ACTION_STYLE.get(c.action.value)
        if style:
            lines.append(f"    style {sanitize_node_id(c.address)} {style}")

    return "\n".join(lines)


def _fmt(val: Any) -> str:
    if val is None:
        return "null"
    val = encode_unknowns(val)
    if isinstance(val, str):
        return val if val == "(known after apply)" else json.dumps(val)
    return json.dumps(val, sort_keys=True)


def _summary_line(counts: Dict[str, int]) -> str:
    return ", ".join(f"{counts[a]} to {a}" for a in _ACTION_ORDER if a != "no-op" and counts[a])


_TEMPLATE = """\
# Execution Plan

**Generated:** {{ generated }}
**Source:** {{ source }}
**Namespace:** {{ plan.namespace }}
**State serial:** {{ plan.state_serial }}
**Tool:** infraplan v{{ version }}

---

## Summary

{% if pending %}
Plan: **{{ summary_line }}**{% if plan.destroy %} (destroy){% endif %}.
{% for a in actions %}
- **{{ a }}**: {{ counts[a] }}{% endfor %}
{% else %}
No changes. Infrastructure matches the configuration.
{% endif %}

---

## Change Set

| # | Action | Resource | Reason |
|---|--------|----------|--------|
{% for c in changes %}| {{ loop.index }} | {{ icon[c.action.value] }} {{ c.action.value }} | `{{ c.address }}` | {{ c.reason }} |
{% endfor %}

{% for c in changes if c.action.value != "no-op" %}
### {{ icon[c.action.value] }} `{{ c.address }}` will be {{ verb[c.action.value] }}

{% if c.reason %}**Reason:** {{ c.reason }}
{% endif %}{% if c.dependencies %}**Depends on:** {% for d in c.dependencies %}`{{ d }}`{% if not loop.last %}, {% endif %}{% endfor %}
{% endif %}
{% if c.diffs %}
| Attribute | Before | After | Forces replacement |
|-----------|--------|-------|--------------------|
{% for d in c.diffs %}| `{{ d.attribute }}` | {{ fmt(d.before) }} | {{ fmt(d.after) }} | {{ "yes" if d.forces_replacement else "" }} |
{% endfor %}
{% elif c.action.value == "create" %}
| Attribute | Value |
|-----------|-------|
{% for k, v in (c.after or {}).items() %}| `{{ k }}` | {{ fmt(v) }} |
{% endfor %}
{% endif %}
---
{% endfor %}

## Dependency Diagram

```mermaid
{{ mermaid }}
```
"""

_VERBS = {
    "create": "created",
    "update": "updated in place",
    "replace": "replaced",
    "delete": "destroyed",
    "no-op": "left unchanged",
}


def build_report(plan: Plan, source_path: str, ascii_mode: bool = False) -> str:
    counts = plan.summary()
    icons = _ACTION_ASCII if ascii_mode else _ACTION_EMOJI

    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)

    return template.render(
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        plan=plan,
        pending=plan.has_changes,
        counts=counts,
        actions=[a for a in _ACTION_ORDER if counts[a]],
        summary_line=_summary_line(counts),
        changes=plan.changes,
        icon=icons,
        verb=_VERBS,
        fmt=_fmt,
        mermaid=_build_mermaid(plan),
    )
