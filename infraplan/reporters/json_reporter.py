"""
JSON plan report generator.
"""
import json
from datetime import datetime, timezone

from infraplan import __version__
from infraplan.models.change import Plan


def build_report(plan: Plan, source_path: str) -> str:
    report = {
        "meta": {
            "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "source": source_path,
            "tool": "infraplan",
            "version": __version__,
        },
        "summary": plan.summary(),
        "has_changes": plan.has_changes,
        "plan": plan.to_dict(),
    }
    return json.dumps(report, indent=2)
