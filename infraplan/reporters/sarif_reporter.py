"""
SARIF (Static Analysis Results Interchange Format) reporter for validation diagnostics.
Enables integration with GitHub code scanning.
"""
import json
from typing import List

from infraplan import __version__
from infraplan.models.diagnostic import Diagnostic

_LEVELS = {
    "ERROR": "error",
    "WARNING": "warning",
    "INFO": "note",
}


def build_report(diagnostics: List[Diagnostic], source_path: str) -> str:
    sarif = {
        "$schema": "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/Schemata/sarif-schema-2.1.0.json",
        "version": "2.1.0",
        "runs": [
            {
                "tool": {
                    "driver": {
                        "name": "infraplan",
                        "semanticVersion": __version__,
                        "rules": []
                    }
                },
                "results": []
            }
        ]
    }

    rules = {}
    results = []

    for d in diagnostics:
        rule_id = f"IP-{d.check}"
        if rule_id not in rules:
            rules[rule_id] = {
                "id": rule_id,
                "shortDescription": {"text": d.check.replace("-", " ")},
                "defaultConfiguration": {"level": _LEVELS.get(d.severity.value, "warning")},
            }

        message = d.message
        if d.hint:
            message += f"\n\nHint: {d.hint}"

        results.append({
            "ruleId": rule_id,
            "message": {"text": message},
            "level": _LEVELS.get(d.severity.value, "warning"),
            "locations": [
                {
                    "physicalLocation": {
                        "artifactLocation": {"uri": d.source_file or source_path},
                        "region": {"startLine": 1}
                    },
                    "logicalLocations": [{"fullyQualifiedName": d.address}]
                }
            ]
        })

    sarif["runs"][0]["tool"]["driver"]["rules"] = list(rules.values())
    sarif["runs"][0]["results"] = results

    return json.dumps(sarif, indent=2)
