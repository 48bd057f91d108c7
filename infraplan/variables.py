"""
Input variables.

Values are taken, later wins, from: declared defaults, --var-file YAML files,
INFRAPLAN_VAR_<name> environment variables, --var name=value flags.
"""
import os
from typing import Any, Dict, Iterable, List, Optional

import yaml

from infraplan.errors import VariableError
from infraplan.expressions import find_references, find_variables, substitute_variables
from infraplan.models.configuration import Configuration

ENV_PREFIX = "INFRAPLAN_VAR_"


def _coerce(text: str) -> Any:
    """Parse a CLI/env value as YAML so numbers, booleans and lists keep their type."""
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_assignments(pairs: Iterable[str]) -> Dict[str, Any]:
    values = {}
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name.strip():
            raise VariableError(f"invalid variable assignment {pair!r}, expected name=value")
        values[name.strip()] = _coerce(raw)
    return values


def load_var_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise VariableError(f"cannot read variable file {path}: {exc}")
    if not isinstance(data, dict):
        raise VariableError(f"variable file {path} must contain a mapping")
    return data


def resolve_values(
    config: Configuration,
    var_files: Optional[List[str]] = None,
    assignments: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {
        name: v.default for name, v in config.variables.items() if v.has_default
    }
    for path in var_files or []:
        values.update(load_var_file(path))
    for key, raw in environ.items():
        if key.startswith(ENV_PREFIX) and key[len(ENV_PREFIX):] in config.variables:
            values[key[len(ENV_PREFIX):]] = _coerce(raw)
    values.update(assignments or {})
    return values


def apply(config: Configuration, values: Dict[str, Any]) -> Configuration:
    """Substitute ``var.*`` interpolations in every resource and output."""
    for r in config.resources:
        used = find_variables(r.attributes)
        missing = [n for n in used if n not in values]
        if missing:
            undeclared = [n for n in missing if n not in config.variables]
            if undeclared:
                raise VariableError(
                    f"{r.address} uses undeclared variable(s): {', '.join(undeclared)}"
                )
            raise VariableError(
                f"{r.address} needs a value for variable(s): {', '.join(missing)}"
            )
        r.attributes = substitute_variables(r.attributes, values)
        r.references = find_references(r.attributes)

    for name, expr in list(config.outputs.items()):
        if all(v in values for v in find_variables(expr)):
            config.outputs[name] = substitute_variables(expr, values)

    return config
