"""
Settings loaded from ``infraplan.yaml``.

The file is looked up in the working directory unless a path is given.
Environment variables override the file: INFRAPLAN_STATE, INFRAPLAN_PARALLELISM.

    state_path: .infraplan/state.json
    namespace: default
    parallelism: 10
    max_attempts: 3
    backoff_base: 1.0
    backoff_max: 30.0
    on_error: continue
    lock_timeout: 0
    schema:
      azurerm_subnet:
        force_new: [virtual_network_name, resource_group_name]
        mutable: []
    rules:
      - resource_type: "*"
        attribute: tags
        severity: WARNING
        message: Every resource should carry tags.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from infraplan.errors import ConfigError

CONFIG_FILE = "infraplan.yaml"
DEFAULT_STATE_PATH = os.path.join(".infraplan", "state.json")

# Identity attributes: changing one means the object has to be recreated
DEFAULT_FORCE_NEW = ["name"]

_ON_ERROR_CHOICES = ("continue", "stop")
_SEVERITIES = ("ERROR", "WARNING", "INFO")


@dataclass
class TypeSchema:
    force_new: List[str] = field(default_factory=list)
    mutable: List[str] = field(default_factory=list)


@dataclass
class Rule:
    resource_type: str
    attribute: str
    expected: Any = None
    has_expected: bool = False
    severity: str = "WARNING"
    message: str = ""
    hint: str = ""


@dataclass
class Settings:
    state_path: str = DEFAULT_STATE_PATH
    namespace: str = "default"
    parallelism: int = 10
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    on_error: str = "continue"
    lock_timeout: float = 0.0
    local_provider_path: Optional[str] = None
    schema: Dict[str, TypeSchema] = field(default_factory=dict)
    rules: List[Rule] = field(default_factory=list)
    source_file: Optional[str] = None

    def force_new_attributes(self, resource_type: str) -> List[str]:
        ts = self.schema.get(resource_type, TypeSchema())
        attrs = set(DEFAULT_FORCE_NEW) | set(ts.force_new)
        return sorted(attrs - set(ts.mutable))

    def is_force_new(self, resource_type: str, attribute: str) -> bool:
        return attribute in self.force_new_attributes(resource_type)


def _as_int(data: dict, key: str, default: int, minimum: int) -> int:
    val = data.get(key, default)
    try:
        val = int(val)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be an integer, got {val!r}")
    if val < minimum:
        raise ConfigError(f"'{key}' must be >= {minimum}, got {val}")
    return val


def _as_float(data: dict, key: str, default: float) -> float:
    val = data.get(key, default)
    try:
        val = float(val)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be a number, got {val!r}")
    if val < 0:
        raise ConfigError(f"'{key}' must not be negative, got {val}")
    return val


def _parse_schema(raw: Any) -> Dict[str, TypeSchema]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("'schema' must be a mapping of resource type to settings")
    schema = {}
    for rtype, entry in raw.items():
        entry = entry or {}
        if not isinstance(entry, dict):
            raise ConfigError(f"schema entry for '{rtype}' must be a mapping")
        schema[rtype] = TypeSchema(
            force_new=list(entry.get("force_new", []) or []),
            mutable=list(entry.get("mutable", []) or []),
        )
    return schema


def _parse_rules(raw: Any) -> List[Rule]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError("'rules' must be a list")
    rules = []
    for i, entry in enumerate(raw, 1):
        if not isinstance(entry, dict) or not entry.get("attribute"):
            raise ConfigError(f"rule #{i} needs at least an 'attribute'")
        severity = str(entry.get("severity", "WARNING")).upper()
        if severity not in _SEVERITIES:
            raise ConfigError(f"rule #{i} has unknown severity '{severity}'")
        rules.append(Rule(
            resource_type=entry.get("resource_type", "*"),
            attribute=entry["attribute"],
            expected=entry.get("expected"),
            has_expected="expected" in entry,
            severity=severity,
            message=entry.get("message", ""),
            hint=entry.get("hint", ""),
        ))
    return rules


def from_dict(data: Optional[dict], source_file: Optional[str] = None) -> Settings:
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{source_file or 'config'}: top level must be a mapping")

    on_error = str(data.get("on_error", "continue")).lower()
    if on_error not in _ON_ERROR_CHOICES:
        raise ConfigError(f"'on_error' must be one of {', '.join(_ON_ERROR_CHOICES)}, got '{on_error}'")

    return Settings(
        state_path=data.get("state_path", DEFAULT_STATE_PATH),
        namespace=data.get("namespace", "default"),
        parallelism=_as_int(data, "parallelism", 10, 1),
        max_attempts=_as_int(data, "max_attempts", 3, 1),
        backoff_base=_as_float(data, "backoff_base", 1.0),
        backoff_max=_as_float(data, "backoff_max", 30.0),
        on_error=on_error,
        lock_timeout=_as_float(data, "lock_timeout", 0.0),
        local_provider_path=data.get("local_provider_path"),
        schema=_parse_schema(data.get("schema")),
        rules=_parse_rules(data.get("rules")),
        source_file=source_file,
    )


def load(path: Optional[str] = None) -> Settings:
    """Load settings from ``path`` (or ./infraplan.yaml when present) plus environment overrides."""
    data: dict = {}
    source = None
    candidate = path or CONFIG_FILE
    if os.path.exists(candidate):
        try:
            with open(candidate, "r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"{candidate}: invalid YAML: {exc}")
        source = candidate
    elif path:
        raise ConfigError(f"config file '{path}' does not exist")

    if not isinstance(data, dict):
        raise ConfigError(f"{candidate}: top level must be a mapping")
    data = dict(data)
    if os.environ.get("INFRAPLAN_STATE"):
        data["state_path"] = os.environ["INFRAPLAN_STATE"]
    if os.environ.get("INFRAPLAN_PARALLELISM"):
        data["parallelism"] = os.environ["INFRAPLAN_PARALLELISM"]

    return from_dict(data, source)
