"""
YAML manifest parser.

    kind: infraplan/v1
    variables:
      location:
        default: westeurope
    resources:
      - type: azurerm_virtual_network
        name: main
        attributes:
          name: vnet-main
          location: ${var.location}
      - type: azurerm_subnet
        name: internal
        attributes:
          virtual_network_name: ${azurerm_virtual_network.main.name}
        lifecycle:
          prevent_destroy: true
    outputs:
      subnet_id: ${azurerm_subnet.internal.id}
"""
from typing import Any, List

import yaml

from infraplan.errors import ParseError
from infraplan.expressions import find_references, parse_address, strip_interpolation
from infraplan.models.configuration import Configuration, Variable
from infraplan.models.resource import Lifecycle, Resource, infer_provider


def _build_resource(filepath: str, index: int, entry: Any) -> Resource:
    if not isinstance(entry, dict):
        raise ParseError(filepath, f"resources[{index}] must be a mapping")
    resource_type = entry.get("type")
    name = entry.get("name")
    if not resource_type or not name:
        raise ParseError(filepath, f"resources[{index}] needs both 'type' and 'name'")
    address = f"{resource_type}.{name}"

    attributes = entry.get("attributes", {}) or {}
    if not isinstance(attributes, dict):
        raise ParseError(filepath, f"{address}: attributes must be a mapping")

    depends_on = []
    for dep in entry.get("depends_on", []) or []:
        target = parse_address(str(dep))
        if target is None:
            raise ParseError(filepath, f"{address}: invalid depends_on entry {dep!r}")
        depends_on.append(target)

    raw_lifecycle = entry.get("lifecycle") or {}
    if not isinstance(raw_lifecycle, dict):
        raise ParseError(filepath, f"{address}: lifecycle must be a mapping")
    lifecycle = Lifecycle.from_dict(raw_lifecycle)
    lifecycle.ignore_changes = [strip_interpolation(str(a)) for a in lifecycle.ignore_changes]

    return Resource(
        provider=entry.get("provider") or infer_provider(resource_type),
        resource_type=resource_type,
        name=str(name),
        attributes=attributes,
        source_format="manifest",
        source_file=filepath,
        references=find_references(attributes),
        depends_on=depends_on,
        lifecycle=lifecycle,
    )


def load_file(filepath: str) -> Configuration:
    try:
        with open(filepath, encoding="utf-8") as fh:
            docs = [d for d in yaml.safe_load_all(fh) if d is not None]
    except (OSError, yaml.YAMLError) as exc:
        raise ParseError(filepath, str(exc))

    config = Configuration(files=[filepath])

    for doc in docs:
        if not isinstance(doc, dict):
            raise ParseError(filepath, "each document must be a mapping")

        resources = doc.get("resources", []) or []
        if not isinstance(resources, list):
            raise ParseError(filepath, "'resources' must be a list")
        for i, entry in enumerate(resources):
            config.resources.append(_build_resource(filepath, i, entry))

        for name, body in (doc.get("variables") or {}).items():
            body = body if isinstance(body, dict) else {"default": body}
            config.variables[name] = Variable(
                name=name,
                default=body.get("default"),
                has_default="default" in body,
                description=body.get("description", ""),
                source_file=filepath,
            )

        config.outputs.update(doc.get("outputs") or {})

    return config


def parse_file(filepath: str) -> List[Resource]:
    return load_file(filepath).resources
