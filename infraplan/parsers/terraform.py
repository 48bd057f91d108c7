import os
from typing import Any, Dict, List

import hcl2

from infraplan.detect import detect_format
from infraplan.errors import ParseError
from infraplan.expressions import find_references, parse_address, strip_interpolation
from infraplan.models.configuration import Configuration, Variable
from infraplan.models.resource import Lifecycle, Resource, infer_provider

# Meta-arguments that are not resource attributes
_META_ARGS = ("depends_on", "lifecycle", "provider")
_UNSUPPORTED_META_ARGS = ("count", "for_each")


def _unwrap(val: Any) -> Any:
    """
    python-hcl2 wraps single-element blocks in a list.
    Recursively unwrap single-element lists that contain dicts.
    """
    if isinstance(val, list):
        if len(val) == 1 and isinstance(val[0], dict):
            return _unwrap(val[0])
        return [_unwrap(v) for v in val]
    if isinstance(val, dict):
        return {k: _unwrap(v) for k, v in val.items()}
    return val


def _iter_blocks(data: Dict[str, Any], kind: str):
    """Yield (label, body) for ``kind "label" {}`` blocks."""
    for block in data.get(kind, []):
        if not isinstance(block, dict):
            continue
        for label, body in block.items():
            yield label, _unwrap(body) if isinstance(body, (dict, list)) else {}


def _provider_name(raw: Any, resource_type: str) -> str:
    if isinstance(raw, str) and raw:
        # provider = azurerm.secondary -> "azurerm"
        return strip_interpolation(raw).split(".", 1)[0]
    return infer_provider(resource_type)


def _build_resource(filepath: str, resource_type: str, name: str, raw_props: Any) -> Resource:
    props = raw_props if isinstance(raw_props, dict) else {}
    address = f"{resource_type}.{name}"

    for meta in _UNSUPPORTED_META_ARGS:
        if meta in props:
            raise ParseError(filepath, f"{address}: '{meta}' is not supported")

    depends_on = []
    raw_deps = props.get("depends_on", [])
    for dep in raw_deps if isinstance(raw_deps, list) else [raw_deps]:
        target = parse_address(str(dep))
        if target is None:
            raise ParseError(filepath, f"{address}: invalid depends_on entry {dep!r}")
        depends_on.append(target)

    raw_lifecycle = props.get("lifecycle") or {}
    if not isinstance(raw_lifecycle, dict):
        raise ParseError(filepath, f"{address}: lifecycle must be a block")
    lifecycle = Lifecycle.from_dict(raw_lifecycle)
    lifecycle.ignore_changes = [strip_interpolation(str(a)) for a in lifecycle.ignore_changes]

    attributes = {k: v for k, v in props.items() if k not in _META_ARGS}
    return Resource(
        provider=_provider_name(props.get("provider"), resource_type),
        resource_type=resource_type,
        name=name,
        attributes=attributes,
        source_format="terraform",
        source_file=filepath,
        references=find_references(attributes),
        depends_on=depends_on,
        lifecycle=lifecycle,
    )


def load_file(filepath: str) -> Configuration:
    """Read resources, variables and outputs from one .tf file."""
    try:
        with open(filepath, encoding="utf-8") as fh:
            data = hcl2.load(fh)
    except Exception as exc:
        raise ParseError(filepath, str(exc))

    config = Configuration(files=[filepath])

    for resource_block in data.get("resource", []):
        for resource_type, instances in resource_block.items():
            if isinstance(instances, dict):
                # single instance map
                instances = [instances]
            if not isinstance(instances, list):
                continue
            # hcl2 wraps the block in a list
            for instance_map in instances:
                if not isinstance(instance_map, dict):
                    continue
                for name, raw_props in instance_map.items():
                    config.resources.append(
                        _build_resource(filepath, resource_type, name, _unwrap(raw_props))
                    )

    for name, body in _iter_blocks(data, "variable"):
        body = body if isinstance(body, dict) else {}
        config.variables[name] = Variable(
            name=name,
            default=body.get("default"),
            has_default="default" in body,
            description=body.get("description", ""),
            source_file=filepath,
        )

    for name, body in _iter_blocks(data, "output"):
        if isinstance(body, dict) and "value" in body:
            config.outputs[name] = body["value"]

    return config


def parse_file(filepath: str) -> List[Resource]:
    return load_file(filepath).resources


def parse_directory(path: str) -> Configuration:
    config = Configuration()

    if os.path.isfile(path):
        if detect_format(path) == "terraform":
            config.merge(load_file(path))
        return config

    for root, _, files in os.walk(path):
        for fname in sorted(files):
            fpath = os.path.join(root, fname)
            if detect_format(fpath) == "terraform":
                config.merge(load_file(fpath))

    return config


def parse_paths(paths: List[str]) -> Configuration:
    """Parse every .tf file among ``paths`` (files or directories)."""
    config = Configuration()
    for p in paths:
        if not os.path.exists(p):
            raise ParseError(p, "no such file or directory")
        config.merge(parse_directory(p))
    return config
