"""
Reference expressions inside attribute values.

Attribute values are literals or strings holding ``${...}`` interpolations:

    virtual_network_name = "${azurerm_virtual_network.main.name}"
    name                 = "${var.prefix}-subnet"

An interpolation that is exactly one reference (optionally indexed, e.g.
``${azurerm_virtual_network.main.address_space[0]}``) resolves to the
referenced value. Other interpolations are passed through untouched.
"""
import re
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from infraplan.models.resource import Reference

_INTERP_RE = re.compile(r"\$\{([^{}]*)\}")

# type.name[.attribute][index...]; the type must contain an underscore
_REF_RE = re.compile(
    r"(?<![\w.])([a-z][a-z0-9]*_[a-z0-9_]+)\.([A-Za-z_][\w-]*)(?:\.([A-Za-z_]\w*))?((?:\[\d+\])*)"
)
_VAR_RE = re.compile(r"(?<![\w.])var\.([A-Za-z_][\w-]*)")
_INDEX_RE = re.compile(r"\[(\d+)\]")

UNKNOWN_TEXT = "(known after apply)"


class _Unknown:
    """Value that only becomes known once a dependency has been applied."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return UNKNOWN_TEXT

    def __str__(self) -> str:
        return UNKNOWN_TEXT


UNKNOWN = _Unknown()


def is_unknown(val: Any) -> bool:
    if val is UNKNOWN:
        return True
    if isinstance(val, dict):
        return any(is_unknown(v) for v in val.values())
    if isinstance(val, list):
        return any(is_unknown(v) for v in val)
    return False


def _walk_strings(val: Any, path: str) -> Iterator[Tuple[str, str]]:
    if isinstance(val, str):
        yield path, val
    elif isinstance(val, list):
        for item in val:
            yield from _walk_strings(item, path)
    elif isinstance(val, dict):
        for k, v in val.items():
            yield from _walk_strings(v, path or k)


def find_references(attributes: Dict[str, Any]) -> List[Reference]:
    """Recursively scan attribute values for cross-resource references."""
    refs = []
    seen = set()
    for top_attr, text in _walk_strings(attributes, ""):
        for body in _INTERP_RE.findall(text):
            for rtype, rname, rattr, _ in _REF_RE.findall(body):
                ref = Reference(rtype, rname, rattr or None, top_attr)
                if ref not in seen:
                    seen.add(ref)
                    refs.append(ref)
    return refs


def parse_address(text: str) -> Optional[str]:
    """Turn ``azurerm_x.y`` or ``${azurerm_x.y}`` (depends_on entries) into an address."""
    body = text.strip()
    m = _INTERP_RE.fullmatch(body)
    if m:
        body = m.group(1).strip()
    m = _REF_RE.fullmatch(body)
    if not m or m.group(3) or m.group(4):
        return None
    return f"{m.group(1)}.{m.group(2)}"


def strip_interpolation(text: str) -> str:
    """``${tags}`` -> ``tags``; used for ignore_changes entries."""
    m = _INTERP_RE.fullmatch(text.strip())
    return m.group(1).strip() if m else text.strip()


def find_variables(val: Any) -> List[str]:
    names = []
    for _, text in _walk_strings(val, ""):
        for body in _INTERP_RE.findall(text):
            for name in _VAR_RE.findall(body):
                if name not in names:
                    names.append(name)
    return names


def _index(val: Any, indexes: str) -> Any:
    for idx in _INDEX_RE.findall(indexes):
        if val is UNKNOWN:
            return UNKNOWN
        try:
            val = val[int(idx)]
        except (IndexError, KeyError, TypeError):
            return None
    return val


def substitute(val: Any, lookup: Callable[[str, Optional[str], str], Any], pattern=_REF_RE) -> Any:
    """
    Replace every resolvable interpolation in ``val``.

    ``lookup(root, name, attribute)`` returns the referenced value. A string
    that is exactly one interpolation keeps the native type of the result;
    interpolations embedded in longer strings are formatted with ``str()``,
    and become UNKNOWN as a whole if any part is unknown.
    """
    if isinstance(val, list):
        return [substitute(v, lookup, pattern) for v in val]
    if isinstance(val, dict):
        return {k: substitute(v, lookup, pattern) for k, v in val.items()}
    if not isinstance(val, str) or "${" not in val:
        return val

    whole = _INTERP_RE.fullmatch(val)
    if whole:
        m = pattern.fullmatch(whole.group(1).strip())
        if m:
            return _resolve_match(m, lookup, pattern)
        return val

    unknown = False

    def _replace(interp: "re.Match") -> str:
        nonlocal unknown
        m = pattern.fullmatch(interp.group(1).strip())
        if not m:
            return interp.group(0)
        resolved = _resolve_match(m, lookup, pattern)
        if is_unknown(resolved):
            unknown = True
            return UNKNOWN_TEXT
        return "" if resolved is None else str(resolved)

    text = _INTERP_RE.sub(_replace, val)
    return UNKNOWN if unknown else text


def _resolve_match(m: "re.Match", lookup, pattern) -> Any:
    if pattern is _VAR_RE:
        return lookup("var", m.group(1), "")
    rtype, rname, rattr, indexes = m.group(1), m.group(2), m.group(3), m.group(4)
    return _index(lookup(rtype, rname, rattr or "id"), indexes)


def substitute_variables(val: Any, values: Dict[str, Any]) -> Any:
    return substitute(val, lambda _root, name, _attr: values[name], pattern=_VAR_RE)


def encode_unknowns(val: Any) -> Any:
    """Replace UNKNOWN with its display text for JSON output."""
    if val is UNKNOWN:
        return UNKNOWN_TEXT
    if isinstance(val, list):
        return [encode_unknowns(v) for v in val]
    if isinstance(val, dict):
        return {k: encode_unknowns(v) for k, v in val.items()}
    return val


def decode_unknowns(val: Any) -> Any:
    if val == UNKNOWN_TEXT:
        return UNKNOWN
    if isinstance(val, list):
        return [decode_unknowns(v) for v in val]
    if isinstance(val, dict):
        return {k: decode_unknowns(v) for k, v in val.items()}
    return val
