"""
Exception hierarchy for infraplan.

Library code raises these; the CLI turns them into a red message and exit code 2.
"""
from typing import List, Optional


class InfraplanError(Exception):
    """Base class for every error infraplan raises on purpose."""


class ConfigError(InfraplanError):
    pass


class ParseError(InfraplanError):
    def __init__(self, filepath: str, reason: str):
        super().__init__(f"failed to parse {filepath}: {reason}")
        self.filepath = filepath
        self.reason = reason


class VariableError(InfraplanError):
    pass


# ------------------------------------------------------------------ graph
class GraphError(InfraplanError):
    pass


class DuplicateResourceError(GraphError):
    def __init__(self, address: str, files: List[str]):
        where = ", ".join(f for f in files if f) or "input"
        super().__init__(f"resource '{address}' is declared more than once ({where})")
        self.address = address
        self.files = files


class UnresolvedReferenceError(GraphError):
    def __init__(self, source: str, target: str, attribute: Optional[str] = None):
        via = f" (attribute '{attribute}')" if attribute else ""
        super().__init__(f"resource '{source}' references undeclared resource '{target}'{via}")
        self.source = source
        self.target = target
        self.attribute = attribute


class DependencyCycleError(GraphError):
    def __init__(self, cycle: List[str]):
        super().__init__("dependency cycle: " + " -> ".join(cycle))
        self.cycle = cycle


# ------------------------------------------------------------------ plan
class PlanError(InfraplanError):
    pass


class PreventDestroyError(PlanError):
    def __init__(self, address: str, action: str):
        super().__init__(
            f"resource '{address}' has lifecycle.prevent_destroy set but the plan would {action} it"
        )
        self.address = address
        self.action = action


class StalePlanError(PlanError):
    pass


# ------------------------------------------------------------------ state
class StateError(InfraplanError):
    pass


class StateLockError(StateError):
    def __init__(self, lock_path: str, holder: Optional[dict] = None):
        info = ""
        if holder:
            info = f" (held by pid {holder.get('pid')} on {holder.get('host')} since {holder.get('created')})"
        super().__init__(f"state is locked: {lock_path}{info}")
        self.lock_path = lock_path
        self.holder = holder or {}


# ------------------------------------------------------------------ apply
class ProviderError(InfraplanError):
    """Raised by providers. ``retryable`` errors are retried by the executor."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ApplyError(InfraplanError):
    pass
