"""Executor.

Applies a Plan through providers. Each change becomes one or two operations
(a replacement is a delete plus a create) and operations form their own
dependency graph:

- create/update of X waits for the create/update of everything X depends on;
- delete of X waits for the deletes of resources that depended on X, and
  for updates of resources that depended on X but no longer do;
- replace: delete then create, or create then delete (after X's new
  dependents are wired up) with create_before_destroy.

Operations whose dependencies are done run concurrently on a thread pool.
A failed operation causes everything downstream of it to be skipped; what is
independent of it still runs unless on_error is "stop". State is saved after
every successful operation.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from infraplan.config import Settings
from infraplan.errors import ApplyError, ProviderError, StalePlanError
from infraplan.expressions import UNKNOWN, is_unknown, substitute
from infraplan.graph import find_cycle
from infraplan.models.change import Action, Plan, ResourceChange
from infraplan.models.state import StateDocument, StateRecord
from infraplan.providers.base import ProviderRegistry
from infraplan.state import StateStore

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    APPLIED = "applied"
    FAILED  = "failed"
    SKIPPED = "skipped"


@dataclass
class Operation:
    """One provider call derived from a ResourceChange.

    Attributes:
        kind: "create", "update" or "delete"
        change: The planned change this operation belongs to
        index: Position of the change in the plan, for stable scheduling
        waits_for: Keys of operations that must succeed first
        prior: State record captured before apply started (updates and deletes)
        keep_state: Delete half of a create_before_destroy replacement; the
            state entry already belongs to the new object
    """
    kind: str
    change: ResourceChange
    index: int
    waits_for: Set[str] = field(default_factory=set)
    prior: Optional[StateRecord] = None
    keep_state: bool = False

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.change.address}"

    @property
    def address(self) -> str:
        return self.change.address

    def __repr__(self) -> str:
        return f"Operation({self.key}, waits_for={sorted(self.waits_for)})"


@dataclass
class OperationResult:
    address: str
    operation: str
    outcome: Outcome
    error: Optional[str] = None
    attempts: int = 0
    duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "operation": self.operation,
            "outcome": self.outcome.value,
            "error": self.error,
            "attempts": self.attempts,
            "duration": round(self.duration, 3),
        }


@dataclass
class ApplyResult:
    results: List[OperationResult] = field(default_factory=list)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def success(self) -> bool:
        return all(r.outcome == Outcome.APPLIED for r in self.results)

    def with_outcome(self, outcome: Outcome) -> List[OperationResult]:
        return [r for r in self.results if r.outcome == outcome]

    @property
    def failed(self) -> List[OperationResult]:
        return self.with_outcome(Outcome.FAILED)

    @property
    def skipped(self) -> List[OperationResult]:
        return self.with_outcome(Outcome.SKIPPED)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def summary(self) -> Dict[str, int]:
        return {o.value: len(self.with_outcome(o)) for o in Outcome}


@dataclass
class RefreshResult:
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    @property
    def drifted(self) -> bool:
        return bool(self.updated or self.removed)


def build_operations(plan: Plan, state: StateDocument) -> Dict[str, Operation]:
    """Expand plan changes into operations and wire their ordering edges.

    Raises:
        ApplyError: If the operations would have to wait on each other in a cycle
    """
    ops: Dict[str, Operation] = {}

    def add(op: Operation) -> Operation:
        ops[op.key] = op
        return op

    for index, change in enumerate(plan.changes):
        prior = state.get(change.address)
        if change.action == Action.CREATE:
            add(Operation("create", change, index))
        elif change.action == Action.UPDATE:
            add(Operation("update", change, index, prior=prior))
        elif change.action == Action.DELETE:
            add(Operation("delete", change, index, prior=prior))
        elif change.action == Action.REPLACE:
            cbd = change.create_before_destroy
            delete = add(Operation("delete", change, index, prior=prior, keep_state=cbd))
            create = add(Operation("create", change, index))
            if cbd:
                delete.waits_for.add(create.key)
            else:
                create.waits_for.add(delete.key)

    applying = {op.address: op for op in ops.values() if op.kind in ("create", "update")}

    for op in ops.values():
        if op.kind in ("create", "update"):
            for dep in op.change.dependencies:
                upstream = applying.get(dep)
                if upstream is not None and upstream.key != op.key:
                    op.waits_for.add(upstream.key)
        else:
            # deletes of former dependents come first
            for other in ops.values():
                if other.prior is None or op.address not in other.prior.dependencies:
                    continue
                if other.kind == "delete" and other.address != op.address:
                    op.waits_for.add(other.key)
                elif other.kind == "update" and op.address not in other.change.dependencies:
                    op.waits_for.add(other.key)
            if op.keep_state:
                # new object must be wired into its dependents before the old one goes
                for other in applying.values():
                    if op.address in other.change.dependencies:
                        op.waits_for.add(other.key)

    cycle = find_cycle({k: op.waits_for for k, op in ops.items()})
    if cycle:
        raise ApplyError("operations cannot be ordered: " + " -> ".join(cycle))
    return ops


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


class Executor:
    """Applies plans against providers and keeps the state store current.

    Attributes:
        registry: Providers by name
        store: State store written after every operation
        settings: parallelism, retry and on_error behaviour
        callback: Called with each OperationResult as it completes
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: StateStore,
        settings: Optional[Settings] = None,
        callback: Optional[Callable[[OperationResult], None]] = None,
    ):
        self.registry = registry
        self.store = store
        self.settings = settings or Settings()
        self.callback = callback
        self._state_lock = threading.Lock()
        self._state: Optional[StateDocument] = None

    # ------------------------------------------------------------------ public API

    def apply(self, plan: Plan) -> ApplyResult:
        """Apply ``plan`` under the state lock.

        Raises:
            StalePlanError: If state changed since the plan was made
            StateLockError: If another process holds the state lock
        """
        result = ApplyResult(started_at=time.time())
        with self.store.lock(self.settings.lock_timeout):
            self._state = self.store.load()
            self._check_fresh(plan, self._state)
            ops = build_operations(plan, self._state)
            logger.info("Applying %d operation(s) with parallelism %d",
                        len(ops), self.settings.parallelism)
            if ops:
                result.results = self._run(ops)
            self._state = None
        result.completed_at = time.time()
        logger.info("Apply finished: %s", result.summary())
        return result

    def refresh(self) -> RefreshResult:
        """Read every recorded resource back from its provider and update state."""
        outcome = RefreshResult()
        with self.store.lock(self.settings.lock_timeout):
            state = self.store.load()
            for address in state.addresses():
                record = state.get(address)
                provider = self.registry.get(record.provider)
                current = self._retrying_call(
                    [0], provider.read, record.resource_type, record.name, record)
                if current is None:
                    state.remove(address)
                    outcome.removed.append(address)
                    logger.warning("%s no longer exists, removed from state", address)
                    continue
                attributes = current.get("attributes", record.attributes)
                outputs = current.get("outputs", record.outputs)
                if attributes != record.attributes or outputs != record.outputs:
                    record.attributes = attributes
                    record.outputs = outputs
                    record.touch()
                    outcome.updated.append(address)
                    logger.warning("%s drifted from the last applied state", address)
                else:
                    outcome.unchanged.append(address)
            if outcome.drifted:
                self.store.save(state)
        return outcome

    # ------------------------------------------------------------------ scheduling

    @staticmethod
    def _check_fresh(plan: Plan, state: StateDocument) -> None:
        if plan.state_serial != state.serial:
            raise StalePlanError(
                f"plan was made against state serial {plan.state_serial}, "
                f"state is now at serial {state.serial}; plan again"
            )
        if state.serial > 0 and plan.state_lineage != state.lineage:
            raise StalePlanError("plan was made against a different state lineage; plan again")

    def _run(self, ops: Dict[str, Operation]) -> List[OperationResult]:
        pending = dict(ops)
        succeeded: Set[str] = set()
        blocked: Set[str] = set()   # failed or skipped
        results: List[OperationResult] = []
        futures: Dict[Future, Operation] = {}
        stop = False

        def record(res: OperationResult) -> None:
            results.append(res)
            if self.callback is not None:
                self.callback(res)

        with ThreadPoolExecutor(max_workers=self.settings.parallelism,
                                thread_name_prefix="infraplan") as pool:
            while pending or futures:
                # propagate failures downstream until nothing changes
                changed = True
                while changed:
                    changed = False
                    for key in sorted(pending, key=lambda k: pending[k].index):
                        op = pending[key]
                        failed_deps = op.waits_for & blocked
                        if failed_deps:
                            del pending[key]
                            blocked.add(key)
                            changed = True
                            record(OperationResult(
                                op.address, op.kind, Outcome.SKIPPED,
                                error=f"skipped because {', '.join(sorted(failed_deps))} did not complete",
                            ))

                if not stop:
                    ready = sorted(
                        (op for op in pending.values() if op.waits_for <= succeeded),
                        key=lambda o: (o.index, o.kind != "delete"),
                    )
                    for op in ready:
                        del pending[op.key]
                        futures[pool.submit(self._execute, op)] = op

                if not futures:
                    break

                finished, _ = wait(futures, return_when=FIRST_COMPLETED)
                for fut in finished:
                    op = futures.pop(fut)
                    res = fut.result()
                    record(res)
                    if res.outcome == Outcome.APPLIED:
                        succeeded.add(op.key)
                    else:
                        blocked.add(op.key)
                        if self.settings.on_error == "stop":
                            stop = True

        for key in sorted(pending, key=lambda k: pending[k].index):
            op = pending[key]
            record(OperationResult(op.address, op.kind, Outcome.SKIPPED,
                                   error="skipped after an earlier failure (on_error: stop)"))
        return results

    # ------------------------------------------------------------------ single operation

    def _retrying_call(self, tries: List[int], fn: Callable, *args) -> Any:
        """Call ``fn``, retrying retryable provider errors; ``tries[0]`` counts attempts."""
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(multiplier=self.settings.backoff_base, max=self.settings.backoff_max),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                tries[0] = attempt.retry_state.attempt_number
                value = fn(*args)
        return value

    def _lookup(self, resource_type: str, name: str, attribute: str) -> Any:
        with self._state_lock:
            rec = self._state.get(f"{resource_type}.{name}")
            if rec is None:
                return UNKNOWN
            return rec.value(attribute)

    def _final_attributes(self, change: ResourceChange) -> Dict[str, Any]:
        """Planned values where known, references resolved against live state otherwise."""
        resolved = substitute(change.config or {}, self._lookup)
        after = change.after if change.after is not None else resolved
        final = {k: (resolved.get(k) if is_unknown(v) else v) for k, v in after.items()}
        unresolved = sorted(k for k, v in final.items() if is_unknown(v))
        if unresolved:
            raise ApplyError(
                f"{change.address}: could not resolve {', '.join(unresolved)} at apply time"
            )
        return final

    def _execute(self, op: Operation) -> OperationResult:
        change = op.change
        started = time.monotonic()
        tries = [0]
        try:
            provider = self.registry.get(change.provider)
            if op.kind == "delete":
                if op.prior is None:
                    logger.info("%s: not in state, nothing to delete", op.address)
                else:
                    self._retrying_call(
                        tries, provider.delete, change.resource_type, change.name, op.prior)
                self._commit_delete(op)
            else:
                attributes = self._final_attributes(change)
                if op.kind == "create":
                    outputs = self._retrying_call(
                        tries, provider.create, change.resource_type, change.name, attributes)
                else:
                    outputs = self._retrying_call(
                        tries, provider.update, change.resource_type, change.name, attributes, op.prior)
                self._commit_apply(op, attributes, outputs or {})
        except Exception as exc:
            if not isinstance(exc, (ProviderError, ApplyError)):
                logger.exception("%s: unexpected error during %s", op.address, op.kind)
            else:
                logger.error("%s: %s failed: %s", op.address, op.kind, exc)
            return OperationResult(op.address, op.kind, Outcome.FAILED, error=str(exc),
                                   attempts=tries[0], duration=time.monotonic() - started)

        logger.info("%s: %s complete", op.address, op.kind)
        return OperationResult(op.address, op.kind, Outcome.APPLIED,
                               attempts=tries[0], duration=time.monotonic() - started)

    def _commit_apply(self, op: Operation, attributes: Dict[str, Any], outputs: Dict[str, Any]) -> None:
        change = op.change
        with self._state_lock:
            existing = self._state.get(change.address)
            record = StateRecord(
                resource_type=change.resource_type,
                name=change.name,
                provider=change.provider,
                attributes=attributes,
                outputs=outputs,
                dependencies=list(change.dependencies),
                prevent_destroy=change.prevent_destroy,
                created_at=existing.created_at if (existing and op.kind == "update") else None,
            )
            record.touch()
            self._state.put(record)
            self.store.save(self._state)

    def _commit_delete(self, op: Operation) -> None:
        if op.keep_state:
            return
        with self._state_lock:
            if self._state.remove(op.address) is not None:
                self.store.save(self._state)
