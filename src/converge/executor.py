"""Change set execution against provider adapters.

The executor walks a change set in two phases:
1. Creates, updates and no-ops in dependency order (dependencies first)
2. Deletes in reverse dependency order (dependents first)

Within a phase, independent resources run in parallel up to the configured
concurrency limit. A resource starts only after every resource it depends on
has reached APPLIED. Per-resource state machine:

    PENDING -> APPLYING -> APPLIED | FAILED
    PENDING -> SKIPPED   (upstream failed, fail-fast stop, cancellation)

PERSISTENCE: Every successful provider call is persisted to the state store
before anything downstream starts, so a crash mid-apply leaves state that
matches exactly the resources actually applied. Persistence is serialized
behind a single asyncio lock.

CANCELLATION: Setting the cancel event stops scheduling. In-flight provider
calls finish and persist their results.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .config import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_BACKOFF_SECONDS, FailurePolicy
from .differ import (
    ChangeAction,
    ChangeSet,
    ChangeSetEntry,
    UnresolvedReference,
    attribute_changes,
    resolve_attributes,
)
from .graph import ResourceGraph
from .models import ResourceAddress
from .provider import ProviderError, ProviderRegistry, ResourceNotFound
from .state import ConflictError, LockHandle, StateError, StateRecord, StateSnapshot, StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResourceStatus(str, Enum):
    """Lifecycle of a resource within one apply run."""

    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset(
    {ResourceStatus.APPLIED, ResourceStatus.FAILED, ResourceStatus.SKIPPED}
)


@dataclass
class ResourceOutcome:
    """What happened to one resource during an apply run."""

    address: ResourceAddress
    action: ChangeAction
    status: ResourceStatus = ResourceStatus.PENDING
    reason: str | None = None
    attempts: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def finish(self, status: ResourceStatus, reason: str | None = None) -> None:
        self.status = status
        self.reason = reason
        self.finished_at = datetime.now(UTC)


@dataclass
class ApplyResult:
    """Per-resource outcomes of an apply run plus the final persisted state."""

    scope: str
    outcomes: dict[ResourceAddress, ResourceOutcome] = field(default_factory=dict)
    snapshot: StateSnapshot | None = None
    cancelled: bool = False
    # Fatal error that aborted the run (unresolved reference, state conflict)
    error: Exception | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    def with_status(self, status: ResourceStatus) -> list[ResourceOutcome]:
        return [o for o in self.outcomes.values() if o.status == status]

    @property
    def applied(self) -> list[ResourceOutcome]:
        return self.with_status(ResourceStatus.APPLIED)

    @property
    def failed(self) -> list[ResourceOutcome]:
        return self.with_status(ResourceStatus.FAILED)

    @property
    def skipped(self) -> list[ResourceOutcome]:
        return self.with_status(ResourceStatus.SKIPPED)

    @property
    def success(self) -> bool:
        """True when every resource was applied and nothing aborted the run."""
        return self.error is None and not self.cancelled and all(
            o.status == ResourceStatus.APPLIED for o in self.outcomes.values()
        )

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


class Executor:
    """Applies change sets through provider adapters and persists every result."""

    def __init__(
        self,
        registry: ProviderRegistry,
        store: StateStore,
        *,
        concurrency: int = 4,
        failure_policy: FailurePolicy = FailurePolicy.BEST_EFFORT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        lease_seconds: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            registry: Adapters by resource kind.
            store: State store results are persisted to.
            concurrency: Max resources in flight at once.
            failure_policy: Stop everything on first failure, or only the
                failed resource's downstream.
            max_retries: Attempts per provider call for transient errors.
            retry_backoff_seconds: Base of the exponential backoff.
            lease_seconds: If set, the lock lease is renewed once less than
                half of it remains.
            sleep: Awaitable sleep used between retries.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._registry = registry
        self._store = store
        self._concurrency = concurrency
        self._failure_policy = failure_policy
        self._max_retries = max(1, max_retries)
        self._retry_backoff_seconds = retry_backoff_seconds
        self._lease_seconds = lease_seconds
        self._sleep = sleep

    async def apply(
        self,
        change_set: ChangeSet,
        graph: ResourceGraph,
        snapshot: StateSnapshot,
        lock: LockHandle,
        cancel_event: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Apply a change set.

        Args:
            change_set: Plan computed against `snapshot`.
            graph: Desired resources the plan was computed from.
            snapshot: State the plan was computed against (its base version).
            lock: Held lock on the scope.
            cancel_event: When set, no further resources are started.

        Returns:
            ApplyResult with one outcome per change set entry. Fatal errors
            are reported in ApplyResult.error after in-flight work drained.
        """
        run = _ApplyRun(self, change_set, graph, snapshot, lock, cancel_event)
        return await run.execute()


class _ApplyRun:
    """Mutable bookkeeping for one Executor.apply() call."""

    def __init__(
        self,
        executor: Executor,
        change_set: ChangeSet,
        graph: ResourceGraph,
        snapshot: StateSnapshot,
        lock: LockHandle,
        cancel_event: asyncio.Event | None,
    ) -> None:
        self._executor = executor
        self._change_set = change_set
        self._graph = graph
        self._snapshot = snapshot.model_copy(deep=True)
        self._lock = lock
        self._cancel_event = cancel_event or asyncio.Event()
        self._persist_lock = asyncio.Lock()
        self._stop_reason: str | None = None
        self.result = ApplyResult(scope=change_set.scope)
        for entry in change_set:
            self.result.outcomes[entry.address] = ResourceOutcome(entry.address, entry.action)

    async def execute(self) -> ApplyResult:
        entries = {entry.address: entry for entry in self._change_set}
        forward = [e.address for e in self._change_set if e.action != ChangeAction.DELETE]
        deletes = [e.address for e in self._change_set if e.action == ChangeAction.DELETE]

        logger.info(
            "Starting apply",
            extra={
                "scope": self._change_set.scope,
                "base_version": self._change_set.base_version,
                "concurrency": self._executor._concurrency,
                "failure_policy": self._executor._failure_policy.value,
                **self._change_set.summary(),
            },
        )

        if self._snapshot.version != self._change_set.base_version:
            self.result.error = ConflictError(
                f"Change set was computed against version {self._change_set.base_version}, "
                f"snapshot is at version {self._snapshot.version}"
            )
            self._skip_remaining(forward + deletes, "aborted: stale change set")
        else:
            forward_waits = {
                address: set(self._graph.dependencies_of(address)) for address in forward
            }
            await self._run_phase(forward, forward_waits, entries)

            # A delete waits for the deletes of everything that depended on it
            delete_set = set(deletes)
            delete_waits: dict[ResourceAddress, set[ResourceAddress]] = {a: set() for a in deletes}
            for address in deletes:
                record = self._snapshot.get(address)
                for dependency in record.dependencies if record else []:
                    if dependency in delete_set:
                        delete_waits[dependency].add(address)
            await self._run_phase(deletes, delete_waits, entries)

        self.result.cancelled = self._cancel_event.is_set()
        self.result.snapshot = self._snapshot
        self.result.end_time = datetime.now(UTC)

        logger.info(
            "Apply finished",
            extra={
                "scope": self._change_set.scope,
                "applied": len(self.result.applied),
                "failed": len(self.result.failed),
                "skipped": len(self.result.skipped),
                "cancelled": self.result.cancelled,
                "state_version": self._snapshot.version,
                "duration_seconds": self.result.duration_seconds,
            },
        )
        return self.result

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    async def _run_phase(
        self,
        order: list[ResourceAddress],
        waits_on: dict[ResourceAddress, set[ResourceAddress]],
        entries: dict[ResourceAddress, ChangeSetEntry],
    ) -> None:
        outcomes = self.result.outcomes
        pending = list(order)
        running: dict[asyncio.Task[None], ResourceAddress] = {}

        while pending or running:
            if self._should_stop():
                self._skip_remaining(pending, self._stop_reason or "cancelled")
                pending.clear()

            for address in list(pending):
                if len(running) >= self._executor._concurrency:
                    break
                blockers = waits_on[address]
                broken = sorted(
                    b for b in blockers
                    if outcomes[b].status in (ResourceStatus.FAILED, ResourceStatus.SKIPPED)
                )
                if broken:
                    pending.remove(address)
                    outcomes[address].finish(
                        ResourceStatus.SKIPPED, f"upstream '{broken[0]}' did not apply"
                    )
                    logger.warning(
                        "Skipping resource downstream of failure",
                        extra={"resource": str(address), "upstream": str(broken[0])},
                    )
                    continue
                if all(outcomes[b].status == ResourceStatus.APPLIED for b in blockers):
                    pending.remove(address)
                    task = asyncio.create_task(self._apply_one(entries[address]))
                    running[task] = address

            if not running:
                if pending:
                    # Only reachable if waits_on is not a DAG over `order`
                    self._skip_remaining(pending, "aborted: unsatisfiable ordering")
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                running.pop(task)
                # _apply_one records every failure on the outcome itself
                task.result()

    def _should_stop(self) -> bool:
        if self._cancel_event.is_set():
            self._stop_reason = "cancelled"
            return True
        if self.result.error is not None:
            self._stop_reason = f"aborted: {self.result.error}"
            return True
        if self._executor._failure_policy == FailurePolicy.FAIL_FAST and self.result.failed:
            self._stop_reason = f"fail-fast after failure of '{self.result.failed[0].address}'"
            return True
        return False

    def _skip_remaining(self, addresses: list[ResourceAddress], reason: str) -> None:
        for address in addresses:
            outcome = self.result.outcomes[address]
            if outcome.status == ResourceStatus.PENDING:
                outcome.finish(ResourceStatus.SKIPPED, reason)

    # -------------------------------------------------------------------------
    # Per-resource work
    # -------------------------------------------------------------------------

    async def _apply_one(self, entry: ChangeSetEntry) -> None:
        outcome = self.result.outcomes[entry.address]
        outcome.status = ResourceStatus.APPLYING
        outcome.started_at = datetime.now(UTC)

        try:
            match entry.action:
                case ChangeAction.NO_OP:
                    await self._save_dependencies(entry.address)
                    outcome.finish(ResourceStatus.APPLIED, "no changes")
                    return
                case ChangeAction.CREATE:
                    await self._create(entry, outcome)
                case ChangeAction.UPDATE:
                    await self._update(entry, outcome)
                case ChangeAction.DELETE:
                    if not await self._delete(entry, outcome):
                        return
            outcome.finish(ResourceStatus.APPLIED)
            logger.info(
                "Resource applied",
                extra={
                    "resource": str(entry.address),
                    "action": entry.action.value,
                    "attempts": outcome.attempts,
                },
            )
        except (UnresolvedReference, StateError) as e:
            # Fatal for the whole run: stop scheduling, let in-flight work finish
            outcome.finish(ResourceStatus.FAILED, str(e))
            if self.result.error is None:
                self.result.error = e
            logger.error(
                "Apply aborted",
                extra={"resource": str(entry.address), "error": str(e), "error_type": type(e).__name__},
            )
        except ProviderError as e:
            outcome.finish(ResourceStatus.FAILED, str(e))
            logger.error(
                "Provider operation failed",
                extra={
                    "resource": str(entry.address),
                    "action": entry.action.value,
                    "attempts": outcome.attempts,
                    "transient": e.transient,
                    "error": str(e),
                },
            )
        except Exception as e:
            outcome.finish(ResourceStatus.FAILED, f"{type(e).__name__}: {e}")
            logger.exception(
                "Unexpected error applying resource",
                extra={"resource": str(entry.address), "action": entry.action.value},
            )

    async def _create(self, entry: ChangeSetEntry, outcome: ResourceOutcome) -> None:
        address = entry.address
        resource = self._graph.resource(address)
        attributes = resolve_attributes(
            address, resource.desired_attributes(), self._snapshot.get, strict=True
        )
        adapter = self._executor._registry.adapter_for(address.kind)

        created = await self._call_with_retry(
            outcome, "create", lambda: adapter.create(address.name, attributes)
        )
        record = StateRecord(
            kind=address.kind,
            name=address.name,
            id=created.id,
            attributes=attributes,
            outputs=created.outputs,
            dependencies=sorted(self._graph.dependencies_of(address)),
        )
        await self._persist(lambda snapshot: snapshot.put(record))

    async def _update(self, entry: ChangeSetEntry, outcome: ResourceOutcome) -> None:
        address = entry.address
        resource = self._graph.resource(address)
        current = self._snapshot.get(address)
        if current is None:
            raise ConflictError(f"Resource '{address}' disappeared from state before update")

        attributes = resolve_attributes(
            address, resource.desired_attributes(), self._snapshot.get, strict=True
        )
        changes = attribute_changes(
            current.attributes, attributes, resource.lifecycle.ignore_changes
        )
        dependencies = sorted(self._graph.dependencies_of(address))

        if not changes:
            # Unknown values from plan time resolved to what is already applied
            await self._save_dependencies(address)
            return

        payload = {change.name: change.after for change in changes}
        adapter = self._executor._registry.adapter_for(address.kind)
        outputs = await self._call_with_retry(
            outcome, "update", lambda: adapter.update(current.id, payload)
        )

        stored = dict(current.attributes)
        for change in changes:
            if change.name in attributes:
                stored[change.name] = attributes[change.name]
            else:
                stored.pop(change.name, None)

        updated = current.model_copy(
            update={
                "attributes": stored,
                "outputs": outputs,
                "dependencies": dependencies,
                "applied_at": datetime.now(UTC),
            }
        )
        await self._persist(lambda snapshot: snapshot.put(updated))

    async def _save_dependencies(self, address: ResourceAddress) -> None:
        """Re-save the stored dependency list when the graph edges changed.

        Delete ordering reads this list, so it must follow the configuration
        even when no provider call is needed.
        """
        current = self._snapshot.get(address)
        dependencies = sorted(self._graph.dependencies_of(address))
        if current is None or dependencies == current.dependencies:
            return
        updated = current.model_copy(update={"dependencies": dependencies})
        await self._persist(lambda snapshot: snapshot.put(updated))
        logger.info(
            "Updated stored dependencies",
            extra={"resource": str(address), "dependencies": [str(d) for d in dependencies]},
        )

    async def _delete(self, entry: ChangeSetEntry, outcome: ResourceOutcome) -> bool:
        """Delete a resource. Returns False if the delete was skipped."""
        address = entry.address
        record = self._snapshot.get(address)
        if record is None:
            return True

        still_needed = self._snapshot.dependents_of(address)
        if still_needed:
            names = ", ".join(str(a) for a in still_needed)
            outcome.finish(ResourceStatus.SKIPPED, f"still depended on by {names}")
            logger.warning(
                "Delete skipped, resource still has dependents",
                extra={"resource": str(address), "dependents": [str(a) for a in still_needed]},
            )
            return False

        adapter = self._executor._registry.adapter_for(address.kind)
        try:
            await self._call_with_retry(outcome, "delete", lambda: adapter.delete(record.id))
        except ResourceNotFound:
            logger.info(
                "Resource already absent at delete",
                extra={"resource": str(address), "id": record.id},
            )
        await self._persist(lambda snapshot: snapshot.remove(address))
        return True

    async def _call_with_retry(
        self,
        outcome: ResourceOutcome,
        operation: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """Invoke a provider operation, retrying transient errors with backoff.

        Raises:
            ProviderError: Permanent failure, or transient after all attempts.
        """
        max_attempts = self._executor._max_retries
        for attempt in range(1, max_attempts + 1):
            outcome.attempts = attempt
            try:
                return await call()
            except ProviderError as e:
                if not e.transient or attempt >= max_attempts:
                    raise

                # Exponential backoff with jitter
                backoff = self._executor._retry_backoff_seconds * (2 ** (attempt - 1))
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter

                logger.warning(
                    "Transient provider error, retrying",
                    extra={
                        "resource": str(outcome.address),
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await self._executor._sleep(wait_time)

        raise AssertionError("Retry loop completed without returning or raising")

    async def _persist(self, mutate: Callable[[StateSnapshot], None]) -> None:
        """Apply a mutation to the working snapshot and save it."""
        executor = self._executor
        async with self._persist_lock:
            await self._renew_lease_if_needed()
            working = self._snapshot.model_copy(deep=True)
            mutate(working)
            saved = await asyncio.to_thread(
                executor._store.save, self._change_set.scope, working, self._lock
            )
            self._snapshot = saved

    async def _renew_lease_if_needed(self) -> None:
        lease = self._executor._lease_seconds
        if lease is None:
            return
        remaining = (self._lock.expires_at - datetime.now(UTC)).total_seconds()
        if remaining < lease / 2:
            self._lock = await asyncio.to_thread(self._executor._store.renew_lock, self._lock, lease)
            logger.debug(
                "Renewed state lock",
                extra={"scope": self._lock.scope, "expires_at": self._lock.expires_at.isoformat()},
            )
