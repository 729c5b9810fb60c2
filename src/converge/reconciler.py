"""Reconciliation cycle orchestration.

One cycle:
1. Load and validate declarations (no lock held, nothing mutated yet)
2. Build the resource graph
3. Acquire the scope lock and load the last applied state
4. Refresh stored records against the backends (optional)
5. Diff desired against stored state and render the plan
6. Act on the plan according to the mode:
   - OBSERVE: report only
   - PROTECT: any pending change is a violation, nothing is applied
   - ENFORCE: apply through the executor
7. Release the lock

Destroy cycles use an empty desired set, so every stored resource is planned
for deletion in reverse dependency order. Resources declared with
prevent_destroy still block the plan.

When an interval is configured, cycles repeat until shutdown. A circuit
breaker pauses reconciliation after repeated failures.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .config import Config, ReconciliationMode
from .config_loader import ConfigLoadError, load_configuration
from .differ import ChangeAction, ChangeSet, DestroyProtected, diff
from .executor import ApplyResult, Executor
from .graph import CycleDetected, ResourceGraph, build_graph
from .models import SchemaViolation
from .plan import render_apply, render_plan
from .provider import ProviderRegistry
from .refresh import RefreshError, RefreshResult, refresh
from .state import LockHandle, StateError, StateSnapshot, StateStore

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes

# Errors that end a cycle without a traceback in the logs
EXPECTED_ERRORS = (
    ConfigLoadError,
    SchemaViolation,
    CycleDetected,
    DestroyProtected,
    RefreshError,
    StateError,
)


class ApplyFailed(Exception):
    """Raised when an apply run finished with failed or skipped resources."""

    def __init__(self, result: ApplyResult) -> None:
        self.result = result
        super().__init__(
            f"Apply for scope '{result.scope}' did not complete: "
            f"{len(result.failed)} failed, {len(result.skipped)} skipped"
        )


@dataclass
class ReconcileResult:
    """Result of a single reconciliation cycle."""

    scope: str
    mode: ReconciliationMode = ReconciliationMode.OBSERVE
    destroy: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    change_set: ChangeSet | None = None
    refresh: RefreshResult | None = None
    apply_result: ApplyResult | None = None
    plan_output: str = ""
    apply_output: str = ""
    drift_found: bool = False
    changes_applied: int = 0
    changes_blocked: int = 0  # For PROTECT mode: drift detected but blocked
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None

    @property
    def violation(self) -> bool:
        """True when PROTECT mode found changes it refused to apply."""
        return self.mode == ReconciliationMode.PROTECT and self.changes_blocked > 0


class Reconciler:
    """Drives plan/apply cycles for one scope.

    The reconciler owns no resources itself: declarations come from the
    configuration file, state from the store, and every backend call goes
    through the registered provider adapters.
    """

    def __init__(
        self,
        config: Config,
        registry: ProviderRegistry,
        store: StateStore,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize reconciler.

        Args:
            config: Validated engine configuration.
            registry: Provider adapters by resource kind.
            store: State store holding the scope's snapshot and lock.
            sleep: Awaitable sleep used between provider retries.
        """
        self._config = config
        self._registry = registry
        self._store = store
        self._executor = Executor(
            registry,
            store,
            concurrency=config.concurrency,
            failure_policy=config.failure_policy,
            max_retries=config.max_retries,
            retry_backoff_seconds=config.retry_backoff_seconds,
            lease_seconds=config.lock_lease_seconds,
            sleep=sleep,
        )

        self._shutdown_event = asyncio.Event()
        self._cancel_event = asyncio.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    async def run(self) -> None:
        """Run reconciliation cycles at the configured interval until shutdown.

        Implements circuit breaker pattern: after MAX_CONSECUTIVE_FAILURES,
        the circuit opens and reconciliation pauses for CIRCUIT_BREAKER_RESET_SECONDS.
        """
        interval = self._config.reconcile_interval_seconds
        logger.info(
            "Starting reconciler",
            extra={
                "scope": self._config.scope,
                "mode": self._config.mode.value,
                "interval_seconds": interval,
                "destroy": self._config.destroy,
            },
        )

        while not self._shutdown_event.is_set():
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "scope": self._config.scope,
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    await self._wait_for_shutdown(min(remaining, interval))
                    continue

                logger.info(
                    "Circuit breaker reset, resuming reconciliation",
                    extra={"scope": self._config.scope},
                )
                self._circuit_open_until = None
                self._consecutive_failures = 0

            result = await self.reconcile_once()
            self._record_outcome(result)

            await self._wait_for_shutdown(interval)

        logger.info("Reconciler shutdown complete", extra={"scope": self._config.scope})

    def shutdown(self) -> None:
        """Stop the loop and stop scheduling new resources in a running apply."""
        logger.info("Shutdown requested", extra={"scope": self._config.scope})
        self._shutdown_event.set()
        self._cancel_event.set()

    async def _wait_for_shutdown(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except TimeoutError:
            # Normal timeout, continue to next cycle
            pass

    def _record_outcome(self, result: ReconcileResult) -> None:
        """Update circuit breaker state from a finished cycle."""
        if result.error is None:
            self._consecutive_failures = 0
            return

        self._consecutive_failures += 1
        if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            self._circuit_open_until = datetime.now(UTC) + timedelta(
                seconds=CIRCUIT_BREAKER_RESET_SECONDS
            )
            logger.error(
                "Circuit breaker opened after consecutive failures",
                extra={
                    "scope": self._config.scope,
                    "consecutive_failures": self._consecutive_failures,
                    "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                },
            )

    async def plan(self) -> ReconcileResult:
        """Compute and render the plan without applying anything."""
        return await self.reconcile_once(mode=ReconciliationMode.OBSERVE)

    async def destroy(self) -> ReconcileResult:
        """Delete every resource recorded for the scope."""
        return await self.reconcile_once(destroy=True, mode=ReconciliationMode.ENFORCE)

    async def reconcile_once(
        self,
        *,
        destroy: bool | None = None,
        mode: ReconciliationMode | None = None,
    ) -> ReconcileResult:
        """Run one cycle.

        Args:
            destroy: Plan deletion of everything. Defaults to the configuration.
            mode: Overrides the configured mode for this cycle.

        Returns:
            ReconcileResult. Errors are reported in `error`, never raised.
        """
        mode = mode or self._config.mode
        destroy = self._config.destroy if destroy is None else destroy
        scope = self._config.scope
        result = ReconcileResult(scope=scope, mode=mode, destroy=destroy)
        lock: LockHandle | None = None

        try:
            configuration = await asyncio.to_thread(
                load_configuration, self._config.config_path, self._registry, self._config.var_file
            )
            graph = build_graph(configuration.resources, self._registry)
            protected = [r.address for r in graph if r.lifecycle.prevent_destroy]
            desired = build_graph([], self._registry) if destroy else graph

            lock = await asyncio.to_thread(
                self._store.acquire_lock, scope, self._config.lock_lease_seconds, self._config.holder
            )
            snapshot = await asyncio.to_thread(self._store.load_or_empty, scope)

            if self._config.refresh and len(snapshot):
                result.refresh = await refresh(
                    snapshot, self._registry, self._store, lock, self._config.concurrency
                )
                snapshot = result.refresh.snapshot

            change_set = diff(desired, snapshot, protected=protected)
            result.change_set = change_set
            result.drift_found = change_set.has_changes
            result.plan_output = render_plan(change_set, self._registry, self._config.plan_format)

            if not change_set.has_changes:
                logger.info("No drift detected", extra={"scope": scope})
            elif mode == ReconciliationMode.OBSERVE:
                logger.info(
                    "Drift detected (OBSERVE mode, not applying)",
                    extra={"scope": scope, **change_set.summary()},
                )
            elif mode == ReconciliationMode.PROTECT:
                result.changes_blocked = sum(
                    1 for e in change_set if e.action != ChangeAction.NO_OP
                )
                logger.warning(
                    "Drift detected (PROTECT mode, changes blocked)",
                    extra={"scope": scope, "changes_blocked": result.changes_blocked},
                )
            else:
                await self._apply(result, change_set, desired, snapshot, lock)

        except EXPECTED_ERRORS as e:
            result.error = e
        except Exception as e:
            logger.exception("Unexpected error during reconciliation", extra={"scope": scope})
            result.error = e
        finally:
            if lock is not None:
                await self._release(lock)
            result.end_time = datetime.now(UTC)

        self._log_result(result)
        return result

    async def _apply(
        self,
        result: ReconcileResult,
        change_set: ChangeSet,
        desired: ResourceGraph,
        snapshot: StateSnapshot,
        lock: LockHandle,
    ) -> None:
        apply_result = await self._executor.apply(
            change_set, desired, snapshot, lock, self._cancel_event
        )
        result.apply_result = apply_result
        result.apply_output = render_apply(apply_result, self._config.plan_format)
        result.changes_applied = sum(
            1 for o in apply_result.applied if o.action != ChangeAction.NO_OP
        )
        if apply_result.error is not None:
            result.error = apply_result.error
        elif not apply_result.success:
            result.error = ApplyFailed(apply_result)

    async def _release(self, lock: LockHandle) -> None:
        try:
            await asyncio.to_thread(self._store.release_lock, lock)
        except StateError as e:
            # Lease expired and another run took over; nothing left to release
            logger.warning(
                "Failed to release state lock",
                extra={"scope": lock.scope, "error": str(e)},
            )

    async def rollback(self, version: int) -> StateSnapshot:
        """Restore a previous state version of the scope as the newest version.

        Raises:
            AlreadyLocked: If another run holds the scope lock.
            StateNotFound: If the version is not in history.
        """
        scope = self._config.scope
        lock = await asyncio.to_thread(
            self._store.acquire_lock, scope, self._config.lock_lease_seconds, self._config.holder
        )
        try:
            return await asyncio.to_thread(self._store.rollback, scope, version, lock)
        finally:
            await self._release(lock)

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "scope": result.scope,
            "mode": result.mode.value,
            "destroy": result.destroy,
            "duration_seconds": result.duration_seconds,
            "drift_found": result.drift_found,
            "changes_applied": result.changes_applied,
            "changes_blocked": result.changes_blocked,
        }
        if result.change_set is not None:
            extra["base_version"] = result.change_set.base_version
        if result.apply_result is not None and result.apply_result.snapshot is not None:
            extra["state_version"] = result.apply_result.snapshot.version

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.error("Reconciliation failed", extra=extra)
        elif result.changes_blocked > 0:
            logger.warning("Reconciliation: drift blocked (PROTECT mode)", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
