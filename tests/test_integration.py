"""Integration tests for the reconciliation loop.

These tests drive Reconciler end to end against FakeCloud: declarations
are loaded from YAML on disk, state lives in an in-memory store, and every
backend call goes through the fake provider adapters.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
from fake_cloud import FakeCloud, SimulatedCrash

from converge.config import Config, ReconciliationMode
from converge.config_loader import ConfigLoadError
from converge.differ import ChangeAction, DestroyProtected
from converge.graph import CycleDetected
from converge.main import EXIT_FAILURE, EXIT_LOCKED, EXIT_PROTECT_VIOLATION, exit_code_for
from converge.models import ResourceAddress
from converge.provider import ProviderRegistry
from converge.reconciler import (
    MAX_CONSECUTIVE_FAILURES,
    ApplyFailed,
    Reconciler,
    ReconcileResult,
)
from converge.state import AlreadyLocked, InMemoryStateStore

SCOPE = "dev"

NETWORK_AND_INSTANCE = """\
resources:
  - kind: network
    name: main
    attributes:
      cidr_block: 10.0.0.0/16
  - kind: instance
    name: web
    attributes:
      instance_type: t3.micro
      subnet_id: !ref network.main.default_subnet_id
"""

WEB_STACK = """\
resources:
  - kind: network
    name: main
    attributes:
      cidr_block: 10.0.0.0/16
  - kind: subnet
    name: a
    attributes:
      network_id: !ref network.main.id
      cidr_block: 10.0.1.0/24
  - kind: subnet
    name: b
    attributes:
      network_id: !ref network.main.id
      cidr_block: 10.0.2.0/24
  - kind: security_group
    name: web
    attributes:
      network_id: !ref network.main.id
  - kind: instance
    name: web
    attributes:
      instance_type: t3.micro
      subnet_id: !ref subnet.a.id
      security_group_ids: [!ref security_group.web.id]
"""

NETWORK_ONLY = """\
resources:
  - kind: network
    name: main
    attributes:
      cidr_block: 10.0.0.0/16
"""

PROTECTED_NETWORK = """\
resources:
  - kind: network
    name: main
    attributes:
      cidr_block: 10.0.0.0/16
    lifecycle:
      preventDestroy: true
"""


async def _no_sleep(seconds: float) -> None:
    pass


def _addr(value: str) -> ResourceAddress:
    return ResourceAddress.parse(value)


def _actions(result: ReconcileResult) -> list[tuple[str, ChangeAction]]:
    assert result.change_set is not None
    return [(str(e.address), e.action) for e in result.change_set]


class TestReconcilerIntegration:
    """Integration tests for Reconciler with the fake backend."""

    @pytest.fixture
    def config_file(self, tmp_path: Path) -> Path:
        """Declaration file; tests overwrite its content as needed."""
        path = tmp_path / "converge.yaml"
        path.write_text(NETWORK_AND_INSTANCE)
        return path

    @pytest.fixture
    def make_reconciler(
        self,
        config_file: Path,
        registry: ProviderRegistry,
        store: InMemoryStateStore,
    ):
        """Factory for reconcilers sharing the same store and backend."""

        def factory(**overrides: Any) -> Reconciler:
            settings: dict[str, Any] = {
                "scope": SCOPE,
                "config_path": config_file,
                "mode": ReconciliationMode.ENFORCE,
                "retry_backoff_seconds": 0,
                "lock_lease_seconds": 60,
                "holder": "tests",
            }
            settings.update(overrides)
            return Reconciler(Config(**settings), registry, store, sleep=_no_sleep)

        return factory

    @pytest.mark.asyncio
    async def test_network_and_instance_scenario(
        self, make_reconciler, cloud: FakeCloud, store: InMemoryStateStore
    ) -> None:
        """Test create in dependency order, then a clean re-plan."""
        reconciler = make_reconciler()

        result = await reconciler.reconcile_once()

        assert result.success, result.error
        assert _actions(result) == [
            ("network.main", ChangeAction.CREATE),
            ("instance.web", ChangeAction.CREATE),
        ]
        assert cloud.calls_for("create") == ["network.main", "instance.web"]
        assert result.changes_applied == 2

        snapshot = store.load(SCOPE)
        network = snapshot.get(_addr("network.main"))
        instance = snapshot.get(_addr("instance.web"))
        assert network is not None and network.id
        assert instance is not None and instance.id
        assert instance.attributes["subnet_id"] == f"{network.id}-default"

        replan = await reconciler.plan()

        assert replan.success
        assert _actions(replan) == [
            ("network.main", ChangeAction.NO_OP),
            ("instance.web", ChangeAction.NO_OP),
        ]
        assert not replan.drift_found

    @pytest.mark.asyncio
    async def test_crash_mid_apply_resumes_without_duplicates(
        self,
        make_reconciler,
        config_file: Path,
        cloud: FakeCloud,
        store: InMemoryStateStore,
    ) -> None:
        """Test that resources applied before a crash are not created again."""
        config_file.write_text(WEB_STACK)
        cloud.crash_after(2)

        with pytest.raises(SimulatedCrash):
            await make_reconciler(concurrency=1).reconcile_once()

        # The lock was released on the way out and state holds what was applied
        snapshot = store.load(SCOPE)
        assert snapshot.addresses() == [_addr("network.main"), _addr("security_group.web")]

        cloud.heal()
        reconciler = make_reconciler(concurrency=1)
        planned = await reconciler.plan()

        assert _actions(planned) == [
            ("network.main", ChangeAction.NO_OP),
            ("security_group.web", ChangeAction.NO_OP),
            ("subnet.a", ChangeAction.CREATE),
            ("instance.web", ChangeAction.CREATE),
            ("subnet.b", ChangeAction.CREATE),
        ]

        result = await reconciler.reconcile_once()

        assert result.success, result.error
        assert result.changes_applied == 3
        created = sorted((r.kind, r.name) for r in cloud.resources.values())
        assert created == [
            ("instance", "web"),
            ("network", "main"),
            ("security_group", "web"),
            ("subnet", "a"),
            ("subnet", "b"),
        ]

    @pytest.mark.asyncio
    async def test_locked_scope(
        self, make_reconciler, cloud: FakeCloud, store: InMemoryStateStore
    ) -> None:
        """Test that a run against a locked scope fails without touching anything."""
        store.acquire_lock(SCOPE, 60, "other-run")

        result = await make_reconciler().reconcile_once()

        assert isinstance(result.error, AlreadyLocked)
        assert exit_code_for(result) == EXIT_LOCKED
        assert cloud.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_runs(self, make_reconciler, cloud: FakeCloud) -> None:
        """Test that only one of two simultaneous runs gets the lock."""
        cloud.delay = 0.05

        first, second = await asyncio.gather(
            make_reconciler(holder="run-1").reconcile_once(),
            make_reconciler(holder="run-2").reconcile_once(),
        )

        outcomes = sorted([first.success, second.success])
        assert outcomes == [False, True]
        failed = first if not first.success else second
        assert isinstance(failed.error, AlreadyLocked)
        assert len(cloud.resources) == 2

    @pytest.mark.asyncio
    async def test_observe_mode_does_not_apply(
        self, make_reconciler, cloud: FakeCloud, store: InMemoryStateStore
    ) -> None:
        """Test that OBSERVE only reports the plan."""
        result = await make_reconciler(mode=ReconciliationMode.OBSERVE).reconcile_once()

        assert result.success
        assert result.drift_found
        assert result.apply_result is None
        assert "+ network.main" in result.plan_output
        assert cloud.calls_for("create") == []
        assert len(store.load_or_empty(SCOPE)) == 0

    @pytest.mark.asyncio
    async def test_protect_mode_blocks_changes(self, make_reconciler, cloud: FakeCloud) -> None:
        """Test that PROTECT reports pending changes as a violation."""
        result = await make_reconciler(mode=ReconciliationMode.PROTECT).reconcile_once()

        assert result.success
        assert result.changes_blocked == 2
        assert result.violation
        assert exit_code_for(result) == EXIT_PROTECT_VIOLATION
        assert cloud.calls_for("create") == []

    @pytest.mark.asyncio
    async def test_protect_mode_without_drift(self, make_reconciler) -> None:
        """Test that PROTECT passes once the scope is converged."""
        await make_reconciler().reconcile_once()

        result = await make_reconciler(mode=ReconciliationMode.PROTECT).reconcile_once()

        assert result.changes_blocked == 0
        assert not result.violation

    @pytest.mark.asyncio
    async def test_attribute_change_is_updated_in_place(
        self, make_reconciler, config_file: Path, cloud: FakeCloud
    ) -> None:
        """Test that editing a declaration produces an update, not a replacement."""
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        config_file.write_text(NETWORK_AND_INSTANCE.replace("t3.micro", "t3.large"))

        result = await reconciler.reconcile_once()

        assert result.success, result.error
        assert _actions(result) == [
            ("network.main", ChangeAction.NO_OP),
            ("instance.web", ChangeAction.UPDATE),
        ]
        assert cloud.calls_for("update") == ["instance.web"]
        assert cloud.find("instance", "web").attributes["instance_type"] == "t3.large"

    @pytest.mark.asyncio
    async def test_removed_declaration_is_deleted(
        self, make_reconciler, config_file: Path, cloud: FakeCloud, store: InMemoryStateStore
    ) -> None:
        """Test that resources no longer declared are deleted."""
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        config_file.write_text(NETWORK_ONLY)

        result = await reconciler.reconcile_once()

        assert result.success, result.error
        assert ("instance.web", ChangeAction.DELETE) in _actions(result)
        assert cloud.find("instance", "web") is None
        assert store.load(SCOPE).addresses() == [_addr("network.main")]

    @pytest.mark.asyncio
    async def test_destroy_deletes_in_reverse_order(
        self, make_reconciler, config_file: Path, cloud: FakeCloud, store: InMemoryStateStore
    ) -> None:
        """Test that destroy removes dependents before their dependencies."""
        config_file.write_text(WEB_STACK)
        reconciler = make_reconciler()
        await reconciler.reconcile_once()

        result = await reconciler.destroy()

        assert result.success, result.error
        assert result.destroy
        deletes = cloud.calls_for("delete")
        assert len(deletes) == 5
        assert deletes.index("instance.web") < deletes.index("subnet.a")
        assert deletes.index("instance.web") < deletes.index("security_group.web")
        assert deletes[-1] == "network.main"
        assert cloud.resources == {}
        assert len(store.load(SCOPE)) == 0

    @pytest.mark.asyncio
    async def test_prevent_destroy_blocks_destroy(
        self, make_reconciler, config_file: Path, cloud: FakeCloud
    ) -> None:
        """Test that protected resources abort the destroy plan."""
        config_file.write_text(PROTECTED_NETWORK)
        reconciler = make_reconciler()
        await reconciler.reconcile_once()

        result = await reconciler.destroy()

        assert isinstance(result.error, DestroyProtected)
        assert result.error.addresses == [_addr("network.main")]
        assert exit_code_for(result) == EXIT_FAILURE
        assert cloud.calls_for("delete") == []

    @pytest.mark.asyncio
    async def test_refresh_recreates_deleted_resource(
        self, make_reconciler, cloud: FakeCloud
    ) -> None:
        """Test that a resource deleted out of band is created again."""
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        cloud.remove_out_of_band("instance", "web")

        result = await reconciler.reconcile_once()

        assert result.success, result.error
        assert result.refresh is not None
        assert result.refresh.removed == [_addr("instance.web")]
        assert ("instance.web", ChangeAction.CREATE) in _actions(result)
        assert cloud.find("instance", "web") is not None

    @pytest.mark.asyncio
    async def test_without_refresh_drift_goes_unnoticed(
        self, make_reconciler, cloud: FakeCloud
    ) -> None:
        """Test that disabling refresh diffs against recorded state only."""
        await make_reconciler().reconcile_once()
        cloud.remove_out_of_band("instance", "web")

        result = await make_reconciler(refresh=False).reconcile_once()

        assert result.refresh is None
        assert not result.drift_found

    @pytest.mark.asyncio
    async def test_apply_failure(
        self, make_reconciler, cloud: FakeCloud, store: InMemoryStateStore
    ) -> None:
        """Test that a failed resource fails the cycle and skips its dependents."""
        cloud.fail("network", "main", "create")

        result = await make_reconciler().reconcile_once()

        assert isinstance(result.error, ApplyFailed)
        assert exit_code_for(result) == EXIT_FAILURE
        assert result.apply_result is not None
        assert [str(o.address) for o in result.apply_result.failed] == ["network.main"]
        assert [str(o.address) for o in result.apply_result.skipped] == ["instance.web"]
        assert "FAILED network.main" in result.apply_output
        assert len(store.load_or_empty(SCOPE)) == 0

    @pytest.mark.asyncio
    async def test_invalid_configuration(
        self, make_reconciler, config_file: Path, store: InMemoryStateStore
    ) -> None:
        """Test that load errors are reported and never take the lock."""
        config_file.write_text("resources: [\n")

        result = await make_reconciler().reconcile_once()

        assert isinstance(result.error, ConfigLoadError)
        assert result.change_set is None
        # Lock is free
        store.release_lock(store.acquire_lock(SCOPE, 60, "probe"))

    @pytest.mark.asyncio
    async def test_dependency_cycle(self, make_reconciler, config_file: Path) -> None:
        """Test that cyclic declarations are rejected before planning."""
        config_file.write_text(
            """\
resources:
  - kind: iam_role
    name: a
    attributes: {assume_role_policy: "{}"}
    dependsOn: [iam_role.b]
  - kind: iam_role
    name: b
    attributes: {assume_role_policy: "{}"}
    dependsOn: [iam_role.a]
"""
        )

        result = await make_reconciler().reconcile_once()

        assert isinstance(result.error, CycleDetected)
        assert exit_code_for(result) == EXIT_FAILURE

    @pytest.mark.asyncio
    async def test_rollback(
        self, make_reconciler, config_file: Path, store: InMemoryStateStore
    ) -> None:
        """Test that an older state version becomes the newest one."""
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        assert store.load(SCOPE).version == 2

        restored = await reconciler.rollback(1)

        assert restored.version == 3
        assert restored.addresses() == [_addr("network.main")]
        assert store.load(SCOPE).addresses() == [_addr("network.main")]


class TestReconcilerLoop:
    """Tests for the continuous loop and its circuit breaker."""

    @pytest.fixture
    def reconciler(
        self, tmp_path: Path, registry: ProviderRegistry, store: InMemoryStateStore
    ) -> Reconciler:
        path = tmp_path / "converge.yaml"
        path.write_text(NETWORK_AND_INSTANCE)
        config = Config(
            scope=SCOPE,
            config_path=path,
            mode=ReconciliationMode.ENFORCE,
            retry_backoff_seconds=0,
            reconcile_interval_seconds=60,
        )
        return Reconciler(config, registry, store, sleep=_no_sleep)

    @pytest.mark.asyncio
    async def test_run_until_shutdown(
        self, reconciler: Reconciler, store: InMemoryStateStore
    ) -> None:
        """Test that the loop runs a cycle and stops on shutdown."""
        task = asyncio.create_task(reconciler.run())

        for _ in range(200):
            if len(store.load_or_empty(SCOPE)) == 2:
                break
            await asyncio.sleep(0.01)
        reconciler.shutdown()
        await asyncio.wait_for(task, timeout=5)

        assert len(store.load(SCOPE)) == 2

    def test_circuit_breaker_opens(self, reconciler: Reconciler) -> None:
        """Test that repeated failures open the circuit."""
        for _ in range(MAX_CONSECUTIVE_FAILURES - 1):
            reconciler._record_outcome(ReconcileResult(scope=SCOPE, error=RuntimeError("boom")))
        assert reconciler._circuit_open_until is None

        reconciler._record_outcome(ReconcileResult(scope=SCOPE, error=RuntimeError("boom")))

        assert reconciler._circuit_open_until is not None

    def test_success_resets_failure_count(self, reconciler: Reconciler) -> None:
        """Test that one good cycle clears the failure streak."""
        for _ in range(MAX_CONSECUTIVE_FAILURES - 1):
            reconciler._record_outcome(ReconcileResult(scope=SCOPE, error=RuntimeError("boom")))

        reconciler._record_outcome(ReconcileResult(scope=SCOPE))

        assert reconciler._consecutive_failures == 0
        assert reconciler._circuit_open_until is None
