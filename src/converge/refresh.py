"""Drift detection by reading observed state through provider adapters.

Before diffing, every stored record is read back from its backend:
- ResourceNotFound drops the record, so the next diff plans a CREATE
- Changed outputs replace the stored outputs

Reads run concurrently (bounded); the snapshot is saved once, under the
held lock, only if something changed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from .models import ResourceAddress
from .provider import ProviderError, ProviderRegistry, ResourceNotFound
from .state import LockHandle, StateRecord, StateSnapshot, StateStore

logger = logging.getLogger(__name__)


class RefreshError(Exception):
    """Raised when observed state could not be read for some resources."""

    def __init__(self, failures: dict[ResourceAddress, str]) -> None:
        self.failures = failures
        detail = "; ".join(f"{a}: {reason}" for a, reason in sorted(failures.items()))
        super().__init__(f"Refresh failed for {len(failures)} resource(s): {detail}")


@dataclass
class RefreshResult:
    """Outcome of a refresh."""

    snapshot: StateSnapshot
    removed: list[ResourceAddress] = field(default_factory=list)
    updated: list[ResourceAddress] = field(default_factory=list)

    @property
    def drift_found(self) -> bool:
        return bool(self.removed or self.updated)


async def refresh(
    snapshot: StateSnapshot,
    registry: ProviderRegistry,
    store: StateStore,
    lock: LockHandle,
    concurrency: int = 4,
) -> RefreshResult:
    """Reconcile a snapshot with what the backends currently report.

    Raises:
        RefreshError: If any read failed with something other than
            ResourceNotFound. Nothing is saved in that case.
    """
    semaphore = asyncio.Semaphore(concurrency)
    working = snapshot.model_copy(deep=True)
    removed: list[ResourceAddress] = []
    updated: list[ResourceAddress] = []
    failures: dict[ResourceAddress, str] = {}

    async def read_one(record: StateRecord) -> None:
        address = record.address
        if not registry.has_kind(address.kind):
            logger.warning(
                "No adapter for stored resource kind, skipping refresh",
                extra={"resource": str(address), "kind": address.kind},
            )
            return
        adapter = registry.adapter_for(address.kind)
        async with semaphore:
            try:
                outputs = await adapter.read(record.id)
            except ResourceNotFound:
                logger.warning(
                    "Resource deleted outside of converge",
                    extra={"resource": str(address), "id": record.id},
                )
                removed.append(address)
                return
            except ProviderError as e:
                failures[address] = str(e)
                return

        if outputs != record.outputs:
            logger.info(
                "Resource outputs drifted",
                extra={"resource": str(address), "id": record.id},
            )
            working.put(record.model_copy(update={"outputs": outputs}))
            updated.append(address)

    await asyncio.gather(*(read_one(r) for r in snapshot.records.values()))

    if failures:
        raise RefreshError(failures)

    for address in removed:
        working.remove(address)

    result = RefreshResult(snapshot=snapshot, removed=sorted(removed), updated=sorted(updated))
    if result.drift_found:
        result.snapshot = await asyncio.to_thread(store.save, snapshot.scope, working, lock)

    logger.info(
        "Refresh complete",
        extra={
            "scope": snapshot.scope,
            "records": len(snapshot),
            "removed": len(result.removed),
            "updated": len(result.updated),
        },
    )
    return result
