"""Desired-versus-stored state comparison.

Produces a change set with exactly one entry per resource found in either the
desired graph or the stored snapshot:

- in the graph, not in state          -> CREATE
- in both, attributes differ          -> UPDATE (with the changed attributes)
- in both, attributes equal           -> NO_OP
- in state, not in the graph          -> DELETE

Creates, updates and no-ops follow the graph's topological order
(dependencies first). Deletes follow the reverse dependency order recorded in
state (dependents first).

References are resolved against values already recorded in state. A
reference to a resource that has not been applied yet resolves to UNKNOWN,
which always counts as a change. The same holds for a reference into a
resource planned for UPDATE when it reads a changed attribute or an output;
its id and unchanged attributes keep their recorded values.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .graph import ResourceGraph, reverse_order
from .models import Reference, ResourceAddress, map_references
from .state import StateRecord, StateSnapshot

logger = logging.getLogger(__name__)


class UnresolvedReference(Exception):
    """Raised when a reference is resolved before its target was applied.

    During apply this indicates an ordering defect, never a runtime condition.
    """

    def __init__(self, source: ResourceAddress, reference: Reference, reason: str) -> None:
        self.source = source
        self.reference = reference
        super().__init__(f"Resource '{source}' cannot resolve reference '{reference}': {reason}")


class DestroyProtected(Exception):
    """Raised when a plan would delete resources declared with prevent_destroy."""

    def __init__(self, addresses: list[ResourceAddress]) -> None:
        self.addresses = addresses
        names = ", ".join(str(a) for a in addresses)
        super().__init__(f"Plan would delete resources protected by prevent_destroy: {names}")


class _Unknown:
    """Value of an attribute that is only known after apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __deepcopy__(self, memo: dict[int, Any]) -> _Unknown:
        return self


UNKNOWN = _Unknown()


class ChangeAction(str, Enum):
    """Per-resource action in a change set."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no_op"


@dataclass(frozen=True)
class AttributeChange:
    """A single top-level attribute that differs between state and desired."""

    name: str
    before: Any = None
    after: Any = None


@dataclass
class ChangeSetEntry:
    """Action planned for one resource."""

    address: ResourceAddress
    action: ChangeAction
    changes: list[AttributeChange] = field(default_factory=list)

    @property
    def changed_attributes(self) -> list[str]:
        return [change.name for change in self.changes]


@dataclass
class ChangeSet:
    """Ordered plan for a scope, computed against one state version."""

    scope: str
    base_version: int
    entries: list[ChangeSetEntry] = field(default_factory=list)

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def entry(self, address: ResourceAddress) -> ChangeSetEntry:
        for entry in self.entries:
            if entry.address == address:
                return entry
        raise KeyError(str(address))

    def by_action(self, action: ChangeAction) -> list[ChangeSetEntry]:
        return [entry for entry in self.entries if entry.action == action]

    @property
    def has_changes(self) -> bool:
        return any(entry.action != ChangeAction.NO_OP for entry in self.entries)

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in ChangeAction}
        for entry in self.entries:
            counts[entry.action.value] += 1
        return counts


def resolve_attributes(
    source: ResourceAddress,
    attributes: Mapping[str, Any],
    lookup: Callable[[ResourceAddress], StateRecord | None],
    *,
    strict: bool,
) -> dict[str, Any]:
    """Replace every reference with the referenced resource's recorded value.

    Args:
        source: Resource owning the attributes (for error messages).
        attributes: Attribute values possibly containing references.
        lookup: Returns the state record of an address, or None if unapplied.
        strict: Raise UnresolvedReference instead of substituting UNKNOWN.

    Returns:
        Attribute mapping containing only literal values (and UNKNOWN when
        not strict).
    """

    def resolve(ref: Reference) -> Any:
        record = lookup(ref.address)
        if record is None:
            if strict:
                raise UnresolvedReference(source, ref, "target has not been applied")
            return UNKNOWN
        try:
            return copy.deepcopy(ref.lookup(record.values()))
        except KeyError:
            if strict:
                raise UnresolvedReference(
                    source, ref, f"target has no attribute '{ref.attribute}'"
                ) from None
            return UNKNOWN

    return map_references(dict(attributes), resolve)


def diff(
    graph: ResourceGraph,
    snapshot: StateSnapshot,
    *,
    protected: Iterable[ResourceAddress] | None = None,
) -> ChangeSet:
    """Compute the change set that reconciles stored state with the graph.

    Args:
        graph: Desired resources.
        snapshot: Last applied state of the scope.
        protected: Addresses that must not be deleted. Defaults to the graph
            resources declared with prevent_destroy.

    Returns:
        Ordered change set.

    Raises:
        DestroyProtected: If a protected resource would be deleted.
    """
    if protected is None:
        protected = [r.address for r in graph if r.lifecycle.prevent_destroy]
    protected_set = set(protected)

    change_set = ChangeSet(scope=snapshot.scope, base_version=snapshot.version)
    pending: dict[ResourceAddress, StateRecord] = {}

    def lookup(address: ResourceAddress) -> StateRecord | None:
        if address in pending:
            return pending[address]
        return snapshot.get(address)

    for address in graph.order:
        resource = graph.resource(address)
        record = snapshot.get(address)
        desired = resolve_attributes(
            address, resource.desired_attributes(), lookup, strict=False
        )

        if record is None:
            changes = [AttributeChange(name, None, desired[name]) for name in sorted(desired)]
            change_set.entries.append(ChangeSetEntry(address, ChangeAction.CREATE, changes))
            continue

        changes = attribute_changes(
            record.attributes, desired, resource.lifecycle.ignore_changes
        )
        action = ChangeAction.UPDATE if changes else ChangeAction.NO_OP
        change_set.entries.append(ChangeSetEntry(address, action, changes))
        if changes:
            pending[address] = _pending_update(record, changes)

    orphaned = [a for a in snapshot.addresses() if a not in graph]
    blocked = sorted(a for a in orphaned if a in protected_set)
    if blocked:
        raise DestroyProtected(blocked)

    stored_dependencies = {a: snapshot.get(a).dependencies for a in orphaned}
    for address in reverse_order(orphaned, stored_dependencies):
        record = snapshot.get(address)
        changes = [
            AttributeChange(name, record.attributes[name], None)
            for name in sorted(record.attributes)
        ]
        change_set.entries.append(ChangeSetEntry(address, ChangeAction.DELETE, changes))

    logger.info(
        "Computed change set",
        extra={"scope": snapshot.scope, "base_version": snapshot.version, **change_set.summary()},
    )
    return change_set


def attribute_changes(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    ignore_paths: list[str],
) -> list[AttributeChange]:
    before = _without_paths(before, ignore_paths)
    after = _without_paths(after, ignore_paths)

    changes: list[AttributeChange] = []
    for name in sorted(set(before) | set(after)):
        old = before.get(name)
        new = after.get(name)
        if not _equal(old, new):
            changes.append(AttributeChange(name, old, new))
    return changes


def _without_paths(values: Mapping[str, Any], paths: list[str]) -> dict[str, Any]:
    """Copy of values with the given dotted paths removed."""
    result = copy.deepcopy(dict(values))
    for path in paths:
        segments = path.split(".")
        target: Any = result
        for segment in segments[:-1]:
            target = target.get(segment) if isinstance(target, dict) else None
            if target is None:
                break
        if isinstance(target, dict):
            target.pop(segments[-1], None)
    return result


def _equal(left: Any, right: Any) -> bool:
    if left is UNKNOWN or right is UNKNOWN:
        return False
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        return left.keys() == right.keys() and all(_equal(left[k], right[k]) for k in left)
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        return len(left) == len(right) and all(_equal(a, b) for a, b in zip(left, right))
    return type(left) is type(right) and left == right or (
        _is_number(left) and _is_number(right) and left == right
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _pending_update(record: StateRecord, changes: list[AttributeChange]) -> StateRecord:
    """Record as dependents see it while an in-place update is planned.

    Changed attributes and every output are unknown until the provider
    answers; the id survives an in-place update.
    """
    changed = {change.name for change in changes}
    kept = {name: value for name, value in record.attributes.items() if name not in changed}
    return record.model_copy(update={"attributes": kept, "outputs": {}})
