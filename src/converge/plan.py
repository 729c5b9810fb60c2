"""Plan and apply result rendering.

Change sets are rendered for review before apply in two formats:
- text: human-readable, one block per resource with +/~/-/= markers
- json: machine-readable, stable key order, suitable for CI gates

Attributes declared sensitive in the kind's schema are never rendered.
"""

from __future__ import annotations

import json
from typing import Any

from .config import PlanFormat
from .differ import UNKNOWN, ChangeAction, ChangeSet
from .executor import ApplyResult, ResourceStatus
from .provider import ProviderRegistry

SENSITIVE_PLACEHOLDER = "(sensitive)"
UNKNOWN_PLACEHOLDER = "(known after apply)"

ACTION_MARKERS: dict[ChangeAction, str] = {
    ChangeAction.CREATE: "+",
    ChangeAction.UPDATE: "~",
    ChangeAction.DELETE: "-",
    ChangeAction.NO_OP: "=",
}


def _sensitive(registry: ProviderRegistry | None, kind: str) -> set[str]:
    if registry is None or not registry.has_kind(kind):
        return set()
    return registry.schema_for(kind).sensitive_attributes()


def _display(value: Any, sensitive: bool) -> Any:
    if sensitive and value is not None:
        return SENSITIVE_PLACEHOLDER
    return _jsonable(value)


def _jsonable(value: Any) -> Any:
    if value is UNKNOWN:
        return UNKNOWN_PLACEHOLDER
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def plan_to_dict(change_set: ChangeSet, registry: ProviderRegistry | None = None) -> dict[str, Any]:
    """Machine-readable representation of a change set."""
    entries = []
    for entry in change_set:
        sensitive = _sensitive(registry, entry.address.kind)
        entries.append(
            {
                "address": str(entry.address),
                "kind": entry.address.kind,
                "name": entry.address.name,
                "action": entry.action.value,
                "changes": [
                    {
                        "attribute": change.name,
                        "before": _display(change.before, change.name in sensitive),
                        "after": _display(change.after, change.name in sensitive),
                        "sensitive": change.name in sensitive,
                    }
                    for change in entry.changes
                ],
            }
        )
    return {
        "scope": change_set.scope,
        "base_version": change_set.base_version,
        "summary": change_set.summary(),
        "entries": entries,
    }


def render_plan_text(change_set: ChangeSet, registry: ProviderRegistry | None = None) -> str:
    """Human-readable plan for review."""
    summary = change_set.summary()
    lines = [
        f"Plan for scope '{change_set.scope}' (state version {change_set.base_version}): "
        f"{summary['create']} to create, {summary['update']} to update, "
        f"{summary['delete']} to delete, {summary['no_op']} unchanged.",
    ]
    if not change_set.has_changes:
        lines.append("")
        lines.append("No changes. Infrastructure matches the configuration.")
        return "\n".join(lines) + "\n"

    for entry in change_set:
        if entry.action == ChangeAction.NO_OP:
            continue
        sensitive = _sensitive(registry, entry.address.kind)
        lines.append("")
        lines.append(f"  {ACTION_MARKERS[entry.action]} {entry.address}")
        for change in entry.changes:
            hide = change.name in sensitive
            before = json.dumps(_display(change.before, hide), default=str)
            after = json.dumps(_display(change.after, hide), default=str)
            match entry.action:
                case ChangeAction.CREATE:
                    lines.append(f"      {change.name}: {after}")
                case ChangeAction.DELETE:
                    lines.append(f"      {change.name}: {before}")
                case _:
                    lines.append(f"      {change.name}: {before} -> {after}")
    return "\n".join(lines) + "\n"


def render_plan(
    change_set: ChangeSet,
    registry: ProviderRegistry | None = None,
    plan_format: PlanFormat = PlanFormat.TEXT,
) -> str:
    if plan_format == PlanFormat.JSON:
        payload = plan_to_dict(change_set, registry)
        return json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n"
    return render_plan_text(change_set, registry)


def apply_result_to_dict(result: ApplyResult) -> dict[str, Any]:
    """Machine-readable representation of an apply run."""
    return {
        "scope": result.scope,
        "success": result.success,
        "cancelled": result.cancelled,
        "error": str(result.error) if result.error else None,
        "state_version": result.snapshot.version if result.snapshot else None,
        "duration_seconds": result.duration_seconds,
        "outcomes": [
            {
                "address": str(outcome.address),
                "action": outcome.action.value,
                "status": outcome.status.value,
                "reason": outcome.reason,
                "attempts": outcome.attempts,
            }
            for outcome in result.outcomes.values()
        ],
    }


def render_apply_text(result: ApplyResult) -> str:
    """Human-readable apply summary listing every failure and skip."""
    lines = [
        f"Apply for scope '{result.scope}': {len(result.applied)} applied, "
        f"{len(result.failed)} failed, {len(result.skipped)} skipped."
    ]
    for outcome in result.outcomes.values():
        if outcome.status in (ResourceStatus.FAILED, ResourceStatus.SKIPPED):
            lines.append(
                f"  {outcome.status.value.upper()} {outcome.address} "
                f"({outcome.action.value}): {outcome.reason}"
            )
    if result.error is not None:
        lines.append(f"Aborted: {result.error}")
    return "\n".join(lines) + "\n"


def render_apply(result: ApplyResult, plan_format: PlanFormat = PlanFormat.TEXT) -> str:
    if plan_format == PlanFormat.JSON:
        payload = apply_result_to_dict(result)
        return json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n"
    return render_apply_text(result)
