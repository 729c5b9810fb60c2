"""Tests for plan and apply rendering."""

import json

from converge.config import PlanFormat
from converge.differ import UNKNOWN, AttributeChange, ChangeAction, ChangeSet, ChangeSetEntry
from converge.executor import ApplyResult, ResourceOutcome, ResourceStatus
from converge.models import ResourceAddress
from converge.plan import render_apply, render_plan
from converge.provider import ProviderRegistry


def _change_set() -> ChangeSet:
    return ChangeSet(
        scope="dev",
        base_version=7,
        entries=[
            ChangeSetEntry(
                ResourceAddress("secret", "db"),
                ChangeAction.CREATE,
                [
                    AttributeChange("description", None, "database password"),
                    AttributeChange("value", None, "hunter2"),
                ],
            ),
            ChangeSetEntry(
                ResourceAddress("instance", "web"),
                ChangeAction.UPDATE,
                [AttributeChange("subnet_id", "subnet-0001", UNKNOWN)],
            ),
            ChangeSetEntry(ResourceAddress("network", "main"), ChangeAction.NO_OP),
            ChangeSetEntry(
                ResourceAddress("iam_role", "old"),
                ChangeAction.DELETE,
                [AttributeChange("assume_role_policy", "{}", None)],
            ),
        ],
    )


class TestRenderPlan:
    """Tests for plan output."""

    def test_text_summary_and_markers(self, registry: ProviderRegistry) -> None:
        """Test the human-readable plan."""
        text = render_plan(_change_set(), registry)

        assert text.startswith(
            "Plan for scope 'dev' (state version 7): "
            "1 to create, 1 to update, 1 to delete, 1 unchanged."
        )
        assert "  + secret.db" in text
        assert "  ~ instance.web" in text
        assert "  - iam_role.old" in text
        assert "network.main" not in text
        assert 'subnet_id: "subnet-0001" -> "(known after apply)"' in text

    def test_sensitive_values_are_redacted(self, registry: ProviderRegistry) -> None:
        """Test that sensitive attributes never appear in any format."""
        change_set = _change_set()

        for plan_format in PlanFormat:
            output = render_plan(change_set, registry, plan_format)
            assert "hunter2" not in output
            assert "(sensitive)" in output
            assert "database password" in output

    def test_json_is_machine_readable(self, registry: ProviderRegistry) -> None:
        """Test the JSON plan structure."""
        data = json.loads(render_plan(_change_set(), registry, PlanFormat.JSON))

        assert data["scope"] == "dev"
        assert data["base_version"] == 7
        assert data["summary"] == {"create": 1, "update": 1, "delete": 1, "no_op": 1}
        assert [e["address"] for e in data["entries"]] == [
            "secret.db",
            "instance.web",
            "network.main",
            "iam_role.old",
        ]
        value_change = data["entries"][0]["changes"][1]
        assert value_change == {
            "attribute": "value",
            "before": None,
            "after": "(sensitive)",
            "sensitive": True,
        }

    def test_no_changes(self) -> None:
        """Test the message when nothing is pending."""
        change_set = ChangeSet(
            scope="dev",
            base_version=2,
            entries=[ChangeSetEntry(ResourceAddress("network", "main"), ChangeAction.NO_OP)],
        )

        text = render_plan(change_set)

        assert "0 to create, 0 to update, 0 to delete, 1 unchanged." in text
        assert "No changes. Infrastructure matches the configuration." in text


class TestRenderApply:
    """Tests for apply summaries."""

    def _result(self) -> ApplyResult:
        result = ApplyResult(scope="dev")
        applied = ResourceOutcome(ResourceAddress("network", "main"), ChangeAction.CREATE)
        applied.finish(ResourceStatus.APPLIED)
        failed = ResourceOutcome(ResourceAddress("subnet", "a"), ChangeAction.CREATE, attempts=3)
        failed.finish(ResourceStatus.FAILED, "quota exceeded")
        skipped = ResourceOutcome(ResourceAddress("instance", "web"), ChangeAction.CREATE)
        skipped.finish(ResourceStatus.SKIPPED, "upstream 'subnet.a' did not apply")
        for outcome in (applied, failed, skipped):
            result.outcomes[outcome.address] = outcome
        return result

    def test_text_lists_failures_and_skips(self) -> None:
        """Test that every failed and skipped resource is reported."""
        text = render_apply(self._result())

        assert text.startswith("Apply for scope 'dev': 1 applied, 1 failed, 1 skipped.")
        assert "FAILED subnet.a (create): quota exceeded" in text
        assert "SKIPPED instance.web (create): upstream 'subnet.a' did not apply" in text

    def test_json(self) -> None:
        """Test the JSON apply summary."""
        data = json.loads(render_apply(self._result(), PlanFormat.JSON))

        assert data["success"] is False
        assert data["error"] is None
        statuses = {o["address"]: o["status"] for o in data["outcomes"]}
        assert statuses == {"network.main": "applied", "subnet.a": "failed", "instance.web": "skipped"}
