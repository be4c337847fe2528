"""Tests for trackflow/automation/triggers.py."""

import hashlib
import hmac

import pytest

from trackflow.automation.triggers import (
    build_context,
    candidate_trigger_types,
    event_trigger_type,
    matches,
    verify_webhook_signature,
    webhook_body,
    webhook_signature,
)
from trackflow.models import Trigger, TriggerType


@pytest.fixture
def update_event(issue_snapshot):
    """An issue update that moved the issue from Open to Done."""
    return {
        "webhookEvent": "jira:issue_updated",
        "issue": issue_snapshot,
        "user": {"accountId": "acc-7", "displayName": "Sam"},
        "changelog": {
            "items": [
                {"field": "status", "fieldId": "status", "fromString": "Open", "toString": "Done"},
                {"field": "priority", "fieldId": "priority", "fromString": "Low", "toString": "High"},
            ]
        },
    }


class TestEventTypes:
    """Tests for mapping event names to trigger types."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("jira:issue_created", TriggerType.ISSUE_CREATED),
            ("jira:issue_updated", TriggerType.ISSUE_UPDATED),
            ("comment_created", TriggerType.ISSUE_COMMENTED),
            ("sla_breached", TriggerType.SLA_BREACH),
            ("issue_created", TriggerType.ISSUE_CREATED),
            ("board_created", None),
        ],
    )
    def test_event_trigger_type(self, name, expected):
        assert event_trigger_type(name) == expected

    def test_update_with_status_change(self, update_event):
        """Test a status change also counts as transition and field change."""
        assert candidate_trigger_types("jira:issue_updated", update_event) == {
            TriggerType.ISSUE_UPDATED,
            TriggerType.ISSUE_TRANSITIONED,
            TriggerType.FIELD_CHANGED,
        }

    def test_update_without_changelog(self, issue_snapshot):
        assert candidate_trigger_types("jira:issue_updated", {"issue": issue_snapshot}) == {TriggerType.ISSUE_UPDATED}

    def test_unknown_event(self):
        assert candidate_trigger_types("worklog_deleted", {}) == set()


class TestMatches:
    """Tests for trigger filters."""

    def test_no_filters(self, update_event):
        assert matches(Trigger(type=TriggerType.ISSUE_UPDATED), update_event)

    def test_project_and_issue_type_filters(self, update_event):
        assert matches(Trigger(TriggerType.ISSUE_UPDATED, {"projectKeys": ["PROJ"], "issueTypes": "Bug"}), update_event)
        assert not matches(Trigger(TriggerType.ISSUE_UPDATED, {"projectKeys": ["OTHER"]}), update_event)
        assert not matches(Trigger(TriggerType.ISSUE_UPDATED, {"issueTypes": ["Story"]}), update_event)

    def test_updated_fields_filter(self, update_event):
        assert matches(Trigger(TriggerType.ISSUE_UPDATED, {"fields": ["priority"]}), update_event)
        assert not matches(Trigger(TriggerType.ISSUE_UPDATED, {"fields": ["summary"]}), update_event)

    def test_field_changed(self, update_event):
        assert matches(
            Trigger(TriggerType.FIELD_CHANGED, {"fieldId": "priority", "fromValue": "Low", "toValue": "High"}),
            update_event,
        )
        assert not matches(Trigger(TriggerType.FIELD_CHANGED, {"fieldId": "priority", "toValue": "Low"}), update_event)
        assert not matches(Trigger(TriggerType.FIELD_CHANGED, {"fieldId": "labels"}), update_event)

    def test_transition_statuses(self, update_event):
        assert matches(Trigger(TriggerType.ISSUE_TRANSITIONED, {"toStatus": "Done"}), update_event)
        assert matches(Trigger(TriggerType.ISSUE_TRANSITIONED, {"fromStatus": ["Open", "Reopened"]}), update_event)
        assert not matches(Trigger(TriggerType.ISSUE_TRANSITIONED, {"toStatus": "In Progress"}), update_event)

    def test_transition_needs_status_change(self, issue_snapshot):
        assert not matches(Trigger(TriggerType.ISSUE_TRANSITIONED), {"issue": issue_snapshot})


class TestBuildContext:
    """Tests for building the firing context from an event."""

    def test_context_from_event(self, update_event):
        context = build_context(update_event)

        assert context.issue_key == "PROJ-1"
        assert context.project_key == "PROJ"
        assert context.user_id == "acc-7"
        assert context.issue is update_event["issue"]
        assert context.trigger_data is update_event

    def test_empty_event(self):
        context = build_context({})

        assert context.issue_key is None
        assert context.project_key is None
        assert context.issue is None


class TestWebhookSignatures:
    """Tests for sha256 HMAC webhook signatures."""

    def test_signature_format(self):
        expected = hmac.new(b"s3cret", b'{"a":1}', hashlib.sha256).hexdigest()

        assert webhook_signature(b'{"a":1}', "s3cret") == f"sha256={expected}"

    def test_payload_is_signed_compactly(self):
        assert webhook_body({"a": 1, "b": [2]}) == b'{"a":1,"b":[2]}'
        assert webhook_body('{"a": 1}') == b'{"a": 1}'
        assert webhook_signature({"a": 1}, "k") == webhook_signature('{"a":1}', "k")

    def test_verify(self):
        signature = webhook_signature(b"body", "k")

        assert verify_webhook_signature(b"body", signature, "k")
        assert not verify_webhook_signature(b"body", signature, "other")
        assert not verify_webhook_signature(b"tampered", signature, "k")

    @pytest.mark.parametrize("signature", [None, "", "sha256=", "deadbeef"])
    def test_missing_or_malformed(self, signature):
        assert not verify_webhook_signature(b"body", signature, "k")
