"""Tests for trackflow/models."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from trackflow.exceptions import ValidationError
from trackflow.models import (
    Action,
    ActionResult,
    ActionStatus,
    ActionType,
    AutomationRule,
    BulkOperationError,
    BulkOperationProgress,
    ConditionType,
    Execution,
    ExecutionContext,
    ExecutionStatus,
    LogicalOperator,
    TriggerType,
)
from trackflow.models.rules import parse_datetime


class TestAutomationRule:
    """Tests for rule parsing and serialization."""

    def test_from_dict(self, rule_document):
        rule_document["conditions"] = [{"type": "jql", "config": {"jql": "project = PROJ"}, "operator": "OR"}]
        rule_document["projectKeys"] = ["PROJ"]

        rule = AutomationRule.from_dict(rule_document)

        assert rule.id == ""
        assert rule.enabled is True
        assert rule.created_by == "system"
        assert rule.project_keys == ["PROJ"]
        assert rule.triggers[0].type is TriggerType.ISSUE_CREATED
        assert rule.conditions[0].type is ConditionType.JQL
        assert rule.conditions[0].operator is LogicalOperator.OR
        assert rule.actions[0].type is ActionType.ADD_COMMENT
        assert rule.actions[0].continue_on_error is False

    def test_unknown_types_kept_raw(self):
        rule = AutomationRule.from_dict(
            {"name": "Odd", "triggers": [{"type": "on_full_moon"}], "actions": [{"type": "sing"}]}
        )

        assert rule.triggers[0].type == "on_full_moon"
        assert rule.actions[0].type == "sing"
        assert rule.to_dict()["actions"][0]["type"] == "sing"

    def test_round_trip(self, rule_document):
        rule_document.update(
            id="r1",
            createdAt="2024-03-01T10:00:00Z",
            updatedAt="2024-03-02T10:00:00+00:00",
            executionCount=4,
            failureCount=1,
        )

        data = AutomationRule.from_dict(rule_document).to_dict()

        assert data["createdAt"] == "2024-03-01T10:00:00+00:00"
        assert AutomationRule.from_dict(data).to_dict() == data
        assert data["executionCount"] == 4
        assert data["lastExecuted"] is None

    @pytest.mark.parametrize(
        "document,message",
        [
            ([], "rule must be an object"),
            ({"name": "x", "triggers": {"type": "manual"}}, "triggers must be a list"),
            ({"name": "x", "actions": ["add_comment"]}, r"actions\[0\] must be an object"),
            ({"name": "x", "projectKeys": "PROJ"}, "projectKeys must be a list"),
        ],
    )
    def test_malformed_documents(self, document, message):
        with pytest.raises(ValidationError, match=message):
            AutomationRule.from_dict(document)

    def test_sorted_actions_is_stable(self):
        rule = AutomationRule(
            name="Ordered",
            triggers=[],
            actions=[
                Action(type=ActionType.ADD_COMMENT, order=2, config={"comment": "b"}),
                Action(type=ActionType.ADD_COMMENT, order=1, config={"comment": "a"}),
                Action(type=ActionType.ADD_COMMENT, order=2, config={"comment": "c"}),
            ],
        )

        assert [action.config["comment"] for action in rule.sorted_actions()] == ["a", "b", "c"]


class TestParseDatetime:
    """Tests for timestamp parsing."""

    def test_zulu_suffix(self):
        assert parse_datetime("2024-03-15T12:30:45Z") == datetime(2024, 3, 15, 12, 30, 45, tzinfo=UTC)

    def test_offset(self):
        parsed = parse_datetime("2024-03-15T14:30:45+02:00")

        assert parsed.utcoffset() == timedelta(hours=2)
        assert parsed == datetime(2024, 3, 15, 12, 30, 45, tzinfo=timezone.utc)

    def test_passthrough(self):
        now = datetime(2024, 1, 1, tzinfo=UTC)

        assert parse_datetime(now) is now
        assert parse_datetime(None) is None

    @pytest.mark.parametrize("value", ["yesterday", 42])
    def test_invalid(self, value):
        with pytest.raises(ValidationError, match="Invalid timestamp"):
            parse_datetime(value)


class TestExecution:
    """Tests for the execution record."""

    @pytest.fixture
    def execution(self) -> Execution:
        return Execution(
            id="e1",
            rule_id="r1",
            triggered_at=datetime(2024, 3, 15, 12, 0, tzinfo=UTC),
            triggered_by="issue_created",
            context=ExecutionContext(issue_key="PROJ-1", project_key="PROJ"),
        )

    def test_advance_returns_new_record(self, execution):
        running = execution.advance(ExecutionStatus.RUNNING)
        done = running.advance(
            ExecutionStatus.COMPLETED,
            results=[ActionResult(action_type="add_comment", status=ActionStatus.SUCCESS)],
            duration=3.5,
        )

        assert execution.status is ExecutionStatus.PENDING
        assert done.status is ExecutionStatus.COMPLETED
        assert isinstance(done.results, tuple)
        assert done.duration == 3.5

    @pytest.mark.parametrize("terminal", [ExecutionStatus.COMPLETED, ExecutionStatus.FAILED])
    def test_terminal_is_final(self, execution, terminal):
        finished = execution.advance(terminal)

        with pytest.raises(ValueError, match="cannot become running"):
            finished.advance(ExecutionStatus.RUNNING)

    def test_to_dict_and_back(self, execution):
        failed = execution.advance(
            ExecutionStatus.FAILED,
            results=[ActionResult(action_type="add_comment", status=ActionStatus.FAILED, message="boom")],
            error="Action add_comment failed: boom",
        )

        data = failed.to_dict()

        assert data["ruleId"] == "r1"
        assert data["status"] == "failed"
        assert data["triggeredAt"] == "2024-03-15T12:00:00+00:00"
        assert data["context"] == {"issueKey": "PROJ-1", "projectKey": "PROJ"}
        assert data["results"][0]["status"] == "failed"
        assert Execution.from_dict(data) == failed


class TestExecutionContext:
    """Tests for the execution context."""

    def test_to_dict_drops_missing(self):
        context = ExecutionContext(issue_key="PROJ-1", webhook_data={"a": 1})

        assert context.to_dict() == {"issueKey": "PROJ-1", "webhookData": {"a": 1}}

    def test_replace(self):
        context = ExecutionContext(issue_key="PROJ-1")

        changed = context.replace(issue_key="PROJ-2")

        assert changed.issue_key == "PROJ-2"
        assert context.issue_key == "PROJ-1"

    def test_from_none(self):
        assert ExecutionContext.from_dict(None) == ExecutionContext()


class TestBulkOperationProgress:
    """Tests for bulk progress serialization."""

    def test_to_dict(self):
        started = datetime(2024, 3, 15, tzinfo=UTC)
        progress = BulkOperationProgress(
            id="op1",
            rule_id="r1",
            total_items=3,
            started_at=started,
            processed_items=3,
            successful_items=2,
            failed_items=1,
            status=ExecutionStatus.COMPLETED,
            errors=[BulkOperationError(item_key="PROJ-2", error="HTTP 400", timestamp=started)],
        )

        data = progress.to_dict()

        assert data["status"] == "completed"
        assert data["failedItems"] == 1
        assert data["errors"] == [
            {"itemKey": "PROJ-2", "error": "HTTP 400", "timestamp": "2024-03-15T00:00:00+00:00"}
        ]
