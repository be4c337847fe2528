"""Tests for trackflow/automation/engine.py."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from trackflow.automation.engine import AutomationEngine
from trackflow.automation.triggers import webhook_signature
from trackflow.config.settings import EngineConfig
from trackflow.exceptions import NotFoundError, ValidationError
from trackflow.models import ActionStatus, Execution, ExecutionContext, ExecutionStatus


def transition_then_comment(continue_on_error: bool) -> dict:
    return {
        "name": "Close and comment",
        "triggers": [{"type": "manual"}],
        "actions": [
            {
                "type": "transition_issue",
                "order": 1,
                "continueOnError": continue_on_error,
                "config": {"transitionName": "Done"},
            },
            {"type": "add_comment", "order": 2, "config": {"comment": "Closed {{issue.key}}"}},
        ],
    }


class TestLifecycle:
    """Tests for start/shutdown."""

    @pytest.mark.asyncio
    async def test_context_manager(self, engine, tracker):
        async with engine as running:
            assert running.is_running

        assert not engine.is_running
        tracker.close.assert_awaited_once()


class TestRuleRegistry:
    """Tests for rule create/update/delete/list."""

    @pytest.mark.asyncio
    async def test_create_assigns_identity(self, engine, rule_document, fixed_now):
        rule = await engine.create_rule(rule_document)

        assert rule.id
        assert rule.created_at == fixed_now
        assert rule.updated_at == fixed_now
        assert rule.execution_count == 0
        assert (await engine.get_rule(rule.id)).name == "Comment on create"

    @pytest.mark.asyncio
    async def test_create_ignores_supplied_counters(self, engine, rule_document):
        rule_document.update({"id": "mine", "executionCount": 7, "failureCount": 3})

        rule = await engine.create_rule(rule_document)

        assert rule.id != "mine"
        assert rule.execution_count == 0
        assert rule.failure_count == 0

    @pytest.mark.asyncio
    async def test_create_invalid_rule(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            await engine.create_rule({"name": ""})

        assert exc_info.value.message.startswith("Rule validation failed: name: Rule name is required")
        assert {"field": "triggers", "message": "At least one trigger is required", "code": "REQUIRED_FIELD"} in (
            exc_info.value.errors
        )
        assert await engine.get_rules() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "changes",
        [{"description": 5}, {"executionCount": "abc"}, {"enabled": "no"}],
    )
    async def test_create_mistyped_rule(self, engine, rule_document, changes):
        """Test wrongly typed fields surface as ValidationError, not TypeError or ValueError."""
        with pytest.raises(ValidationError):
            await engine.create_rule({**rule_document, **changes})

        assert await engine.get_rules() == []

    @pytest.mark.asyncio
    async def test_update_with_mistyped_description(self, engine, rule_document):
        rule = await engine.create_rule(rule_document)

        with pytest.raises(ValidationError, match="description must be a string"):
            await engine.update_rule(rule.id, {"description": 5})

        assert (await engine.get_rule(rule.id)).description == "Leave a comment on every new issue"

    @pytest.mark.asyncio
    async def test_update_protects_engine_fields(self, engine, rule_document):
        rule = await engine.create_rule(rule_document)

        updated = await engine.update_rule(
            rule.id,
            {"name": "Renamed", "id": "hacked", "executionCount": 99, "enabled": False},
        )

        assert updated.id == rule.id
        assert updated.name == "Renamed"
        assert updated.enabled is False
        assert updated.execution_count == 0
        assert (await engine.get_rule(rule.id)).name == "Renamed"

    @pytest.mark.asyncio
    async def test_update_revalidates(self, engine, rule_document):
        rule = await engine.create_rule(rule_document)

        with pytest.raises(ValidationError):
            await engine.update_rule(rule.id, {"actions": []})

        assert (await engine.get_rule(rule.id)).actions

    @pytest.mark.asyncio
    async def test_update_and_delete_missing(self, engine):
        with pytest.raises(NotFoundError, match="Rule not found: nope"):
            await engine.update_rule("nope", {"name": "x"})
        with pytest.raises(NotFoundError):
            await engine.delete_rule("nope")
        assert await engine.get_rule("nope") is None

    @pytest.mark.asyncio
    async def test_get_rules_filters(self, engine, rule_document):
        scoped = await engine.create_rule({**rule_document, "projectKeys": ["PROJ"]})
        disabled = await engine.create_rule({**rule_document, "enabled": False})
        manual = await engine.create_rule({**rule_document, "triggers": [{"type": "manual"}]})

        assert {r.id for r in await engine.get_rules(enabled=False)} == {disabled.id}
        assert [r.id for r in await engine.get_rules(project_key="PROJ")] == [scoped.id]
        assert [r.id for r in await engine.get_rules(trigger_type="manual")] == [manual.id]
        assert len(await engine.get_rules()) == 3

    def test_validate_rule(self, engine, rule_document):
        assert engine.validate_rule(rule_document).valid


class TestExecuteRule:
    """Tests for the execution state machine."""

    @pytest.mark.asyncio
    async def test_comment_on_issue(self, engine, tracker, rule_document, fixed_now):
        """Test a single comment action runs with smart values resolved."""
        rule = await engine.create_rule(rule_document)

        execution = await engine.execute_rule(rule.id, ExecutionContext(issue_key="PROJ-1"))

        tracker.post.assert_awaited_once_with("/rest/api/3/issue/PROJ-1/comment", json={"body": "PROJ-1 created"})
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.triggered_by == "manual"
        assert execution.triggered_at == fixed_now
        assert len(execution.results) == 1
        assert execution.results[0].status == ActionStatus.SUCCESS
        assert execution.error is None

        stored = await engine.get_rule(rule.id)
        assert stored.execution_count == 1
        assert stored.failure_count == 0
        assert stored.last_executed == fixed_now
        assert engine.get_execution(execution.id) == execution

    @pytest.mark.asyncio
    async def test_failure_halts_remaining_actions(self, engine, tracker, context):
        tracker.get.return_value = {"transitions": []}
        rule = await engine.create_rule(transition_then_comment(continue_on_error=False))

        execution = await engine.execute_rule(rule.id, context)

        assert execution.status == ExecutionStatus.FAILED
        assert len(execution.results) == 1
        assert execution.error == "Action transition_issue failed: Transition 'Done' not found for issue PROJ-1"
        tracker.post.assert_not_awaited()
        assert (await engine.get_rule(rule.id)).failure_count == 1

    @pytest.mark.asyncio
    async def test_continue_on_error(self, engine, tracker, context):
        tracker.get.return_value = {"transitions": []}
        rule = await engine.create_rule(transition_then_comment(continue_on_error=True))

        execution = await engine.execute_rule(rule.id, context)

        assert execution.status == ExecutionStatus.COMPLETED
        assert [r.status for r in execution.results] == [ActionStatus.FAILED, ActionStatus.SUCCESS]
        assert execution.error is None
        tracker.post.assert_awaited_once_with("/rest/api/3/issue/PROJ-1/comment", json={"body": "Closed PROJ-1"})

    @pytest.mark.asyncio
    async def test_actions_run_in_order(self, engine, tracker, context):
        rule = await engine.create_rule(
            {
                "name": "Ordered",
                "triggers": [{"type": "manual"}],
                "actions": [
                    {"type": "add_comment", "order": 2, "config": {"comment": "second"}},
                    {"type": "add_comment", "order": 1, "config": {"comment": "first"}},
                ],
            }
        )

        await engine.execute_rule(rule.id, context)

        bodies = [call.kwargs["json"]["body"] for call in tracker.post.await_args_list]
        assert bodies == ["first", "second"]

    @pytest.mark.asyncio
    async def test_conditions_not_met(self, engine, tracker, rule_document, context):
        rule_document["conditions"] = [
            {"type": "field_value", "config": {"fieldId": "priority", "expectedValue": "Low"}}
        ]
        rule = await engine.create_rule(rule_document)

        execution = await engine.execute_rule(rule.id, context)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.results == ()
        tracker.post.assert_not_awaited()
        assert (await engine.get_rule(rule.id)).execution_count == 1

    @pytest.mark.asyncio
    async def test_condition_error_fails_execution(self, engine, rule_document):
        rule_document["conditions"] = [
            {"type": "smart_value", "config": {"smartValueExpression": "user.accountId", "expectedValue": "x"}}
        ]
        rule = await engine.create_rule(rule_document)

        execution = await engine.execute_rule(rule.id, ExecutionContext(issue_key="PROJ-1"))

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == "Condition evaluation failed: User ID not available in context"
        assert execution.results == ()

    @pytest.mark.asyncio
    async def test_missing_and_disabled_rules(self, engine, rule_document, context):
        with pytest.raises(NotFoundError):
            await engine.execute_rule("nope", context)

        rule = await engine.create_rule({**rule_document, "enabled": False})
        with pytest.raises(ValidationError, match="disabled"):
            await engine.execute_rule(rule.id, context)
        assert engine.get_executions() == []

    @pytest.mark.asyncio
    async def test_concurrent_firings_count_every_execution(self, engine, rule_document, context):
        rule = await engine.create_rule(rule_document)

        await asyncio.gather(*(engine.execute_rule(rule.id, context) for _ in range(5)))

        assert (await engine.get_rule(rule.id)).execution_count == 5
        assert len(engine.get_executions(rule_id=rule.id)) == 5

    @pytest.mark.asyncio
    async def test_terminal_execution_cannot_advance(self, engine, rule_document, context):
        rule = await engine.create_rule(rule_document)
        execution = await engine.execute_rule(rule.id, context)

        with pytest.raises(ValueError):
            execution.advance(ExecutionStatus.RUNNING)


class TestFailureNotification:
    """Tests for the report sent to a rule's author when a firing fails."""

    @pytest.fixture
    def notifier(self):
        return AsyncMock()

    @pytest.fixture
    def notifying_engine(self, tracker, clock, notifier):
        return AutomationEngine(tracker, settings=EngineConfig(history_limit=100), clock=clock, notifier=notifier)

    @pytest.mark.asyncio
    async def test_failed_execution_notifies_author(self, notifying_engine, notifier, tracker, context, fixed_now):
        tracker.get.return_value = {"transitions": []}
        rule = await notifying_engine.create_rule(
            {**transition_then_comment(continue_on_error=False), "createdBy": "acc-42"}
        )

        execution = await notifying_engine.execute_rule(rule.id, context)

        notifier.assert_awaited_once()
        notification = notifier.await_args.args[0]
        assert notification == {
            "type": "rule_failure",
            "rule": "Close and comment",
            "ruleId": rule.id,
            "executionId": execution.id,
            "error": execution.error,
            "timestamp": fixed_now.isoformat(),
            "duration": execution.duration,
            "recipients": ["acc-42"],
            "channel": "email",
            "subject": "Automation rule failed: Close and comment",
        }

    @pytest.mark.asyncio
    async def test_completed_execution_does_not_notify(self, notifying_engine, notifier, rule_document, context):
        rule = await notifying_engine.create_rule(rule_document)

        execution = await notifying_engine.execute_rule(rule.id, context)

        assert execution.status == ExecutionStatus.COMPLETED
        notifier.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_notifier_error_is_swallowed(self, notifying_engine, notifier, tracker, context):
        notifier.side_effect = RuntimeError("smtp down")
        tracker.get.return_value = {"transitions": []}
        rule = await notifying_engine.create_rule(transition_then_comment(continue_on_error=False))

        execution = await notifying_engine.execute_rule(rule.id, context)

        assert execution.status == ExecutionStatus.FAILED
        assert notifying_engine.get_execution(execution.id) == execution
        assert (await notifying_engine.get_rule(rule.id)).failure_count == 1


class TestEvents:
    """Tests for event and webhook dispatch."""

    @pytest.fixture
    def transition_event(self, issue_snapshot):
        return {
            "issue": issue_snapshot,
            "user": {"accountId": "acc-7"},
            "changelog": {"items": [{"field": "status", "fromString": "Open", "toString": "Done"}]},
        }

    @pytest.mark.asyncio
    async def test_handle_event_fires_matching_rules(self, engine, tracker, transition_event):
        comment = [{"type": "add_comment", "order": 1, "config": {"comment": "{{issue.summary}} is done"}}]
        matching = await engine.create_rule(
            {
                "name": "On done",
                "triggers": [{"type": "issue_transitioned", "config": {"toStatus": "Done"}}],
                "actions": comment,
            }
        )
        await engine.create_rule(
            {
                "name": "Other project",
                "projectKeys": ["OTHER"],
                "triggers": [{"type": "issue_updated"}],
                "actions": comment,
            }
        )
        await engine.create_rule({"name": "On create", "triggers": [{"type": "issue_created"}], "actions": comment})

        executions = await engine.handle_event("jira:issue_updated", transition_event)

        assert [e.rule_id for e in executions] == [matching.id]
        assert executions[0].triggered_by == "trigger"
        tracker.post.assert_awaited_once_with(
            "/rest/api/3/issue/PROJ-1/comment", json={"body": "Login page crashes is done"}
        )

    @pytest.mark.asyncio
    async def test_unknown_event_is_ignored(self, engine, rule_document):
        await engine.create_rule(rule_document)

        assert await engine.handle_event("board_created", {}) == []

    @pytest.fixture
    def build_hook(self):
        return {
            "name": "Build hook",
            "triggers": [{"type": "webhook", "config": {"webhookId": "ci", "secret": "s"}}],
            "actions": [
                {
                    "type": "add_comment",
                    "order": 1,
                    "config": {"issueKey": "{{webhook.issue}}", "comment": "Build {{webhook.build.number}}"},
                }
            ],
        }

    @pytest.mark.asyncio
    async def test_handle_webhook(self, engine, tracker, build_hook):
        await engine.create_rule(build_hook)
        payload = {"issue": "PROJ-5", "build": {"number": 17}}

        assert await engine.handle_webhook(payload, webhook_id="other", signature=webhook_signature(payload, "s")) == []
        executions = await engine.handle_webhook(payload, webhook_id="ci", signature=webhook_signature(payload, "s"))

        assert len(executions) == 1
        tracker.post.assert_awaited_once_with("/rest/api/3/issue/PROJ-5/comment", json={"body": "Build 17"})

    @pytest.mark.asyncio
    async def test_webhook_signed_raw_body(self, engine, tracker, build_hook):
        await engine.create_rule(build_hook)
        raw_body = b'{ "issue": "PROJ-5", "build": {"number": 17} }'

        executions = await engine.handle_webhook(
            {"issue": "PROJ-5", "build": {"number": 17}},
            webhook_id="ci",
            raw_body=raw_body,
            signature=webhook_signature(raw_body, "s"),
        )

        assert len(executions) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("signature", [None, "sha256=0000", "not-a-signature"])
    async def test_webhook_with_bad_signature_is_rejected(self, engine, tracker, build_hook, signature):
        await engine.create_rule(build_hook)

        executions = await engine.handle_webhook({"issue": "PROJ-5"}, webhook_id="ci", signature=signature)

        assert executions == []
        tracker.post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_webhook_signed_with_other_secret_is_rejected(self, engine, tracker, build_hook):
        await engine.create_rule(build_hook)
        payload = {"issue": "PROJ-5"}

        assert await engine.handle_webhook(payload, signature=webhook_signature(payload, "guess")) == []
        tracker.post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_webhook_without_secret_needs_no_signature(self, engine, tracker, build_hook):
        del build_hook["triggers"][0]["config"]["secret"]
        await engine.create_rule(build_hook)

        executions = await engine.handle_webhook({"issue": "PROJ-5", "build": {"number": 3}}, webhook_id="ci")

        assert len(executions) == 1
        tracker.post.assert_awaited_once_with("/rest/api/3/issue/PROJ-5/comment", json={"body": "Build 3"})


class TestHistoryAndMetrics:
    """Tests for history queries, metrics and cleanup."""

    @pytest.mark.asyncio
    async def test_get_execution_unknown(self, engine):
        with pytest.raises(NotFoundError, match="Execution not found: nope"):
            engine.get_execution("nope")

    @pytest.mark.asyncio
    async def test_metrics(self, engine, tracker, rule_document, fixed_now):
        rule = await engine.create_rule(rule_document)
        await engine.execute_rule(rule.id, ExecutionContext(issue_key="PROJ-1"))
        await engine.execute_rule(rule.id, ExecutionContext())

        [metrics] = await engine.get_metrics(rule.id)

        assert metrics.execution_count == 2
        assert metrics.success_rate == 50.0
        assert metrics.last_execution == fixed_now
        assert list(metrics.failure_reasons.values()) == [1]
        assert next(iter(metrics.failure_reasons)).startswith("Action add_comment failed: Issue key is required")

    @pytest.mark.asyncio
    async def test_metrics_without_history(self, engine):
        [metrics] = await engine.get_metrics("unused")

        assert metrics.execution_count == 0
        assert metrics.success_rate == 0.0
        assert metrics.last_execution is None

    @pytest.mark.asyncio
    async def test_delete_keeps_history(self, engine, rule_document, context):
        rule = await engine.create_rule(rule_document)
        execution = await engine.execute_rule(rule.id, context)

        await engine.delete_rule(rule.id)

        assert engine.get_execution(execution.id).rule_id == rule.id
        assert [m.rule_id for m in await engine.get_metrics()] == [rule.id]

    @pytest.mark.asyncio
    async def test_bulk_progress_is_recorded(self, engine, tracker, context):
        tracker.get.return_value = {"issues": [{"key": "PROJ-1"}, {"key": "PROJ-2"}]}
        rule = await engine.create_rule(
            {
                "name": "Bulk label",
                "triggers": [{"type": "manual"}],
                "actions": [
                    {
                        "type": "bulk_operation",
                        "order": 1,
                        "config": {"jql": "project = PROJ", "fields": {"labels": ["x"]}},
                    }
                ],
            }
        )

        execution = await engine.execute_rule(rule.id, context)

        operation_id = execution.results[0].data["operationId"]
        progress = engine.get_bulk_operation_progress(operation_id)
        assert progress.status == ExecutionStatus.COMPLETED
        assert progress.successful_items == 2
        assert engine.get_bulk_operation_progress("missing") is None

    @pytest.mark.asyncio
    async def test_cleanup(self, engine, rule_document, context, fixed_now):
        rule = await engine.create_rule(rule_document)
        await engine.execute_rule(rule.id, context)
        engine.history.append(
            Execution(
                id="ancient",
                rule_id=rule.id,
                triggered_at=fixed_now - timedelta(days=31),
                triggered_by="manual",
                context=ExecutionContext(),
                status=ExecutionStatus.COMPLETED,
            )
        )

        assert engine.cleanup() == {"executions": 1, "bulkOperations": 0}
        assert len(engine.get_executions()) == 1


class TestConstruction:
    """Tests for wiring."""

    def test_defaults(self, tracker):
        engine = AutomationEngine(tracker)

        assert engine.history.limit == 1000
        assert engine.executor.client is tracker
        assert engine.conditions.evaluator is engine.evaluator
