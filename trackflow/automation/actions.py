"""Action execution against the issue tracker.

Each action kind has its own ``ActionHandler`` that checks the action's
configuration before any network call and then performs it. The
``ActionExecutor`` looks up the handler and times the call. It turns any
failure into a failed ``ActionResult``, so callers never see a raw exception.

Individual action failures are reported, not retried here. Transient
network retry belongs to the tracker client.
"""

import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from trackflow.automation.smart_values import format_timestamp
from trackflow.exceptions import ActionExecutionError
from trackflow.models import (
    Action,
    ActionResult,
    ActionStatus,
    ActionType,
    BulkOperationError,
    BulkOperationProgress,
    ExecutionContext,
    ExecutionStatus,
)
from trackflow.providers.base import TrackerClient
from trackflow.utils.batching import BatchProcessor

log = structlog.get_logger(__name__)

MAX_SEARCH_RESULTS = 1000

Notifier = Callable[[dict[str, Any]], Awaitable[None]]
ProgressCallback = Callable[[BulkOperationProgress], None]


async def log_notifier(notification: dict[str, Any]) -> None:
    """Default notifier: record the notification in the log."""
    log.info(
        "notification_sent",
        recipients=notification["recipients"],
        subject=notification.get("subject"),
        channel=notification["channel"],
    )


def _require_issue_key(config: dict[str, Any], context: ExecutionContext, label: str) -> str:
    issue_key = config.get("issueKey") or context.issue_key
    if not issue_key:
        raise ActionExecutionError(f"Issue key is required for {label} action", action_type=label)
    return issue_key


def _positive_int(config: dict[str, Any], name: str, label: str) -> None:
    value = config.get(name)
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ActionExecutionError(f"{name} must be a positive integer for {label} action", action_type=label)


class ActionHandler(ABC):
    """Validate-then-execute contract for one action kind.

    Subclasses set ``action_type`` and implement ``validate`` and ``execute``.
    ``validate`` raises ActionExecutionError with a descriptive message and
    must not touch the network.
    """

    action_type: ActionType
    label: str = "action"

    def __init__(self, client: TrackerClient) -> None:
        self.client = client

    @abstractmethod
    def validate(self, config: dict[str, Any], context: ExecutionContext) -> None:
        """Check the configuration shape before execution."""
        pass

    @abstractmethod
    async def execute(self, action: Action, context: ExecutionContext, rule_id: str | None = None) -> ActionResult:
        """Perform the action. Raised exceptions become failed results."""
        pass

    def _success(self, message: str, data: Any = None) -> ActionResult:
        return ActionResult(action_type=str(self.action_type), status=ActionStatus.SUCCESS, message=message, data=data)


class UpdateIssueHandler(ActionHandler):
    action_type = ActionType.UPDATE_ISSUE
    label = "update issue"

    def validate(self, config: dict[str, Any], context: ExecutionContext) -> None:
        _require_issue_key(config, context, self.label)
        if not isinstance(config.get("fields"), dict) or not config["fields"]:
            raise ActionExecutionError("Fields are required for update issue action", action_type=self.label)

    async def execute(self, action: Action, context: ExecutionContext, rule_id: str | None = None) -> ActionResult:
        issue_key = _require_issue_key(action.config, context, self.label)
        fields = action.config["fields"]
        await self.client.put(f"/rest/api/3/issue/{issue_key}", json={"fields": fields})
        return self._success(
            f"Issue {issue_key} updated successfully",
            {"issueKey": issue_key, "updatedFields": list(fields)},
        )


class TransitionIssueHandler(ActionHandler):
    action_type = ActionType.TRANSITION_ISSUE
    label = "transition issue"

    def validate(self, config: dict[str, Any], context: ExecutionContext) -> None:
        _require_issue_key(config, context, self.label)
        if not config.get("transitionId") and not config.get("transitionName"):
            raise ActionExecutionError("Either transition ID or name is required", action_type=self.label)

    async def execute(self, action: Action, context: ExecutionContext, rule_id: str | None = None) -> ActionResult:
        issue_key = _require_issue_key(action.config, context, self.label)
        transition_id = action.config.get("transitionId")

        if not transition_id:
            transition_id = await self._find_transition(issue_key, action.config["transitionName"])

        payload: dict[str, Any] = {"transition": {"id": str(transition_id)}}
        if action.config.get("fields"):
            payload["fields"] = action.config["fields"]

        await self.client.post(f"/rest/api/3/issue/{issue_key}/transitions", json=payload)
        return self._success(
            f"Issue {issue_key} transitioned successfully",
            {"issueKey": issue_key, "transitionId": str(transition_id)},
        )

    async def _find_transition(self, issue_key: str, name: str) -> str:
        response = await self.client.get(f"/rest/api/3/issue/{issue_key}/transitions")
        for transition in (response or {}).get("transitions", []):
            if transition.get("name") == name:
                return transition["id"]
        raise ActionExecutionError(f"Transition '{name}' not found for issue {issue_key}", action_type=self.label)


class CreateIssueHandler(ActionHandler):
    action_type = ActionType.CREATE_ISSUE
    label = "create issue"

    def validate(self, config: dict[str, Any], context: ExecutionContext) -> None:
        if not config.get("projectKey") or not config.get("issueType") or not config.get("summary"):
            raise ActionExecutionError(
                "Project key, issue type, and summary are required for create issue action",
                action_type=self.label,
            )

    async def execute(self, action: Action, context: ExecutionContext, rule_id: str | None = None) -> ActionResult:
        config = action.config
        fields: dict[str, Any] = {
            "project": {"key": config["projectKey"]},
            "issuetype": {"name": config["issueType"]},
            "summary": config["summary"],
        }
        if config.get("description"):
            fields["description"] = config["description"]
        if config.get("assigneeId"):
            fields["assignee"] = {"accountId": config["assigneeId"]}
        elif config.get("assigneeEmail"):
            fields["assignee"] = {"emailAddress": config["assigneeEmail"]}

        response = await self.client.post("/rest/api/3/issue", json={"fields": fields}) or {}
        return self._success(
            f"Issue created successfully: {response.get('key')}",
            {"issueKey": response.get("key"), "issueId": response.get("id")},
        )


class AddCommentHandler(ActionHandler):
    action_type = ActionType.ADD_COMMENT
    label = "add comment"

    def validate(self, config: dict[str, Any], context: ExecutionContext) -> None:
        _require_issue_key(config, context, self.label)
        if not config.get("comment"):
            raise ActionExecutionError("Comment text is required for add comment action", action_type=self.label)

    async def execute(self, action: Action, context: ExecutionContext, rule_id: str | None = None) -> ActionResult:
        issue_key = _require_issue_key(action.config, context, self.label)
        payload: dict[str, Any] = {"body": action.config["comment"]}

        visibility = action.config.get("visibility")
        if visibility:
            internal = visibility == "internal"
            payload["visibility"] = {
                "type": "role" if internal else "group",
                "value": "Administrators" if internal else "jira-users",
            }

        response = await self.client.post(f"/rest/api/3/issue/{issue_key}/comment", json=payload) or {}
        return self._success(
            f"Comment added to issue {issue_key}",
            {"issueKey": issue_key, "commentId": response.get("id")},
        )


class AssignIssueHandler(ActionHandler):
    action_type = ActionType.ASSIGN_ISSUE
    label = "assign issue"

    def validate(self, config: dict[str, Any], context: ExecutionContext) -> None:
        _require_issue_key(config, context, self.label)

    async def execute(self, action: Action, context: ExecutionContext, rule_id: str | None = None) -> ActionResult:
        issue_key = _require_issue_key(action.config, context, self.label)

        assignee: dict[str, Any] | None
        if action.config.get("assigneeId"):
            assignee = {"accountId": action.config["assigneeId"]}
        elif action.config.get("assigneeEmail"):
            assignee = {"emailAddress": action.config["assigneeEmail"]}
        else:
            assignee = None

        await self.client.put(f"/rest/api/3/issue/{issue_key}/assignee", json={"assignee": assignee})
        verb = "assigned" if assignee else "unassigned"
        return self._success(
            f"Issue {issue_key} {verb} successfully",
            {"issueKey": issue_key, "assignee": assignee},
        )


class SendNotificationHandler(ActionHandler):
    action_type = ActionType.SEND_NOTIFICATION
    label = "send notification"

    def __init__(self, client: TrackerClient, notifier: Notifier | None = None) -> None:
        super().__init__(client)
        self.notifier = notifier or log_notifier

    def validate(self, config: dict[str, Any], context: ExecutionContext) -> None:
        recipients = config.get("recipients")
        if not isinstance(recipients, list) or not recipients:
            raise ActionExecutionError("Recipients are required for send notification action", action_type=self.label)

    async def execute(self, action: Action, context: ExecutionContext, rule_id: str | None = None) -> ActionResult:
        recipients = action.config["recipients"]
        channel = action.config.get("channel") or "email"
        await self.notifier(
            {
                "recipients": recipients,
                "subject": action.config.get("subject"),
                "message": action.config.get("message"),
                "channel": channel,
                "issueKey": context.issue_key,
            }
        )
        return self._success(
            f"Notification sent to {len(recipients)} recipients",
            {"recipients": recipients, "channel": channel},
        )


class WebhookCallHandler(ActionHandler):
    """Call an arbitrary HTTP endpoint.

    Uses the injected ``httpx.AsyncClient`` when given, otherwise a
    short-lived client per call.
    """

    action_type = ActionType.WEBHOOK_CALL
    label = "webhook call"

    def __init__(
        self,
        client: TrackerClient,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(client)
        self.http_client = http_client
        self.timeout = timeout

    def validate(self, config: dict[str, Any], context: ExecutionContext) -> None:
        if not config.get("url"):
            raise ActionExecutionError("URL is required for webhook call action", action_type=self.label)

    async def execute(self, action: Action, context: ExecutionContext, rule_id: str | None = None) -> ActionResult:
        url = action.config["url"]
        method = str(action.config.get("method") or "POST").upper()
        headers = {"Content-Type": "application/json", **(action.config.get("headers") or {})}
        payload = action.config.get("payload")
        if payload is None:
            payload = {
                "issueKey": context.issue_key,
                "projectKey": context.project_key,
                "userId": context.user_id,
                "timestamp": format_timestamp(datetime.now(UTC)),
            }

        body = {} if method == "GET" else {"json": payload}
        if self.http_client is not None:
            response = await self.http_client.request(method, url, headers=headers, **body)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as http_client:
                response = await http_client.request(method, url, headers=headers, **body)

        if not response.is_success:
            raise ActionExecutionError(
                f"Webhook call failed: {response.status_code} {response.reason_phrase}",
                action_type=self.label,
            )

        return self._success(
            f"Webhook call successful: {response.status_code}",
            {"url": url, "method": method, "statusCode": response.status_code, "response": response.text},
        )


class BulkOperationHandler(ActionHandler):
    """Apply one field update across every issue matched by a JQL search.

    Issues are processed in fixed-size batches, one item at a time inside a
    batch. A failing item is recorded and the remaining items still run.
    The action succeeds only when no item failed. Progress is published to
    ``on_progress`` after every batch.
    """

    action_type = ActionType.BULK_OPERATION
    label = "bulk operation"

    def __init__(
        self,
        client: TrackerClient,
        batch_size: int = 50,
        max_issues: int = MAX_SEARCH_RESULTS,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        super().__init__(client)
        self.batch_size = batch_size
        self.max_issues = max_issues
        self.on_progress = on_progress

    def validate(self, config: dict[str, Any], context: ExecutionContext) -> None:
        if not config.get("jql"):
            raise ActionExecutionError("JQL query is required for bulk operation action", action_type=self.label)
        if not isinstance(config.get("fields"), dict) or not config["fields"]:
            raise ActionExecutionError("Fields are required for bulk operation action", action_type=self.label)
        _positive_int(config, "batchSize", self.label)
        _positive_int(config, "maxIssues", self.label)

    async def execute(self, action: Action, context: ExecutionContext, rule_id: str | None = None) -> ActionResult:
        config = action.config
        batch_size = config.get("batchSize") or self.batch_size
        max_issues = min(config.get("maxIssues") or self.max_issues, self.max_issues)

        response = await self.client.get(
            "/rest/api/3/search",
            params={
                "jql": config["jql"],
                "maxResults": min(max_issues, MAX_SEARCH_RESULTS),
                "fields": "key,summary",
            },
        )
        issues = list((response or {}).get("issues", []))[:max_issues]

        if not issues:
            return self._success(
                "No issues found matching the JQL query",
                {
                    "operationId": None,
                    "totalIssues": 0,
                    "processedCount": 0,
                    "successCount": 0,
                    "failureCount": 0,
                    "errors": [],
                },
            )

        progress = BulkOperationProgress(
            id=str(uuid.uuid4()),
            rule_id=rule_id,
            total_items=len(issues),
            started_at=datetime.now(UTC),
        )
        self._publish(progress)
        log.info("bulk_operation_started", operation_id=progress.id, rule_id=rule_id, total_issues=len(issues))

        async def update_batch(batch: Sequence[dict[str, Any]]) -> list[bool]:
            outcomes = []
            for issue in batch:
                item_key = issue.get("key", "unknown")
                try:
                    await self.client.put(f"/rest/api/3/issue/{item_key}", json={"fields": config["fields"]})
                    progress.successful_items += 1
                    outcomes.append(True)
                except Exception as e:
                    log.warning("bulk_item_failed", operation_id=progress.id, item_key=item_key, error=str(e))
                    progress.failed_items += 1
                    progress.errors.append(
                        BulkOperationError(item_key=item_key, error=str(e), timestamp=datetime.now(UTC))
                    )
                    outcomes.append(False)
                progress.processed_items += 1
            return outcomes

        await BatchProcessor(batch_size=batch_size).process_batches(
            issues,
            update_batch,
            on_batch_complete=lambda batch_num, results: self._publish(progress),
        )

        progress.status = ExecutionStatus.COMPLETED
        self._publish(progress)
        log.info(
            "bulk_operation_completed",
            operation_id=progress.id,
            successful=progress.successful_items,
            failed=progress.failed_items,
        )

        return ActionResult(
            action_type=str(self.action_type),
            status=ActionStatus.SUCCESS if progress.failed_items == 0 else ActionStatus.FAILED,
            message=(
                f"Bulk operation completed: {progress.successful_items} successful, {progress.failed_items} failed"
            ),
            data={
                "operationId": progress.id,
                "totalIssues": progress.total_items,
                "processedCount": progress.processed_items,
                "successCount": progress.successful_items,
                "failureCount": progress.failed_items,
                "errors": [error.to_dict() for error in progress.errors],
            },
        )

    def _publish(self, progress: BulkOperationProgress) -> None:
        if self.on_progress is not None:
            self.on_progress(progress)


class CreateSubtaskHandler(ActionHandler):
    action_type = ActionType.CREATE_SUBTASK
    label = "create subtask"

    def validate(self, config: dict[str, Any], context: ExecutionContext) -> None:
        if not (config.get("parentIssueKey") or context.issue_key):
            raise ActionExecutionError("Parent issue key is required for create subtask action", action_type=self.label)
        if not config.get("summary"):
            raise ActionExecutionError("Summary is required for create subtask action", action_type=self.label)

    async def execute(self, action: Action, context: ExecutionContext, rule_id: str | None = None) -> ActionResult:
        parent_key = action.config.get("parentIssueKey") or context.issue_key
        parent = await self.client.get(f"/rest/api/3/issue/{parent_key}", params={"fields": "project"}) or {}
        project_key = parent.get("fields", {}).get("project", {}).get("key")
        if not project_key:
            raise ActionExecutionError(f"Could not determine project of parent issue {parent_key}", self.label)

        fields: dict[str, Any] = {
            "project": {"key": project_key},
            "parent": {"key": parent_key},
            "issuetype": {"name": "Sub-task"},
            "summary": action.config["summary"],
        }
        if action.config.get("description"):
            fields["description"] = action.config["description"]

        response = await self.client.post("/rest/api/3/issue", json={"fields": fields}) or {}
        return self._success(
            f"Subtask created successfully: {response.get('key')}",
            {"subtaskKey": response.get("key"), "subtaskId": response.get("id"), "parentKey": parent_key},
        )


class LinkIssuesHandler(ActionHandler):
    action_type = ActionType.LINK_ISSUES
    label = "link issues"

    def validate(self, config: dict[str, Any], context: ExecutionContext) -> None:
        _require_issue_key(config, context, self.label)
        if not config.get("targetIssueKey") or not config.get("linkType"):
            raise ActionExecutionError(
                "Target issue key and link type are required for link issues action",
                action_type=self.label,
            )

    async def execute(self, action: Action, context: ExecutionContext, rule_id: str | None = None) -> ActionResult:
        issue_key = _require_issue_key(action.config, context, self.label)
        target = action.config["targetIssueKey"]
        link_type = action.config["linkType"]

        await self.client.post(
            "/rest/api/3/issueLink",
            json={
                "type": {"name": link_type},
                "inwardIssue": {"key": issue_key},
                "outwardIssue": {"key": target},
            },
        )
        return self._success(
            f"Issues linked successfully: {issue_key} -> {target}",
            {"sourceIssue": issue_key, "targetIssue": target, "linkType": link_type},
        )


class UpdateCustomFieldHandler(ActionHandler):
    action_type = ActionType.UPDATE_CUSTOM_FIELD
    label = "update custom field"

    def validate(self, config: dict[str, Any], context: ExecutionContext) -> None:
        _require_issue_key(config, context, self.label)
        if not config.get("customFieldId"):
            raise ActionExecutionError("Custom field ID is required for update custom field action", self.label)

    async def execute(self, action: Action, context: ExecutionContext, rule_id: str | None = None) -> ActionResult:
        issue_key = _require_issue_key(action.config, context, self.label)
        field_id = action.config["customFieldId"]
        value = action.config.get("customFieldValue")

        await self.client.put(f"/rest/api/3/issue/{issue_key}", json={"fields": {field_id: value}})
        return self._success(
            f"Custom field {field_id} updated successfully",
            {"issueKey": issue_key, "fieldId": field_id, "value": value},
        )


class ActionExecutor:
    """Run single actions through their registered handlers.

    Example:
        >>> executor = ActionExecutor(client)
        >>> result = await executor.execute_action(action, context, rule_id="r1")
        >>> result.status
        <ActionStatus.SUCCESS: 'success'>
    """

    def __init__(
        self,
        client: TrackerClient,
        http_client: httpx.AsyncClient | None = None,
        notifier: Notifier | None = None,
        bulk_batch_size: int = 50,
        max_bulk_issues: int = MAX_SEARCH_RESULTS,
        on_bulk_progress: ProgressCallback | None = None,
    ) -> None:
        self.client = client
        self.handlers: dict[ActionType, ActionHandler] = {}
        for handler in (
            UpdateIssueHandler(client),
            TransitionIssueHandler(client),
            CreateIssueHandler(client),
            AddCommentHandler(client),
            AssignIssueHandler(client),
            SendNotificationHandler(client, notifier),
            WebhookCallHandler(client, http_client),
            BulkOperationHandler(client, bulk_batch_size, max_bulk_issues, on_bulk_progress),
            CreateSubtaskHandler(client),
            LinkIssuesHandler(client),
            UpdateCustomFieldHandler(client),
        ):
            self.register(handler)

    def register(self, handler: ActionHandler) -> None:
        """Register (or replace) the handler for its action type."""
        self.handlers[handler.action_type] = handler

    async def execute_action(
        self,
        action: Action,
        context: ExecutionContext,
        rule_id: str | None = None,
    ) -> ActionResult:
        """Validate and execute one action.

        Never raises: any failure becomes a failed ActionResult carrying the
        error message and the measured duration (milliseconds).
        """
        started = time.perf_counter()
        action_type = str(action.type)
        log.info("action_started", action_type=action_type, rule_id=rule_id, issue_key=context.issue_key)

        try:
            handler = self.handlers.get(action.type)
            if handler is None:
                raise ActionExecutionError(f"Unsupported action type: {action_type}", action_type=action_type)
            handler.validate(action.config, context)
            result = await handler.execute(action, context, rule_id)
        except Exception as e:
            duration = _elapsed_ms(started)
            log.error("action_failed", action_type=action_type, rule_id=rule_id, error=str(e), duration=duration)
            return ActionResult(
                action_type=action_type,
                status=ActionStatus.FAILED,
                message=str(e),
                duration=duration,
            )

        result.duration = _elapsed_ms(started)
        log.info(
            "action_completed",
            action_type=action_type,
            rule_id=rule_id,
            status=str(result.status),
            duration=result.duration,
        )
        return result


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)
