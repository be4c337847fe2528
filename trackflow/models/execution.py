"""
Execution-time records: contexts, action results, executions, bulk progress
and metrics.

An ``Execution`` is frozen: the engine moves it through its lifecycle with
``Execution.advance()``, which returns a new record and refuses to leave a
terminal state. Execution records carry the rule id as a plain value, so
deleting a rule never leaves a dangling reference in the history.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from trackflow.models.rules import format_datetime, parse_datetime


class ExecutionStatus(str, Enum):
    """Execution lifecycle: PENDING -> RUNNING -> COMPLETED | FAILED."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class ActionStatus(str, Enum):
    """Outcome of a single action."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

    def __str__(self) -> str:
        return self.value


@dataclass
class ExecutionContext:
    """Data available to one rule firing.

    ``issue``, ``project`` and ``user`` are optional snapshots in tracker
    shape supplied by the caller. Smart values such as ``issue.summary`` and
    value-based conditions read from these snapshots instead of making live
    tracker lookups.
    """

    issue_key: str | None = None
    project_key: str | None = None
    user_id: str | None = None
    webhook_data: Any = None
    trigger_data: Any = None
    issue: dict[str, Any] | None = None
    project: dict[str, Any] | None = None
    user: dict[str, Any] | None = None

    def replace(self, **changes: Any) -> ExecutionContext:
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ExecutionContext:
        data = data or {}
        return cls(
            issue_key=data.get("issueKey"),
            project_key=data.get("projectKey"),
            user_id=data.get("userId"),
            webhook_data=data.get("webhookData"),
            trigger_data=data.get("triggerData"),
            issue=data.get("issue"),
            project=data.get("project"),
            user=data.get("user"),
        )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "issueKey": self.issue_key,
            "projectKey": self.project_key,
            "userId": self.user_id,
            "webhookData": self.webhook_data,
            "triggerData": self.trigger_data,
            "issue": self.issue,
            "project": self.project,
            "user": self.user,
        }
        return {key: value for key, value in data.items() if value is not None}


@dataclass
class ActionResult:
    """Normalized outcome of one action. ``duration`` is in milliseconds."""

    action_type: str
    status: ActionStatus
    message: str = ""
    data: Any = None
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == ActionStatus.SUCCESS

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionResult:
        return cls(
            action_type=data["actionType"],
            status=ActionStatus(data["status"]),
            message=data.get("message", ""),
            data=data.get("data"),
            duration=data.get("duration", 0.0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "actionType": str(self.action_type),
            "status": str(self.status),
            "message": self.message,
            "data": self.data,
            "duration": self.duration,
        }


@dataclass(frozen=True)
class Execution:
    """One concrete firing record of a rule."""

    id: str
    rule_id: str
    triggered_at: datetime
    triggered_by: str
    context: ExecutionContext
    status: ExecutionStatus = ExecutionStatus.PENDING
    results: tuple[ActionResult, ...] = ()
    duration: float = 0.0
    error: str | None = None

    def advance(self, status: ExecutionStatus, **changes: Any) -> Execution:
        """Return a copy moved to ``status``.

        Raises:
            ValueError: If this execution already reached a terminal state.
        """
        if self.status.is_terminal:
            raise ValueError(f"Execution {self.id} is already {self.status} and cannot become {status}")
        if "results" in changes:
            changes["results"] = tuple(changes["results"])
        return dataclasses.replace(self, status=status, **changes)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Execution:
        return cls(
            id=data["id"],
            rule_id=data["ruleId"],
            triggered_at=parse_datetime(data["triggeredAt"]),
            triggered_by=data.get("triggeredBy", "manual"),
            context=ExecutionContext.from_dict(data.get("context")),
            status=ExecutionStatus(data["status"]),
            results=tuple(ActionResult.from_dict(result) for result in data.get("results", [])),
            duration=data.get("duration", 0.0),
            error=data.get("error"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ruleId": self.rule_id,
            "status": str(self.status),
            "triggeredAt": format_datetime(self.triggered_at),
            "triggeredBy": self.triggered_by,
            "duration": self.duration,
            "context": self.context.to_dict(),
            "results": [result.to_dict() for result in self.results],
            "error": self.error,
        }


@dataclass
class BulkOperationError:
    """A single item that failed inside a bulk operation."""

    item_key: str
    error: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"itemKey": self.item_key, "error": self.error, "timestamp": format_datetime(self.timestamp)}


@dataclass
class BulkOperationProgress:
    """Progress of one bulk operation, updated after every batch."""

    id: str
    rule_id: str | None
    total_items: int
    started_at: datetime
    processed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    status: ExecutionStatus = ExecutionStatus.RUNNING
    errors: list[BulkOperationError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ruleId": self.rule_id,
            "totalItems": self.total_items,
            "processedItems": self.processed_items,
            "successfulItems": self.successful_items,
            "failedItems": self.failed_items,
            "status": str(self.status),
            "startedAt": format_datetime(self.started_at),
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass
class RuleMetrics:
    """Aggregates computed from a rule's execution history."""

    rule_id: str
    execution_count: int = 0
    success_rate: float = 0.0
    average_duration: float = 0.0
    last_execution: datetime | None = None
    failure_reasons: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ruleId": self.rule_id,
            "executionCount": self.execution_count,
            "successRate": self.success_rate,
            "averageDuration": self.average_duration,
            "lastExecution": format_datetime(self.last_execution),
            "failureReasons": dict(self.failure_reasons),
        }


@dataclass
class ValidationProblem:
    """A validation error: the rule cannot be stored as is."""

    field: str
    message: str
    code: str

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "message": self.message, "code": self.code}


@dataclass
class ValidationWarning:
    """A validation warning: the rule is accepted but looks suspicious."""

    field: str
    message: str
    suggestion: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "message": self.message, "suggestion": self.suggestion}


@dataclass
class RuleValidationResult:
    valid: bool
    errors: list[ValidationProblem] = field(default_factory=list)
    warnings: list[ValidationWarning] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [error.to_dict() for error in self.errors],
            "warnings": [warning.to_dict() for warning in self.warnings],
        }
