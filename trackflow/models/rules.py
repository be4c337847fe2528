"""
Rule definition models.

An automation rule is a list of triggers, an optional list of conditions and
an ordered list of actions. Rules arrive from authors as camelCase JSON/YAML
documents; these dataclasses are the normalized internal representation.

Type fields keep the raw string when it is not a known member of the
corresponding enum, so that malformed rules can still be loaded and then
reported on by the rule validator instead of failing at parse time.

Example:
    >>> rule = AutomationRule.from_dict({
    ...     "name": "Comment on create",
    ...     "triggers": [{"type": "issue_created", "config": {}}],
    ...     "actions": [{"type": "add_comment", "order": 1,
    ...                  "config": {"comment": "{{issue.key}} created"}}],
    ... })
    >>> rule.actions[0].type is ActionType.ADD_COMMENT
    True
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from trackflow.exceptions import ValidationError

E = TypeVar("E", bound=Enum)


class TriggerType(str, Enum):
    """Upstream events a rule can react to."""

    ISSUE_CREATED = "issue_created"
    ISSUE_UPDATED = "issue_updated"
    ISSUE_TRANSITIONED = "issue_transitioned"
    ISSUE_COMMENTED = "issue_commented"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    MANUAL = "manual"
    FIELD_CHANGED = "field_changed"
    SLA_BREACH = "sla_breach"

    def __str__(self) -> str:
        return self.value


class ConditionType(str, Enum):
    """Predicates that gate whether a rule's actions run."""

    JQL = "jql"
    FIELD_VALUE = "field_value"
    USER_IN_GROUP = "user_in_group"
    PROJECT_CATEGORY = "project_category"
    ISSUE_AGE = "issue_age"
    CUSTOM_SCRIPT = "custom_script"
    SMART_VALUE = "smart_value"

    def __str__(self) -> str:
        return self.value


class LogicalOperator(str, Enum):
    """How a condition combines with its siblings."""

    AND = "AND"
    OR = "OR"

    def __str__(self) -> str:
        return self.value


class ComparisonOperator(str, Enum):
    """Comparison used by value-based conditions."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"

    def __str__(self) -> str:
        return self.value


class ActionType(str, Enum):
    """Side-effecting operations a rule can perform against the tracker."""

    UPDATE_ISSUE = "update_issue"
    TRANSITION_ISSUE = "transition_issue"
    CREATE_ISSUE = "create_issue"
    ADD_COMMENT = "add_comment"
    ASSIGN_ISSUE = "assign_issue"
    SEND_NOTIFICATION = "send_notification"
    WEBHOOK_CALL = "webhook_call"
    BULK_OPERATION = "bulk_operation"
    CREATE_SUBTASK = "create_subtask"
    LINK_ISSUES = "link_issues"
    UPDATE_CUSTOM_FIELD = "update_custom_field"

    def __str__(self) -> str:
        return self.value


def coerce_enum(enum_cls: type[E], value: Any) -> E | Any:
    """Return the enum member for ``value``, or ``value`` unchanged if unknown."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return value


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix accepted) into a datetime."""
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp: {value!r}") from e
    raise ValidationError(f"Invalid timestamp: {value!r}")


def format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _require_mapping(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValidationError(f"{where} must be an object, got {type(value).__name__}")
    return value


def _require_list(value: Any, where: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{where} must be a list, got {type(value).__name__}")
    return value


def _optional_str(value: Any, where: str) -> str | None:
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{where} must be a string, got {type(value).__name__}")
    return value


def _enum_field(enum_cls: type[E], value: Any, where: str) -> E | Any:
    """Like ``coerce_enum`` but only strings may be looked up."""
    return coerce_enum(enum_cls, _optional_str(value, where))


def _require_bool(value: Any, where: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{where} must be a boolean, got {type(value).__name__}")
    return value


def _require_count(value: Any, where: str) -> int:
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{where} must be a non-negative integer, got {value!r}")
    return value


@dataclass
class Trigger:
    """Declarative filter describing which upstream event a rule reacts to.

    The shape of ``config`` depends on ``type``: project/issue-type filters,
    from/to status, cron expression, webhook url and secret, or a field id
    with from/to values.
    """

    type: TriggerType | str
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any, where: str = "trigger") -> Trigger:
        data = _require_mapping(data, where)
        return cls(
            type=_enum_field(TriggerType, data.get("type"), f"{where}.type"),
            config=dict(_require_mapping(data.get("config") or {}, f"{where}.config")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"type": str(self.type), "config": self.config}


@dataclass
class Condition:
    """Predicate evaluated against the firing context."""

    type: ConditionType | str
    config: dict[str, Any] = field(default_factory=dict)
    operator: LogicalOperator | str = LogicalOperator.AND

    @classmethod
    def from_dict(cls, data: Any, where: str = "condition") -> Condition:
        data = _require_mapping(data, where)
        return cls(
            type=_enum_field(ConditionType, data.get("type"), f"{where}.type"),
            config=dict(_require_mapping(data.get("config") or {}, f"{where}.config")),
            operator=_enum_field(LogicalOperator, data.get("operator") or LogicalOperator.AND, f"{where}.operator"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"type": str(self.type), "config": self.config, "operator": str(self.operator)}


@dataclass
class Action:
    """One side-effecting step of a rule.

    Actions run in ascending ``order``. When an action fails and
    ``continue_on_error`` is False the execution stops there.
    """

    type: ActionType | str
    config: dict[str, Any] = field(default_factory=dict)
    order: int = 0
    continue_on_error: bool = False

    @classmethod
    def from_dict(cls, data: Any, where: str = "action") -> Action:
        data = _require_mapping(data, where)
        return cls(
            type=_enum_field(ActionType, data.get("type"), f"{where}.type"),
            config=dict(_require_mapping(data.get("config") or {}, f"{where}.config")),
            order=data.get("order", 0),
            continue_on_error=_require_bool(data.get("continueOnError", False), f"{where}.continueOnError"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": str(self.type),
            "config": self.config,
            "order": self.order,
            "continueOnError": self.continue_on_error,
        }


@dataclass
class AutomationRule:
    """A complete automation rule with its bookkeeping counters.

    ``id``, timestamps and counters are assigned by the engine; rule authors
    only supply the definition fields.
    """

    name: str
    triggers: list[Trigger]
    actions: list[Action]
    id: str = ""
    description: str | None = None
    enabled: bool = True
    project_keys: list[str] | None = None
    conditions: list[Condition] = field(default_factory=list)
    created_by: str = "system"
    created_at: datetime | None = None
    updated_at: datetime | None = None
    execution_count: int = 0
    failure_count: int = 0
    last_executed: datetime | None = None

    def sorted_actions(self) -> list[Action]:
        """Actions in execution order (stable for equal orders)."""
        return sorted(self.actions, key=lambda action: action.order)

    @classmethod
    def from_dict(cls, data: Any) -> AutomationRule:
        """Build a rule from its camelCase document form.

        Raises:
            ValidationError: If the document is not shaped like a rule at all
                (e.g. ``triggers`` is not a list, ``enabled`` is not a boolean
                or a counter is not an integer).
        """
        data = _require_mapping(data, "rule")
        project_keys = data.get("projectKeys")
        if project_keys is not None:
            project_keys = list(_require_list(project_keys, "projectKeys"))

        return cls(
            id=_optional_str(data.get("id"), "id") or "",
            name=_optional_str(data.get("name"), "name") or "",
            description=_optional_str(data.get("description"), "description"),
            enabled=_require_bool(data.get("enabled", True), "enabled"),
            project_keys=project_keys,
            triggers=[
                Trigger.from_dict(item, f"triggers[{i}]")
                for i, item in enumerate(_require_list(data.get("triggers"), "triggers"))
            ],
            conditions=[
                Condition.from_dict(item, f"conditions[{i}]")
                for i, item in enumerate(_require_list(data.get("conditions"), "conditions"))
            ],
            actions=[
                Action.from_dict(item, f"actions[{i}]")
                for i, item in enumerate(_require_list(data.get("actions"), "actions"))
            ],
            created_by=_optional_str(data.get("createdBy"), "createdBy") or "system",
            created_at=parse_datetime(data.get("createdAt")),
            updated_at=parse_datetime(data.get("updatedAt")),
            execution_count=_require_count(data.get("executionCount", 0), "executionCount"),
            failure_count=_require_count(data.get("failureCount", 0), "failureCount"),
            last_executed=parse_datetime(data.get("lastExecuted")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "projectKeys": self.project_keys,
            "triggers": [trigger.to_dict() for trigger in self.triggers],
            "conditions": [condition.to_dict() for condition in self.conditions],
            "actions": [action.to_dict() for action in self.actions],
            "createdBy": self.created_by,
            "createdAt": format_datetime(self.created_at),
            "updatedAt": format_datetime(self.updated_at),
            "executionCount": self.execution_count,
            "failureCount": self.failure_count,
            "lastExecuted": format_datetime(self.last_executed),
        }
