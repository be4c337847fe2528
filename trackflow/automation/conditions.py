"""Condition evaluation.

Conditions gate whether a rule's actions run. Every condition whose operator
is AND must pass (evaluation stops at the first failure). When the rule also
has OR conditions, at least one of those must pass (evaluation stops at the
first success). A rule without conditions always passes.

Value-based conditions read the issue/project snapshots on the context and
only ask the tracker when the snapshot does not carry the value.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from trackflow.automation.smart_values import SmartValueEvaluator, convert_to_string
from trackflow.exceptions import MissingContextError, ValidationError
from trackflow.models import (
    ComparisonOperator,
    Condition,
    ConditionType,
    ExecutionContext,
    LogicalOperator,
)
from trackflow.models.rules import parse_datetime
from trackflow.providers.base import TrackerClient

log = structlog.get_logger(__name__)

FALSY_STRINGS = frozenset({"", "false", "null", "0"})


def _normalize(value: Any) -> Any:
    """Tracker objects compare by their ``value``, ``name`` or ``key``."""
    if isinstance(value, dict):
        for key in ("value", "name", "key"):
            if key in value:
                return value[key]
    if isinstance(value, list | tuple):
        return [_normalize(item) for item in value]
    return value


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    try:
        return float(str(value))
    except ValueError:
        return None


def compare(actual: Any, expected: Any, operator: ComparisonOperator | str = ComparisonOperator.EQUALS) -> bool:
    """Compare a resolved value with the configured expected value.

    Numbers compare numerically; everything else compares by its string
    projection, so ``42`` equals ``"42"`` and ``True`` equals ``"true"``.
    """
    actual = _normalize(actual)
    expected = _normalize(expected)
    operator = ComparisonOperator(operator)

    if operator in (ComparisonOperator.EQUALS, ComparisonOperator.NOT_EQUALS):
        left, right = _as_number(actual), _as_number(expected)
        if left is not None and right is not None:
            equal = left == right
        else:
            equal = convert_to_string(actual) == convert_to_string(expected)
        return equal if operator is ComparisonOperator.EQUALS else not equal

    if operator is ComparisonOperator.CONTAINS:
        if isinstance(actual, list):
            wanted = convert_to_string(expected)
            return any(convert_to_string(item) == wanted for item in actual)
        return convert_to_string(expected) in convert_to_string(actual)

    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        return False
    return left > right if operator is ComparisonOperator.GREATER_THAN else left < right


def is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in FALSY_STRINGS
    return bool(value)


class ConditionEvaluator:
    """Evaluate rule conditions against an execution context.

    Attributes:
        client: Tracker client used when a snapshot lacks a value
        evaluator: Smart value evaluator for ``smart_value`` conditions
    """

    def __init__(
        self,
        client: TrackerClient,
        evaluator: SmartValueEvaluator | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.client = client
        self.evaluator = evaluator or SmartValueEvaluator()
        self.clock = clock or (lambda: datetime.now(UTC))
        self._handlers = {
            ConditionType.SMART_VALUE: self._smart_value,
            ConditionType.FIELD_VALUE: self._field_value,
            ConditionType.ISSUE_AGE: self._issue_age,
            ConditionType.JQL: self._jql,
            ConditionType.USER_IN_GROUP: self._user_in_group,
            ConditionType.PROJECT_CATEGORY: self._project_category,
            ConditionType.CUSTOM_SCRIPT: self._custom_script,
        }

    async def evaluate_all(self, conditions: list[Condition], context: ExecutionContext) -> bool:
        """Combine conditions by their AND/OR operators.

        Raises:
            Whatever a single condition raises; the engine turns it into a
            failed execution.
        """
        and_group = [c for c in conditions if c.operator != LogicalOperator.OR]
        or_group = [c for c in conditions if c.operator == LogicalOperator.OR]

        for condition in and_group:
            if not await self.evaluate(condition, context):
                log.debug("condition_failed", condition_type=str(condition.type), operator="AND")
                return False

        if not or_group:
            return True

        for condition in or_group:
            if await self.evaluate(condition, context):
                return True

        log.debug("condition_failed", operator="OR", conditions=len(or_group))
        return False

    async def evaluate(self, condition: Condition, context: ExecutionContext) -> bool:
        handler = self._handlers.get(condition.type)
        if handler is None:
            raise ValidationError(f"Unsupported condition type: {condition.type}")
        return await handler(condition.config, context)

    async def _smart_value(self, config: dict[str, Any], context: ExecutionContext) -> bool:
        expression = str(config.get("smartValueExpression") or "")
        if "{{" in expression:
            value: Any = self.evaluator.process_string(expression, context)
        else:
            value = self.evaluator.evaluate_expression(expression, context)

        if "expectedValue" not in config:
            return is_truthy(value)
        return compare(value, config["expectedValue"], config.get("operator") or ComparisonOperator.EQUALS)

    async def _field_value(self, config: dict[str, Any], context: ExecutionContext) -> bool:
        field_id = config.get("fieldId")
        if not field_id:
            raise ValidationError("Field ID is required for field value conditions")

        value = await self._issue_field(context, field_id)
        return compare(value, config.get("expectedValue"), config.get("operator") or ComparisonOperator.EQUALS)

    async def _issue_age(self, config: dict[str, Any], context: ExecutionContext) -> bool:
        created = parse_datetime(await self._issue_field(context, "created"))
        if created is None:
            return False
        if created.tzinfo is None:
            created = created.replace(tzinfo=UTC)
        age_in_days = config.get("ageInDays") or 0
        return self.clock() - created >= timedelta(days=age_in_days)

    async def _jql(self, config: dict[str, Any], context: ExecutionContext) -> bool:
        jql = config.get("jql")
        if not jql:
            raise ValidationError("JQL query is required for JQL conditions")
        if context.issue_key:
            jql = f"({jql}) AND key = {context.issue_key}"

        response = await self.client.get("/rest/api/3/search", params={"jql": jql, "maxResults": 0}) or {}
        return int(response.get("total", 0)) > 0

    async def _user_in_group(self, config: dict[str, Any], context: ExecutionContext) -> bool:
        if not context.user_id:
            raise MissingContextError("User ID not available in context")
        groups = await self.client.get("/rest/api/3/user/groups", params={"accountId": context.user_id}) or []
        return any(group.get("name") == config.get("groupName") for group in groups)

    async def _project_category(self, config: dict[str, Any], context: ExecutionContext) -> bool:
        project = context.project
        if not project or "projectCategory" not in project:
            if not context.project_key:
                raise MissingContextError("Project key not available in context")
            project = await self.client.get(f"/rest/api/3/project/{context.project_key}") or {}

        category = project.get("projectCategory") or {}
        return str(category.get("id")) == str(config.get("categoryId"))

    async def _custom_script(self, config: dict[str, Any], context: ExecutionContext) -> bool:
        log.warning("custom_script_condition_skipped", issue_key=context.issue_key)
        return False

    async def _issue_field(self, context: ExecutionContext, field_id: str) -> Any:
        """Read an issue field from the snapshot, fetching it when absent."""
        issue = context.issue or {}
        fields = issue.get("fields") or {}
        if field_id in fields:
            return fields[field_id]
        if field_id in issue:
            return issue[field_id]

        if not context.issue_key:
            raise MissingContextError("Issue key not available in context")
        fetched = await self.client.get(f"/rest/api/3/issue/{context.issue_key}", params={"fields": field_id}) or {}
        return (fetched.get("fields") or {}).get(field_id)
