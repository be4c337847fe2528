"""Structural and semantic validation of automation rules.

Validity means "well-formed", not "guaranteed to succeed": nothing here
talks to the tracker, so a transition name that does not exist in an
issue's workflow is only discovered at execution time.

Errors make a rule unusable; warnings flag rules that are accepted but look
suspicious (duplicate action orders, loops, very frequent schedules).
"""

from typing import Any

import pydantic
import structlog
from pydantic import HttpUrl, TypeAdapter

from trackflow.automation.smart_values import SmartValueEvaluator
from trackflow.exceptions import ValidationError
from trackflow.models import (
    Action,
    ActionType,
    AutomationRule,
    ComparisonOperator,
    Condition,
    ConditionType,
    LogicalOperator,
    RuleValidationResult,
    Trigger,
    TriggerType,
    ValidationProblem,
    ValidationWarning,
)

log = structlog.get_logger(__name__)

MAX_NAME_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 1000
LARGE_BULK_THRESHOLD = 10000
DANGEROUS_JQL_KEYWORDS = ("delete", "drop", "update")

_http_url = TypeAdapter(HttpUrl)


def is_valid_url(value: Any) -> bool:
    """True when ``value`` parses as an absolute http(s) URL."""
    if not isinstance(value, str):
        return False
    try:
        _http_url.validate_python(value)
    except pydantic.ValidationError:
        return False
    return True


class _Findings:
    """Accumulates errors and warnings during one validation pass."""

    def __init__(self) -> None:
        self.errors: list[ValidationProblem] = []
        self.warnings: list[ValidationWarning] = []

    def error(self, field: str, message: str, code: str) -> None:
        self.errors.append(ValidationProblem(field=field, message=message, code=code))

    def warn(self, field: str, message: str, suggestion: str | None = None) -> None:
        self.warnings.append(ValidationWarning(field=field, message=message, suggestion=suggestion))

    def result(self) -> RuleValidationResult:
        return RuleValidationResult(valid=not self.errors, errors=self.errors, warnings=self.warnings)


class RuleValidator:
    """Validate rule definitions without any network access."""

    def __init__(self, evaluator: SmartValueEvaluator | None = None) -> None:
        self.evaluator = evaluator or SmartValueEvaluator()

    def validate(self, rule: AutomationRule | dict[str, Any]) -> RuleValidationResult:
        """Validate a rule object or a raw rule document.

        Args:
            rule: The rule, or its camelCase document form

        Returns:
            RuleValidationResult with ``valid`` False when any error was found
        """
        findings = _Findings()

        if not isinstance(rule, AutomationRule):
            try:
                rule = AutomationRule.from_dict(rule)
            except ValidationError as e:
                findings.error("rule", e.message, "INVALID_FORMAT")
                return findings.result()

        self._validate_basic_fields(rule, findings)
        self._validate_triggers(rule, findings)
        self._validate_conditions(rule, findings)
        self._validate_actions(rule, findings)
        self._validate_smart_values(rule, findings)
        self._validate_rule_logic(rule, findings)

        log.debug(
            "rule_validated",
            rule_id=rule.id or None,
            errors=len(findings.errors),
            warnings=len(findings.warnings),
        )
        return findings.result()

    def _validate_basic_fields(self, rule: AutomationRule, findings: _Findings) -> None:
        if not isinstance(rule.name, str) or not rule.name.strip():
            findings.error("name", "Rule name is required", "REQUIRED_FIELD")
        elif len(rule.name) > MAX_NAME_LENGTH:
            findings.error("name", f"Rule name must be at most {MAX_NAME_LENGTH} characters", "FIELD_TOO_LONG")

        if rule.description is not None and not isinstance(rule.description, str):
            findings.error("description", "Rule description must be a string", "INVALID_FORMAT")
        elif rule.description and len(rule.description) > MAX_DESCRIPTION_LENGTH:
            findings.error(
                "description",
                f"Rule description must be at most {MAX_DESCRIPTION_LENGTH} characters",
                "FIELD_TOO_LONG",
            )

        if not rule.triggers:
            findings.error("triggers", "At least one trigger is required", "REQUIRED_FIELD")
        if not rule.actions:
            findings.error("actions", "At least one action is required", "REQUIRED_FIELD")

        if rule.project_keys is not None and not rule.project_keys:
            findings.error("projectKeys", "If specified, project keys cannot be empty", "INVALID_VALUE")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _validate_triggers(self, rule: AutomationRule, findings: _Findings) -> None:
        for index, trigger in enumerate(rule.triggers):
            prefix = f"triggers[{index}]"
            if not isinstance(trigger.type, TriggerType):
                findings.error(f"{prefix}.type", f"Invalid trigger type: {trigger.type}", "INVALID_ENUM_VALUE")
                continue

            if trigger.type is TriggerType.SCHEDULED:
                self._validate_scheduled_trigger(trigger, prefix, findings)
            elif trigger.type is TriggerType.WEBHOOK:
                self._validate_webhook_trigger(trigger, prefix, findings)
            elif trigger.type is TriggerType.FIELD_CHANGED:
                if not trigger.config.get("fieldId"):
                    findings.error(
                        f"{prefix}.config.fieldId",
                        "Field ID is required for field changed triggers",
                        "REQUIRED_FIELD",
                    )
            elif trigger.type is TriggerType.ISSUE_TRANSITIONED:
                if not trigger.config.get("fromStatus") and not trigger.config.get("toStatus"):
                    findings.warn(
                        f"{prefix}.config",
                        "No status filters configured",
                        "Consider adding fromStatus or toStatus filters",
                    )

        types = {trigger.type for trigger in rule.triggers}
        if TriggerType.SCHEDULED in types and TriggerType.MANUAL in types:
            findings.warn(
                "triggers",
                "Having both scheduled and manual triggers may cause confusion",
                "Consider separating into different rules",
            )

    @staticmethod
    def _validate_scheduled_trigger(trigger: Trigger, prefix: str, findings: _Findings) -> None:
        cron = trigger.config.get("cronExpression")
        field = f"{prefix}.config.cronExpression"
        if not cron or not isinstance(cron, str):
            findings.error(field, "Cron expression is required for scheduled triggers", "REQUIRED_FIELD")
            return

        if len(cron.split()) not in (5, 6):
            findings.error(field, "Invalid cron expression format", "INVALID_FORMAT")

        if "* * * * *" in cron:
            findings.warn(
                field,
                "Very frequent schedule detected (every minute)",
                "Consider if this frequency is necessary",
            )

    @staticmethod
    def _validate_webhook_trigger(trigger: Trigger, prefix: str, findings: _Findings) -> None:
        url = trigger.config.get("webhookUrl")
        if url and not is_valid_url(url):
            findings.error(f"{prefix}.config.webhookUrl", "Invalid webhook URL format", "INVALID_URL")

        if not trigger.config.get("secret"):
            findings.warn(
                f"{prefix}.config.secret",
                "Webhook secret not configured",
                "Consider adding a secret for security",
            )

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    def _validate_conditions(self, rule: AutomationRule, findings: _Findings) -> None:
        for index, condition in enumerate(rule.conditions):
            prefix = f"conditions[{index}]"
            if not isinstance(condition.operator, LogicalOperator):
                findings.error(
                    f"{prefix}.operator",
                    f"Invalid logical operator: {condition.operator}",
                    "INVALID_ENUM_VALUE",
                )
            if not isinstance(condition.type, ConditionType):
                findings.error(f"{prefix}.type", f"Invalid condition type: {condition.type}", "INVALID_ENUM_VALUE")
                continue

            self._validate_condition_config(condition, prefix, findings)

            comparison = condition.config.get("operator")
            if comparison is not None and (
                not isinstance(comparison, str) or comparison not in {op.value for op in ComparisonOperator}
            ):
                findings.error(
                    f"{prefix}.config.operator",
                    f"Invalid comparison operator: {comparison}",
                    "INVALID_ENUM_VALUE",
                )

    @staticmethod
    def _validate_condition_config(condition: Condition, prefix: str, findings: _Findings) -> None:
        config = condition.config

        if condition.type is ConditionType.JQL:
            jql = config.get("jql")
            if not jql:
                findings.error(f"{prefix}.config.jql", "JQL query is required for JQL conditions", "REQUIRED_FIELD")
            elif any(keyword in str(jql).lower() for keyword in DANGEROUS_JQL_KEYWORDS):
                findings.error(
                    f"{prefix}.config.jql",
                    "JQL query contains potentially dangerous keywords",
                    "SECURITY_VIOLATION",
                )

        elif condition.type is ConditionType.FIELD_VALUE:
            if not config.get("fieldId"):
                findings.error(
                    f"{prefix}.config.fieldId",
                    "Field ID is required for field value conditions",
                    "REQUIRED_FIELD",
                )
            if config.get("expectedValue") is None:
                findings.warn(
                    f"{prefix}.config.expectedValue",
                    "Expected value not specified",
                    "Consider specifying an expected value",
                )

        elif condition.type is ConditionType.USER_IN_GROUP:
            if not config.get("groupName"):
                findings.error(
                    f"{prefix}.config.groupName",
                    "Group name is required for user in group conditions",
                    "REQUIRED_FIELD",
                )

        elif condition.type is ConditionType.ISSUE_AGE:
            age = config.get("ageInDays")
            if isinstance(age, bool) or not isinstance(age, int | float) or age < 0:
                findings.error(
                    f"{prefix}.config.ageInDays",
                    "Age in days must be a non-negative number",
                    "INVALID_VALUE",
                )

        elif condition.type is ConditionType.SMART_VALUE:
            if not config.get("smartValueExpression"):
                findings.error(
                    f"{prefix}.config.smartValueExpression",
                    "Smart value expression is required for smart value conditions",
                    "REQUIRED_FIELD",
                )

        elif condition.type is ConditionType.CUSTOM_SCRIPT:
            findings.warn(
                f"{prefix}.config.scriptCode",
                "Custom scripts are never executed; this condition always evaluates to false",
                "Use a smart value or field value condition instead",
            )

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _validate_actions(self, rule: AutomationRule, findings: _Findings) -> None:
        orders = []
        for index, action in enumerate(rule.actions):
            prefix = f"actions[{index}]"
            if isinstance(action.order, bool) or not isinstance(action.order, int):
                findings.error(f"{prefix}.order", f"Action order must be an integer: {action.order!r}", "INVALID_VALUE")
            else:
                orders.append(action.order)

            if not isinstance(action.type, ActionType):
                findings.error(f"{prefix}.type", f"Invalid action type: {action.type}", "INVALID_ENUM_VALUE")
                continue

            self._validate_action_config(action, prefix, findings)

        if len(orders) != len(set(orders)):
            findings.warn(
                "actions",
                "Duplicate action orders found",
                "Give every action a distinct order; equal orders run in definition order",
            )

        distinct = sorted(set(orders))
        if any(later - earlier > 1 for earlier, later in zip(distinct, distinct[1:])):
            findings.warn("actions", "Gaps found in action orders", "Number actions consecutively")

    @staticmethod
    def _validate_action_config(action: Action, prefix: str, findings: _Findings) -> None:
        config = action.config

        if action.type is ActionType.UPDATE_ISSUE:
            if not config.get("fields"):
                findings.warn(f"{prefix}.config.fields", "No fields specified for update", "Specify fields to update")

        elif action.type is ActionType.TRANSITION_ISSUE:
            if not config.get("transitionId") and not config.get("transitionName"):
                findings.error(f"{prefix}.config", "Either transition ID or name is required", "REQUIRED_FIELD")

        elif action.type is ActionType.CREATE_ISSUE:
            for key, label in (("projectKey", "Project key"), ("issueType", "Issue type"), ("summary", "Summary")):
                if not config.get(key):
                    findings.error(
                        f"{prefix}.config.{key}",
                        f"{label} is required for create issue action",
                        "REQUIRED_FIELD",
                    )

        elif action.type is ActionType.SEND_NOTIFICATION:
            if not config.get("recipients"):
                findings.error(
                    f"{prefix}.config.recipients",
                    "Recipients are required for notification action",
                    "REQUIRED_FIELD",
                )
            if not config.get("message"):
                findings.warn(f"{prefix}.config.message", "No message specified", "Consider adding a message")

        elif action.type is ActionType.WEBHOOK_CALL:
            url = config.get("url")
            if not url:
                findings.error(f"{prefix}.config.url", "URL is required for webhook call action", "REQUIRED_FIELD")
            elif "{{" not in str(url) and not is_valid_url(url):
                findings.error(f"{prefix}.config.url", "Invalid URL format", "INVALID_URL")
            if url and not config.get("method"):
                findings.warn(
                    f"{prefix}.config.method",
                    "HTTP method not specified, defaulting to POST",
                    "Explicitly specify the HTTP method",
                )

        elif action.type is ActionType.BULK_OPERATION:
            if not config.get("jql"):
                findings.error(
                    f"{prefix}.config.jql",
                    "JQL query is required for bulk operation action",
                    "REQUIRED_FIELD",
                )
            if not config.get("fields"):
                findings.error(
                    f"{prefix}.config.fields",
                    "Fields are required for bulk operation action",
                    "REQUIRED_FIELD",
                )
            max_issues = config.get("maxIssues")
            if isinstance(max_issues, int | float) and max_issues > LARGE_BULK_THRESHOLD:
                findings.warn(
                    f"{prefix}.config.maxIssues",
                    "Large bulk operation detected",
                    "Consider breaking into smaller operations",
                )

        elif action.type is ActionType.LINK_ISSUES:
            if not config.get("targetIssueKey") or not config.get("linkType"):
                findings.error(
                    f"{prefix}.config",
                    "Target issue key and link type are required for link issues action",
                    "REQUIRED_FIELD",
                )

        elif action.type is ActionType.UPDATE_CUSTOM_FIELD:
            if not config.get("customFieldId"):
                findings.error(
                    f"{prefix}.config.customFieldId",
                    "Custom field ID is required for update custom field action",
                    "REQUIRED_FIELD",
                )

        elif action.type is ActionType.CREATE_SUBTASK:
            if not config.get("summary"):
                findings.error(
                    f"{prefix}.config.summary",
                    "Summary is required for create subtask action",
                    "REQUIRED_FIELD",
                )

        elif action.type is ActionType.ADD_COMMENT:
            if not config.get("comment"):
                findings.error(
                    f"{prefix}.config.comment",
                    "Comment text is required for add comment action",
                    "REQUIRED_FIELD",
                )

    # ------------------------------------------------------------------
    # Smart values and cross-cutting logic
    # ------------------------------------------------------------------

    def _validate_smart_values(self, rule: AutomationRule, findings: _Findings) -> None:
        sections: list[tuple[str, list[Any]]] = [
            ("triggers", rule.triggers),
            ("conditions", rule.conditions),
            ("actions", rule.actions),
        ]
        for section, items in sections:
            for index, item in enumerate(items):
                for path, text in _strings_in(item.config, f"{section}[{index}].config"):
                    for problem in self.evaluator.validate_template(text):
                        findings.error(path, problem, "INVALID_SMART_VALUE")

    @staticmethod
    def _validate_rule_logic(rule: AutomationRule, findings: _Findings) -> None:
        trigger_types = {trigger.type for trigger in rule.triggers}
        action_types = {action.type for action in rule.actions}

        if TriggerType.ISSUE_UPDATED in trigger_types and ActionType.UPDATE_ISSUE in action_types:
            findings.warn(
                "rule",
                "Potential infinite loop detected",
                "Add conditions to prevent the rule from triggering itself",
            )

        frequent = TriggerType.ISSUE_UPDATED in trigger_types or any(
            trigger.type is TriggerType.SCHEDULED and "*" in str(trigger.config.get("cronExpression", ""))
            for trigger in rule.triggers
        )
        if ActionType.BULK_OPERATION in action_types and frequent:
            findings.warn(
                "rule",
                "Performance concern: bulk operations with frequent triggers",
                "Consider using less frequent triggers or smaller batch sizes",
            )


def _strings_in(value: Any, path: str) -> list[tuple[str, str]]:
    """Every string inside ``value`` (recursively) with its dotted path."""
    if isinstance(value, str):
        return [(path, value)]
    found: list[tuple[str, str]] = []
    if isinstance(value, dict):
        for key, item in value.items():
            found.extend(_strings_in(item, f"{path}.{key}"))
    elif isinstance(value, list | tuple):
        for index, item in enumerate(value):
            found.extend(_strings_in(item, f"{path}[{index}]"))
    return found
