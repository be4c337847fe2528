"""Smart value evaluation.

Smart values are ``{{expression}}`` placeholders that rule authors embed in
any string of a rule's configuration. They are resolved against the
ExecutionContext of a firing just before the action runs.

Supported expression forms (the public contract rule authors write against):

    issue.<path>      key, summary, description, status, priority,
                      assignee[.displayName|.emailAddress|.accountId],
                      reporter[...], created, updated
    project.<path>    key, name, lead[...]
    user.<path>       accountId, displayName, emailAddress
    now               now, now.plusDays(n), now.minusDays(n),
                      now.plusHours(n), now.minusHours(n),
                      now.format("yyyy-MM-dd"), now.format("HH:mm:ss")
    webhook.<path>    dotted traversal into the webhook payload
    trigger.<path>    dotted traversal into the trigger payload
    literals          "text", 'text', 42, 4.2, true, false, null

Anything else evaluates to its own trimmed text.

The evaluator never performs network I/O. ``issue.key``, ``project.key`` and
``user.accountId`` come straight from the context; every other issue,
project or user field is read from the snapshot the caller placed on the
context and fails with PropertyNotFoundError when the snapshot lacks it.

Example:
    >>> evaluator = SmartValueEvaluator()
    >>> ctx = ExecutionContext(issue_key="PROJ-1")
    >>> evaluator.process_string("{{issue.key}} created", ctx)
    'PROJ-1 created'
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from trackflow.exceptions import (
    ExpressionError,
    MissingContextError,
    PropertyNotFoundError,
    UnsupportedExpressionError,
)
from trackflow.models.execution import ExecutionContext

log = structlog.get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
NUMBER_PATTERN = re.compile(r"^\d+(\.\d+)?$")
DATE_ARITHMETIC_PATTERN = re.compile(r"^now\.(plus|minus)(Days|Hours)\((\d+)\)$")
DATE_FORMAT_PATTERN = re.compile(r"""^now\.format\((["'])(.*)\1\)$""")

DATE_FORMATS = {
    "yyyy-MM-dd": "%Y-%m-%d",
    "HH:mm:ss": "%H:%M:%S",
}

SUPPORTED_PREFIXES = ("issue.", "project.", "user.", "now", "webhook.", "trigger.")

PERSON_FIELDS = ("displayName", "emailAddress", "accountId")

_MISSING = object()


class ExpressionKind(str, Enum):
    """Closed set of expression forms the evaluator understands."""

    ISSUE = "issue"
    PROJECT = "project"
    USER = "user"
    NOW = "now"
    WEBHOOK = "webhook"
    TRIGGER = "trigger"
    QUOTED = "quoted"
    NUMBER = "number"
    BOOLEAN = "boolean"
    NULL = "null"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ParsedExpression:
    """An expression classified into its kind.

    Attributes:
        kind: The expression form
        text: The whole trimmed expression
        path: Dotted segments after the prefix (empty for literals)
    """

    kind: ExpressionKind
    text: str
    path: tuple[str, ...] = ()


_PREFIX_KINDS = (
    ("issue.", ExpressionKind.ISSUE),
    ("project.", ExpressionKind.PROJECT),
    ("user.", ExpressionKind.USER),
    ("webhook.", ExpressionKind.WEBHOOK),
    ("trigger.", ExpressionKind.TRIGGER),
)


def parse_expression(expression: str) -> ParsedExpression:
    """Classify an expression without evaluating it."""
    text = expression.strip()

    for prefix, kind in _PREFIX_KINDS:
        if text.startswith(prefix):
            return ParsedExpression(kind, text, tuple(text[len(prefix) :].split(".")))

    if text == "now" or text.startswith("now."):
        return ParsedExpression(ExpressionKind.NOW, text)

    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return ParsedExpression(ExpressionKind.QUOTED, text)

    if NUMBER_PATTERN.match(text):
        return ParsedExpression(ExpressionKind.NUMBER, text)

    if text in ("true", "false"):
        return ParsedExpression(ExpressionKind.BOOLEAN, text)

    if text == "null":
        return ParsedExpression(ExpressionKind.NULL, text)

    return ParsedExpression(ExpressionKind.FALLBACK, text)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def convert_to_string(value: Any) -> str:
    """Project an evaluated value onto the text substituted into a template."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict | list | tuple):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def _snapshot_value(snapshot: dict[str, Any] | None, name: str) -> Any:
    """Read a field from a tracker-shaped snapshot (top level or ``fields``)."""
    if not isinstance(snapshot, dict):
        return _MISSING
    fields = snapshot.get("fields")
    if isinstance(fields, dict) and name in fields:
        return fields[name]
    return snapshot.get(name, _MISSING)


def _named(value: Any) -> Any:
    """Tracker objects like status and priority are shown by their name."""
    if isinstance(value, dict):
        return value.get("name", value.get("value", value))
    return value


class SmartValueEvaluator:
    """Resolve ``{{...}}`` placeholders against an execution context.

    Evaluation is a pure function of the expression, the context and the
    injected clock.

    Attributes:
        clock: Callable returning the current instant (UTC)
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self.clock = clock or (lambda: datetime.now(UTC))
        self._handlers: dict[ExpressionKind, Callable[[ParsedExpression, ExecutionContext], Any]] = {
            ExpressionKind.ISSUE: self._evaluate_issue,
            ExpressionKind.PROJECT: self._evaluate_project,
            ExpressionKind.USER: self._evaluate_user,
            ExpressionKind.NOW: self._evaluate_now,
            ExpressionKind.WEBHOOK: self._evaluate_webhook,
            ExpressionKind.TRIGGER: self._evaluate_trigger,
            ExpressionKind.QUOTED: lambda parsed, ctx: parsed.text[1:-1],
            ExpressionKind.NUMBER: lambda parsed, ctx: float(parsed.text),
            ExpressionKind.BOOLEAN: lambda parsed, ctx: parsed.text == "true",
            ExpressionKind.NULL: lambda parsed, ctx: None,
            ExpressionKind.FALLBACK: lambda parsed, ctx: parsed.text,
        }

    # ------------------------------------------------------------------
    # Template processing
    # ------------------------------------------------------------------

    def process_string(self, value: str, context: ExecutionContext) -> str:
        """Substitute every placeholder in ``value``.

        A placeholder whose expression fails to evaluate is left verbatim
        and a warning is logged; the remaining placeholders still resolve.
        """
        if not isinstance(value, str) or "{{" not in value:
            return value

        def substitute(match: re.Match[str]) -> str:
            expression = match.group(1)
            try:
                return convert_to_string(self.evaluate_expression(expression, context))
            except (ExpressionError, ValueError, OverflowError) as e:
                log.warning("smart_value_evaluation_failed", expression=expression, error=str(e))
                return match.group(0)

        return PLACEHOLDER_PATTERN.sub(substitute, value)

    def process_object(self, value: Any, context: ExecutionContext) -> Any:
        """Recursively process strings inside lists, tuples and dicts (keys too)."""
        if isinstance(value, str):
            return self.process_string(value, context)
        if isinstance(value, list):
            return [self.process_object(item, context) for item in value]
        if isinstance(value, tuple):
            return tuple(self.process_object(item, context) for item in value)
        if isinstance(value, dict):
            return {
                self.process_object(key, context): self.process_object(item, context) for key, item in value.items()
            }
        return value

    def process_context(self, context: ExecutionContext) -> ExecutionContext:
        """Return a copy of ``context`` with its templated payloads resolved."""
        return context.replace(
            webhook_data=self.process_object(context.webhook_data, context),
            trigger_data=self.process_object(context.trigger_data, context),
        )

    # ------------------------------------------------------------------
    # Expression evaluation
    # ------------------------------------------------------------------

    def evaluate_expression(self, expression: str, context: ExecutionContext) -> Any:
        """Evaluate a single expression (without the surrounding braces).

        Raises:
            MissingContextError: A required context field is absent.
            UnsupportedExpressionError: The expression form is unknown.
            PropertyNotFoundError: A path segment does not exist.
        """
        parsed = parse_expression(expression)
        return self._handlers[parsed.kind](parsed, context)

    def _evaluate_issue(self, parsed: ParsedExpression, context: ExecutionContext) -> Any:
        if not context.issue_key:
            raise MissingContextError("Issue key not available in context")

        name = parsed.path[0]
        if name == "key":
            return context.issue_key
        if name in ("summary", "description", "created", "updated"):
            return self._require(context.issue, name, "Issue")
        if name in ("status", "priority"):
            return _named(self._require(context.issue, name, "Issue"))
        if name in ("assignee", "reporter"):
            return self._person(context.issue, parsed, "Issue")

        raise UnsupportedExpressionError(f"Unsupported issue expression: {parsed.text}")

    def _evaluate_project(self, parsed: ParsedExpression, context: ExecutionContext) -> Any:
        if not context.project_key:
            raise MissingContextError("Project key not available in context")

        name = parsed.path[0]
        if name == "key":
            return context.project_key
        if name == "name":
            return self._require(context.project, name, "Project")
        if name == "lead":
            return self._person(context.project, parsed, "Project")

        raise UnsupportedExpressionError(f"Unsupported project expression: {parsed.text}")

    def _evaluate_user(self, parsed: ParsedExpression, context: ExecutionContext) -> Any:
        if not context.user_id:
            raise MissingContextError("User ID not available in context")

        name = parsed.path[0]
        if name == "accountId":
            return context.user_id
        if name in ("displayName", "emailAddress"):
            return self._require(context.user, name, "User")

        raise UnsupportedExpressionError(f"Unsupported user expression: {parsed.text}")

    def _evaluate_now(self, parsed: ParsedExpression, context: ExecutionContext) -> Any:
        now = self.clock()
        text = parsed.text

        if text == "now":
            return format_timestamp(now)

        arithmetic = DATE_ARITHMETIC_PATTERN.match(text)
        if arithmetic:
            direction, unit, amount = arithmetic.groups()
            delta = timedelta(days=int(amount)) if unit == "Days" else timedelta(hours=int(amount))
            return format_timestamp(now + delta if direction == "plus" else now - delta)

        formatted = DATE_FORMAT_PATTERN.match(text)
        if formatted and formatted.group(2) in DATE_FORMATS:
            return now.astimezone(UTC).strftime(DATE_FORMATS[formatted.group(2)])

        raise UnsupportedExpressionError(f"Unsupported date expression: {text}")

    def _evaluate_webhook(self, parsed: ParsedExpression, context: ExecutionContext) -> Any:
        if context.webhook_data is None:
            raise MissingContextError("Webhook data not available in context")
        return self._traverse(context.webhook_data, parsed.path, "Webhook")

    def _evaluate_trigger(self, parsed: ParsedExpression, context: ExecutionContext) -> Any:
        if context.trigger_data is None:
            raise MissingContextError("Trigger data not available in context")
        return self._traverse(context.trigger_data, parsed.path, "Trigger")

    @staticmethod
    def _require(snapshot: dict[str, Any] | None, name: str, label: str) -> Any:
        value = _snapshot_value(snapshot, name)
        if value is _MISSING:
            raise PropertyNotFoundError(f"{label} property not available in context: {name}")
        return value

    def _person(self, snapshot: dict[str, Any] | None, parsed: ParsedExpression, label: str) -> Any:
        """Resolve ``assignee``/``reporter``/``lead`` with an optional sub-field.

        Without a sub-field the email address is returned. An unassigned
        person (explicit null in the snapshot) resolves to None.
        """
        role = parsed.path[0]
        attribute = parsed.path[1] if len(parsed.path) > 1 else "emailAddress"
        if attribute not in PERSON_FIELDS or len(parsed.path) > 2:
            raise UnsupportedExpressionError(f"Unsupported {label.lower()} expression: {parsed.text}")

        person = self._require(snapshot, role, label)
        if person is None:
            return None
        if not isinstance(person, dict) or attribute not in person:
            raise PropertyNotFoundError(f"{label} property not available in context: {role}.{attribute}")
        return person[attribute]

    @staticmethod
    def _traverse(data: Any, path: tuple[str, ...], label: str) -> Any:
        current = data
        for segment in path:
            if isinstance(current, dict) and segment in current:
                current = current[segment]
            elif isinstance(current, list | tuple) and segment.isdigit() and int(segment) < len(current):
                current = current[int(segment)]
            else:
                raise PropertyNotFoundError(f"{label} property not found: {segment}")
        return current

    # ------------------------------------------------------------------
    # Authoring support
    # ------------------------------------------------------------------

    @staticmethod
    def validate_expression(expression: str) -> tuple[bool, str | None]:
        """Structural pre-check of one expression.

        Checks the expression is non-empty, has balanced delimiters and has a
        recognised prefix or literal shape. Does not evaluate anything.

        Returns:
            ``(True, None)`` when valid, otherwise ``(False, reason)``
        """
        text = expression.strip()
        if not text:
            return False, "Expression cannot be empty"

        if text.count("{{") != text.count("}}"):
            return False, "Unbalanced braces in expression"

        depth = 0
        for char in text:
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
                if depth < 0:
                    break
        if depth != 0:
            return False, "Unbalanced parentheses in expression"

        parsed = parse_expression(text)
        if parsed.kind is ExpressionKind.FALLBACK:
            return False, (
                f"Expression must start with one of: {', '.join(SUPPORTED_PREFIXES)} or be a literal value"
            )

        if parsed.kind is ExpressionKind.NOW and text != "now":
            formatted = DATE_FORMAT_PATTERN.match(text)
            if not DATE_ARITHMETIC_PATTERN.match(text) and not (formatted and formatted.group(2) in DATE_FORMATS):
                return False, f"Unsupported date expression: {text}"

        if parsed.kind in (ExpressionKind.ISSUE, ExpressionKind.PROJECT, ExpressionKind.USER) and not parsed.path[0]:
            return False, f"Missing property after '{parsed.kind.value}.'"

        return True, None

    def validate_template(self, text: str) -> list[str]:
        """Check every placeholder in a template string.

        Returns:
            Problems found; an empty list means the template is well-formed.
        """
        if "{{" not in text and "}}" not in text:
            return []
        if text.count("{{") != text.count("}}"):
            return [f"Unbalanced braces in template: {text}"]

        problems = []
        for match in PLACEHOLDER_PATTERN.finditer(text):
            valid, error = self.validate_expression(match.group(1))
            if not valid:
                problems.append(f"Invalid smart value '{{{{{match.group(1)}}}}}': {error}")
        return problems

    @staticmethod
    def available_smart_values(context: ExecutionContext) -> list[str]:
        """List the smart values that can resolve with this context."""
        values = [
            "now",
            "now.plusDays(1)",
            "now.minusDays(1)",
            "now.plusHours(1)",
            "now.minusHours(1)",
            'now.format("yyyy-MM-dd")',
            'now.format("HH:mm:ss")',
        ]

        if context.issue_key:
            values.append("issue.key")
            if context.issue:
                values.extend(
                    [
                        "issue.summary",
                        "issue.description",
                        "issue.status",
                        "issue.priority",
                        "issue.assignee.displayName",
                        "issue.assignee.emailAddress",
                        "issue.reporter.displayName",
                        "issue.reporter.emailAddress",
                        "issue.created",
                        "issue.updated",
                    ]
                )

        if context.project_key:
            values.append("project.key")
            if context.project:
                values.extend(["project.name", "project.lead.displayName", "project.lead.emailAddress"])

        if context.user_id:
            values.append("user.accountId")
            if context.user:
                values.extend(["user.displayName", "user.emailAddress"])

        if isinstance(context.webhook_data, dict):
            values.extend(f"webhook.{key}" for key in context.webhook_data)

        if isinstance(context.trigger_data, dict):
            values.extend(f"trigger.{key}" for key in context.trigger_data)

        return sorted(values)
