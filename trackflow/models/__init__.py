"""Core domain models for the rule engine.

Key Models:
    - AutomationRule: Triggers, conditions and ordered actions
    - Trigger / Condition / Action: The parts of a rule
    - ExecutionContext: Data available to one firing
    - Execution: Frozen record of one firing
    - ActionResult: Outcome of a single action
    - BulkOperationProgress: Per-item progress of a bulk action
    - RuleMetrics: Aggregates computed from execution history

Example:
    >>> from trackflow.models import AutomationRule, ExecutionContext
    >>> rule = AutomationRule.from_dict(document)
    >>> context = ExecutionContext(issue_key="PROJ-1")
"""

from trackflow.models.execution import (
    ActionResult,
    ActionStatus,
    BulkOperationError,
    BulkOperationProgress,
    Execution,
    ExecutionContext,
    ExecutionStatus,
    RuleMetrics,
    RuleValidationResult,
    ValidationProblem,
    ValidationWarning,
)
from trackflow.models.rules import (
    Action,
    ActionType,
    AutomationRule,
    ComparisonOperator,
    Condition,
    ConditionType,
    LogicalOperator,
    Trigger,
    TriggerType,
)

__all__ = [
    "Action",
    "ActionResult",
    "ActionStatus",
    "ActionType",
    "AutomationRule",
    "BulkOperationError",
    "BulkOperationProgress",
    "ComparisonOperator",
    "Condition",
    "ConditionType",
    "Execution",
    "ExecutionContext",
    "ExecutionStatus",
    "LogicalOperator",
    "RuleMetrics",
    "RuleValidationResult",
    "Trigger",
    "TriggerType",
    "ValidationProblem",
    "ValidationWarning",
]
