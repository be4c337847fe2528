"""Automation rule engine.

Key Exports:
    AutomationEngine: Rule registry and execution lifecycle
    SmartValueEvaluator: ``{{...}}`` template interpreter
    ActionExecutor: Runs single actions against the tracker
    RuleValidator: Structural and semantic rule validation
    ConditionEvaluator: Evaluates rule conditions
"""

from trackflow.automation.actions import ActionExecutor, ActionHandler
from trackflow.automation.conditions import ConditionEvaluator
from trackflow.automation.engine import AutomationEngine
from trackflow.automation.repositories import (
    BulkProgressStore,
    ExecutionHistory,
    InMemoryRuleRepository,
    JsonFileRuleRepository,
    RuleRepository,
)
from trackflow.automation.smart_values import SmartValueEvaluator
from trackflow.automation.validator import RuleValidator

__all__ = [
    "ActionExecutor",
    "ActionHandler",
    "AutomationEngine",
    "BulkProgressStore",
    "ConditionEvaluator",
    "ExecutionHistory",
    "InMemoryRuleRepository",
    "JsonFileRuleRepository",
    "RuleRepository",
    "RuleValidator",
    "SmartValueEvaluator",
]
