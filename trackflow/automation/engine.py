"""
Automation engine: rule registry, execution state machine, history and
metrics.

The engine is constructed explicitly with its collaborators injected and has
a start/shutdown lifecycle; there is no module-level instance.

Execution flow for one firing::

    look up rule -> snapshot it -> RUNNING
      -> resolve smart values in the context payloads
      -> evaluate conditions (failed -> COMPLETED, no results)
      -> run actions in ascending order
           (failure without continueOnError -> FAILED, partial results kept)
      -> COMPLETED
    -> update rule counters -> append to history
    -> notify the rule's author when FAILED

Every firing produces an Execution record, whatever the outcome. Only
validation and not-found problems are raised to the caller.

Example:
    >>> async with AutomationEngine(client) as engine:
    ...     rule = await engine.create_rule(document)
    ...     execution = await engine.execute_rule(rule.id, ExecutionContext(issue_key="PROJ-1"))
    ...     print(execution.status)
    completed
"""

import asyncio
import copy
import dataclasses
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from trackflow.automation.actions import ActionExecutor, Notifier, log_notifier
from trackflow.automation.conditions import ConditionEvaluator
from trackflow.automation.repositories import (
    BulkProgressStore,
    ExecutionHistory,
    InMemoryRuleRepository,
    RuleRepository,
)
from trackflow.automation.smart_values import SmartValueEvaluator
from trackflow.automation.triggers import build_context, candidate_trigger_types, matches, verify_webhook_signature
from trackflow.automation.validator import RuleValidator
from trackflow.config.settings import EngineConfig
from trackflow.exceptions import NotFoundError, TrackflowError, ValidationError
from trackflow.models import (
    ActionResult,
    AutomationRule,
    BulkOperationProgress,
    Execution,
    ExecutionContext,
    ExecutionStatus,
    RuleMetrics,
    RuleValidationResult,
    TriggerType,
)
from trackflow.providers.base import TrackerClient

log = structlog.get_logger(__name__)

# Fields that only the engine may set
PROTECTED_FIELDS = frozenset(
    {"id", "createdAt", "createdBy", "updatedAt", "executionCount", "failureCount", "lastExecuted"}
)


class AutomationEngine:
    """Owns the rule registry and the execution lifecycle.

    Attributes:
        client: Tracker client shared by actions and conditions
        repository: Rule storage
        history: Bounded execution history
        bulk_progress: Progress of bulk operations started by actions
        notifier: Delivers notifications, including failure reports
        settings: Engine limits
    """

    def __init__(
        self,
        client: TrackerClient,
        repository: RuleRepository | None = None,
        settings: EngineConfig | None = None,
        history: ExecutionHistory | None = None,
        evaluator: SmartValueEvaluator | None = None,
        executor: ActionExecutor | None = None,
        validator: RuleValidator | None = None,
        conditions: ConditionEvaluator | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.client = client
        self.settings = settings if settings is not None else EngineConfig()
        self.clock = clock or (lambda: datetime.now(UTC))
        self.repository = repository if repository is not None else InMemoryRuleRepository()
        self.history = history if history is not None else ExecutionHistory(limit=self.settings.history_limit)
        self.bulk_progress = BulkProgressStore()
        self.evaluator = evaluator or SmartValueEvaluator(clock=self.clock)
        self.validator = validator or RuleValidator(self.evaluator)
        self.conditions = conditions or ConditionEvaluator(client, self.evaluator, clock=self.clock)
        self.notifier = notifier or log_notifier
        self.executor = executor or ActionExecutor(
            client,
            notifier=self.notifier,
            bulk_batch_size=self.settings.bulk_batch_size,
            max_bulk_issues=self.settings.max_bulk_issues,
            on_bulk_progress=self.bulk_progress.update,
        )
        # Serializes read-modify-write of stored rules (updates and counters)
        self._registry_lock = asyncio.Lock()
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Load the registry once to verify storage is readable."""
        rules = await self.repository.list()
        self._running = True
        log.info("engine_started", rules=len(rules), enabled=sum(1 for rule in rules if rule.enabled))

    async def shutdown(self) -> None:
        """Release the tracker client."""
        await self.client.close()
        self._running = False
        log.info("engine_stopped", executions=len(self.history))

    async def __aenter__(self) -> "AutomationEngine":
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Rule registry
    # ------------------------------------------------------------------

    async def create_rule(self, rule_input: AutomationRule | dict[str, Any]) -> AutomationRule:
        """Validate and store a new rule.

        Raises:
            ValidationError: If the rule has validation errors.
        """
        rule = self._to_rule(rule_input)
        self._ensure_valid(rule)

        now = self.clock()
        rule = dataclasses.replace(
            rule,
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            execution_count=0,
            failure_count=0,
            last_executed=None,
        )
        await self.repository.put(rule)

        log.info("rule_created", rule_id=rule.id, name=rule.name, created_by=rule.created_by)
        return rule

    async def update_rule(self, rule_id: str, changes: dict[str, Any]) -> AutomationRule:
        """Merge ``changes`` (camelCase) over a stored rule and re-validate.

        Identity, creation data and counters cannot be changed.

        Raises:
            NotFoundError: If the rule does not exist.
            ValidationError: If the merged rule is invalid.
        """
        async with self._registry_lock:
            existing = await self.repository.get(rule_id)
            if existing is None:
                raise NotFoundError("rule", rule_id)

            merged = existing.to_dict()
            merged.update({key: value for key, value in changes.items() if key not in PROTECTED_FIELDS})
            rule = self._to_rule(merged)
            self._ensure_valid(rule)

            rule.updated_at = self.clock()
            await self.repository.put(rule)

        log.info("rule_updated", rule_id=rule_id, fields=sorted(changes))
        return rule

    async def delete_rule(self, rule_id: str) -> None:
        """Remove a rule. Its execution history is retained.

        Raises:
            NotFoundError: If the rule does not exist.
        """
        async with self._registry_lock:
            if not await self.repository.delete(rule_id):
                raise NotFoundError("rule", rule_id)
        log.info("rule_deleted", rule_id=rule_id)

    async def get_rule(self, rule_id: str) -> AutomationRule | None:
        return await self.repository.get(rule_id)

    async def get_rules(
        self,
        enabled: bool | None = None,
        project_key: str | None = None,
        trigger_type: TriggerType | str | None = None,
    ) -> list[AutomationRule]:
        """List rules, optionally filtered.

        Args:
            enabled: Only rules with this enabled flag
            project_key: Only rules scoped to this project
            trigger_type: Only rules having a trigger of this type
        """
        rules = await self.repository.list()
        if enabled is not None:
            rules = [rule for rule in rules if rule.enabled == enabled]
        if project_key is not None:
            rules = [rule for rule in rules if rule.project_keys and project_key in rule.project_keys]
        if trigger_type is not None:
            rules = [rule for rule in rules if any(t.type == trigger_type for t in rule.triggers)]
        return rules

    def validate_rule(self, rule: AutomationRule | dict[str, Any]) -> RuleValidationResult:
        return self.validator.validate(rule)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_rule(
        self,
        rule_id: str,
        context: ExecutionContext,
        triggered_by: str = "manual",
    ) -> Execution:
        """Fire a rule and return its terminal Execution record.

        Raises:
            NotFoundError: If the rule does not exist.
            ValidationError: If the rule is disabled.
        """
        stored = await self.repository.get(rule_id)
        if stored is None:
            raise NotFoundError("rule", rule_id)
        if not stored.enabled:
            raise ValidationError(f"Rule is disabled: {rule_id}")

        # Concurrent updates must not affect this firing
        rule = copy.deepcopy(stored)

        execution = Execution(
            id=str(uuid.uuid4()),
            rule_id=rule_id,
            triggered_at=self.clock(),
            triggered_by=triggered_by,
            context=context,
        ).advance(ExecutionStatus.RUNNING)
        started = time.perf_counter()
        bound_log = log.bind(execution_id=execution.id, rule_id=rule_id)
        bound_log.info("execution_started", triggered_by=triggered_by, issue_key=context.issue_key)

        try:
            processed = self.evaluator.process_context(context)
            execution = execution.advance(ExecutionStatus.RUNNING, context=processed)
            passed = await self.conditions.evaluate_all(rule.conditions, processed)
        except Exception as e:
            bound_log.error("condition_evaluation_failed", error=str(e))
            execution = execution.advance(
                ExecutionStatus.FAILED,
                error=f"Condition evaluation failed: {e}",
                duration=_elapsed_ms(started),
            )
            return await self._finish(execution, rule)

        if not passed:
            bound_log.info("conditions_not_met")
            execution = execution.advance(ExecutionStatus.COMPLETED, duration=_elapsed_ms(started))
            return await self._finish(execution, rule)

        results, error = await self._run_actions(rule, processed)
        execution = execution.advance(
            ExecutionStatus.FAILED if error else ExecutionStatus.COMPLETED,
            results=results,
            error=error,
            duration=_elapsed_ms(started),
        )
        return await self._finish(execution, rule)

    async def _run_actions(
        self,
        rule: AutomationRule,
        context: ExecutionContext,
    ) -> tuple[list[ActionResult], str | None]:
        """Run actions in order. Returns results and the halting error, if any."""
        results: list[ActionResult] = []
        for action in rule.sorted_actions():
            configured = dataclasses.replace(action, config=self.evaluator.process_object(action.config, context))
            result = await self.executor.execute_action(configured, context, rule_id=rule.id)
            results.append(result)

            if not result.succeeded and not action.continue_on_error:
                return results, f"Action {action.type} failed: {result.message}"
        return results, None

    async def _finish(self, execution: Execution, rule: AutomationRule) -> Execution:
        """Update the stored rule's counters, record the execution and report failures."""
        async with self._registry_lock:
            stored = await self.repository.get(execution.rule_id)
            if stored is not None:
                stored.execution_count += 1
                if execution.status == ExecutionStatus.FAILED:
                    stored.failure_count += 1
                stored.last_executed = execution.triggered_at
                await self.repository.put(stored)

        self.history.append(execution)

        event = "execution_failed" if execution.status == ExecutionStatus.FAILED else "execution_completed"
        log_method = log.error if execution.status == ExecutionStatus.FAILED else log.info
        log_method(
            event,
            execution_id=execution.id,
            rule_id=execution.rule_id,
            duration=execution.duration,
            actions=len(execution.results),
            error=execution.error,
        )
        if execution.status == ExecutionStatus.FAILED:
            await self._notify_failure(execution, rule)
        return execution

    async def _notify_failure(self, execution: Execution, rule: AutomationRule) -> None:
        """Tell the rule's author that a firing failed.

        A notifier that raises is logged and otherwise ignored; the execution
        record is already final.
        """
        notification = {
            "type": "rule_failure",
            "rule": rule.name,
            "ruleId": rule.id,
            "executionId": execution.id,
            "error": execution.error,
            "timestamp": execution.triggered_at.isoformat(),
            "duration": execution.duration,
            "recipients": [rule.created_by],
            "channel": "email",
            "subject": f"Automation rule failed: {rule.name}",
        }
        try:
            await self.notifier(notification)
        except Exception as e:
            log.error("failure_notification_failed", execution_id=execution.id, rule_id=rule.id, error=str(e))

    async def handle_event(self, event_name: str, event: dict[str, Any]) -> list[Execution]:
        """Fire every enabled rule with a trigger matching a tracker event."""
        types = candidate_trigger_types(event_name, event)
        if not types:
            log.debug("event_ignored", event_name=event_name)
            return []

        context = build_context(event)
        executions = []
        for rule in await self.get_rules(enabled=True):
            if rule.project_keys and context.project_key not in rule.project_keys:
                continue
            if not any(trigger.type in types and matches(trigger, event) for trigger in rule.triggers):
                continue
            execution = await self._fire(rule.id, context)
            if execution is not None:
                executions.append(execution)

        log.info("event_handled", event_name=event_name, executions=len(executions))
        return executions

    async def handle_webhook(
        self,
        payload: Any,
        webhook_id: str | None = None,
        raw_body: bytes | str | None = None,
        signature: str | None = None,
    ) -> list[Execution]:
        """Fire every enabled rule with a webhook trigger.

        When ``webhook_id`` is given only triggers configured with that
        ``webhookId`` match. A trigger with a ``secret`` only matches when
        ``signature`` (the ``x-webhook-signature`` header) is the HMAC of
        ``raw_body``, or of the compact JSON form of ``payload`` when no raw
        body is given.
        """
        body = raw_body if raw_body is not None else payload
        context = ExecutionContext(webhook_data=payload, trigger_data=payload)
        executions = []
        for rule in await self.get_rules(enabled=True, trigger_type=TriggerType.WEBHOOK):
            triggers = [
                t
                for t in rule.triggers
                if t.type == TriggerType.WEBHOOK and (webhook_id is None or t.config.get("webhookId") == webhook_id)
            ]
            if not triggers:
                continue
            if not any(
                not t.config.get("secret") or verify_webhook_signature(body, signature, str(t.config["secret"]))
                for t in triggers
            ):
                log.warning(
                    "webhook_signature_rejected", rule_id=rule.id, webhook_id=webhook_id, signed=bool(signature)
                )
                continue
            execution = await self._fire(rule.id, context)
            if execution is not None:
                executions.append(execution)
        return executions

    async def _fire(self, rule_id: str, context: ExecutionContext) -> Execution | None:
        try:
            return await self.execute_rule(rule_id, context, triggered_by="trigger")
        except TrackflowError as e:
            # Rule was deleted or disabled after it was selected
            log.warning("triggered_rule_skipped", rule_id=rule_id, error=e.message)
            return None

    # ------------------------------------------------------------------
    # History, progress and metrics
    # ------------------------------------------------------------------

    def get_executions(
        self,
        rule_id: str | None = None,
        status: ExecutionStatus | str | None = None,
        limit: int | None = None,
    ) -> list[Execution]:
        return self.history.list(rule_id=rule_id, status=status, limit=limit)

    def get_execution(self, execution_id: str) -> Execution:
        """Raises NotFoundError for unknown ids."""
        execution = self.history.get(execution_id)
        if execution is None:
            raise NotFoundError("execution", execution_id)
        return execution

    def get_bulk_operation_progress(self, operation_id: str) -> BulkOperationProgress | None:
        return self.bulk_progress.get(operation_id)

    async def get_metrics(self, rule_id: str | None = None) -> list[RuleMetrics]:
        """Aggregate metrics per rule from the execution history.

        Without ``rule_id`` every stored rule is reported, plus deleted rules
        that still have history.
        """
        if rule_id is not None:
            rule_ids = [rule_id]
        else:
            rule_ids = [rule.id for rule in await self.repository.list()]
            for execution in self.history.list():
                if execution.rule_id not in rule_ids:
                    rule_ids.append(execution.rule_id)

        return [self._metrics_for(rid) for rid in rule_ids]

    def _metrics_for(self, rule_id: str) -> RuleMetrics:
        executions = self.history.list(rule_id=rule_id)
        if not executions:
            return RuleMetrics(rule_id=rule_id)

        failures: dict[str, int] = {}
        for execution in executions:
            if execution.status == ExecutionStatus.FAILED:
                reason = execution.error or "Unknown error"
                failures[reason] = failures.get(reason, 0) + 1

        failed = sum(failures.values())
        return RuleMetrics(
            rule_id=rule_id,
            execution_count=len(executions),
            success_rate=(len(executions) - failed) / len(executions) * 100,
            average_duration=sum(e.duration for e in executions) / len(executions),
            last_execution=max(e.triggered_at for e in executions),
            failure_reasons=failures,
        )

    def cleanup(self) -> dict[str, int]:
        """Prune history and bulk progress older than the retention period."""
        cutoff = self.clock() - timedelta(days=self.settings.retention_days)
        pruned = {
            "executions": self.history.prune(cutoff),
            "bulkOperations": self.bulk_progress.prune(cutoff),
        }
        log.info("engine_cleanup_completed", cutoff=cutoff.isoformat(), **pruned)
        return pruned

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_rule(rule_input: AutomationRule | dict[str, Any]) -> AutomationRule:
        if isinstance(rule_input, AutomationRule):
            return copy.deepcopy(rule_input)
        return AutomationRule.from_dict(rule_input)

    def _ensure_valid(self, rule: AutomationRule) -> None:
        result = self.validator.validate(rule)
        if not result.valid:
            messages = "; ".join(f"{error.field}: {error.message}" for error in result.errors)
            raise ValidationError(
                f"Rule validation failed: {messages}",
                errors=[error.to_dict() for error in result.errors],
            )
        for warning in result.warnings:
            log.debug("rule_validation_warning", field=warning.field, message=warning.message)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)
