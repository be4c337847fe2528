"""CLI entry point for the trackflow rule engine."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click
import structlog
import yaml

from trackflow.automation.engine import AutomationEngine
from trackflow.automation.repositories import ExecutionHistory, JsonFileRuleRepository
from trackflow.automation.smart_values import SmartValueEvaluator
from trackflow.automation.validator import RuleValidator
from trackflow.config.settings import TrackflowSettings
from trackflow.exceptions import ConfigurationError, TrackflowError, ValidationError
from trackflow.models import Execution, ExecutionContext, ExecutionStatus
from trackflow.providers import JiraRestClient, OfflineTrackerClient, TrackerClient
from trackflow.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option("--config", default=None, help="Path to configuration file (defaults to environment settings)")
@click.option("--log-level", default="INFO", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str) -> None:
    """trackflow: automation rules for your issue tracker."""
    configure_logging(log_level)

    try:
        settings = _load_settings(config)
    except ConfigurationError as e:
        _fail(e, "config_error")

    ctx.obj = {"settings": settings}


@cli.command()
@click.argument("rule_file", type=click.Path(exists=True, dir_okay=False))
def validate(rule_file: str) -> None:
    """Validate a rule definition file without storing it."""
    try:
        document = _load_document(rule_file)
    except TrackflowError as e:
        _fail(e, "validate_error")

    result = RuleValidator().validate(document)
    for error in result.errors:
        click.echo(f"ERROR   {error.field}: {error.message} ({error.code})")
    for warning in result.warnings:
        suggestion = f" - {warning.suggestion}" if warning.suggestion else ""
        click.echo(f"WARNING {warning.field}: {warning.message}{suggestion}")

    if not result.valid:
        click.echo(f"Rule is invalid: {len(result.errors)} error(s)")
        sys.exit(1)
    click.echo(f"Rule is valid ({len(result.warnings)} warning(s))")


@cli.command()
@click.argument("rule_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def create(ctx: click.Context, rule_file: str) -> None:
    """Create a rule from a YAML or JSON file."""
    settings = ctx.obj["settings"]

    async def run() -> Any:
        async with _build_engine(settings) as engine:
            return await engine.create_rule(_load_document(rule_file))

    try:
        rule = asyncio.run(run())
    except TrackflowError as e:
        _fail(e, "create_rule_error")

    click.echo(f"Created rule {rule.id}: {rule.name}")


@cli.command("list")
@click.option("--enabled/--disabled", default=None, help="Only enabled or only disabled rules")
@click.option("--project", "project_key", default=None, help="Only rules scoped to this project")
@click.pass_context
def list_rules(ctx: click.Context, enabled: bool | None, project_key: str | None) -> None:
    """List stored rules."""
    settings = ctx.obj["settings"]

    async def run() -> Any:
        async with _build_engine(settings) as engine:
            return await engine.get_rules(enabled=enabled, project_key=project_key)

    try:
        rules = asyncio.run(run())
    except TrackflowError as e:
        _fail(e, "list_rules_error")

    if not rules:
        click.echo("No rules found")
        return

    for rule in rules:
        state = "enabled " if rule.enabled else "disabled"
        triggers = ",".join(str(trigger.type) for trigger in rule.triggers)
        click.echo(f"{rule.id}  {state}  {rule.name}  [{triggers}]  runs={rule.execution_count}")


@cli.command()
@click.argument("rule_id")
@click.pass_context
def show(ctx: click.Context, rule_id: str) -> None:
    """Show a rule as JSON."""
    settings = ctx.obj["settings"]

    async def run() -> Any:
        async with _build_engine(settings) as engine:
            return await engine.get_rule(rule_id)

    try:
        rule = asyncio.run(run())
    except TrackflowError as e:
        _fail(e, "show_rule_error")

    if rule is None:
        click.echo(f"Error: Rule not found: {rule_id}", err=True)
        sys.exit(1)
    click.echo(json.dumps(rule.to_dict(), indent=2))


@cli.command()
@click.argument("rule_id")
@click.argument("changes_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def update(ctx: click.Context, rule_id: str, changes_file: str) -> None:
    """Merge the fields in CHANGES_FILE over a stored rule."""
    settings = ctx.obj["settings"]

    async def run() -> Any:
        async with _build_engine(settings) as engine:
            return await engine.update_rule(rule_id, _load_document(changes_file))

    try:
        rule = asyncio.run(run())
    except TrackflowError as e:
        _fail(e, "update_rule_error")

    click.echo(f"Updated rule {rule.id}: {rule.name}")


@cli.command()
@click.argument("rule_id")
@click.pass_context
def delete(ctx: click.Context, rule_id: str) -> None:
    """Delete a rule. Its execution history is kept."""
    settings = ctx.obj["settings"]

    async def run() -> None:
        async with _build_engine(settings) as engine:
            await engine.delete_rule(rule_id)

    try:
        asyncio.run(run())
    except TrackflowError as e:
        _fail(e, "delete_rule_error")

    click.echo(f"Deleted rule {rule_id}")


@cli.command()
@click.argument("rule_id")
@click.option("--issue-key", default=None, help="Issue the rule runs against")
@click.option("--project-key", default=None, help="Project of the issue")
@click.option("--user-id", default=None, help="Account id of the acting user")
@click.option(
    "--context-file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML/JSON execution context (issueKey, webhookData, issue snapshot, ...)",
)
@click.pass_context
def execute(
    ctx: click.Context,
    rule_id: str,
    issue_key: str | None,
    project_key: str | None,
    user_id: str | None,
    context_file: str | None,
) -> None:
    """Execute a rule manually and print the execution record."""
    settings = ctx.obj["settings"]

    try:
        settings.require_tracker()
        context = ExecutionContext.from_dict(_load_document(context_file) if context_file else None)
        overrides = {"issue_key": issue_key, "project_key": project_key, "user_id": user_id}
        context = context.replace(**{key: value for key, value in overrides.items() if value is not None})

        async def run() -> Execution:
            history = await ExecutionHistory.load(settings.engine.history_file, settings.engine.history_limit)
            async with _build_engine(settings, history) as engine:
                execution = await engine.execute_rule(rule_id, context)
            await history.save(settings.engine.history_file)
            return execution

        execution = asyncio.run(run())
    except TrackflowError as e:
        _fail(e, "execute_rule_error")

    click.echo(json.dumps(execution.to_dict(), indent=2))


@cli.command("handle-event")
@click.argument("event_name")
@click.argument("payload_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def handle_event(ctx: click.Context, event_name: str, payload_file: str) -> None:
    """Fire every rule matching a tracker event (e.g. jira:issue_created)."""
    settings = ctx.obj["settings"]

    try:
        settings.require_tracker()
        payload = _load_document(payload_file)

        async def run() -> list[Execution]:
            history = await ExecutionHistory.load(settings.engine.history_file, settings.engine.history_limit)
            async with _build_engine(settings, history) as engine:
                executions = await engine.handle_event(event_name, payload)
            await history.save(settings.engine.history_file)
            return executions

        executions = asyncio.run(run())
    except TrackflowError as e:
        _fail(e, "handle_event_error")

    if not executions:
        click.echo("No rules matched")
    for execution in executions:
        click.echo(f"{execution.rule_id}  {execution.status}  {execution.id}")


@cli.command()
@click.option("--rule-id", default=None, help="Only executions of this rule")
@click.option(
    "--status",
    type=click.Choice([status.value for status in ExecutionStatus]),
    default=None,
    help="Only executions with this status",
)
@click.option("--limit", type=int, default=20, show_default=True, help="Maximum executions to show")
@click.pass_context
def executions(ctx: click.Context, rule_id: str | None, status: str | None, limit: int) -> None:
    """Show recent executions, newest first."""
    settings = ctx.obj["settings"]

    try:
        history = asyncio.run(ExecutionHistory.load(settings.engine.history_file, settings.engine.history_limit))
    except TrackflowError as e:
        _fail(e, "executions_error")
    except (OSError, ValueError) as e:
        _fail(ConfigurationError(f"Cannot read execution history: {e}"), "executions_error")

    records = history.list(rule_id=rule_id, status=status, limit=limit)
    if not records:
        click.echo("No executions found")
        return

    for execution in records:
        click.echo(
            f"{execution.id}  {str(execution.status):<9}  {execution.rule_id}  "
            f"{execution.triggered_at.isoformat()}  {execution.duration:.0f}ms"
            + (f"  {execution.error}" if execution.error else "")
        )


@cli.command()
@click.option("--rule-id", default=None, help="Only this rule")
@click.pass_context
def metrics(ctx: click.Context, rule_id: str | None) -> None:
    """Show per-rule execution metrics computed from history."""
    settings = ctx.obj["settings"]

    async def run() -> list[dict[str, Any]]:
        history = await ExecutionHistory.load(settings.engine.history_file, settings.engine.history_limit)
        async with _build_engine(settings, history) as engine:
            return [m.to_dict() for m in await engine.get_metrics(rule_id)]

    try:
        result = asyncio.run(run())
    except TrackflowError as e:
        _fail(e, "metrics_error")

    click.echo(json.dumps(result, indent=2))


@cli.command()
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    """Prune executions older than the retention period."""
    settings = ctx.obj["settings"]

    async def run() -> dict[str, int]:
        history = await ExecutionHistory.load(settings.engine.history_file, settings.engine.history_limit)
        async with _build_engine(settings, history) as engine:
            pruned = engine.cleanup()
        await history.save(settings.engine.history_file)
        return pruned

    try:
        pruned = asyncio.run(run())
    except TrackflowError as e:
        _fail(e, "cleanup_error")

    click.echo(f"Pruned {pruned['executions']} execution(s)")


@cli.command("smart-values")
@click.option("--issue-key", default=None)
@click.option("--project-key", default=None)
@click.option("--user-id", default=None)
def smart_values(issue_key: str | None, project_key: str | None, user_id: str | None) -> None:
    """List the smart values available for a context."""
    context = ExecutionContext(issue_key=issue_key, project_key=project_key, user_id=user_id)
    for value in SmartValueEvaluator.available_smart_values(context):
        click.echo(f"{{{{{value}}}}}")


def _load_settings(config: str | None) -> TrackflowSettings:
    if config is not None:
        return TrackflowSettings.from_yaml(config)
    try:
        return TrackflowSettings()
    except Exception as e:
        raise ConfigurationError(f"Invalid environment configuration: {e}") from e


def _build_engine(settings: TrackflowSettings, history: ExecutionHistory | None = None) -> AutomationEngine:
    client: TrackerClient
    if settings.tracker is not None:
        client = JiraRestClient(
            base_url=str(settings.tracker.base_url),
            email=settings.tracker.email,
            api_token=settings.tracker.api_token.get_secret_value(),
            timeout=settings.tracker.timeout,
            max_connections=settings.tracker.max_connections,
        )
    else:
        client = OfflineTrackerClient()

    return AutomationEngine(
        client,
        repository=JsonFileRuleRepository(settings.rules_dir),
        settings=settings.engine,
        history=history,
    )


def _load_document(path: str) -> Any:
    """Read a YAML or JSON document (JSON is valid YAML)."""
    try:
        return yaml.safe_load(Path(path).read_text())
    except (OSError, yaml.YAMLError) as e:
        raise ValidationError(f"Cannot read {path}: {e}") from e


def _fail(error: TrackflowError, event: str) -> NoReturn:
    click.echo(f"Error: {error.message}", err=True)
    log.debug(event, exc_info=True)
    sys.exit(1)


if __name__ == "__main__":
    cli()
