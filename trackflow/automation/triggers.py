"""Matching tracker events against rule triggers.

The tracker delivers events such as ``jira:issue_updated`` with the issue,
the acting user and (for updates) a changelog. This module decides which
trigger types an event stands for and whether a given trigger's filters
accept it, then builds the ExecutionContext for the firing.

Inbound webhooks for rules whose webhook trigger has a ``secret`` carry an
``x-webhook-signature`` header of the form ``sha256=<hex hmac of the body>``.
"""

import hashlib
import hmac
import json
from typing import Any

from trackflow.models import ExecutionContext, Trigger, TriggerType

EVENT_TRIGGER_TYPES = {
    "jira:issue_created": TriggerType.ISSUE_CREATED,
    "jira:issue_updated": TriggerType.ISSUE_UPDATED,
    "comment_created": TriggerType.ISSUE_COMMENTED,
    "comment_updated": TriggerType.ISSUE_COMMENTED,
    "sla_breached": TriggerType.SLA_BREACH,
}


def event_trigger_type(event_name: str) -> TriggerType | None:
    """Map a tracker webhook event name to the trigger type it fires.

    Trigger type names themselves (``issue_created``) are accepted too.
    """
    if event_name in EVENT_TRIGGER_TYPES:
        return EVENT_TRIGGER_TYPES[event_name]
    try:
        return TriggerType(event_name)
    except ValueError:
        return None


def _changelog_items(event: dict[str, Any]) -> list[dict[str, Any]]:
    return list((event.get("changelog") or {}).get("items") or [])


def _status_changes(event: dict[str, Any]) -> list[dict[str, Any]]:
    return [item for item in _changelog_items(event) if item.get("field") == "status"]


def candidate_trigger_types(event_name: str, event: dict[str, Any]) -> set[TriggerType]:
    """All trigger types an event can satisfy.

    An issue update whose changelog touches the status also counts as a
    transition, and any update with changelog items counts as a field change.
    """
    base = event_trigger_type(event_name)
    if base is None:
        return set()

    types = {base}
    if base is TriggerType.ISSUE_UPDATED:
        if _status_changes(event):
            types.add(TriggerType.ISSUE_TRANSITIONED)
        if _changelog_items(event):
            types.add(TriggerType.FIELD_CHANGED)
    return types


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list | tuple | set):
        return list(value)
    return [value]


def matches(trigger: Trigger, event: dict[str, Any]) -> bool:
    """Check a trigger's filters against an event payload."""
    config = trigger.config
    fields = (event.get("issue") or {}).get("fields") or {}

    project_keys = _as_list(config.get("projectKeys"))
    if project_keys and (fields.get("project") or {}).get("key") not in project_keys:
        return False

    issue_types = _as_list(config.get("issueTypes"))
    if issue_types and (fields.get("issuetype") or {}).get("name") not in issue_types:
        return False

    if trigger.type is TriggerType.ISSUE_UPDATED:
        watched = _as_list(config.get("fields"))
        if watched:
            changed = {item.get("fieldId") or item.get("field") for item in _changelog_items(event)}
            if not changed.intersection(watched):
                return False

    if trigger.type is TriggerType.FIELD_CHANGED and config.get("fieldId"):
        change = next(
            (item for item in _changelog_items(event) if item.get("fieldId") == config["fieldId"]),
            None,
        )
        if change is None:
            return False
        if "fromValue" in config and change.get("fromString") != config["fromValue"]:
            return False
        if "toValue" in config and change.get("toString") != config["toValue"]:
            return False

    if trigger.type is TriggerType.ISSUE_TRANSITIONED:
        changes = _status_changes(event)
        if not changes:
            return False
        from_status = _as_list(config.get("fromStatus"))
        to_status = _as_list(config.get("toStatus"))
        if from_status and changes[0].get("fromString") not in from_status:
            return False
        if to_status and changes[0].get("toString") not in to_status:
            return False

    return True


def build_context(event: dict[str, Any]) -> ExecutionContext:
    """Build the ExecutionContext for a firing caused by ``event``.

    The issue and user carried by the event become the context snapshots,
    so smart values like ``{{issue.summary}}`` resolve without extra calls.
    """
    issue = event.get("issue") or None
    user = event.get("user") or None
    project = ((issue or {}).get("fields") or {}).get("project") or None

    return ExecutionContext(
        issue_key=(issue or {}).get("key"),
        project_key=(project or {}).get("key"),
        user_id=(user or {}).get("accountId"),
        trigger_data=event,
        issue=issue,
        project=project,
        user=user,
    )


def webhook_body(payload: Any) -> bytes:
    """Bytes a webhook signature is computed over.

    Raw bodies are used as received; decoded payloads are re-serialized
    compactly.
    """
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode()
    return json.dumps(payload, separators=(",", ":")).encode()


def webhook_signature(body: Any, secret: str) -> str:
    digest = hmac.new(secret.encode(), webhook_body(body), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_webhook_signature(body: Any, signature: str | None, secret: str) -> bool:
    """Check a ``sha256=`` signature in constant time. A missing signature fails."""
    if not signature:
        return False
    return hmac.compare_digest(signature.encode(), webhook_signature(body, secret).encode())
