"""Pytest configuration and shared fixtures."""

from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from trackflow.automation.engine import AutomationEngine
from trackflow.automation.smart_values import SmartValueEvaluator
from trackflow.config.settings import EngineConfig
from trackflow.models import ExecutionContext
from trackflow.providers.base import TrackerClient

FIXED_NOW = datetime(2024, 3, 15, 12, 30, 45, 123000, tzinfo=UTC)


@pytest.fixture
def fixed_now() -> datetime:
    """The instant returned by the frozen clock."""
    return FIXED_NOW


@pytest.fixture
def clock(fixed_now: datetime):
    """Frozen clock callable."""
    return lambda: fixed_now


@pytest.fixture
def tracker() -> MagicMock:
    """Fake tracker client whose REST calls are AsyncMocks returning None."""
    client = MagicMock(spec=TrackerClient)
    client.get = AsyncMock(return_value=None)
    client.post = AsyncMock(return_value=None)
    client.put = AsyncMock(return_value=None)
    client.delete = AsyncMock(return_value=None)
    client.close = AsyncMock(return_value=None)
    return client


@pytest.fixture
def evaluator(clock) -> SmartValueEvaluator:
    """Smart value evaluator on the frozen clock."""
    return SmartValueEvaluator(clock=clock)


@pytest.fixture
def engine(tracker: MagicMock, clock) -> AutomationEngine:
    """Engine with in-memory storage, the fake tracker and the frozen clock."""
    return AutomationEngine(tracker, settings=EngineConfig(history_limit=100), clock=clock)


@pytest.fixture
def issue_snapshot() -> dict[str, Any]:
    """Tracker-shaped issue snapshot."""
    return {
        "key": "PROJ-1",
        "fields": {
            "summary": "Login page crashes",
            "description": "Stack trace attached",
            "status": {"name": "Open", "id": "1"},
            "priority": {"name": "High", "id": "2"},
            "assignee": {
                "accountId": "acc-42",
                "displayName": "Dana Smith",
                "emailAddress": "dana@example.com",
            },
            "reporter": None,
            "issuetype": {"name": "Bug"},
            "project": {"key": "PROJ", "name": "Project"},
            "created": "2024-03-01T09:00:00+00:00",
            "updated": "2024-03-14T09:00:00+00:00",
        },
    }


@pytest.fixture
def context(issue_snapshot: dict[str, Any]) -> ExecutionContext:
    """Context for a firing against PROJ-1 with snapshots."""
    return ExecutionContext(
        issue_key="PROJ-1",
        project_key="PROJ",
        user_id="acc-7",
        issue=issue_snapshot,
        project={
            "key": "PROJ",
            "name": "Project",
            "lead": {"accountId": "acc-1", "displayName": "Lee", "emailAddress": "lee@example.com"},
            "projectCategory": {"id": "10000", "name": "Software"},
        },
        user={"accountId": "acc-7", "displayName": "Sam", "emailAddress": "sam@example.com"},
    )


@pytest.fixture
def rule_document() -> dict[str, Any]:
    """A valid rule document that comments on created issues."""
    return {
        "name": "Comment on create",
        "description": "Leave a comment on every new issue",
        "triggers": [{"type": "issue_created", "config": {}}],
        "actions": [
            {"type": "add_comment", "order": 1, "config": {"comment": "{{issue.key}} created"}},
        ],
    }


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Minimal configuration file with storage under tmp_path."""
    path = tmp_path / "trackflow.yaml"
    path.write_text(
        "engine:\n"
        f"  rules_directory: {tmp_path / 'rules'}\n"
        f"  history_file: {tmp_path / 'executions.json'}\n"
    )
    return path
