"""
Storage for rules, execution history and bulk-operation progress.

The engine only talks to the narrow ``RuleRepository`` interface, so the
storage backend can be swapped without touching it. Two backends ship:

- ``InMemoryRuleRepository``: a keyed map, for tests and embedding.
- ``JsonFileRuleRepository``: one JSON file per rule named ``{rule_id}.json``,
  written atomically (temporary file then rename) with a lock per rule.

Execution history is bounded and newest-first: appending beyond the limit
drops the oldest record. Entries keep the rule id as a plain value and
outlive the rule they came from.

Example:
    >>> repository = JsonFileRuleRepository(".trackflow/rules")
    >>> await repository.put(rule)
    >>> [r.name for r in await repository.list()]
    ['Comment on create']
"""

from __future__ import annotations

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from pathlib import Path

import aiofiles
import structlog

from trackflow.models import (
    AutomationRule,
    BulkOperationProgress,
    Execution,
    ExecutionStatus,
)

log = structlog.get_logger(__name__)


class RuleRepository(ABC):
    """Keyed storage of automation rules."""

    @abstractmethod
    async def get(self, rule_id: str) -> AutomationRule | None:
        """Return the rule, or None when it does not exist."""
        pass

    @abstractmethod
    async def list(self) -> list[AutomationRule]:
        """Return every stored rule."""
        pass

    @abstractmethod
    async def put(self, rule: AutomationRule) -> None:
        """Insert or replace a rule by its id."""
        pass

    @abstractmethod
    async def delete(self, rule_id: str) -> bool:
        """Remove a rule. Returns False when it did not exist."""
        pass


class InMemoryRuleRepository(RuleRepository):
    """Rules kept in a dict. Returned rules are copies."""

    def __init__(self) -> None:
        self._rules: dict[str, AutomationRule] = {}

    async def get(self, rule_id: str) -> AutomationRule | None:
        rule = self._rules.get(rule_id)
        return copy.deepcopy(rule) if rule is not None else None

    async def list(self) -> list[AutomationRule]:
        return [copy.deepcopy(rule) for rule in self._rules.values()]

    async def put(self, rule: AutomationRule) -> None:
        self._rules[rule.id] = copy.deepcopy(rule)

    async def delete(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None


class JsonFileRuleRepository(RuleRepository):
    """Rules persisted as JSON documents in a directory.

    Attributes:
        rules_dir: Directory holding one ``{rule_id}.json`` file per rule
    """

    def __init__(self, rules_dir: str | Path) -> None:
        self.rules_dir = Path(rules_dir)
        self.rules_dir.mkdir(parents=True, exist_ok=True)
        # Per-rule locks to prevent concurrent writes to the same file
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, rule_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            if rule_id not in self._locks:
                self._locks[rule_id] = asyncio.Lock()
            return self._locks[rule_id]

    def _rule_path(self, rule_id: str) -> Path | None:
        """Path of a rule's file, or None for ids that are not plain names."""
        if not rule_id or "/" in rule_id or "\\" in rule_id or rule_id.startswith("."):
            return None
        return self.rules_dir / f"{rule_id}.json"

    async def get(self, rule_id: str) -> AutomationRule | None:
        path = self._rule_path(rule_id)
        if path is None or not path.exists():
            return None

        lock = await self._get_lock(rule_id)
        async with lock:
            if not path.exists():
                return None
            return await self._read_rule(path)

    async def list(self) -> list[AutomationRule]:
        rules = []
        for path in sorted(self.rules_dir.glob("*.json")):
            rules.append(await self._read_rule(path))
        return rules

    async def put(self, rule: AutomationRule) -> None:
        path = self._rule_path(rule.id)
        if path is None:
            raise ValueError(f"Invalid rule id: {rule.id!r}")

        lock = await self._get_lock(rule.id)
        async with lock:
            await self._write_rule(path, rule)
        log.debug("rule_persisted", rule_id=rule.id, path=str(path))

    async def delete(self, rule_id: str) -> bool:
        path = self._rule_path(rule_id)
        if path is None or not path.exists():
            return False

        lock = await self._get_lock(rule_id)
        async with lock:
            if not path.exists():
                return False
            path.unlink()
        async with self._locks_lock:
            # Deleted ids keep no lock
            if self._locks.get(rule_id) is lock and not lock.locked():
                del self._locks[rule_id]
        return True

    @staticmethod
    async def _read_rule(path: Path) -> AutomationRule:
        async with aiofiles.open(path) as f:
            content = await f.read()
        return AutomationRule.from_dict(json.loads(content))

    @staticmethod
    async def _write_rule(path: Path, rule: AutomationRule) -> None:
        tmp_path = path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(rule.to_dict(), indent=2))

        # Atomic rename - safe on POSIX when same filesystem
        tmp_path.replace(path)


class ExecutionHistory:
    """Bounded, newest-first log of execution records."""

    def __init__(self, limit: int = 1000) -> None:
        if limit < 1:
            raise ValueError(f"History limit must be positive, got {limit}")
        self.limit = limit
        self._executions: deque[Execution] = deque(maxlen=limit)

    def __len__(self) -> int:
        return len(self._executions)

    def append(self, execution: Execution) -> None:
        self._executions.appendleft(execution)

    def get(self, execution_id: str) -> Execution | None:
        return next((e for e in self._executions if e.id == execution_id), None)

    def list(
        self,
        rule_id: str | None = None,
        status: ExecutionStatus | str | None = None,
        limit: int | None = None,
    ) -> list[Execution]:
        """Executions newest first, optionally filtered by rule and status."""
        executions = [
            e
            for e in self._executions
            if (rule_id is None or e.rule_id == rule_id) and (status is None or e.status == status)
        ]
        return executions[:limit] if limit is not None else executions

    def prune(self, older_than: datetime) -> int:
        """Drop executions triggered before ``older_than``. Returns the count."""
        kept = [e for e in self._executions if e.triggered_at >= older_than]
        removed = len(self._executions) - len(kept)
        self._executions = deque(kept, maxlen=self.limit)
        return removed

    async def save(self, path: str | Path) -> None:
        """Write the history to a JSON file atomically (newest first)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps([e.to_dict() for e in self._executions], indent=2))

        tmp_path.replace(path)

    @classmethod
    async def load(cls, path: str | Path, limit: int = 1000) -> ExecutionHistory:
        """Read a history written by ``save``. A missing file is an empty history."""
        history = cls(limit=limit)
        path = Path(path)
        if not path.exists():
            return history

        async with aiofiles.open(path) as f:
            content = await f.read()
        for item in reversed(json.loads(content)):
            history.append(Execution.from_dict(item))
        return history


class BulkProgressStore:
    """Latest progress snapshot of every bulk operation, keyed by id."""

    def __init__(self) -> None:
        self._progress: dict[str, BulkOperationProgress] = {}

    def update(self, progress: BulkOperationProgress) -> None:
        """Store a snapshot so later mutation by the producer is not visible."""
        self._progress[progress.id] = copy.deepcopy(progress)

    def get(self, operation_id: str) -> BulkOperationProgress | None:
        return self._progress.get(operation_id)

    def list(self) -> list[BulkOperationProgress]:
        return list(self._progress.values())

    def prune(self, older_than: datetime) -> int:
        """Drop finished operations started before ``older_than``."""
        stale = [
            operation_id
            for operation_id, progress in self._progress.items()
            if progress.status.is_terminal and progress.started_at < older_than
        ]
        for operation_id in stale:
            del self._progress[operation_id]
        return len(stale)
