"""
Execution storage contract and the in-memory backend.

Branch writes keep the owning execution's embedded ``branches`` list in
sync, so a stored execution always carries its current branches.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from branchflow.errors import RecordNotFoundError
from branchflow.schemas.execution import (
    BranchFilter,
    ExecutionBranch,
    ExecutionFilter,
    ExecutionRecord,
)

logger = logging.getLogger(__name__)


class ExecutionStorage(ABC):
    """Async persistence for execution records and their branches."""

    @abstractmethod
    async def save_execution(self, record: ExecutionRecord) -> None:
        """Insert or replace an execution record."""

    @abstractmethod
    async def update_execution(self, execution_id: str, updates: dict[str, Any]) -> ExecutionRecord:
        """Apply field updates; raises RecordNotFoundError when absent."""

    @abstractmethod
    async def get_execution(self, execution_id: str) -> ExecutionRecord | None: ...

    @abstractmethod
    async def list_executions(self, filter: ExecutionFilter | None = None) -> list[ExecutionRecord]: ...

    @abstractmethod
    async def save_branch(self, branch: ExecutionBranch) -> None:
        """Insert or replace a branch record."""

    @abstractmethod
    async def update_branch(self, branch_id: str, updates: dict[str, Any]) -> ExecutionBranch:
        """Apply field updates; raises RecordNotFoundError when absent."""

    @abstractmethod
    async def get_branch(self, branch_id: str) -> ExecutionBranch | None: ...

    @abstractmethod
    async def get_execution_branches(self, execution_id: str) -> list[ExecutionBranch]: ...

    @abstractmethod
    async def list_branches(self, filter: BranchFilter | None = None) -> list[ExecutionBranch]: ...

    @abstractmethod
    async def delete_branches(self, branch_ids: list[str]) -> int:
        """Delete branches; returns how many existed."""


def apply_updates(record: Any, updates: dict[str, Any]) -> Any:
    """Return a validated copy of a pydantic record with fields replaced."""
    data = record.model_dump()
    data.update(updates)
    return type(record).model_validate(data)


def sync_branch(record: ExecutionRecord, branch: ExecutionBranch) -> None:
    """Replace (or append) a branch inside its execution's embedded list."""
    for index, existing in enumerate(record.branches):
        if existing.id == branch.id:
            record.branches[index] = branch.model_copy(deep=True)
            return
    record.branches.append(branch.model_copy(deep=True))


class InMemoryExecutionStorage(ExecutionStorage):
    """
    Dict-backed storage. Records go in and come out as deep copies, so
    callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._executions: dict[str, ExecutionRecord] = {}
        self._branches: dict[str, ExecutionBranch] = {}

    async def save_execution(self, record: ExecutionRecord) -> None:
        self._executions[record.id] = record.model_copy(deep=True)

    async def update_execution(self, execution_id: str, updates: dict[str, Any]) -> ExecutionRecord:
        existing = self._executions.get(execution_id)
        if existing is None:
            raise RecordNotFoundError(f"Execution {execution_id} not found in storage")
        updated = apply_updates(existing, updates)
        self._executions[execution_id] = updated
        return updated.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        record = self._executions.get(execution_id)
        return record.model_copy(deep=True) if record else None

    async def list_executions(self, filter: ExecutionFilter | None = None) -> list[ExecutionRecord]:
        filter = filter or ExecutionFilter()
        return [r.model_copy(deep=True) for r in filter.apply(list(self._executions.values()))]

    async def save_branch(self, branch: ExecutionBranch) -> None:
        self._branches[branch.id] = branch.model_copy(deep=True)
        record = self._executions.get(branch.execution_id)
        if record is not None:
            sync_branch(record, branch)

    async def update_branch(self, branch_id: str, updates: dict[str, Any]) -> ExecutionBranch:
        existing = self._branches.get(branch_id)
        if existing is None:
            raise RecordNotFoundError(f"Branch {branch_id} not found in storage")
        updated = apply_updates(existing, updates)
        await self.save_branch(updated)
        return updated.model_copy(deep=True)

    async def get_branch(self, branch_id: str) -> ExecutionBranch | None:
        branch = self._branches.get(branch_id)
        return branch.model_copy(deep=True) if branch else None

    async def get_execution_branches(self, execution_id: str) -> list[ExecutionBranch]:
        branches = [b for b in self._branches.values() if b.execution_id == execution_id]
        branches.sort(key=lambda b: b.created_at)
        return [b.model_copy(deep=True) for b in branches]

    async def list_branches(self, filter: BranchFilter | None = None) -> list[ExecutionBranch]:
        filter = filter or BranchFilter()
        return [b.model_copy(deep=True) for b in filter.apply(list(self._branches.values()))]

    async def delete_branches(self, branch_ids: list[str]) -> int:
        deleted = 0
        for branch_id in branch_ids:
            branch = self._branches.pop(branch_id, None)
            if branch is None:
                continue
            deleted += 1
            record = self._executions.get(branch.execution_id)
            if record is not None:
                record.branches = [b for b in record.branches if b.id != branch_id]
        logger.debug(f"Deleted {deleted} of {len(branch_ids)} branches")
        return deleted
