"""
File Store - JSON-file execution storage.

Layout:
  {base_path}/
    executions/
      {execution_id}.json   # record, including its embedded branches
    branches/
      {branch_id}.json

Writes go through a temp file + rename. File I/O runs in worker threads;
an asyncio lock serialises writers so branch syncs never race with
execution saves.
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from branchflow.errors import RecordNotFoundError
from branchflow.schemas.execution import (
    BranchFilter,
    ExecutionBranch,
    ExecutionFilter,
    ExecutionRecord,
)
from branchflow.storage.backend import ExecutionStorage, apply_updates, sync_branch

logger = logging.getLogger(__name__)


def _validate_key(key: str) -> None:
    """
    Validate a record id before using it as a file name.

    Raises:
        ValueError: If key contains path traversal or dangerous patterns
    """
    if not key or key.strip() == "":
        raise ValueError("Key cannot be empty")

    if "/" in key or "\\" in key:
        raise ValueError(f"Invalid key format: path separators not allowed in '{key}'")

    if ".." in key or key.startswith("."):
        raise ValueError(f"Invalid key format: path traversal detected in '{key}'")

    if len(key) > 1 and key[1] == ":":
        raise ValueError(f"Invalid key format: absolute paths not allowed in '{key}'")

    if "\x00" in key:
        raise ValueError("Invalid key format: null bytes not allowed")

    dangerous_chars = {"<", ">", "|", "&", "$", "`", "'", '"'}
    if any(char in key for char in dangerous_chars):
        raise ValueError(f"Invalid key format: contains dangerous characters in '{key}'")


def _atomic_write(path: Path, model: BaseModel) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(model.model_dump_json(indent=2))
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class FileExecutionStorage(ExecutionStorage):
    """Execution storage persisted as one JSON file per record."""

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.executions_dir = self.base_path / "executions"
        self.branches_dir = self.base_path / "branches"
        self._lock = asyncio.Lock()

    # === PATHS ===

    def _execution_path(self, execution_id: str) -> Path:
        _validate_key(execution_id)
        return self.executions_dir / f"{execution_id}.json"

    def _branch_path(self, branch_id: str) -> Path:
        _validate_key(branch_id)
        return self.branches_dir / f"{branch_id}.json"

    # === SYNC HELPERS (run in worker threads) ===

    def _read_execution(self, execution_id: str) -> ExecutionRecord | None:
        path = self._execution_path(execution_id)
        if not path.exists():
            return None
        return ExecutionRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def _read_branch(self, branch_id: str) -> ExecutionBranch | None:
        path = self._branch_path(branch_id)
        if not path.exists():
            return None
        return ExecutionBranch.model_validate_json(path.read_text(encoding="utf-8"))

    def _scan(self, directory: Path, model: type[BaseModel]) -> list[Any]:
        if not directory.exists():
            return []
        records = []
        for path in sorted(directory.glob("*.json")):
            try:
                records.append(model.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable record {path.name}: {e}")
        return records

    def _write_branch(self, branch: ExecutionBranch) -> None:
        _atomic_write(self._branch_path(branch.id), branch)
        record = self._read_execution(branch.execution_id)
        if record is not None:
            sync_branch(record, branch)
            _atomic_write(self._execution_path(record.id), record)

    def _remove_branches(self, branch_ids: list[str]) -> int:
        deleted = 0
        touched: dict[str, ExecutionRecord] = {}
        for branch_id in branch_ids:
            branch = self._read_branch(branch_id)
            if branch is None:
                continue
            self._branch_path(branch_id).unlink(missing_ok=True)
            deleted += 1
            record = touched.get(branch.execution_id) or self._read_execution(branch.execution_id)
            if record is not None:
                record.branches = [b for b in record.branches if b.id != branch_id]
                touched[record.id] = record
        for record in touched.values():
            _atomic_write(self._execution_path(record.id), record)
        return deleted

    # === EXECUTIONS ===

    async def save_execution(self, record: ExecutionRecord) -> None:
        async with self._lock:
            await asyncio.to_thread(_atomic_write, self._execution_path(record.id), record)
        logger.debug(f"Saved execution {record.id}")

    async def update_execution(self, execution_id: str, updates: dict[str, Any]) -> ExecutionRecord:
        async with self._lock:
            existing = await asyncio.to_thread(self._read_execution, execution_id)
            if existing is None:
                raise RecordNotFoundError(f"Execution {execution_id} not found in storage")
            updated = apply_updates(existing, updates)
            await asyncio.to_thread(_atomic_write, self._execution_path(execution_id), updated)
            return updated

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        return await asyncio.to_thread(self._read_execution, execution_id)

    async def list_executions(self, filter: ExecutionFilter | None = None) -> list[ExecutionRecord]:
        records = await asyncio.to_thread(self._scan, self.executions_dir, ExecutionRecord)
        return (filter or ExecutionFilter()).apply(records)

    # === BRANCHES ===

    async def save_branch(self, branch: ExecutionBranch) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write_branch, branch)

    async def update_branch(self, branch_id: str, updates: dict[str, Any]) -> ExecutionBranch:
        async with self._lock:
            existing = await asyncio.to_thread(self._read_branch, branch_id)
            if existing is None:
                raise RecordNotFoundError(f"Branch {branch_id} not found in storage")
            updated = apply_updates(existing, updates)
            await asyncio.to_thread(self._write_branch, updated)
            return updated

    async def get_branch(self, branch_id: str) -> ExecutionBranch | None:
        return await asyncio.to_thread(self._read_branch, branch_id)

    async def get_execution_branches(self, execution_id: str) -> list[ExecutionBranch]:
        branches = await asyncio.to_thread(self._scan, self.branches_dir, ExecutionBranch)
        matching = [b for b in branches if b.execution_id == execution_id]
        return sorted(matching, key=lambda b: b.created_at)

    async def list_branches(self, filter: BranchFilter | None = None) -> list[ExecutionBranch]:
        branches = await asyncio.to_thread(self._scan, self.branches_dir, ExecutionBranch)
        return (filter or BranchFilter()).apply(branches)

    async def delete_branches(self, branch_ids: list[str]) -> int:
        async with self._lock:
            return await asyncio.to_thread(self._remove_branches, branch_ids)
