"""Persistence for execution records and branches."""

from branchflow.storage.backend import ExecutionStorage, InMemoryExecutionStorage
from branchflow.storage.file_store import FileExecutionStorage

__all__ = ["ExecutionStorage", "FileExecutionStorage", "InMemoryExecutionStorage"]
