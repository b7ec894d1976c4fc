"""Tests for the execution storage backends - in-memory and file based."""

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from branchflow.errors import RecordNotFoundError
from branchflow.schemas import (
    BranchFilter,
    ExecutionBranch,
    ExecutionFilter,
    ExecutionRecord,
    ExecutionStatus,
)
from branchflow.storage import FileExecutionStorage, InMemoryExecutionStorage

# === HELPER FUNCTIONS ===


def create_test_record(
    execution_id: str = "exec_1",
    workflow_id: str = "wf",
    status: ExecutionStatus = ExecutionStatus.COMPLETED,
    created_at: datetime | None = None,
    tags: list[str] | None = None,
) -> ExecutionRecord:
    return ExecutionRecord(
        id=execution_id,
        workflow_id=workflow_id,
        status=status,
        created_at=created_at or datetime.now(),
        tags=tags or [],
        input={"input": "x"},
    )


def create_test_branch(
    branch_id: str = "branch_1",
    execution_id: str = "exec_1",
    status: ExecutionStatus = ExecutionStatus.RUNNING,
    relevance_score: float | None = None,
) -> ExecutionBranch:
    return ExecutionBranch(
        id=branch_id,
        execution_id=execution_id,
        name=f"Branch {branch_id}",
        status=status,
        relevance_score=relevance_score,
    )


@pytest.fixture(params=["memory", "file"])
def storage(request, tmp_path: Path):
    if request.param == "memory":
        return InMemoryExecutionStorage()
    return FileExecutionStorage(tmp_path)


# === EXECUTIONS ===


class TestExecutions:
    @pytest.mark.asyncio
    async def test_save_and_get(self, storage):
        record = create_test_record()

        await storage.save_execution(record)
        loaded = await storage.get_execution("exec_1")

        assert loaded == record
        assert loaded is not record

    @pytest.mark.asyncio
    async def test_get_missing(self, storage):
        assert await storage.get_execution("nope") is None

    @pytest.mark.asyncio
    async def test_update(self, storage):
        await storage.save_execution(create_test_record(status=ExecutionStatus.RUNNING))

        updated = await storage.update_execution("exec_1", {"status": ExecutionStatus.FAILED, "error": "boom"})

        assert updated.status == ExecutionStatus.FAILED
        assert (await storage.get_execution("exec_1")).error == "boom"

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, storage):
        with pytest.raises(RecordNotFoundError):
            await storage.update_execution("nope", {"error": "x"})

    @pytest.mark.asyncio
    async def test_list_filter_sort_and_page(self, storage):
        base = datetime(2026, 1, 1)
        for i in range(4):
            await storage.save_execution(
                create_test_record(
                    execution_id=f"exec_{i}",
                    workflow_id="wf" if i % 2 == 0 else "other",
                    created_at=base + timedelta(minutes=i),
                    tags=["nightly"] if i < 2 else [],
                )
            )

        newest_first = await storage.list_executions()
        assert [r.id for r in newest_first] == ["exec_3", "exec_2", "exec_1", "exec_0"]

        by_workflow = await storage.list_executions(ExecutionFilter(workflow_id="wf", sort_direction="asc"))
        assert [r.id for r in by_workflow] == ["exec_0", "exec_2"]

        tagged = await storage.list_executions(ExecutionFilter(tags=["nightly"]))
        assert {r.id for r in tagged} == {"exec_0", "exec_1"}

        paged = await storage.list_executions(ExecutionFilter(offset=1, limit=2))
        assert [r.id for r in paged] == ["exec_2", "exec_1"]

    @pytest.mark.asyncio
    async def test_list_filter_by_status_list(self, storage):
        await storage.save_execution(create_test_record("a", status=ExecutionStatus.COMPLETED))
        await storage.save_execution(create_test_record("b", status=ExecutionStatus.FAILED))
        await storage.save_execution(create_test_record("c", status=ExecutionStatus.CANCELED))

        records = await storage.list_executions(
            ExecutionFilter(status=[ExecutionStatus.FAILED, ExecutionStatus.CANCELED])
        )

        assert {r.id for r in records} == {"b", "c"}


# === BRANCHES ===


class TestBranches:
    @pytest.mark.asyncio
    async def test_branch_write_syncs_parent_record(self, storage):
        await storage.save_execution(create_test_record())

        await storage.save_branch(create_test_branch())
        await storage.update_branch("branch_1", {"status": ExecutionStatus.COMPLETED})

        record = await storage.get_execution("exec_1")
        assert [b.id for b in record.branches] == ["branch_1"]
        assert record.branches[0].status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_branch_without_parent_record(self, storage):
        await storage.save_branch(create_test_branch(execution_id="orphan"))

        assert (await storage.get_branch("branch_1")).execution_id == "orphan"
        assert await storage.get_execution("orphan") is None

    @pytest.mark.asyncio
    async def test_update_missing_branch_raises(self, storage):
        with pytest.raises(RecordNotFoundError):
            await storage.update_branch("nope", {"status": ExecutionStatus.FAILED})

    @pytest.mark.asyncio
    async def test_execution_branches_and_filters(self, storage):
        await storage.save_branch(create_test_branch("b1", relevance_score=0.9))
        await storage.save_branch(create_test_branch("b2", status=ExecutionStatus.CANCELED))
        await storage.save_branch(create_test_branch("b3", execution_id="exec_2", relevance_score=0.2))

        assert {b.id for b in await storage.get_execution_branches("exec_1")} == {"b1", "b2"}

        relevant = await storage.list_branches(BranchFilter(min_relevance_score=0.5))
        assert [b.id for b in relevant] == ["b1"]

        canceled = await storage.list_branches(
            BranchFilter(execution_id="exec_1", status=ExecutionStatus.CANCELED)
        )
        assert [b.id for b in canceled] == ["b2"]

    @pytest.mark.asyncio
    async def test_delete_branches(self, storage):
        await storage.save_execution(create_test_record())
        await storage.save_branch(create_test_branch("b1"))
        await storage.save_branch(create_test_branch("b2"))

        deleted = await storage.delete_branches(["b1", "missing"])

        assert deleted == 1
        assert await storage.get_branch("b1") is None
        record = await storage.get_execution("exec_1")
        assert [b.id for b in record.branches] == ["b2"]


# === FILE STORAGE SPECIFICS ===


class TestFileExecutionStorage:
    @pytest.mark.asyncio
    async def test_records_are_json_files(self, tmp_path: Path):
        storage = FileExecutionStorage(tmp_path)

        await storage.save_execution(create_test_record())
        await storage.save_branch(create_test_branch())

        assert (tmp_path / "executions" / "exec_1.json").exists()
        assert (tmp_path / "branches" / "branch_1.json").exists()
        assert list(tmp_path.rglob("*.tmp")) == []

    @pytest.mark.asyncio
    async def test_survives_new_instance(self, tmp_path: Path):
        await FileExecutionStorage(tmp_path).save_execution(create_test_record())

        loaded = await FileExecutionStorage(tmp_path).get_execution("exec_1")

        assert loaded is not None
        assert loaded.input == {"input": "x"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_id", ["../escape", "a/b", ".hidden", "", "semi'quote"])
    async def test_path_traversal_rejected(self, tmp_path: Path, bad_id: str):
        storage = FileExecutionStorage(tmp_path)

        with pytest.raises(ValueError):
            await storage.get_execution(bad_id)

    @pytest.mark.asyncio
    async def test_unreadable_files_are_skipped(self, tmp_path: Path):
        storage = FileExecutionStorage(tmp_path)
        await storage.save_execution(create_test_record())
        (tmp_path / "executions" / "broken.json").write_text("{not json", encoding="utf-8")

        records = await storage.list_executions()

        assert [r.id for r in records] == ["exec_1"]
