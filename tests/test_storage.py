"""Tests for the execution stores and the checkpoint manager."""

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from flowengine.errors import PersistenceError
from flowengine.schemas.checkpoint import CheckpointSnapshot
from flowengine.schemas.execution import ExecutionRecord, ExecutionStatus, NodeLogRecord, NodeOutput
from flowengine.schemas.workflow import EdgeDefinition, NodeDefinition
from flowengine.storage import (
    CheckpointManager,
    FileExecutionStore,
    InMemoryExecutionStore,
    create_workflow_hash,
)

# === HELPER FUNCTIONS ===


def create_record(execution_id: str = "exec_1", workflow_id: str = "wf_1", **kwargs) -> ExecutionRecord:
    return ExecutionRecord(id=execution_id, workflow_id=workflow_id, **kwargs)


def create_log(execution_id: str = "exec_1", node_id: str = "n1") -> NodeLogRecord:
    output = NodeOutput(node_id=node_id, node_name=node_id.upper(), node_type="PROCESS", data={"result": "ok"})
    return NodeLogRecord.from_output(execution_id, output, node_input={"prompt": "hi"})


NODES = [
    NodeDefinition(id="in", name="Input", type="INPUT", position={"x": 0, "y": 0}),
    NodeDefinition(id="a", name="A", type="PROCESS", config={"prompt": "{{Input.topic}}"}),
]
EDGES = [EdgeDefinition(id="e1", source="in", target="a")]


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        return InMemoryExecutionStore()
    return FileExecutionStore(tmp_path / "executions")


# === EXECUTION RECORD TESTS ===


class TestExecutionRecords:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        await store.create_execution(create_record(input={"topic": "tea"}))

        record = await store.get_execution("exec_1")

        assert record is not None
        assert record.status == ExecutionStatus.PENDING
        assert record.input == {"topic": "tea"}

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get_execution("nope") is None

    @pytest.mark.asyncio
    async def test_duplicate_create_raises(self, store):
        await store.create_execution(create_record())

        with pytest.raises(PersistenceError):
            await store.create_execution(create_record())

    @pytest.mark.asyncio
    async def test_update_merges_changes(self, store):
        await store.create_execution(create_record())

        updated = await store.update_execution("exec_1", status=ExecutionStatus.COMPLETED, total_tokens=42)

        assert updated.status == ExecutionStatus.COMPLETED
        assert updated.total_tokens == 42
        assert (await store.get_execution("exec_1")).total_tokens == 42

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, store):
        with pytest.raises(PersistenceError):
            await store.update_execution("ghost", status=ExecutionStatus.FAILED)

    @pytest.mark.asyncio
    async def test_list_filters_and_orders_newest_first(self, store):
        now = datetime.now()
        await store.create_execution(create_record("old", created_at=now - timedelta(minutes=5)))
        await store.create_execution(create_record("new", created_at=now))
        await store.create_execution(create_record("other", workflow_id="wf_2", created_at=now))
        await store.update_execution("old", status=ExecutionStatus.FAILED)

        assert [r.id for r in await store.list_executions(workflow_id="wf_1")] == ["new", "old"]
        assert [r.id for r in await store.list_executions(status=ExecutionStatus.FAILED)] == ["old"]
        assert len(await store.list_executions(limit=1)) == 1


# === NODE LOG AND DEBUG ARTIFACT TESTS ===


class TestNodeLogs:
    @pytest.mark.asyncio
    async def test_logs_are_listed_in_write_order(self, store):
        await store.create_node_log(create_log(node_id="n1"))
        await store.create_node_log(create_log(node_id="n2"))

        logs = await store.list_node_logs("exec_1")

        assert [log.node_id for log in logs] == ["n1", "n2"]
        assert logs[0].input == {"prompt": "hi"}
        assert logs[0].output == {"result": "ok"}

    @pytest.mark.asyncio
    async def test_debug_artifact_round_trip(self, store):
        await store.save_debug_artifact("exec_1", "n1", {"version": 1, "logs": []})

        assert await store.load_debug_artifact("exec_1", "n1") == {"version": 1, "logs": []}
        assert await store.load_debug_artifact("exec_1", "n2") is None


class TestFileExecutionStore:
    @pytest.mark.asyncio
    async def test_layout(self, tmp_path: Path):
        store = FileExecutionStore(tmp_path)

        await store.create_execution(create_record())
        await store.create_node_log(create_log())
        await store.save_debug_artifact("exec_1", "n1", {"ok": True})

        assert (tmp_path / "exec_1" / "execution.json").exists()
        assert (tmp_path / "exec_1" / "node_logs.jsonl").exists()
        assert (tmp_path / "exec_1" / "debug" / "n1.json").exists()

    @pytest.mark.asyncio
    async def test_corrupt_log_lines_are_skipped(self, tmp_path: Path):
        store = FileExecutionStore(tmp_path)
        await store.create_node_log(create_log(node_id="n1"))
        with open(tmp_path / "exec_1" / "node_logs.jsonl", "a", encoding="utf-8") as f:
            f.write("{not json\n")
        await store.create_node_log(create_log(node_id="n2"))

        logs = await store.list_node_logs("exec_1")

        assert [log.node_id for log in logs] == ["n1", "n2"]

    @pytest.mark.asyncio
    async def test_unreadable_record_raises(self, tmp_path: Path):
        store = FileExecutionStore(tmp_path)
        (tmp_path / "broken").mkdir()
        (tmp_path / "broken" / "execution.json").write_text("{", encoding="utf-8")

        with pytest.raises(PersistenceError):
            await store.get_execution("broken")
        # Listing skips it instead of failing
        assert await store.list_executions() == []


# === CHECKPOINT TESTS ===


class TestWorkflowHash:
    def test_hash_is_stable(self):
        assert create_workflow_hash(NODES, EDGES) == create_workflow_hash(list(NODES), list(EDGES))

    def test_config_change_changes_hash(self):
        edited = [NODES[0], NODES[1].model_copy(update={"config": {"prompt": "{{Input.other}}"}})]

        assert create_workflow_hash(edited, EDGES) != create_workflow_hash(NODES, EDGES)

    def test_position_and_order_change_hash(self):
        moved = [NODES[0].model_copy(update={"position": {"x": 10, "y": 0}}), NODES[1]]

        assert create_workflow_hash(moved, EDGES) != create_workflow_hash(NODES, EDGES)
        assert create_workflow_hash(list(reversed(NODES)), EDGES) != create_workflow_hash(NODES, EDGES)

    def test_edge_change_changes_hash(self):
        assert create_workflow_hash(NODES, []) != create_workflow_hash(NODES, EDGES)


class TestCheckpointManager:
    @pytest.mark.asyncio
    async def test_save_load_validate(self, store):
        await store.create_execution(create_record())
        manager = CheckpointManager(store)
        workflow_hash = create_workflow_hash(NODES, EDGES)
        outputs = {
            "in": NodeOutput(node_id="in", node_name="Input", node_type="INPUT", data={"topic": "tea"}),
            "a": NodeOutput.failure(NODES[1], "boom"),
        }

        snapshot = manager.build_snapshot(workflow_hash, outputs, {"tone": "dry"}, failed_node_id="a")
        await manager.save_checkpoint("exec_1", snapshot)

        loaded = await manager.load_checkpoint("exec_1")
        assert isinstance(loaded, CheckpointSnapshot)
        assert list(loaded.completed_nodes) == ["in"]
        assert loaded.completed_nodes["in"].output.data == {"topic": "tea"}
        assert loaded.context.variables == {"tone": "dry"}
        assert loaded.failed_node_id == "a"
        assert (await store.get_execution("exec_1")).can_resume is True

        assert (await manager.validate_checkpoint("exec_1", workflow_hash)).valid

    @pytest.mark.asyncio
    async def test_validate_rejects_modified_workflow(self, store):
        await store.create_execution(create_record())
        manager = CheckpointManager(store)
        await manager.save_checkpoint("exec_1", manager.build_snapshot("old-hash", {}, {}))

        validation = await manager.validate_checkpoint("exec_1", "new-hash")

        assert not validation.valid
        assert validation.reason == "Workflow has been modified since the checkpoint was created"

    @pytest.mark.asyncio
    async def test_validate_rejects_missing_and_old_versions(self, store):
        await store.create_execution(create_record())
        manager = CheckpointManager(store)

        missing = await manager.validate_checkpoint("exec_1", "h")
        assert missing.reason == "No checkpoint found for this execution"

        snapshot = manager.build_snapshot("h", {}, {})
        snapshot.version = 99
        await manager.save_checkpoint("exec_1", snapshot)
        old = await manager.validate_checkpoint("exec_1", "h")
        assert not old.valid
        assert "version 99" in old.reason

    @pytest.mark.asyncio
    async def test_clear(self, store):
        await store.create_execution(create_record())
        manager = CheckpointManager(store)
        await manager.save_checkpoint("exec_1", manager.build_snapshot("h", {}, {}))

        await manager.clear_checkpoint("exec_1")

        assert await manager.load_checkpoint("exec_1") is None
        assert (await store.get_execution("exec_1")).can_resume is False

    @pytest.mark.asyncio
    async def test_unreadable_checkpoint_loads_as_none(self, store):
        await store.create_execution(create_record())
        await store.save_checkpoint("exec_1", {"completed_nodes": "garbage"}, can_resume=True)

        assert await CheckpointManager(store).load_checkpoint("exec_1") is None
