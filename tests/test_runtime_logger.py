"""Tests for RuntimeLogger persistence and debug artifact truncation."""

import asyncio

import pytest

from flowengine.errors import PersistenceError
from flowengine.runtime.debug_artifacts import (
    MAX_DICT_KEYS,
    MAX_LIST_ITEMS,
    MAX_LOG_ENTRIES,
    MAX_STRING_LENGTH,
    DebugArtifactCollector,
    truncate_string,
    truncate_value,
)
from flowengine.runtime.runtime_logger import RuntimeLogger
from flowengine.schemas.execution import NodeOutput, TokenUsage
from flowengine.schemas.workflow import NodeDefinition
from flowengine.storage import InMemoryExecutionStore

NODE = NodeDefinition(id="n1", name="Writer", type="PROCESS", config={"user_prompt": "{{Input.topic}}"})


def make_output(**kwargs):
    return NodeOutput(node_id="n1", node_name="Writer", node_type="PROCESS", data={"result": "ok"}, **kwargs)


class SlowStore(InMemoryExecutionStore):
    async def create_node_log(self, log):
        await asyncio.sleep(0.02)
        await super().create_node_log(log)


class FailingStore(InMemoryExecutionStore):
    async def create_node_log(self, log):
        raise OSError("disk full")

    async def save_debug_artifact(self, execution_id, node_id, artifact):
        raise OSError("read-only file system")


# === RUNTIME LOGGER ===


class TestRuntimeLogger:
    @pytest.mark.asyncio
    async def test_writes_are_in_the_background_until_flush(self):
        store = SlowStore()
        runtime_logger = RuntimeLogger(store, "exec_1")

        runtime_logger.log_node(make_output(), node_input={"user_prompt": "tea"})

        assert runtime_logger.pending_count == 1
        assert await store.list_node_logs("exec_1") == []

        await runtime_logger.flush()

        assert runtime_logger.pending_count == 0
        logs = await store.list_node_logs("exec_1")
        assert len(logs) == 1
        assert logs[0].input == {"user_prompt": "tea"}

    @pytest.mark.asyncio
    async def test_token_usage_is_copied_to_log(self):
        store = InMemoryExecutionStore()
        runtime_logger = RuntimeLogger(store, "exec_1")

        runtime_logger.log_node(
            make_output(token_usage=TokenUsage(prompt_tokens=4, completion_tokens=6, total_tokens=10), ai_model="m")
        )
        await runtime_logger.flush()

        log = (await store.list_node_logs("exec_1"))[0]
        assert (log.prompt_tokens, log.completion_tokens, log.total_tokens) == (4, 6, 10)
        assert log.ai_model == "m"

    @pytest.mark.asyncio
    async def test_failures_are_recorded_not_raised(self):
        runtime_logger = RuntimeLogger(FailingStore(), "exec_1")

        runtime_logger.log_node(make_output())
        runtime_logger.save_debug_artifact("n1", {"version": 1})
        await runtime_logger.flush()

        assert len(runtime_logger.failures) == 2
        assert all(isinstance(f, PersistenceError) for f in runtime_logger.failures)
        assert "disk full" in str(runtime_logger.failures[0])

    @pytest.mark.asyncio
    async def test_flush_with_nothing_pending(self):
        runtime_logger = RuntimeLogger(InMemoryExecutionStore(), "exec_1")

        await runtime_logger.flush()

        assert runtime_logger.failures == []


# === DEBUG ARTIFACTS ===


class TestTruncation:
    def test_long_strings_are_cut(self):
        text = "x" * (MAX_STRING_LENGTH + 25)

        assert truncate_string(text) == "x" * MAX_STRING_LENGTH + "…[truncated 25 chars]"
        assert truncate_string("short") == "short"

    def test_long_lists_and_wide_dicts(self):
        value = {"items": list(range(MAX_LIST_ITEMS + 3)), **{f"k{i}": i for i in range(MAX_DICT_KEYS + 5)}}

        truncated = truncate_value(value)

        assert truncated["items"][-1] == "[... 3 more items]"
        assert len(truncated["items"]) == MAX_LIST_ITEMS + 1
        assert truncated["_truncated_keys"] == 6

    def test_deep_nesting(self):
        value: dict = {}
        cursor = value
        for _ in range(12):
            cursor["next"] = {}
            cursor = cursor["next"]

        truncated = truncate_value(value)
        for _ in range(9):
            truncated = truncated["next"]

        assert truncated == "[truncated: max depth]"


class TestDebugArtifactCollector:
    def test_scoped_sink_keeps_logs_per_node(self):
        collector = DebugArtifactCollector("exec_1")
        sink = collector.scoped_sink(NODE)
        other = collector.scoped_sink(NodeDefinition(id="n2", name="Other", type="PROCESS"))

        sink("info", "Calling model", "llm_call", {"prompt": "tea"})
        other("warn", "Unrelated", None, None)

        entries = collector.logs_for("n1")
        assert len(entries) == 1
        assert entries[0].step == "llm_call"
        assert entries[0].data == {"prompt": "tea"}

    def test_log_entries_are_capped(self):
        collector = DebugArtifactCollector("exec_1")
        sink = collector.scoped_sink(NODE)

        for i in range(MAX_LOG_ENTRIES + 10):
            sink("debug", f"line {i}", None, None)

        assert len(collector.logs_for("n1")) == MAX_LOG_ENTRIES

    def test_build_artifact(self):
        collector = DebugArtifactCollector("exec_1")
        collector.scoped_sink(NODE)("info", "Calling model", "llm_call", None)
        output = NodeOutput.failure(NODE, "model exploded")

        artifact = collector.build_artifact(NODE, output, resolved_config={"user_prompt": "tea"})

        assert artifact["version"] == 1
        assert artifact["execution_id"] == "exec_1"
        assert artifact["node"] == {"id": "n1", "name": "Writer", "type": "PROCESS"}
        assert artifact["status"] == "error"
        assert artifact["error"] == "model exploded"
        assert artifact["config"] == {"user_prompt": "tea"}
        assert [entry["message"] for entry in artifact["logs"]] == ["Calling model"]
