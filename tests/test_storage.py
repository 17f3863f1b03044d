"""
存储测试
"""
import json
import pytest

from botflow.exceptions import PersistenceError
from botflow.models.execution import (
    Continuation, EngineState, HandlerEntry, PendingExecution, RuntimeContext
)
from botflow.storage.repository import FileExecutionStore, InMemoryExecutionStore, await_key


def sample_pending() -> PendingExecution:
    return PendingExecution(
        workflow_id="wf_child",
        node_id="ask",
        exec_order=["ask", "reply"],
        next_index=1,
        node_outputs={"start": {"value": 1}},
        global_variables={"name": "Ada"},
        engine_state=EngineState(
            try_stack=[HandlerEntry(try_node_id="try", catch_node_id="catch")],
            call_stack=["wf_parent", "wf_child"],
        ),
        runtime=RuntimeContext(chat_id="42", user_id="7"),
        await_config={"prompt": "name?", "timeout_seconds": 60},
        meta={"source": "sub_workflow", "suspended_at": 1700000000.5},
        continuations=[Continuation(workflow_id="wf_parent", node_id="sub", exec_order=["sub"], next_index=0)],
    )


class TestFileExecutionStore:
    """文件执行存储测试类"""

    @pytest.mark.asyncio
    async def test_save_and_get(self, tmp_path):
        """测试保存后读取得到相同的挂起执行"""
        store = FileExecutionStore(str(tmp_path))
        pending = sample_pending()

        await store.save("exec-1", pending)
        loaded = await store.get("exec-1")

        assert loaded.to_dict() == pending.to_dict()
        assert loaded.continuations[0].workflow_id == "wf_parent"
        assert loaded.engine_state.try_stack[0].catch_node_id == "catch"

        raw = json.loads((tmp_path / "exec-1.json").read_text(encoding="utf-8"))
        assert raw["await"]["prompt"] == "name?"
        assert "saved_at" in raw

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        store = FileExecutionStore(str(tmp_path))
        await store.save("exec-1", sample_pending())

        assert await store.delete("exec-1") is True
        assert await store.delete("exec-1") is False
        assert await store.get("exec-1") is None

    @pytest.mark.asyncio
    async def test_await_index(self, tmp_path):
        """测试等待映射的登记、查找与解除"""
        store = FileExecutionStore(str(tmp_path))

        await store.bind_await("42", "7", "exec-1")
        await store.bind_await("43", None, "exec-2")

        assert await store.find_await("42", "7") == "exec-1"
        assert await store.find_await("43", None) == "exec-2"
        assert await store.find_await("42", None) is None

        await store.release_await("42", "7")
        assert await store.find_await("42", "7") is None
        assert await FileExecutionStore(str(tmp_path)).find_await("43", None) == "exec-2"

    @pytest.mark.asyncio
    async def test_invalid_id(self, tmp_path):
        store = FileExecutionStore(str(tmp_path))
        with pytest.raises(PersistenceError):
            await store.get("../..")


    @pytest.mark.asyncio
    async def test_ids_are_not_rewritten(self, tmp_path):
        """测试不同的执行 id 不会落到同一个文件"""
        store = FileExecutionStore(str(tmp_path))
        await store.save("a_b", PendingExecution(workflow_id="wf", node_id="n1"))

        for bad_id in ("a/b", "a b", "_awaiting", "", "exec\n"):
            with pytest.raises(PersistenceError):
                await store.save(bad_id, PendingExecution(workflow_id="wf", node_id="n2"))

        assert (await store.get("a_b")).node_id == "n1"
        assert sorted(path.name for path in tmp_path.iterdir()) == ["a_b.json"]

    @pytest.mark.asyncio
    async def test_corrupt_file(self, tmp_path):
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
        store = FileExecutionStore(str(tmp_path))

        with pytest.raises(PersistenceError):
            await store.get("broken")


class TestInMemoryExecutionStore:
    """内存执行存储测试类"""

    @pytest.mark.asyncio
    async def test_returns_independent_copies(self):
        """测试读取结果与保存对象互不影响"""
        store = InMemoryExecutionStore()
        pending = sample_pending()
        await store.save("exec-1", pending)

        pending.global_variables["name"] = "changed"
        loaded = await store.get("exec-1")
        loaded.exec_order.append("extra")

        assert loaded.global_variables["name"] == "Ada"
        assert (await store.get("exec-1")).exec_order == ["ask", "reply"]

    def test_await_key(self):
        assert await_key("42", None) == "42:*"
        assert await_key("42", "7") == "42:7"
