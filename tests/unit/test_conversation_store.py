"""
对话存储测试
"""

import pytest

from agentwire.agent.infrastructure.conversation_store import (
    CheckpointRecord,
    InMemoryConversationStore,
    JsonlConversationStore,
)
from agentwire.system.llm.message import Content, FunctionCall, FunctionResponse, Usage


class TestInMemoryStore:
    """内存存储测试"""

    @pytest.mark.asyncio
    async def test_append_returns_index(self, store):
        assert await store.append_content("c", Content.user("a")) == 0
        assert await store.append_content("c", Content.model("b")) == 1
        assert await store.history_length("c") == 2
        assert await store.get_history("other") == []

    @pytest.mark.asyncio
    async def test_history_is_copied(self, store):
        content = Content.user("original")
        await store.append_content("c", content)

        content.parts[0].text = "mutated after append"
        history = await store.get_history("c")
        history[0].parts[0].text = "mutated copy"

        assert (await store.get_history("c"))[0].text == "original"

    @pytest.mark.asyncio
    async def test_custom_metadata(self, store):
        assert await store.get_custom_metadata("c", "subagent") is None
        await store.set_custom_metadata("c", "subagent", {"type": "researcher"})
        assert await store.get_custom_metadata("c", "subagent") == {"type": "researcher"}

    @pytest.mark.asyncio
    async def test_checkpoints(self, store):
        await store.append_content("c", Content.user("a"))
        await store.append_content("c", Content.model("b"))

        record = await store.create_checkpoint("c", 1, "model_message")

        assert record.id.startswith("cp_")
        assert record.history_length == 2
        assert record.phase == "after"
        assert await store.list_checkpoints("c") == [record]

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.append_content("c", Content.user("a"))

        assert await store.delete_conversation("c")
        assert not await store.delete_conversation("c")
        assert store.list_conversations() == []


class TestJsonlStore:
    """JSONL 文件存储测试"""

    @pytest.mark.asyncio
    async def test_reload(self, tmp_path):
        store = JsonlConversationStore(tmp_path / "conversations")
        await store.append_content("conv", Content.user("read it"))
        model = Content.model("ok", calls=[FunctionCall(id="c1", name="read_file", args={"path": "a"})])
        model.usage = Usage(1, 2, 3)
        model.model_version = "m-1"
        await store.append_content("conv", model)
        await store.append_content("conv", Content.function_responses([
            FunctionResponse(id="c1", name="read_file", response={"success": True, "result": "x"}),
        ]))
        await store.set_custom_metadata("conv", "note", "kept")
        checkpoint = await store.create_checkpoint("conv", 2, "read_file")

        reloaded = JsonlConversationStore(tmp_path / "conversations")
        history = await reloaded.get_history("conv")

        assert len(history) == 3
        assert history[0].is_user_input
        assert history[1].function_calls[0].args == {"path": "a"}
        assert history[1].usage.total_tokens == 3
        assert history[1].model_version == "m-1"
        assert history[2].is_function_response
        assert history[2].function_response_ids == ["c1"]
        assert await reloaded.get_custom_metadata("conv", "note") == "kept"
        assert [cp.id for cp in await reloaded.list_checkpoints("conv")] == [checkpoint.id]

    @pytest.mark.asyncio
    async def test_delete_removes_files(self, tmp_path):
        store = JsonlConversationStore(tmp_path)
        await store.append_content("conv", Content.user("a"))
        await store.set_custom_metadata("conv", "k", 1)

        assert (tmp_path / "conv.jsonl").exists()
        await store.delete_conversation("conv")

        assert not (tmp_path / "conv.jsonl").exists()
        assert not (tmp_path / "conv.meta.json").exists()

    def test_checkpoint_round_trip(self):
        record = CheckpointRecord(conversation_id="c", message_index=3, tool_name="tool_batch")
        assert CheckpointRecord.from_dict(record.to_dict()) == record
