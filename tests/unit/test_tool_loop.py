"""
工具执行循环测试

使用按脚本回放的传输层，测试：
- 纯文本回复
- 工具往返
- 模式策略拒绝
- 工具调用确认
- 取消、预算和协议错误
- 悬挂调用恢复
"""

import asyncio
import time

import httpx
import pytest

from conftest import ScriptedTransport, call_turn, collect, text_turn

from agentwire.agent.runtime.tool_executor import ToolCall, ToolCallStatus, ToolExecutor, ToolRegistry
from agentwire.agent.runtime.tool_loop import LoopConfig, RunStats, ToolExecutionLoop
from agentwire.agent.security.tool_policy import create_tool_policy
from agentwire.system.llm.errors import ProtocolError
from agentwire.system.llm.message import ChunkType, Content, FunctionCall, Role, StreamDelta


CONV = "conv-1"


def make_loop(channels, registry, store, transport, policy=None, **config):
    return ToolExecutionLoop(
        channels=channels,
        executor=ToolExecutor(registry),
        store=store,
        policy=policy,
        transport=transport,
        config=LoopConfig(**config),
    )


def types(chunks):
    return [c.type for c in chunks]


class ClosingTransport(ScriptedTransport):
    """记录流被读取的增量数和关闭次数"""

    def __init__(self, turns):
        super().__init__(turns)
        self.delivered = 0
        self.closed = 0

    async def stream(self, adapter, spec):
        try:
            async for delta in super().stream(adapter, spec):
                self.delivered += 1
                yield delta
        finally:
            self.closed += 1


def declared_tools(spec):
    """Gemini 请求体中声明的工具名"""
    tools = spec.body.get("tools") or [{"functionDeclarations": []}]
    return [d["name"] for d in tools[0]["functionDeclarations"]]


# ============== 基本流程 ==============

class TestBasicRun:
    """基本运行测试"""

    @pytest.mark.asyncio
    async def test_text_only_reply(self, channels, registry, store):
        """测试纯文本回复以 complete 结束"""
        transport = ScriptedTransport([text_turn("Hello", ", world")])
        loop = make_loop(channels, registry, store, transport)
        await loop.add_user_message(CONV, "hi")

        chunks = await collect(loop.run(CONV))

        assert types(chunks) == [ChunkType.CHUNK, ChunkType.CHUNK, ChunkType.COMPLETE]
        assert all(c.conversation_id == CONV for c in chunks)
        complete = chunks[-1]
        assert complete.data["content"].text == "Hello, world"
        assert len(complete.data["checkpoints"]) == 1
        assert complete.data["checkpoints"][0].tool_name == "model_message"

        history = await store.get_history(CONV)
        assert [c.role for c in history] == [Role.USER, Role.MODEL]
        assert history[1].text == "Hello, world"
        assert not loop.is_running(CONV)

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, channels, registry, store):
        """测试工具调用后继续下一轮"""
        transport = ScriptedTransport([
            call_turn(FunctionCall(id="c1", name="read_file", args={"path": "a.txt"})),
            text_turn("The file says hi"),
        ])
        loop = make_loop(channels, registry, store, transport)
        await loop.add_user_message(CONV, "read a.txt")

        chunks = await collect(loop.run(CONV))

        assert types(chunks) == [
            ChunkType.CHECKPOINTS,
            ChunkType.TOOLS_EXECUTING,
            ChunkType.TOOL_STATUS,
            ChunkType.TOOL_STATUS,
            ChunkType.TOOL_ITERATION,
            ChunkType.CHUNK,
            ChunkType.COMPLETE,
        ]
        assert [c.type for c in chunks].count(ChunkType.COMPLETE) == 1
        assert chunks[1].data["tool_names"] == ["read_file"]
        assert chunks[2].data == {"call_id": "c1", "status": "executing"}
        assert chunks[3].data == {"call_id": "c1", "status": "completed"}

        iteration = chunks[4].data
        result = iteration["tool_results"][0]
        assert result["id"] == "c1"
        assert result["result"] == {"success": True, "result": "content of a.txt"}
        assert result["args"] == {"path": "a.txt"}
        assert iteration["checkpoints"][0].tool_name == "read_file"

        history = await store.get_history(CONV)
        assert len(history) == 4
        assert history[2].is_function_response
        assert history[2].function_response_ids == ["c1"]

        # 第二轮请求带上了函数响应
        second = transport.requests[1].body["contents"]
        assert second[-1]["parts"][0]["functionResponse"]["id"] == "c1"

    @pytest.mark.asyncio
    async def test_run_to_completion(self, channels, registry, store):
        transport = ScriptedTransport([
            call_turn(FunctionCall(id="c1", name="read_file", args={"path": "a"})),
            text_turn("done", model_version="gemini-2.5-pro-002"),
        ])
        loop = make_loop(channels, registry, store, transport)
        await loop.add_user_message(CONV, "go")

        result = await loop.run_to_completion(CONV)

        assert result.status == "success"
        assert result.text == "done"
        assert result.iterations == 2
        assert result.model_version == "gemini-2.5-pro-002"
        assert [r.tool for r in result.tool_calls] == ["read_file"]
        assert result.error is None

    @pytest.mark.asyncio
    async def test_dynamic_context_and_system_instruction(self, channels, registry, store):
        transport = ScriptedTransport([text_turn("ok")])
        loop = make_loop(channels, registry, store, transport)
        await loop.add_user_message(CONV, "question")

        await collect(loop.run(CONV, system_instruction="be brief", dynamic_context="mode: plan"))

        body = transport.requests[0].body
        assert body["systemInstruction"] == {"parts": [{"text": "be brief"}]}
        assert [c["parts"][0]["text"] for c in body["contents"]] == ["mode: plan", "question"]

    @pytest.mark.asyncio
    async def test_busy_conversation(self, channels, registry, store):
        """测试同一对话不能并发运行"""
        transport = ScriptedTransport([text_turn("a", "b")])
        loop = make_loop(channels, registry, store, transport)
        await loop.add_user_message(CONV, "hi")

        first = loop.run(CONV)
        await first.__anext__()
        busy = await collect(loop.run(CONV))
        rest = await collect(first)

        assert types(busy) == [ChunkType.ERROR]
        assert busy[0].data["code"] == "CONVERSATION_BUSY"
        assert rest[-1].type == ChunkType.COMPLETE


# ============== 策略与确认 ==============

class TestPolicyAndConfirmation:
    """策略拒绝和确认测试"""

    @pytest.mark.asyncio
    async def test_readonly_denial_never_reaches_handler(self, channels, store):
        calls = []
        registry = ToolRegistry()
        registry.register("read_file", lambda path: "x")
        registry.register("write_file", lambda path, content="": calls.append(path))

        transport = ScriptedTransport([
            call_turn(FunctionCall(id="w1", name="write_file", args={"path": "src/a.py", "content": "x"})),
            text_turn("cannot write"),
        ])
        loop = make_loop(channels, registry, store, transport, policy=create_tool_policy("readonly"))
        await loop.add_user_message(CONV, "edit a.py")

        chunks = await collect(loop.run(CONV))

        assert calls == []
        assert declared_tools(transport.requests[0]) == ["read_file"]
        iteration = next(c for c in chunks if c.type == ChunkType.TOOL_ITERATION)
        result = iteration.data["tool_results"][0]
        assert result["status"] == "failed"
        assert result["result"] == {
            "success": False,
            "error": "Tool 'write_file' is not allowed in readonly mode",
        }
        assert chunks[-1].type == ChunkType.COMPLETE
        assert loop.get_stats()["denied_count"] == 1

    @pytest.mark.asyncio
    async def test_plan_mode_allows_plan_document(self, channels, store):
        written = []
        registry = ToolRegistry()
        registry.register("write_file", lambda path, content="": written.append(path) or "ok")

        transport = ScriptedTransport([
            call_turn(FunctionCall(id="w1", name="write_file", args={"path": ".cursor/plans/p.md"})),
            text_turn("planned"),
        ])
        loop = make_loop(channels, registry, store, transport, policy=create_tool_policy("plan"))
        await loop.add_user_message(CONV, "plan it")

        chunks = await collect(loop.run(CONV))

        assert written == [".cursor/plans/p.md"]
        assert chunks[-1].type == ChunkType.COMPLETE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("approved", [True, False])
    async def test_confirmation(self, channels, store, approved):
        executed = []
        registry = ToolRegistry()
        registry.register(
            "delete_file",
            lambda path: executed.append(path) or "deleted",
            requires_confirmation=True,
        )
        transport = ScriptedTransport([
            call_turn(FunctionCall(id="d1", name="delete_file", args={"path": "tmp.txt"})),
            text_turn("finished"),
        ])
        loop = make_loop(channels, registry, store, transport)
        await loop.add_user_message(CONV, "clean up")

        chunks = []
        async for chunk in loop.run(CONV):
            chunks.append(chunk)
            if chunk.type == ChunkType.AWAITING_CONFIRMATION:
                for call in chunk.data["pending_tool_calls"]:
                    assert loop.resolve_confirmation(CONV, call["id"], approved)

        assert ChunkType.AWAITING_CONFIRMATION in types(chunks)
        statuses = [c.data["status"] for c in chunks if c.type == ChunkType.TOOL_STATUS]
        result = next(c for c in chunks if c.type == ChunkType.TOOL_ITERATION).data["tool_results"][0]
        if approved:
            assert executed == ["tmp.txt"]
            assert statuses == ["awaiting_approval", "executing", "completed"]
            assert result["result"] == {"success": True, "result": "deleted"}
        else:
            assert executed == []
            assert statuses == ["awaiting_approval", "failed"]
            assert result["result"] == {"success": False, "error": "Rejected by user"}
        assert chunks[-1].type == ChunkType.COMPLETE

    @pytest.mark.asyncio
    async def test_undeclared_tool_not_executed(self, channels, store):
        """测试模型调用未声明的工具时不执行"""
        ran = []
        registry = ToolRegistry()
        registry.register("read_file", lambda path: "x")
        registry.register("execute_command", lambda command: ran.append(command) or "done")

        transport = ScriptedTransport([
            call_turn(FunctionCall(id="e1", name="execute_command", args={"command": "rm -rf build"})),
            text_turn("ok"),
        ])
        loop = make_loop(channels, registry, store, transport)
        await loop.add_user_message(CONV, "clean")

        chunks = await collect(loop.run(CONV, tool_names=["read_file"]))

        assert ran == []
        assert declared_tools(transport.requests[0]) == ["read_file"]
        result = next(c for c in chunks if c.type == ChunkType.TOOL_ITERATION).data["tool_results"][0]
        assert result["status"] == "failed"
        assert result["result"] == {"success": False, "error": "Tool 'execute_command' is not available"}
        assert [c.data["status"] for c in chunks if c.type == ChunkType.TOOL_STATUS] == ["failed"]
        assert chunks[-1].type == ChunkType.COMPLETE

    @pytest.mark.asyncio
    async def test_auto_approve_skips_confirmation(self, channels, store):
        registry = ToolRegistry()
        registry.register("delete_file", lambda path: "deleted", requires_confirmation=True)
        transport = ScriptedTransport([
            call_turn(FunctionCall(id="d1", name="delete_file", args={"path": "x"})),
            text_turn("ok"),
        ])
        loop = make_loop(channels, registry, store, transport, auto_approve={"delete_file"})
        await loop.add_user_message(CONV, "go")

        chunks = await collect(loop.run(CONV))

        assert ChunkType.AWAITING_CONFIRMATION not in types(chunks)
        assert chunks[-1].type == ChunkType.COMPLETE


# ============== 终止条件 ==============

class TestTermination:
    """取消、预算和错误测试"""

    @pytest.mark.asyncio
    async def test_cancel_keeps_partial_text(self, channels, registry, store):
        transport = ScriptedTransport([text_turn("Hel", "lo", " there")])
        loop = make_loop(channels, registry, store, transport)
        await loop.add_user_message(CONV, "hi")

        chunks = []
        async for chunk in loop.run(CONV):
            chunks.append(chunk)
            if chunk.type == ChunkType.CHUNK:
                assert loop.cancel(CONV)

        assert types(chunks) == [ChunkType.CHUNK, ChunkType.CANCELLED]
        assert chunks[-1].data["content"].text == "Hel"

        history = await store.get_history(CONV)
        assert [c.text for c in history] == ["hi", "Hel"]
        assert not loop.cancel(CONV)

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, channels, registry, store):
        transport = ScriptedTransport([text_turn("never")])
        loop = make_loop(channels, registry, store, transport)
        await loop.add_user_message(CONV, "hi")
        event = asyncio.Event()
        event.set()

        chunks = await collect(loop.run(CONV, cancel_event=event))

        assert types(chunks) == [ChunkType.CANCELLED]
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_max_iterations(self, channels, registry, store):
        transport = ScriptedTransport([
            call_turn(FunctionCall(id="c1", name="read_file", args={"path": "a"})),
            call_turn(FunctionCall(id="c2", name="read_file", args={"path": "b"})),
            call_turn(FunctionCall(id="c3", name="read_file", args={"path": "c"})),
        ])
        loop = make_loop(channels, registry, store, transport, max_iterations=2)
        await loop.add_user_message(CONV, "loop forever")
        stats = RunStats()

        chunks = await collect(loop.run(CONV, stats=stats))

        assert chunks[-1].type == ChunkType.ERROR
        assert chunks[-1].data == {
            "code": "MAX_TOOL_ITERATIONS",
            "message": "Exceeded maximum iterations (2)",
        }
        assert len(transport.requests) == 2
        assert stats.iterations == 2
        assert types(chunks).count(ChunkType.TOOL_ITERATION) == 2

    @pytest.mark.asyncio
    async def test_protocol_error(self, channels, registry, store):
        transport = ScriptedTransport([ProtocolError(401, {"error": {"message": "bad key"}})])
        loop = make_loop(channels, registry, store, transport)
        await loop.add_user_message(CONV, "hi")

        chunks = await collect(loop.run(CONV))

        assert types(chunks) == [ChunkType.ERROR]
        assert chunks[0].data == {"code": "PROTOCOL_ERROR", "message": "HTTP 401: bad key"}
        assert len(await store.get_history(CONV)) == 1

    @pytest.mark.asyncio
    async def test_transport_error(self, channels, registry, store):
        """测试连接失败以 error 事件结束而不是抛出"""
        transport = ScriptedTransport([httpx.ConnectError("boom")])
        loop = make_loop(channels, registry, store, transport)
        await loop.add_user_message(CONV, "hi")

        chunks = await collect(loop.run(CONV))

        assert types(chunks) == [ChunkType.ERROR]
        assert chunks[0].data == {"code": "PROTOCOL_ERROR", "message": "Transport error: boom"}
        assert not loop.is_running(CONV)

    @pytest.mark.asyncio
    async def test_max_runtime_stops_stream(self, channels, registry, store):
        """测试运行超时中断正在进行的流式读取"""
        transport = ScriptedTransport([text_turn("slow", " answer")], delay=1.0)
        loop = make_loop(channels, registry, store, transport, max_runtime_seconds=0.2)
        await loop.add_user_message(CONV, "hi")

        started = time.monotonic()
        chunks = await collect(loop.run(CONV))

        assert time.monotonic() - started < 0.9
        assert types(chunks) == [ChunkType.ERROR]
        assert chunks[0].data["code"] == "MAX_RUNTIME"
        assert chunks[0].data["message"].startswith("Exceeded maximum runtime (0.2s). Elapsed: ")
        assert not loop.is_running(CONV)

    @pytest.mark.asyncio
    async def test_max_runtime_stops_tool(self, channels, store):
        async def slow(seconds: float = 5.0):
            await asyncio.sleep(seconds)
            return "finished"

        registry = ToolRegistry()
        registry.register("slow", slow)
        transport = ScriptedTransport([
            call_turn(FunctionCall(id="s1", name="slow")),
            text_turn("unreachable"),
        ])
        loop = make_loop(channels, registry, store, transport, max_runtime_seconds=0.2)
        await loop.add_user_message(CONV, "wait")
        stats = RunStats()

        chunks = await collect(loop.run(CONV, stats=stats))

        assert ChunkType.CANCELLED not in types(chunks)
        assert chunks[-1].data["code"] == "MAX_RUNTIME"
        assert [c.data["status"] for c in chunks if c.type == ChunkType.TOOL_STATUS] == ["executing", "failed"]
        assert stats.tool_calls[0].result == {"success": False, "error": "Cancelled by user"}
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_stream_closed_after_backend_error(self, channels, registry, store):
        """测试本轮提前结束时关闭底层流"""
        transport = ClosingTransport([[
            StreamDelta(text="partial"),
            StreamDelta(error="overloaded"),
            StreamDelta(text="never read"),
        ]])
        loop = make_loop(channels, registry, store, transport)
        await loop.add_user_message(CONV, "hi")

        chunks = await collect(loop.run(CONV))

        assert chunks[-1].data == {"code": "BACKEND_ERROR", "message": "overloaded"}
        assert transport.delivered == 2
        assert transport.closed == 1

    @pytest.mark.asyncio
    async def test_unknown_channel(self, channels, registry, store):
        loop = make_loop(channels, registry, store, ScriptedTransport([text_turn("x")]))

        chunks = await collect(loop.run(CONV, "nope"))

        assert chunks[-1].data["code"] == "CONFIG_ERROR"
        assert "Channel not found: nope" in chunks[-1].data["message"]

    @pytest.mark.asyncio
    async def test_all_tools_failed(self, channels, registry, store):
        transport = ScriptedTransport([
            call_turn(FunctionCall(id="m1", name="missing_tool")),
            text_turn("unreachable"),
        ])
        loop = make_loop(channels, registry, store, transport, require_tool_success=True)
        await loop.add_user_message(CONV, "go")

        chunks = await collect(loop.run(CONV))

        assert chunks[-2].type == ChunkType.TOOL_ITERATION
        assert chunks[-1].data["code"] == "ALL_TOOLS_FAILED"
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_stream_without_terminal_signal(self, channels, registry, store):
        transport = ScriptedTransport([[StreamDelta(text="cut off")]])
        loop = make_loop(channels, registry, store, transport)
        await loop.add_user_message(CONV, "hi")

        chunks = await collect(loop.run(CONV))

        assert types(chunks) == [ChunkType.CHUNK, ChunkType.ERROR]
        assert chunks[-1].data["code"] == "STREAM_INTERRUPTED"


# ============== 历史维护 ==============

class TestHistory:
    """结果合并与悬挂调用恢复测试"""

    @pytest.mark.asyncio
    async def test_merge_is_idempotent(self, channels, registry, store):
        loop = make_loop(channels, registry, store, ScriptedTransport([text_turn("x")]))
        call = ToolCall(id="c1", name="read_file")
        call.transition(ToolCallStatus.EXECUTING)
        call.complete({"success": True, "result": "r"})
        pending = ToolCall(id="c2", name="read_file")

        first = await loop.merge_tool_results(CONV, [call, pending])
        second = await loop.merge_tool_results(CONV, [call])

        assert first == 0
        assert second is None
        history = await store.get_history(CONV)
        assert len(history) == 1
        assert history[0].function_response_ids == ["c1"]

    @pytest.mark.asyncio
    async def test_orphaned_calls_resumed(self, channels, registry, store):
        await store.append_content(CONV, Content.user("read it"))
        await store.append_content(CONV, Content.model(calls=[
            FunctionCall(id="o1", name="read_file", args={"path": "orphan.txt"}),
        ]))
        transport = ScriptedTransport([text_turn("resumed")])
        loop = make_loop(channels, registry, store, transport)

        chunks = await collect(loop.run(CONV))

        assert types(chunks)[:4] == [
            ChunkType.TOOLS_EXECUTING,
            ChunkType.TOOL_STATUS,
            ChunkType.TOOL_STATUS,
            ChunkType.TOOL_ITERATION,
        ]
        assert chunks[-1].type == ChunkType.COMPLETE
        history = await store.get_history(CONV)
        assert history[2].function_response_ids == ["o1"]
        assert history[2].parts[0].function_response.response == {
            "success": True,
            "result": "content of orphan.txt",
        }
        assert history[3].text == "resumed"

    @pytest.mark.asyncio
    async def test_answered_calls_not_resumed(self, channels, registry, store):
        await store.append_content(CONV, Content.user("read it"))
        await store.append_content(CONV, Content.model("Let me check", calls=[
            FunctionCall(id="o1", name="read_file", args={"path": "a"}),
        ]))
        transport = ScriptedTransport([text_turn("ok")])
        loop = make_loop(channels, registry, store, transport)

        chunks = await collect(loop.run(CONV))

        assert ChunkType.TOOLS_EXECUTING not in types(chunks)
