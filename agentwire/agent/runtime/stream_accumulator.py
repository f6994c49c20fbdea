"""
Stream Accumulator

把适配器产出的增量序列累积为一条完整的模型回复，并产出对外事件：
- 文本增量按到达顺序拼接到当前文本片段
- 工具参数片段按调用缓冲，后端发出结束信号后才解析
- 等待确认子状态，由工具循环在执行前进入
- 每轮恰好一个终止事件（complete / cancelled / error）

StreamRouter 负责多对话场景下的事件顺序：非活动对话的事件
单独缓冲，切换为活动对话时按原顺序补发。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Union

from agentwire.agent.runtime.tool_executor import ToolCall, ToolCallStatus
from agentwire.system.llm.adapters.base import parse_arguments
from agentwire.system.llm.message import (
    Content,
    FunctionCall,
    Part,
    Role,
    StreamChunk,
    StreamDelta,
    Usage,
    generate_tool_call_id,
)
from agentwire.system.services.logger import Layer, LoggerMixin


class AccumulatorState(str, Enum):
    """累积器状态"""
    IDLE = "idle"
    STREAMING = "streaming"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


@dataclass
class _CallBuffer:
    id: str
    name: str
    fragments: List[str] = field(default_factory=list)


class StreamAccumulator(LoggerMixin):
    """
    单轮流累积器

    idle -> streaming -> completed | cancelled | errored
    streaming 期间可进入 awaiting_confirmation，全部确认结果
    到齐后回到 streaming。
    """

    _log_layer = Layer.STREAM

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self._state = AccumulatorState.IDLE
        self._parts: List[Part] = []
        self._tool_calls: List[ToolCall] = []
        self._buffers: Dict[str, _CallBuffer] = {}
        self._usage: Optional[Usage] = None
        self._model_version: Optional[str] = None
        self._finish_reason: Optional[str] = None
        self._backend_done = False
        self._terminal: Optional[StreamChunk] = None
        self._confirmations: Dict[str, asyncio.Future] = {}

    @property
    def state(self) -> AccumulatorState:
        return self._state

    @property
    def terminal(self) -> Optional[StreamChunk]:
        return self._terminal

    @property
    def tool_calls(self) -> List[ToolCall]:
        return list(self._tool_calls)

    @property
    def backend_done(self) -> bool:
        """后端是否已发出结束信号"""
        return self._backend_done

    @property
    def content(self) -> Content:
        """当前累积的模型回复（副本）"""
        return Content(
            role=Role.MODEL,
            parts=[Part(
                text=p.text,
                thought=p.thought,
                function_call=p.function_call,
                function_response=p.function_response,
            ) for p in self._parts],
            usage=self._usage,
            model_version=self._model_version,
            finish_reason=self._finish_reason,
        )

    def start(self) -> None:
        if self._state != AccumulatorState.IDLE:
            raise RuntimeError(f"Accumulator already started (state={self._state.value})")
        self._state = AccumulatorState.STREAMING

    def feed(self, delta: StreamDelta) -> List[StreamChunk]:
        """
        处理一个增量

        Returns:
            产生的对外事件（文本增量；后端报错时为终止的 error 事件）
        """
        if self._state == AccumulatorState.IDLE:
            self.start()
        if self._terminal is not None:
            return []

        if delta.error:
            return [self.fail(delta.error, code="BACKEND_ERROR")]

        events: List[StreamChunk] = []
        if delta.thought:
            self._append_text(delta.thought, thought=True)
            events.append(StreamChunk.text(self.conversation_id, delta.thought, thought=True))
        if delta.text:
            self._append_text(delta.text)
            events.append(StreamChunk.text(self.conversation_id, delta.text))

        for fragment in delta.call_starts:
            if fragment.key in self._buffers:
                self._flush(fragment.key)
            self._buffers[fragment.key] = _CallBuffer(
                id=fragment.id or generate_tool_call_id(),
                name=fragment.name or "",
            )
            if fragment.arguments:
                self._buffers[fragment.key].fragments.append(fragment.arguments)

        for fragment in delta.call_deltas:
            buffer = self._buffers.get(fragment.key)
            if buffer is None:
                self.log_debug(f"Dropped argument fragment for unknown call {fragment.key}", self.conversation_id)
                continue
            buffer.fragments.append(fragment.arguments)

        for key in delta.call_ends:
            self._flush(key)

        for call in delta.complete_calls:
            self._add_call(call)

        if delta.usage is not None:
            self._usage = (self._usage or Usage()).merge(delta.usage)
        if delta.model_version:
            self._model_version = delta.model_version
        if delta.finish_reason:
            # 结束原因意味着后端已结束所有未结束的调用
            self._finish_reason = delta.finish_reason
            self._flush_all()
        if delta.done:
            self._backend_done = True
            self._flush_all()
        return events

    def _append_text(self, text: str, thought: bool = False) -> None:
        if self._parts:
            last = self._parts[-1]
            if last.function_call is None and last.text is not None and last.thought == thought:
                self._parts[-1] = Part(text=last.text + text, thought=thought)
                return
        self._parts.append(Part.of_text(text, thought=thought))

    def _flush(self, key: str) -> None:
        buffer = self._buffers.pop(key, None)
        if buffer is None:
            return
        self._add_call(FunctionCall(
            id=buffer.id,
            name=buffer.name,
            args=parse_arguments("".join(buffer.fragments)),
        ))

    def _flush_all(self) -> None:
        for key in list(self._buffers):
            self._flush(key)

    def _add_call(self, call: FunctionCall) -> None:
        if any(tc.id == call.id for tc in self._tool_calls):
            return
        self._parts.append(Part.of_call(call))
        self._tool_calls.append(ToolCall.from_function_call(call))

    def await_confirmation(self, calls: List[ToolCall]) -> StreamChunk:
        """
        进入等待确认子状态

        每个调用迁移到 awaiting_approval，并创建一个待决的 Future。
        """
        if self._state != AccumulatorState.STREAMING:
            raise RuntimeError(f"Cannot await confirmation in state {self._state.value}")
        loop = asyncio.get_running_loop()
        for call in calls:
            call.transition(ToolCallStatus.AWAITING_APPROVAL)
            self._confirmations[call.id] = loop.create_future()
        self._state = AccumulatorState.AWAITING_CONFIRMATION
        return StreamChunk.awaiting_confirmation(
            self.conversation_id,
            [c.to_dict() for c in calls],
            content=self.content,
        )

    @property
    def pending_confirmations(self) -> List[str]:
        return [cid for cid, fut in self._confirmations.items() if not fut.done()]

    def resolve_confirmation(self, call_id: str, approved: bool) -> bool:
        """
        提交确认结果

        Returns:
            该调用是否处于待确认状态
        """
        future = self._confirmations.get(call_id)
        if future is None or future.done():
            return False
        future.set_result(approved)
        if not self.pending_confirmations and self._state == AccumulatorState.AWAITING_CONFIRMATION:
            self._state = AccumulatorState.STREAMING
        return True

    async def wait_for_confirmation(self, call_id: str) -> bool:
        """等待某个调用的确认结果"""
        return await self._confirmations[call_id]

    def finish(self) -> StreamChunk:
        """
        结束本轮

        后端没有发出结束信号（done 或结束原因）时合成 error 事件。
        已有终止事件时直接返回它。
        """
        if self._terminal is not None:
            return self._terminal
        if self._state == AccumulatorState.AWAITING_CONFIRMATION:
            return self.fail("Turn finished while tool calls were awaiting confirmation", code="CONFIRMATION_PENDING")
        if not self._backend_done and self._finish_reason is None:
            return self.fail("Stream ended without a terminal signal", code="STREAM_INTERRUPTED")

        self._flush_all()
        self._state = AccumulatorState.COMPLETED
        self._terminal = StreamChunk.complete(self.conversation_id, self.content)
        return self._terminal

    def cancel(self) -> StreamChunk:
        """
        取消本轮

        保留已累积的文本；未到终态的工具调用全部标记为失败。
        """
        if self._terminal is not None:
            return self._terminal
        self._buffers.clear()
        self._resolve_open_calls("Cancelled by user")
        self._state = AccumulatorState.CANCELLED
        self._terminal = StreamChunk.cancelled(self.conversation_id, self.content)
        return self._terminal

    def fail(self, message: str, code: str = "STREAM_ERROR") -> StreamChunk:
        """以错误结束本轮"""
        if self._terminal is not None:
            return self._terminal
        self._buffers.clear()
        self._resolve_open_calls(message)
        self._state = AccumulatorState.ERRORED
        self.log_warning(f"Turn failed: {code}: {message}", self.conversation_id)
        self._terminal = StreamChunk.error(self.conversation_id, code, message)
        return self._terminal

    def _resolve_open_calls(self, reason: str) -> None:
        for future in self._confirmations.values():
            if not future.done():
                future.cancel()
        for call in self._tool_calls:
            if not call.is_terminal:
                call.fail(reason)


ChunkSink = Callable[[StreamChunk], Union[None, Awaitable[None]]]


class StreamRouter(LoggerMixin):
    """
    多对话事件路由

    活动对话的事件直接交给 sink；其他对话的事件按对话单独缓冲，
    切换为活动对话时按到达顺序补发，不会与其他对话交错。
    """

    _log_layer = Layer.STREAM

    def __init__(self, sink: ChunkSink, active_conversation_id: Optional[str] = None):
        self._sink = sink
        self._active = active_conversation_id
        self._buffers: Dict[str, List[StreamChunk]] = {}

    @property
    def active_conversation_id(self) -> Optional[str]:
        return self._active

    async def _deliver(self, chunk: StreamChunk) -> None:
        result = self._sink(chunk)
        if asyncio.iscoroutine(result):
            await result

    async def dispatch(self, chunk: StreamChunk) -> None:
        """投递一个事件"""
        if chunk.conversation_id == self._active:
            await self._deliver(chunk)
        else:
            self._buffers.setdefault(chunk.conversation_id, []).append(chunk)

    async def set_active(self, conversation_id: Optional[str]) -> int:
        """
        切换活动对话，并补发该对话缓冲的事件

        Returns:
            补发的事件数
        """
        self._active = conversation_id
        buffered = self._buffers.pop(conversation_id, []) if conversation_id else []
        for chunk in buffered:
            await self._deliver(chunk)
        if buffered:
            self.log_debug(f"Flushed {len(buffered)} buffered chunks", conversation_id)
        return len(buffered)

    def buffered_count(self, conversation_id: str) -> int:
        return len(self._buffers.get(conversation_id, []))
