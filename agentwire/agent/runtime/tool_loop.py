"""
Tool Execution Loop

多轮工具调用循环：
build request → transport → accumulate stream → policy → execute tools
→ append results → next turn

直到模型不再调用工具、被取消、出错或超出迭代/时间预算。
对外产出按 conversation_id 标记的 StreamChunk 序列，
整个运行恰好以一个终止事件结束。
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import httpx

from agentwire.agent.infrastructure.conversation_store import CheckpointRecord, ConversationStore
from agentwire.agent.runtime.stream_accumulator import StreamAccumulator
from agentwire.agent.runtime.tool_executor import (
    ToolCall,
    ToolCallStatus,
    ToolExecutor,
    ToolResult,
    link_cancel,
    run_cancellable,
)
from agentwire.agent.security.tool_policy import PolicyResult, ToolPolicy
from agentwire.system.llm.adapters.base import BaseAdapter
from agentwire.system.llm.config import ChannelConfig, ChannelRegistry
from agentwire.system.llm.errors import AgentWireError, BudgetExceeded, CancellationRequested
from agentwire.system.llm.factory import AdapterFactory
from agentwire.system.llm.message import (
    ChunkType,
    Content,
    GenerateRequest,
    GenerateResponse,
    Role,
    StreamChunk,
    StreamDelta,
    ToolDeclaration,
)
from agentwire.system.llm.transport import (
    HttpTransport,
    iterate_with_cancel,
    request_summary,
    transport_error,
)
from agentwire.system.services.logger import Layer, LoggerMixin, trace_context

UNBOUNDED = -1


@dataclass
class LoopConfig:
    """Loop 配置，-1 表示不限制"""
    max_iterations: int = 50
    max_runtime_seconds: float = UNBOUNDED
    require_tool_success: bool = False
    auto_approve: Set[str] = field(default_factory=set)
    checkpoints_enabled: bool = True
    stream: bool = True


@dataclass
class ToolCallRecord:
    """工具调用审计记录"""
    id: str
    tool: str
    args: Dict[str, Any]
    result: Dict[str, Any]
    success: bool
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tool": self.tool,
            "args": self.args,
            "result": self.result,
            "success": self.success,
            "duration_ms": self.duration_ms,
        }


@dataclass
class RunStats:
    """一次运行的统计，运行过程中更新"""
    iterations: int = 0
    model_version: Optional[str] = None
    last_text: str = ""
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


class RuntimeDeadline:
    """
    运行时间上限

    到期时触发 interrupt，正在进行的流式读取、确认等待和工具执行都会停下。
    用户取消同样转发到 interrupt，expired 用来区分两者。
    """

    def __init__(self, limit: float, stats: RunStats, cancel_event: asyncio.Event):
        self.limit = limit
        self.interrupt = asyncio.Event()
        if cancel_event.is_set():
            self.interrupt.set()
        self.expired = False
        self._stats = stats
        self._tasks = [
            asyncio.ensure_future(link_cancel(cancel_event, self.interrupt)),
            asyncio.ensure_future(self._expire(max(0.0, limit - stats.elapsed))),
        ]

    async def _expire(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self.expired = True
        self.interrupt.set()

    def exceeded(self) -> BudgetExceeded:
        return BudgetExceeded("runtime", self.limit, self._stats.elapsed)

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)


@dataclass
class LoopResult:
    """运行结果（非流式调用方使用）"""
    conversation_id: str
    status: str  # "success", "error", "cancelled"
    content: Optional[Content] = None
    iterations: int = 0
    model_version: Optional[str] = None
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    @property
    def text(self) -> str:
        return self.content.text if self.content else ""


def response_to_delta(response: GenerateResponse) -> StreamDelta:
    """把非流式响应转成一个带结束信号的增量"""
    content = response.content
    thought = "".join(p.text for p in content.parts if p.thought and p.text)
    return StreamDelta(
        text=content.text or None,
        thought=thought or None,
        complete_calls=content.function_calls,
        usage=response.usage,
        model_version=response.model_version,
        finish_reason=response.finish_reason,
        done=True,
    )


class ToolExecutionLoop(LoggerMixin):
    """
    工具执行循环

    渠道注册表、工具执行器、对话存储和策略都在构造时显式传入。
    同一对话同一时间只允许一个运行。
    """

    _log_layer = Layer.LOOP

    def __init__(
        self,
        channels: ChannelRegistry,
        executor: ToolExecutor,
        store: ConversationStore,
        policy: Optional[ToolPolicy] = None,
        adapters: Optional[AdapterFactory] = None,
        transport: Optional[HttpTransport] = None,
        config: Optional[LoopConfig] = None,
    ):
        self._channels = channels
        self._executor = executor
        self._store = store
        self._policy = policy or ToolPolicy()
        self._adapters = adapters or AdapterFactory()
        self._transport = transport or HttpTransport()
        self._config = config or LoopConfig()

        self._accumulators: Dict[str, StreamAccumulator] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._run_channels: Dict[str, str] = {}
        self._allowed_tools: Dict[str, Set[str]] = {}

        self._run_count = 0
        self._turn_count = 0
        self._denied_count = 0

    @property
    def config(self) -> LoopConfig:
        return self._config

    @property
    def policy(self) -> ToolPolicy:
        return self._policy

    def set_policy(self, policy: ToolPolicy) -> None:
        """切换模式策略（不能在运行中切换）"""
        self._policy = policy
        self.log_info(f"Tool policy switched to mode={policy.mode}")

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def executor(self) -> ToolExecutor:
        return self._executor

    @property
    def channels(self) -> ChannelRegistry:
        return self._channels

    def is_running(self, conversation_id: str) -> bool:
        return conversation_id in self._cancel_events

    def cancel(self, conversation_id: str) -> bool:
        """取消对话当前的运行"""
        event = self._cancel_events.get(conversation_id)
        if event is None:
            return False
        event.set()
        return True

    def resolve_confirmation(self, conversation_id: str, call_id: str, approved: bool) -> bool:
        """提交某个待确认工具调用的确认结果"""
        accumulator = self._accumulators.get(conversation_id)
        if accumulator is None:
            return False
        return accumulator.resolve_confirmation(call_id, approved)

    async def add_user_message(self, conversation_id: str, text: str) -> int:
        """追加一条用户输入"""
        return await self._store.append_content(conversation_id, Content.user(text))

    def tool_declarations(self, tool_names: Optional[List[str]] = None) -> List[ToolDeclaration]:
        """当前模式下可声明给模型的工具"""
        registry = self._executor.registry
        names = registry.names() if tool_names is None else [n for n in tool_names if n in registry]
        return registry.declarations(self._policy.filter_tools(names))

    async def run(
        self,
        conversation_id: str,
        channel_id: Optional[str] = None,
        *,
        channel: Optional[ChannelConfig] = None,
        system_instruction: Optional[str] = None,
        dynamic_context: Optional[str] = None,
        tool_names: Optional[List[str]] = None,
        model: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        config: Optional[LoopConfig] = None,
        stats: Optional[RunStats] = None,
        resume_orphans: bool = True,
    ) -> AsyncIterator[StreamChunk]:
        """
        运行工具循环

        Args:
            conversation_id: 对话 ID
            channel_id: 渠道 ID（缺省使用默认渠道）
            channel: 直接指定渠道配置，优先于 channel_id
            system_instruction: 系统提示词
            dynamic_context: 插入到最后一组用户输入之前的动态上下文
            tool_names: 可用工具名，None 表示注册表中的全部工具
            model: 覆盖渠道模型
            cancel_event: 取消信号，触发后以 cancelled 结束
            config: 覆盖默认 Loop 配置
            stats: 运行统计，由调用方持有
            resume_orphans: 是否先执行历史末尾悬挂的函数调用

        Yields:
            StreamChunk，最后一个必为 complete / cancelled / error
        """
        if self.is_running(conversation_id):
            yield StreamChunk.error(conversation_id, "CONVERSATION_BUSY", "A run is already in progress")
            return

        cfg = config or self._config
        stats = stats if stats is not None else RunStats()
        cancel_event = cancel_event or asyncio.Event()
        self._cancel_events[conversation_id] = cancel_event
        self._run_count += 1

        # 轮次和工具使用 interrupt：用户取消或运行超时都会触发
        deadline: Optional[RuntimeDeadline] = None
        interrupt = cancel_event

        with trace_context(conversation_id, layer=Layer.LOOP, component=self.__class__.__name__):
            try:
                if cfg.max_runtime_seconds != UNBOUNDED:
                    deadline = RuntimeDeadline(cfg.max_runtime_seconds, stats, cancel_event)
                    interrupt = deadline.interrupt

                selected = channel or self._channels.get(channel_id)
                adapter = self._adapters.for_channel(selected)
                self._run_channels[conversation_id] = selected.id
                declarations = self.tool_declarations(tool_names)
                self._allowed_tools[conversation_id] = {d.name for d in declarations}
                self.logger.info(
                    f"Run started: channel={selected.id} model={model or selected.model} "
                    f"mode={self._policy.mode} tools={len(declarations)}"
                )

                if resume_orphans:
                    async for chunk in self._resume_orphaned_calls(conversation_id, interrupt, stats):
                        self._raise_if_expired(chunk, deadline)
                        yield chunk
                        if chunk.is_terminal:
                            return

                while True:
                    self._check_budget(cfg, stats)
                    if interrupt.is_set():
                        chunk = StreamChunk.cancelled(conversation_id)
                        self._raise_if_expired(chunk, deadline)
                        yield chunk
                        return

                    stats.iterations += 1
                    self._turn_count += 1
                    request = GenerateRequest(
                        history=await self._store.get_history(conversation_id),
                        system_instruction=system_instruction,
                        dynamic_context=dynamic_context,
                        tools=declarations,
                        model=model,
                        stream=cfg.stream,
                    )
                    finished = False
                    async for chunk in self._run_turn(
                        conversation_id, adapter, selected, request, cfg, interrupt, stats
                    ):
                        self._raise_if_expired(chunk, deadline)
                        yield chunk
                        if chunk.is_terminal:
                            finished = True
                    if finished:
                        return

            except BudgetExceeded as e:
                self.logger.warning(e.message)
                yield StreamChunk.error(conversation_id, e.code, e.message)
            except AgentWireError as e:
                self.logger.error(f"Run failed: {e.code}: {e.message}")
                yield StreamChunk.error(conversation_id, e.code, e.message)
            except httpx.HTTPError as e:
                error = transport_error(e)
                self.logger.error(f"Run failed: {error.message}")
                yield StreamChunk.error(conversation_id, error.code, error.message)
            finally:
                self._cancel_events.pop(conversation_id, None)
                self._accumulators.pop(conversation_id, None)
                self._run_channels.pop(conversation_id, None)
                self._allowed_tools.pop(conversation_id, None)
                if deadline is not None:
                    await deadline.close()

    @staticmethod
    def _raise_if_expired(chunk: StreamChunk, deadline: Optional[RuntimeDeadline]) -> None:
        """运行超时导致的中断按预算超限上报，而不是取消"""
        if deadline is not None and deadline.expired and chunk.type == ChunkType.CANCELLED:
            raise deadline.exceeded()

    def _check_budget(self, cfg: LoopConfig, stats: RunStats) -> None:
        """
        检查预算，在开始新一轮之前调用

        Raises:
            BudgetExceeded: 已执行的轮数达到上限，或运行时间超限
        """
        if cfg.max_iterations != UNBOUNDED and stats.iterations >= cfg.max_iterations:
            raise BudgetExceeded("iterations", cfg.max_iterations)
        if cfg.max_runtime_seconds != UNBOUNDED and stats.elapsed > cfg.max_runtime_seconds:
            raise BudgetExceeded("runtime", cfg.max_runtime_seconds, stats.elapsed)

    async def _run_turn(
        self,
        conversation_id: str,
        adapter: BaseAdapter,
        channel: ChannelConfig,
        request: GenerateRequest,
        cfg: LoopConfig,
        cancel_event: asyncio.Event,
        stats: RunStats,
    ) -> AsyncIterator[StreamChunk]:
        """
        执行一轮

        本轮结束且需要继续时不产出终止事件；运行结束时产出终止事件。
        """
        spec = adapter.build_request(request, channel)
        self.logger.debug(f"Turn {stats.iterations}: {request_summary(spec)}")

        accumulator = StreamAccumulator(conversation_id)
        self._accumulators[conversation_id] = accumulator
        accumulator.start()

        try:
            if request.stream:
                deltas = iterate_with_cancel(self._transport.stream(adapter, spec), cancel_event)
                try:
                    async for delta in deltas:
                        for event in accumulator.feed(delta):
                            if not event.is_terminal:
                                yield event
                        if accumulator.terminal is not None:
                            break
                finally:
                    # 提前结束时释放底层 HTTP 流
                    await deltas.aclose()
            else:
                response = await run_cancellable(self._transport.generate(adapter, spec), cancel_event)
                accumulator.feed(response_to_delta(response))
        except (CancellationRequested, asyncio.CancelledError):
            yield await self._cancel_turn(conversation_id, accumulator)
            return

        if accumulator.terminal is not None:
            yield accumulator.terminal
            return

        calls = accumulator.tool_calls
        decisions = {call.id: self._policy.check(call.name, call.args) for call in calls}
        rejected: Set[str] = set()

        registry = self._executor.registry
        allowed = self._allowed_tools.get(conversation_id, set())
        needs_confirmation = [
            call for call in calls
            if decisions[call.id].allowed
            and call.name in allowed
            and registry.needs_confirmation(call.name)
            and call.name not in cfg.auto_approve
        ]
        if needs_confirmation:
            confirmation = accumulator.await_confirmation(needs_confirmation)
            for call in needs_confirmation:
                yield StreamChunk.tool_status(conversation_id, call.id, call.status.value)
            yield confirmation
            for call in needs_confirmation:
                try:
                    approved = await run_cancellable(
                        accumulator.wait_for_confirmation(call.id), cancel_event
                    )
                except asyncio.CancelledError:
                    yield await self._cancel_turn(conversation_id, accumulator)
                    return
                if not approved:
                    rejected.add(call.id)

        terminal = accumulator.finish()
        if terminal.type != ChunkType.COMPLETE:
            yield terminal
            return

        content = accumulator.content
        if content.model_version:
            stats.model_version = content.model_version
        if content.text:
            stats.last_text = content.text
        model_index = await self._store.append_content(conversation_id, content)
        checkpoints = await self._checkpoints(conversation_id, cfg, model_index, "model_message")

        if not calls:
            self.logger.info(f"Run completed after {stats.iterations} turn(s)")
            yield StreamChunk.complete(conversation_id, content, checkpoints)
            return

        if checkpoints:
            yield StreamChunk.checkpoints(conversation_id, checkpoints)
        yield StreamChunk.tools_executing(conversation_id, [c.name for c in calls], content)

        results: List[ToolResult] = []
        async for chunk in self._execute_calls(conversation_id, calls, decisions, rejected, cancel_event, results, stats):
            yield chunk

        response_index = await self.merge_tool_results(conversation_id, calls)
        tool_checkpoints: List[CheckpointRecord] = []
        if response_index is not None:
            tool_name = calls[0].name if len(calls) == 1 else "tool_batch"
            tool_checkpoints = await self._checkpoints(conversation_id, cfg, response_index, tool_name)

        if cancel_event.is_set():
            yield StreamChunk.cancelled(conversation_id, content)
            return

        yield StreamChunk.tool_iteration(
            conversation_id,
            content,
            [self._result_payload(call, result) for call, result in zip(calls, results)],
            tool_checkpoints,
        )

        if cfg.require_tool_success and results and not any(r.success for r in results):
            yield StreamChunk.error(conversation_id, "ALL_TOOLS_FAILED", "Every requested tool call failed")

    async def _cancel_turn(self, conversation_id: str, accumulator: StreamAccumulator) -> StreamChunk:
        """取消本轮，已流出的文本作为部分回复保存"""
        terminal = accumulator.cancel()
        content = accumulator.content
        partial = Content(role=Role.MODEL, parts=[p for p in content.parts if p.text and not p.thought])
        if partial.parts:
            await self._store.append_content(conversation_id, partial)
        self.logger.info("Run cancelled")
        return terminal

    async def _execute_calls(
        self,
        conversation_id: str,
        calls: List[ToolCall],
        decisions: Dict[str, PolicyResult],
        rejected: Set[str],
        cancel_event: asyncio.Event,
        results: List[ToolResult],
        stats: RunStats,
    ) -> AsyncIterator[StreamChunk]:
        """
        按顺序执行工具调用，结果按调用顺序写入 results

        每次状态迁移都产出一个 toolStatus 事件。
        """
        for call in calls:
            result = self._screen_call(conversation_id, call, decisions[call.id], rejected, cancel_event)
            if result is None:
                call.transition(ToolCallStatus.EXECUTING)
                yield StreamChunk.tool_status(conversation_id, call.id, call.status.value)
                result = await self._execute_one(conversation_id, call, decisions[call.id], cancel_event)
                if result.success:
                    call.complete(result.to_response())
                else:
                    call.fail(result.error or "Tool execution failed")
            elif not call.is_terminal:
                call.fail(result.error or "Tool call was not executed")
            results.append(result)
            stats.tool_calls.append(ToolCallRecord(
                id=call.id,
                tool=call.name,
                args=call.args,
                result=call.result or {},
                success=result.success,
                duration_ms=result.duration_ms,
            ))
            yield StreamChunk.tool_status(conversation_id, call.id, call.status.value)

    def _screen_call(
        self,
        conversation_id: str,
        call: ToolCall,
        decision: PolicyResult,
        rejected: Set[str],
        cancel_event: asyncio.Event,
    ) -> Optional[ToolResult]:
        """
        执行前的检查，返回不执行时的失败结果；可以执行时返回 None

        模型可能调用没有声明给它的工具，这里按本次运行声明的工具集拦截。
        """
        if call.is_terminal:
            return ToolResult(call_id=call.id, tool_name=call.name, success=False, error=(call.result or {}).get("error"))
        if cancel_event.is_set():
            return ToolResult(call_id=call.id, tool_name=call.name, success=False, error="Cancelled by user")
        if not decision.allowed:
            self._denied_count += 1
            self.logger.warning(f"Tool call denied in {self._policy.mode} mode: {call.name}: {decision.reason}")
            return self._executor.deny(call, decision.reason)
        if call.name not in self._allowed_tools.get(conversation_id, set()):
            self._denied_count += 1
            self.logger.warning(f"Tool call denied: {call.name} was not offered in this run")
            return self._executor.deny(call, f"Tool '{call.name}' is not available")
        if call.id in rejected:
            return self._executor.deny(call, "Rejected by user")
        return None

    async def _execute_one(
        self,
        conversation_id: str,
        call: ToolCall,
        decision: PolicyResult,
        cancel_event: asyncio.Event,
    ) -> ToolResult:
        return await self._executor.execute(
            call.name,
            call.args,
            context={
                "conversation_id": conversation_id,
                "cancel_event": cancel_event,
                "mode": self._policy.mode,
                "channel_id": self._run_channels.get(conversation_id),
                "policy_decision": decision.decision.value,
            },
            call_id=call.id,
        )

    @staticmethod
    def _result_payload(call: ToolCall, result: ToolResult) -> Dict[str, Any]:
        payload = result.to_dict()
        payload["args"] = call.args
        payload["status"] = call.status.value
        return payload

    async def merge_tool_results(self, conversation_id: str, calls: List[ToolCall]) -> Optional[int]:
        """
        把已结束的工具调用结果作为 functionResponse 追加到历史

        按调用ID幂等：历史中已有响应的调用不会重复追加。

        Returns:
            新内容的索引；没有需要追加的结果时返回 None
        """
        history = await self._store.get_history(conversation_id)
        recorded = {rid for content in history for rid in content.function_response_ids}
        responses = []
        for call in calls:
            if call.is_terminal and call.id not in recorded:
                responses.append(call.to_function_response())
                recorded.add(call.id)
        if not responses:
            return None
        return await self._store.append_content(conversation_id, Content.function_responses(responses))

    async def _checkpoints(
        self,
        conversation_id: str,
        cfg: LoopConfig,
        message_index: int,
        tool_name: str,
    ) -> List[CheckpointRecord]:
        if not cfg.checkpoints_enabled:
            return []
        return [await self._store.create_checkpoint(conversation_id, message_index, tool_name, "after")]

    async def _resume_orphaned_calls(
        self,
        conversation_id: str,
        cancel_event: asyncio.Event,
        stats: RunStats,
    ) -> AsyncIterator[StreamChunk]:
        """
        执行历史末尾悬挂的函数调用

        条件：最后一条是模型内容，含函数调用、不含普通文本，且没有对应响应。
        """
        history = await self._store.get_history(conversation_id)
        if not history:
            return
        last = history[-1]
        if last.role != Role.MODEL or not last.function_calls or last.text:
            return

        calls = [ToolCall.from_function_call(fc) for fc in last.function_calls]
        self.logger.info(f"Resuming {len(calls)} orphaned tool call(s)")
        decisions = {call.id: self._policy.check(call.name, call.args) for call in calls}
        yield StreamChunk.tools_executing(conversation_id, [c.name for c in calls], last)

        results: List[ToolResult] = []
        async for chunk in self._execute_calls(conversation_id, calls, decisions, set(), cancel_event, results, stats):
            yield chunk
        await self.merge_tool_results(conversation_id, calls)

        if cancel_event.is_set():
            yield StreamChunk.cancelled(conversation_id, last)
            return
        yield StreamChunk.tool_iteration(
            conversation_id,
            last,
            [self._result_payload(call, result) for call, result in zip(calls, results)],
        )

    async def run_to_completion(self, conversation_id: str, **kwargs) -> LoopResult:
        """
        运行并收集结果，供不需要流式事件的调用方（如子代理）使用
        """
        stats = kwargs.pop("stats", None) or RunStats()
        terminal: Optional[StreamChunk] = None
        last_content: Optional[Content] = None
        async for chunk in self.run(conversation_id, stats=stats, **kwargs):
            if chunk.data.get("content") is not None:
                last_content = chunk.data["content"]
            if chunk.is_terminal:
                terminal = chunk

        if terminal is None:
            terminal = StreamChunk.error(conversation_id, "NO_TERMINAL_EVENT", "Run ended without a terminal event")

        status = {
            ChunkType.COMPLETE: "success",
            ChunkType.CANCELLED: "cancelled",
        }.get(terminal.type, "error")
        return LoopResult(
            conversation_id=conversation_id,
            status=status,
            content=last_content,
            iterations=stats.iterations,
            model_version=stats.model_version,
            tool_calls=list(stats.tool_calls),
            error={"code": terminal.data["code"], "message": terminal.data["message"]}
            if terminal.type == ChunkType.ERROR else None,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "run_count": self._run_count,
            "turn_count": self._turn_count,
            "denied_count": self._denied_count,
            "active_runs": list(self._cancel_events),
            "mode": self._policy.mode,
            "executor": self._executor.get_stats(),
        }
