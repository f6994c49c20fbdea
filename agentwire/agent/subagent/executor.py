"""
Sub-agent Executor

子代理执行器：在独立的临时对话中运行一个受限的工具循环。

- 工具集按配置的过滤模式裁剪，始终不包含 subagents 工具本身
- 渠道和模型独立于父对话
- 受最大迭代次数和最大运行时间约束
- 父对话的取消信号会传递给子代理

返回聚合后的 SubAgentResult，而不是事件流。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4

from agentwire.agent.infrastructure.conversation_store import InMemoryConversationStore
from agentwire.agent.runtime.tool_executor import (
    MCP_PREFIX,
    Tool,
    ToolExecutor,
    ToolRegistry,
    link_cancel,
)
from agentwire.agent.runtime.tool_loop import LoopConfig, RunStats, ToolExecutionLoop
from agentwire.agent.security.tool_policy import ToolPolicy
from agentwire.agent.subagent.registry import SubAgentConfig, SubAgentRegistry
from agentwire.system.llm.config import ChannelConfig, ChannelRegistry
from agentwire.system.llm.errors import ToolExecutionError
from agentwire.system.llm.factory import AdapterFactory
from agentwire.system.llm.message import Content
from agentwire.system.llm.transport import HttpTransport
from agentwire.system.services.logger import Layer, LoggerMixin, trace_context

SUBAGENTS_TOOL_NAME = "subagents"


@dataclass
class SubAgentRequest:
    """子代理调用请求"""
    agent_type: str
    prompt: str
    context: Optional[str] = None

    def build_prompt(self) -> str:
        if self.context:
            return f"Context:\n{self.context}\n\nTask:\n{self.prompt}"
        return self.prompt


@dataclass
class SubAgentResult:
    """子代理执行结果"""
    success: bool
    response: str = ""
    model_version: Optional[str] = None
    steps: int = 0
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "response": self.response,
            "model_version": self.model_version,
            "steps": self.steps,
            "tool_calls": self.tool_calls,
        }
        if self.error:
            data["error"] = self.error
        if self.cancelled:
            data["cancelled"] = True
        return data


def resolve_tools(config: SubAgentConfig, available: List[str]) -> List[str]:
    """
    按过滤模式计算子代理可用的工具名

    - all: 全部工具
    - builtin: 仅内置工具（include_mcp 时附带 MCP 工具）
    - mcp: 仅 mcp__{server}__{tool} 形式的工具
    - whitelist / blacklist: 在全部工具上按名单过滤，名单为空时使用 list 字段
    """
    candidates = [name for name in available if name != SUBAGENTS_TOOL_NAME]
    builtin = [n for n in candidates if not n.startswith(MCP_PREFIX)]
    mcp = [n for n in candidates if n.startswith(MCP_PREFIX)]

    tools = config.tools
    if tools.mode == "builtin":
        return builtin + mcp if tools.include_mcp else builtin
    if tools.mode == "mcp":
        return mcp
    if tools.mode == "whitelist":
        allowed = set(tools.effective_whitelist)
        return [n for n in candidates if n in allowed]
    if tools.mode == "blacklist":
        blocked = set(tools.effective_blacklist)
        return [n for n in candidates if n not in blocked]
    return candidates


class SubAgentExecutor(LoggerMixin):
    """
    子代理执行器

    与父循环共享渠道注册表、工具执行器和模式策略，
    但每次执行使用独立的内存对话存储。
    """

    _log_layer = Layer.SUBAGENT

    def __init__(
        self,
        registry: SubAgentRegistry,
        channels: ChannelRegistry,
        executor: ToolExecutor,
        policy: Optional[ToolPolicy] = None,
        adapters: Optional[AdapterFactory] = None,
        transport: Optional[HttpTransport] = None,
        fallback_to_parent: bool = False,
        stream: bool = True,
    ):
        self._registry = registry
        self._channels = channels
        self._executor = executor
        self._policy = policy
        self._adapters = adapters or AdapterFactory()
        self._transport = transport or HttpTransport()
        self._fallback_to_parent = fallback_to_parent
        self._stream = stream

        self._execution_count = 0
        self._failure_count = 0

    @property
    def registry(self) -> SubAgentRegistry:
        return self._registry

    def set_policy(self, policy: ToolPolicy) -> None:
        self._policy = policy

    def available_tools(self, config: SubAgentConfig) -> List[str]:
        return resolve_tools(config, self._executor.registry.names())

    def _resolve_channel(
        self,
        config: SubAgentConfig,
        parent_channel_id: Optional[str],
    ) -> Optional[ChannelConfig]:
        channel = self._channels.find(config.channel.channel_id)
        if channel is not None:
            return channel
        if self._fallback_to_parent and parent_channel_id:
            fallback = self._channels.find(parent_channel_id)
            if fallback is not None:
                self.logger.warning(
                    f"Sub-agent {config.type}: channel {config.channel.channel_id} not found, "
                    f"falling back to parent channel {parent_channel_id}"
                )
            return fallback
        return None

    async def execute(
        self,
        request: SubAgentRequest,
        cancel_event: Optional[asyncio.Event] = None,
        parent_channel_id: Optional[str] = None,
    ) -> SubAgentResult:
        """
        执行子代理

        Args:
            request: 调用请求
            cancel_event: 父对话的取消信号
            parent_channel_id: 父对话的渠道（仅在允许回退时使用）

        Returns:
            SubAgentResult；任何失败都体现在 success / error 中，不抛异常
        """
        self._execution_count += 1
        config = self._registry.get(request.agent_type) or self._registry.get_by_name(request.agent_type)
        if config is None or not config.enabled:
            self._failure_count += 1
            return SubAgentResult(
                success=False,
                error=f"SubAgent \"{request.agent_type}\" not found. "
                      f"Available agents: {', '.join(self._registry.names()) or 'none'}",
            )

        if cancel_event is not None and cancel_event.is_set():
            return SubAgentResult(success=False, error="Cancelled before execution", cancelled=True)

        channel = self._resolve_channel(config, parent_channel_id)
        if channel is None:
            self._failure_count += 1
            self.logger.error(f"Sub-agent {config.type}: channel not found: {config.channel.channel_id}")
            return SubAgentResult(success=False, error=f"Channel not found: {config.channel.channel_id}")

        conversation_id = f"subagent_{config.type}_{uuid4().hex[:8]}"
        with trace_context(conversation_id, layer=Layer.SUBAGENT, component=config.type):
            result = await self._run(config, channel, request, conversation_id, cancel_event)
        if not result.success:
            self._failure_count += 1
        self.logger.info(
            f"Sub-agent {config.type} finished: success={result.success} steps={result.steps}"
        )
        return result

    async def _run(
        self,
        config: SubAgentConfig,
        channel: ChannelConfig,
        request: SubAgentRequest,
        conversation_id: str,
        parent_cancel: Optional[asyncio.Event],
    ) -> SubAgentResult:
        tool_names = self.available_tools(config)
        store = InMemoryConversationStore()
        await store.append_content(conversation_id, Content.user(request.build_prompt()))

        loop = ToolExecutionLoop(
            channels=self._channels,
            executor=self._executor,
            store=store,
            policy=self._policy,
            adapters=self._adapters,
            transport=self._transport,
            config=LoopConfig(
                max_iterations=config.max_iterations,
                max_runtime_seconds=config.max_runtime_seconds,
                auto_approve=set(tool_names),
                checkpoints_enabled=False,
                stream=self._stream,
            ),
        )

        # 运行时间上限由子循环自己执行，这里只传递父取消
        cancel_event = asyncio.Event()
        watchers = []
        if parent_cancel is not None:
            watchers.append(asyncio.ensure_future(link_cancel(parent_cancel, cancel_event)))

        stats = RunStats()
        try:
            outcome = await loop.run_to_completion(
                conversation_id,
                channel=channel,
                system_instruction=config.system_prompt or None,
                tool_names=tool_names,
                model=config.channel.model_id,
                cancel_event=cancel_event,
                stats=stats,
                resume_orphans=False,
            )
        finally:
            for watcher in watchers:
                watcher.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)

        result = SubAgentResult(
            success=outcome.status == "success",
            response=stats.last_text,
            model_version=stats.model_version or config.channel.model_id or channel.model,
            steps=stats.iterations,
            tool_calls=[record.to_dict() for record in stats.tool_calls],
        )
        if outcome.status == "cancelled":
            result.error = "Cancelled during execution"
            result.cancelled = True
        elif outcome.error:
            result.error = outcome.error["message"]
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {
            "execution_count": self._execution_count,
            "failure_count": self._failure_count,
            "registered_agents": len(self._registry),
        }


def _tool_description(registry: SubAgentRegistry, executor: SubAgentExecutor) -> str:
    configs = registry.list()
    if not configs:
        return (
            "Invoke a specialized sub-agent to handle a specific task.\n\n"
            "No sub-agents are currently configured."
        )
    lines = [
        "Invoke a specialized sub-agent to handle a specific task. "
        "The sub-agent has its own tools and returns its final answer.",
        "",
        "Available agents:",
    ]
    for config in configs:
        tools = executor.available_tools(config)
        lines.append(f"- \"{config.name}\": {config.description or 'No description'}")
        lines.append(f"  Tools ({len(tools)}), limits: {config.limits_summary()}")
    return "\n".join(lines)


def create_subagents_tool(executor: SubAgentExecutor, tools: ToolRegistry) -> Tool:
    """
    把子代理执行器注册为 subagents 工具

    工具参数: agent_name, prompt, context（可选）。
    父调用的 cancel_event 和渠道从执行上下文中取得。
    """
    registry = executor.registry

    async def subagents(
        agent_name: str = "",
        prompt: str = "",
        context: Optional[str] = None,
        tool_context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not agent_name:
            raise ToolExecutionError(SUBAGENTS_TOOL_NAME, "agent_name is required")
        if not prompt:
            raise ToolExecutionError(SUBAGENTS_TOOL_NAME, "prompt is required")

        tool_context = tool_context or {}
        result = await executor.execute(
            SubAgentRequest(agent_type=agent_name, prompt=prompt, context=context),
            cancel_event=tool_context.get("cancel_event"),
            parent_channel_id=tool_context.get("channel_id"),
        )
        if result.success:
            return {"success": True, "result": result.to_dict()}
        return {"success": False, "error": result.error, "result": result.to_dict()}

    agent_property: Dict[str, Any] = {
        "type": "string",
        "description": "The name of the sub-agent to invoke.",
    }
    if registry.names():
        agent_property["enum"] = registry.names()

    return tools.register(
        SUBAGENTS_TOOL_NAME,
        subagents,
        description=_tool_description(registry, executor),
        parameters={
            "type": "object",
            "properties": {
                "agent_name": agent_property,
                "prompt": {
                    "type": "string",
                    "description": "The task for the sub-agent. Be specific about what it should accomplish.",
                },
                "context": {
                    "type": "string",
                    "description": "Optional background for the sub-agent: file paths, snippets, requirements.",
                },
            },
            "required": ["agent_name", "prompt"],
        },
        # 每个子代理自带运行时间上限，父取消也会传递
        timeout=None,
        category="agents",
    )
