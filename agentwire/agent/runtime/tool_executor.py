"""
Tool Executor

工具调用执行器，负责：
- 工具注册和管理（显式注册表，启动时构建）
- 工具调用状态机
- 工具执行与结果封装

策略检查不在这里进行，由工具循环在调用执行器之前完成，
被拒绝的调用不会到达执行器。
"""

from __future__ import annotations

import asyncio
import inspect
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from agentwire.system.llm.errors import InvalidToolCallTransition, ToolExecutionError
from agentwire.system.llm.message import FunctionCall, FunctionResponse, ToolDeclaration
from agentwire.system.services.logger import Layer, LoggerMixin


class ToolCallStatus(str, Enum):
    """工具调用状态"""
    PENDING = "pending"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


# 单调迁移：只能向前
_TRANSITIONS = {
    ToolCallStatus.PENDING: {
        ToolCallStatus.AWAITING_APPROVAL,
        ToolCallStatus.EXECUTING,
        ToolCallStatus.FAILED,
    },
    ToolCallStatus.AWAITING_APPROVAL: {ToolCallStatus.EXECUTING, ToolCallStatus.FAILED},
    ToolCallStatus.EXECUTING: {ToolCallStatus.COMPLETED, ToolCallStatus.FAILED},
    ToolCallStatus.COMPLETED: set(),
    ToolCallStatus.FAILED: set(),
}

TERMINAL_STATUSES = frozenset({ToolCallStatus.COMPLETED, ToolCallStatus.FAILED})

DEFAULT_TOOL_TIMEOUT = 60.0


@dataclass
class ToolCall:
    """
    一轮中的一次工具调用

    result 只在进入 completed / failed 时设置。
    """
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: Optional[Dict[str, Any]] = None

    @classmethod
    def from_function_call(cls, call: FunctionCall) -> "ToolCall":
        return cls(id=call.id, name=call.name, args=dict(call.args))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: ToolCallStatus, result: Optional[Dict[str, Any]] = None) -> None:
        """
        迁移到新状态

        Raises:
            InvalidToolCallTransition: 非法迁移，或在非终态设置结果
        """
        if status not in _TRANSITIONS[self.status]:
            raise InvalidToolCallTransition(
                f"Tool call {self.id} ({self.name}): {self.status.value} -> {status.value}"
            )
        if status in TERMINAL_STATUSES:
            self.result = result if result is not None else {}
        elif result is not None:
            raise InvalidToolCallTransition(
                f"Tool call {self.id}: result may only be set on completion or failure"
            )
        self.status = status

    def complete(self, result: Dict[str, Any]) -> None:
        self.transition(ToolCallStatus.COMPLETED, result)

    def fail(self, error: str) -> None:
        self.transition(ToolCallStatus.FAILED, {"success": False, "error": error})

    def to_function_response(self) -> FunctionResponse:
        return FunctionResponse(id=self.id, name=self.name, response=dict(self.result or {}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "args": self.args,
            "status": self.status.value,
            "result": self.result,
        }


@dataclass
class ToolResult:
    """工具执行结果"""
    call_id: str
    tool_name: str
    success: bool = True
    result: Any = None
    error: Optional[str] = None
    executed_at: str = field(default_factory=lambda: datetime.now().isoformat())
    duration_ms: float = 0.0

    def to_response(self) -> Dict[str, Any]:
        """作为 functionResponse 回传给模型的内容"""
        if self.success:
            return {"success": True, "result": self.result}
        return {"success": False, "error": self.error or "Tool execution failed"}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.call_id,
            "name": self.tool_name,
            "result": self.to_response(),
            "duration_ms": self.duration_ms,
            "executed_at": self.executed_at,
        }

    def to_string(self) -> str:
        """转换为字符串（用于日志和子代理审计）"""
        if self.success:
            return json.dumps(self.result, ensure_ascii=False, default=str)
        return f"Error: {self.error}"


@dataclass
class Tool:
    """工具 = 声明 + 处理函数"""
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: Callable
    is_async: bool = False
    takes_context: bool = False
    timeout: Optional[float] = DEFAULT_TOOL_TIMEOUT
    requires_confirmation: bool = False
    category: str = "builtin"
    tags: List[str] = field(default_factory=list)

    @property
    def declaration(self) -> ToolDeclaration:
        return ToolDeclaration(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
            category=self.category,
        )


ToolHandler = Callable[..., Any]
ToolFilter = Callable[[Tool], bool]

MCP_PREFIX = "mcp__"

# 处理函数接收执行上下文的参数名
TOOL_CONTEXT_PARAM = "tool_context"


class ToolRegistry(LoggerMixin):
    """
    工具注册表

    启动时构建一次，之后对工具循环只读。
    处理函数若声明了 tool_context 参数，执行时会传入执行上下文。
    """

    _log_layer = Layer.LOOP

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = DEFAULT_TOOL_TIMEOUT,
        requires_confirmation: bool = False,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Tool:
        """
        注册工具

        Args:
            name: 工具名称，MCP 工具使用 mcp__{serverId}__{toolName}
            handler: 处理函数（同步或异步）
            description: 描述
            parameters: 参数 schema，缺省时从函数签名推断
            timeout: 超时时间（秒），None 表示不限时
            requires_confirmation: 执行前是否需要用户确认
            category: builtin / mcp，缺省按名称判断
            tags: 标签
        """
        if parameters is None:
            parameters = self._infer_parameters(handler)

        tool = Tool(
            name=name,
            description=description or handler.__doc__ or "",
            parameters=parameters,
            handler=handler,
            is_async=asyncio.iscoroutinefunction(handler),
            takes_context=TOOL_CONTEXT_PARAM in inspect.signature(handler).parameters,
            timeout=timeout,
            requires_confirmation=requires_confirmation,
            category=category or ("mcp" if name.startswith(MCP_PREFIX) else "builtin"),
            tags=tags or [],
        )
        self._tools[name] = tool
        self.logger.debug(f"注册工具: {name}")
        return tool

    def register_decorator(
        self,
        name: Optional[str] = None,
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """装饰器方式注册工具"""
        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(
                name=name or handler.__name__,
                handler=handler,
                description=description,
                parameters=parameters,
                **kwargs,
            )
            return handler
        return decorator

    def _infer_parameters(self, handler: ToolHandler) -> Dict[str, Any]:
        """从函数签名推断参数 schema"""
        properties = {}
        required = []
        for param_name, param in inspect.signature(handler).parameters.items():
            if param_name in ("self", "cls", TOOL_CONTEXT_PARAM):
                continue
            if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
                continue

            prop = {"type": "string"}
            anno = param.annotation
            if anno is int:
                prop["type"] = "integer"
            elif anno is float:
                prop["type"] = "number"
            elif anno is bool:
                prop["type"] = "boolean"
            elif anno is list:
                prop["type"] = "array"
            elif anno is dict:
                prop["type"] = "object"
            properties[param_name] = prop

            if param.default is inspect.Parameter.empty:
                required.append(param_name)

        return {"type": "object", "properties": properties, "required": required}

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def list(
        self,
        category: Optional[str] = None,
        filter_func: Optional[ToolFilter] = None,
    ) -> List[Tool]:
        """列出工具，可按类别或自定义函数过滤"""
        tools = list(self._tools.values())
        if category:
            tools = [t for t in tools if t.category == category]
        if filter_func:
            tools = [t for t in tools if filter_func(t)]
        return tools

    def names(self) -> List[str]:
        return list(self._tools)

    def declarations(self, names: Optional[List[str]] = None) -> List[ToolDeclaration]:
        """获取工具声明，names 为 None 时返回全部"""
        if names is None:
            return [t.declaration for t in self._tools.values()]
        return [self._tools[n].declaration for n in names if n in self._tools]

    def needs_confirmation(self, name: str) -> bool:
        tool = self._tools.get(name)
        return bool(tool and tool.requires_confirmation)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


async def run_cancellable(awaitable: Awaitable[Any], cancel_event: Optional[asyncio.Event]) -> Any:
    """
    等待结果，取消信号触发时取消该任务

    Raises:
        asyncio.CancelledError: 取消信号已触发
    """
    task = asyncio.ensure_future(awaitable)
    if cancel_event is None:
        return await task
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if task.done():
        return task.result()
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise asyncio.CancelledError()


async def link_cancel(source: asyncio.Event, target: asyncio.Event) -> None:
    """source 触发后触发 target"""
    await source.wait()
    target.set()


class ToolExecutor(LoggerMixin):
    """
    工具执行器

    对外接口: execute(name, args, context) -> ToolResult。
    context 中的 cancel_event 会中断正在执行的工具。
    """

    _log_layer = Layer.LOOP

    def __init__(self, registry: Optional[ToolRegistry] = None):
        self._registry = registry or ToolRegistry()

        self._execution_count = 0
        self._error_count = 0

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute(
        self,
        name: str,
        args: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
        call_id: str = "",
    ) -> ToolResult:
        """
        执行工具

        Args:
            name: 工具名称
            args: 参数
            context: 执行上下文（conversation_id、cancel_event、tool_id 等）
            call_id: 调用ID

        Returns:
            执行结果；异常、超时、取消都被封装为失败结果
        """
        start = time.monotonic()
        self._execution_count += 1
        context = dict(context or {})
        context.setdefault("tool_id", call_id)

        tool = self._registry.get(name)
        if tool is None:
            self._error_count += 1
            return ToolResult(call_id=call_id, tool_name=name, success=False, error=f"Tool not found: {name}")

        kwargs = dict(args)
        if tool.takes_context:
            kwargs[TOOL_CONTEXT_PARAM] = context

        # wait_for 的 timeout 为 None 时不限时
        timeout = tool.timeout
        try:
            if tool.is_async:
                awaitable = tool.handler(**kwargs)
            else:
                loop = asyncio.get_running_loop()
                awaitable = loop.run_in_executor(None, lambda: tool.handler(**kwargs))
            result = await run_cancellable(
                asyncio.wait_for(awaitable, timeout=timeout),
                context.get("cancel_event"),
            )
        except asyncio.TimeoutError:
            self._error_count += 1
            return ToolResult(
                call_id=call_id,
                tool_name=name,
                success=False,
                error=f"Tool execution timed out ({timeout}s)",
                duration_ms=(time.monotonic() - start) * 1000,
            )
        except asyncio.CancelledError:
            self._error_count += 1
            return ToolResult(
                call_id=call_id,
                tool_name=name,
                success=False,
                error="Cancelled by user",
                duration_ms=(time.monotonic() - start) * 1000,
            )
        except ToolExecutionError as e:
            self._error_count += 1
            self.logger.warning(f"工具报告失败 {name}: {e.message}")
            return ToolResult(
                call_id=call_id,
                tool_name=name,
                success=False,
                error=e.message,
                duration_ms=(time.monotonic() - start) * 1000,
            )
        except Exception as e:
            self._error_count += 1
            self.logger.error(f"工具执行失败 {name}: {e}")
            return ToolResult(
                call_id=call_id,
                tool_name=name,
                success=False,
                error=str(e) or e.__class__.__name__,
                duration_ms=(time.monotonic() - start) * 1000,
            )

        duration = (time.monotonic() - start) * 1000
        if isinstance(result, dict) and "success" in result:
            # 工具自行返回 {success, result|error} 结构
            return ToolResult(
                call_id=call_id,
                tool_name=name,
                success=bool(result["success"]),
                result=result.get("result", {k: v for k, v in result.items() if k != "success"}),
                error=result.get("error"),
                duration_ms=duration,
            )
        return ToolResult(call_id=call_id, tool_name=name, success=True, result=result, duration_ms=duration)

    def deny(self, call: ToolCall, reason: str) -> ToolResult:
        """策略拒绝时的合成失败结果"""
        return ToolResult(call_id=call.id, tool_name=call.name, success=False, error=reason)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "execution_count": self._execution_count,
            "error_count": self._error_count,
            "success_rate": (
                (self._execution_count - self._error_count) / self._execution_count
                if self._execution_count > 0 else 0
            ),
            "registered_tools": len(self._registry),
        }
