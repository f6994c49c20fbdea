"""
Agent Runtime

工具循环运行时：
- ToolExecutor / ToolRegistry: 工具注册与执行
- StreamAccumulator / StreamRouter: 流累积与多对话事件顺序
- ToolExecutionLoop: 多轮工具调用循环
"""

from agentwire.agent.runtime.tool_executor import (
    Tool,
    ToolCall,
    ToolCallStatus,
    ToolExecutor,
    ToolRegistry,
    ToolResult,
)
from agentwire.agent.runtime.stream_accumulator import (
    AccumulatorState,
    StreamAccumulator,
    StreamRouter,
)
from agentwire.agent.runtime.tool_loop import (
    LoopConfig,
    LoopResult,
    RunStats,
    ToolExecutionLoop,
)

__all__ = [
    # Tools
    "Tool",
    "ToolCall",
    "ToolCallStatus",
    "ToolExecutor",
    "ToolRegistry",
    "ToolResult",
    # Stream
    "AccumulatorState",
    "StreamAccumulator",
    "StreamRouter",
    # Loop
    "LoopConfig",
    "LoopResult",
    "RunStats",
    "ToolExecutionLoop",
]
