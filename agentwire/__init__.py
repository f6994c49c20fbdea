"""
agentwire - 多后端 LLM 工具调用代理核心

一个对话代理对接多种可互换的大模型后端（不同的协议、鉴权和流式格式），
在其上运行统一的多轮工具调用循环。

组成（从底层到上层）：
- 协议适配器 (system.llm.adapters): Gemini / OpenAI / Anthropic / OpenAI Responses
- 流累积器 (agent.runtime.stream_accumulator): 增量 → 有序的流事件
- 工具策略 (agent.security.tool_policy): 按模式放行或拒绝工具调用
- 工具循环 (agent.runtime.tool_loop): 模型轮次与工具调用交替执行
- 子代理 (agent.subagent): 受限的嵌套工具循环

快速开始：
    center = ConfigCenter("configs/agentwire.yaml")
    await center.load()

    loop = ToolExecutionLoop(
        channels=center.build_channel_registry(),
        executor=ToolExecutor(registry),
        store=InMemoryConversationStore(),
        policy=center.build_policy("agent"),
    )
    await loop.add_user_message("conv-1", "你好")
    async for chunk in loop.run("conv-1"):
        print(chunk.to_dict())

CLI使用：
    agentwire -c configs/agentwire.yaml
"""

__version__ = "0.1.0"

from agentwire.agent.infrastructure.conversation_store import InMemoryConversationStore
from agentwire.agent.runtime.tool_executor import ToolExecutor, ToolRegistry
from agentwire.agent.runtime.tool_loop import LoopConfig, ToolExecutionLoop
from agentwire.system.services.config_center import ConfigCenter

__all__ = [
    "ConfigCenter",
    "InMemoryConversationStore",
    "LoopConfig",
    "ToolExecutionLoop",
    "ToolExecutor",
    "ToolRegistry",
    "__version__",
]
