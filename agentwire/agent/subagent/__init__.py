"""
Sub-agent System

子代理：以工具形式被父循环调用的受限嵌套工具循环。
"""

from agentwire.agent.subagent.registry import (
    SubAgentChannel,
    SubAgentConfig,
    SubAgentRegistry,
    SubAgentTools,
)
from agentwire.agent.subagent.executor import (
    SubAgentExecutor,
    SubAgentRequest,
    SubAgentResult,
    create_subagents_tool,
    resolve_tools,
)

__all__ = [
    "SubAgentChannel",
    "SubAgentConfig",
    "SubAgentRegistry",
    "SubAgentTools",
    "SubAgentExecutor",
    "SubAgentRequest",
    "SubAgentResult",
    "create_subagents_tool",
    "resolve_tools",
]
