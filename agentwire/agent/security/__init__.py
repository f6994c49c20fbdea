"""
Agent Security

模式工具策略：readonly / plan 模式下的危险工具限制。
"""

from agentwire.agent.security.tool_policy import (
    Mode,
    PolicyDecision,
    PolicyResult,
    ToolPolicy,
    ToolPolicyContext,
    create_tool_policy,
    evaluate_tool_policy,
    is_plan_path_allowed,
)

__all__ = [
    "Mode",
    "PolicyDecision",
    "PolicyResult",
    "ToolPolicy",
    "ToolPolicyContext",
    "create_tool_policy",
    "evaluate_tool_policy",
    "is_plan_path_allowed",
]
