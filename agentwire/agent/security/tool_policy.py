"""
Tool Policy

按模式决定工具调用是否允许：
- readonly: 拒绝危险工具（写文件、删除、建目录、执行命令等）
- plan: 拒绝危险工具，但 write_file 写入计划文档目录时例外放行
- 其他模式: 全部允许，除非调用方提供了自定义危险工具集

决策是纯函数，不做任何 I/O。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from agentwire.system.services.logger import Layer, LoggerMixin

READONLY_DANGEROUS_TOOLS: FrozenSet[str] = frozenset({
    "apply_diff",
    "write_file",
    "delete_file",
    "create_directory",
    "execute_command",
})

# plan 模式下可例外写入计划文档的工具
PLAN_WRITE_TOOLS: FrozenSet[str] = frozenset({"write_file"})

DEFAULT_PLAN_DIR = ".cursor/plans/"
DEFAULT_PLAN_SUFFIX = ".md"


class Mode:
    """内置模式名"""
    AGENT = "agent"
    READONLY = "readonly"
    PLAN = "plan"


class PolicyDecision(Enum):
    """策略决策"""
    ALLOW = "allow"
    DENY = "deny"
    ALLOW_WITH_EXCEPTION = "allow_with_exception"


@dataclass(frozen=True)
class PolicyResult:
    """策略检查结果；拒绝不是异常，而是一个普通的值"""
    decision: PolicyDecision
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.decision != PolicyDecision.DENY


def _matches_plan_dir(path: str, plan_dir: str, suffix: str) -> bool:
    if not path.startswith(plan_dir):
        return False
    relative = path[len(plan_dir):]
    return bool(relative) and relative.endswith(suffix) and relative != suffix.lstrip("/")


def is_plan_path_allowed(
    path: str,
    plan_dir: str = DEFAULT_PLAN_DIR,
    suffix: str = DEFAULT_PLAN_SUFFIX,
) -> bool:
    """
    检查路径是否允许在 plan 模式下写入

    允许: .cursor/plans/x.plan.md、.cursor/plans/sub/doc.md、
    以及带一个工作区名前缀的 ws/.cursor/plans/x.md。
    拒绝: 空路径、绝对路径、盘符、包含 .. 的路径、目录路径、其他扩展名。
    """
    if not path:
        return False
    normalized = path.replace("\\", "/")

    if normalized.startswith("/"):
        return False
    if len(normalized) >= 2 and normalized[1] == ":" and normalized[0].isalpha():
        return False
    if ".." in normalized:
        return False
    if normalized.endswith("/"):
        return False

    if _matches_plan_dir(normalized, plan_dir, suffix):
        return True

    # 多工作区时路径可能带一个工作区名前缀
    head, sep, rest = normalized.partition("/")
    if sep and head and not head.startswith("."):
        return _matches_plan_dir(rest, plan_dir, suffix)
    return False


def extract_target_paths(args: Optional[Dict[str, Any]]) -> List[str]:
    """
    提取写入类工具参数中的目标路径

    支持 {"path": ...}、{"files": [{"path": ...}]} 和 {"files": ["a.md"]}
    """
    if not args:
        return []
    paths: List[str] = []
    if isinstance(args.get("path"), str):
        paths.append(args["path"])
    files = args.get("files")
    if isinstance(files, list):
        for item in files:
            if isinstance(item, dict) and isinstance(item.get("path"), str):
                paths.append(item["path"])
            elif isinstance(item, str):
                paths.append(item)
    return paths


@dataclass(frozen=True)
class ToolPolicyContext:
    """
    策略上下文

    dangerous_tools 为 None 表示该模式不限制任何工具；
    allowed_tools 不为 None 时作为白名单使用。
    """
    mode: str = Mode.AGENT
    dangerous_tools: Optional[FrozenSet[str]] = None
    plan_path_predicate: Callable[[str], bool] = is_plan_path_allowed
    allowed_tools: Optional[FrozenSet[str]] = None

    @classmethod
    def for_mode(
        cls,
        mode: str,
        custom_dangerous_tools: Optional[Iterable[str]] = None,
        allowed_tools: Optional[Iterable[str]] = None,
        plan_dir: str = DEFAULT_PLAN_DIR,
        plan_suffix: str = DEFAULT_PLAN_SUFFIX,
    ) -> "ToolPolicyContext":
        """按模式名创建上下文，readonly / plan 默认使用内置危险工具集"""
        if custom_dangerous_tools is not None:
            dangerous: Optional[FrozenSet[str]] = frozenset(custom_dangerous_tools)
        elif mode in (Mode.READONLY, Mode.PLAN):
            dangerous = READONLY_DANGEROUS_TOOLS
        else:
            dangerous = None

        if plan_dir == DEFAULT_PLAN_DIR and plan_suffix == DEFAULT_PLAN_SUFFIX:
            predicate = is_plan_path_allowed
        else:
            def predicate(path: str) -> bool:
                return is_plan_path_allowed(path, plan_dir, plan_suffix)

        return cls(
            mode=mode,
            dangerous_tools=dangerous,
            plan_path_predicate=predicate,
            allowed_tools=frozenset(allowed_tools) if allowed_tools is not None else None,
        )


def evaluate_tool_policy(
    context: ToolPolicyContext,
    tool_name: str,
    args: Optional[Dict[str, Any]] = None,
) -> PolicyResult:
    """
    策略决策（纯函数）

    Args:
        context: 策略上下文
        tool_name: 工具名称
        args: 调用参数

    Returns:
        PolicyResult
    """
    if context.allowed_tools is not None and tool_name not in context.allowed_tools:
        return PolicyResult(PolicyDecision.DENY, f"Tool '{tool_name}' is not available in {context.mode} mode")

    if context.mode == Mode.PLAN and tool_name in PLAN_WRITE_TOOLS:
        paths = extract_target_paths(args)
        if not paths:
            return PolicyResult(PolicyDecision.DENY, f"Tool '{tool_name}' requires a target path in plan mode")
        rejected = [p for p in paths if not context.plan_path_predicate(p)]
        if rejected:
            return PolicyResult(
                PolicyDecision.DENY,
                f"Plan mode only allows writing plan documents; rejected paths: {', '.join(rejected)}",
            )
        return PolicyResult(PolicyDecision.ALLOW_WITH_EXCEPTION, "Plan document write")

    if context.dangerous_tools is not None and tool_name in context.dangerous_tools:
        return PolicyResult(PolicyDecision.DENY, f"Tool '{tool_name}' is not allowed in {context.mode} mode")

    return PolicyResult(PolicyDecision.ALLOW)


class ToolPolicy(LoggerMixin):
    """
    工具策略

    包装策略上下文，供工具循环查询。
    """

    _log_layer = Layer.POLICY

    def __init__(self, context: Optional[ToolPolicyContext] = None):
        self._context = context or ToolPolicyContext()

    @property
    def context(self) -> ToolPolicyContext:
        return self._context

    @property
    def mode(self) -> str:
        return self._context.mode

    def check(self, tool_name: str, args: Optional[Dict[str, Any]] = None) -> PolicyResult:
        """检查一次工具调用"""
        return evaluate_tool_policy(self._context, tool_name, args)

    def filter_tools(self, tool_names: Iterable[str]) -> List[str]:
        """
        过滤出本模式下可以声明给模型的工具

        plan 模式下的写入工具保留（具体路径在调用时检查）。
        """
        result = []
        for name in tool_names:
            if self._context.mode == Mode.PLAN and name in PLAN_WRITE_TOOLS:
                if self._context.allowed_tools is None or name in self._context.allowed_tools:
                    result.append(name)
                continue
            if self.check(name).allowed:
                result.append(name)
        return result

    def get_info(self) -> Dict[str, Any]:
        return {
            "mode": self._context.mode,
            "dangerous_tools": sorted(self._context.dangerous_tools or []),
            "allowed_tools": sorted(self._context.allowed_tools) if self._context.allowed_tools is not None else None,
        }


def create_tool_policy(
    mode: str = Mode.AGENT,
    custom_dangerous_tools: Optional[Iterable[str]] = None,
    **kwargs,
) -> ToolPolicy:
    """
    创建工具策略

    Examples:
        policy = create_tool_policy("readonly")
        policy.check("write_file").allowed  # False
    """
    return ToolPolicy(ToolPolicyContext.for_mode(mode, custom_dangerous_tools, **kwargs))
