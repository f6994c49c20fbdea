"""
Sub-agent Registry

子代理配置与注册表。

注册表在启动时显式构建，然后传给 SubAgentExecutor，
不存在全局单例。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from agentwire.system.llm.errors import ConfigError
from agentwire.system.services.logger import Layer, LoggerMixin

DEFAULT_MAX_ITERATIONS = 20
DEFAULT_MAX_RUNTIME_SECONDS = 300

TOOL_FILTER_MODES = ("all", "builtin", "mcp", "whitelist", "blacklist")


@dataclass
class SubAgentChannel:
    """子代理使用的渠道和模型，model_id 为空时用渠道默认模型"""
    channel_id: str
    model_id: Optional[str] = None


@dataclass
class SubAgentTools:
    """
    子代理工具过滤配置

    whitelist / blacklist 为空时退回旧版的 list 字段。
    """
    mode: str = "all"
    whitelist: List[str] = field(default_factory=list)
    blacklist: List[str] = field(default_factory=list)
    include_mcp: bool = False
    list: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.mode not in TOOL_FILTER_MODES:
            raise ConfigError(f"Unknown tool filter mode: {self.mode}")

    @property
    def effective_whitelist(self) -> List[str]:
        return self.whitelist or self.list

    @property
    def effective_blacklist(self) -> List[str]:
        return self.blacklist or self.list


@dataclass
class SubAgentConfig:
    """子代理配置；-1 表示不限制"""
    type: str
    name: str
    channel: SubAgentChannel
    description: str = ""
    system_prompt: str = ""
    tools: SubAgentTools = field(default_factory=SubAgentTools)
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_runtime_seconds: float = DEFAULT_MAX_RUNTIME_SECONDS
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubAgentConfig":
        channel = data.get("channel") or {}
        if isinstance(channel, str):
            channel = {"channel_id": channel}
        tools = data.get("tools") or {}
        return cls(
            type=data["type"],
            name=data.get("name") or data["type"],
            description=data.get("description", ""),
            system_prompt=data.get("system_prompt", ""),
            channel=SubAgentChannel(
                channel_id=channel.get("channel_id", ""),
                model_id=channel.get("model_id"),
            ),
            tools=SubAgentTools(
                mode=tools.get("mode", "all"),
                list=list(tools.get("list") or []),
                whitelist=list(tools.get("whitelist") or []),
                blacklist=list(tools.get("blacklist") or []),
                include_mcp=bool(tools.get("include_mcp", False)),
            ),
            max_iterations=data.get("max_iterations", DEFAULT_MAX_ITERATIONS),
            max_runtime_seconds=data.get("max_runtime_seconds", DEFAULT_MAX_RUNTIME_SECONDS),
            enabled=data.get("enabled", True),
        )

    def limits_summary(self) -> str:
        iterations = "unlimited" if self.max_iterations == -1 else str(self.max_iterations)
        runtime = "unlimited" if self.max_runtime_seconds == -1 else f"{self.max_runtime_seconds:g}s"
        return f"max {iterations} iterations, max {runtime} runtime"


class SubAgentRegistry(LoggerMixin):
    """子代理注册表"""

    _log_layer = Layer.SUBAGENT

    def __init__(self, configs: Optional[List[SubAgentConfig]] = None):
        self._configs: Dict[str, SubAgentConfig] = {}
        for config in configs or []:
            self.register(config)

    def register(self, config: SubAgentConfig) -> None:
        if not config.type:
            raise ConfigError("Sub-agent type must not be empty")
        if config.type in self._configs:
            self.logger.warning(f"Sub-agent {config.type} re-registered")
        self._configs[config.type] = config

    def unregister(self, agent_type: str) -> bool:
        return self._configs.pop(agent_type, None) is not None

    def get(self, agent_type: str) -> Optional[SubAgentConfig]:
        """按类型获取（包括已禁用的）"""
        return self._configs.get(agent_type)

    def get_by_name(self, name: str) -> Optional[SubAgentConfig]:
        """按名称或类型查找启用的子代理"""
        for config in self._configs.values():
            if config.enabled and name in (config.name, config.type):
                return config
        return None

    def list(self, include_disabled: bool = False) -> List[SubAgentConfig]:
        return [c for c in self._configs.values() if include_disabled or c.enabled]

    def names(self) -> List[str]:
        return [c.name for c in self.list()]

    def set_enabled(self, agent_type: str, enabled: bool) -> bool:
        config = self._configs.get(agent_type)
        if config is None:
            return False
        config.enabled = enabled
        return True

    def __contains__(self, agent_type: str) -> bool:
        return agent_type in self._configs

    def __len__(self) -> int:
        return len(self._configs)
