"""
配置中心

从 YAML 加载渠道、工具循环、模式策略和子代理配置，
并构建运行时对象（渠道注册表、工具策略、子代理注册表）。
支持从.env文件加载环境变量。
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from agentwire.agent.runtime.tool_loop import LoopConfig
from agentwire.agent.security.tool_policy import (
    DEFAULT_PLAN_DIR,
    DEFAULT_PLAN_SUFFIX,
    Mode,
    ToolPolicy,
    create_tool_policy,
)
from agentwire.agent.subagent.registry import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_RUNTIME_SECONDS,
    SubAgentConfig,
    SubAgentRegistry,
)
from agentwire.system.llm.config import ChannelConfig, ChannelRegistry, resolve_env_vars
from agentwire.system.llm.errors import ConfigError
from agentwire.system.services.logger import get_logger

logger = get_logger(__name__)


def load_dotenv(env_path: Optional[Path] = None) -> bool:
    """
    加载.env文件中的环境变量（不覆盖已有值）

    Args:
        env_path: .env文件路径，默认从当前目录向上查找

    Returns:
        是否成功加载
    """
    if env_path is None:
        current = Path.cwd()
        env_path = current / ".env"
        if not env_path.exists():
            for parent in current.parents:
                candidate = parent / ".env"
                if candidate.exists():
                    env_path = candidate
                    break

    if not env_path or not env_path.exists():
        logger.debug(f".env文件不存在: {env_path}")
        return False

    logger.info(f"加载环境变量文件: {env_path}")
    with open(env_path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
                value = value[1:-1]
            if key and key not in os.environ:
                os.environ[key] = value
    return True


class SystemSettings(BaseModel):
    """系统配置"""
    name: str = "agentwire"
    log_level: str = "INFO"
    log_file: Optional[str] = None
    default_channel: Optional[str] = None
    default_mode: str = Mode.AGENT
    conversations_dir: Optional[str] = None


class ChannelSettings(BaseModel):
    """渠道配置（YAML 形式）"""
    type: str
    model: str = ""
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout: float = 120.0
    use_authorization_header: bool = False
    options: Dict[str, Any] = Field(default_factory=dict)
    options_enabled: Dict[str, bool] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)
    enabled: bool = True


class LoopSettings(BaseModel):
    """工具循环配置，-1 表示不限制"""
    max_iterations: int = 50
    max_runtime_seconds: float = -1
    require_tool_success: bool = False
    auto_approve: List[str] = Field(default_factory=list)
    stream: bool = True


class ModeSettings(BaseModel):
    """模式策略配置"""
    dangerous_tools: Optional[List[str]] = None
    allowed_tools: Optional[List[str]] = None
    plan_dir: str = DEFAULT_PLAN_DIR
    plan_suffix: str = DEFAULT_PLAN_SUFFIX
    prompt: Optional[str] = None


class SubAgentChannelSettings(BaseModel):
    channel_id: str
    model_id: Optional[str] = None


class SubAgentToolSettings(BaseModel):
    mode: str = "all"
    whitelist: List[str] = Field(default_factory=list)
    blacklist: List[str] = Field(default_factory=list)
    include_mcp: bool = False
    list: List[str] = Field(default_factory=list)


class SubAgentSettings(BaseModel):
    """单个子代理配置"""
    type: str
    name: Optional[str] = None
    description: str = ""
    system_prompt: str = ""
    channel: SubAgentChannelSettings
    tools: SubAgentToolSettings = Field(default_factory=SubAgentToolSettings)
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_runtime_seconds: float = DEFAULT_MAX_RUNTIME_SECONDS
    enabled: bool = True


class SubAgentsSettings(BaseModel):
    """子代理配置"""
    fallback_to_parent: bool = False
    agents: List[SubAgentSettings] = Field(default_factory=list)


class AgentWireConfig(BaseModel):
    """完整配置"""
    system: SystemSettings = Field(default_factory=SystemSettings)
    channels: Dict[str, ChannelSettings] = Field(default_factory=dict)
    loop: LoopSettings = Field(default_factory=LoopSettings)
    modes: Dict[str, ModeSettings] = Field(default_factory=dict)
    subagents: SubAgentsSettings = Field(default_factory=SubAgentsSettings)


class ConfigCenter:
    """
    配置中心

    负责加载配置并构建运行时对象。
    """

    def __init__(self, config_path: str = "configs/agentwire.yaml"):
        """
        初始化配置中心

        Args:
            config_path: 配置文件路径
        """
        self.config_path = Path(config_path)
        self._config: Optional[AgentWireConfig] = None
        self._raw_config: Dict[str, Any] = {}

    async def load(self) -> AgentWireConfig:
        """
        加载配置文件

        流程:
        1. 加载.env文件中的环境变量
        2. 加载YAML配置文件
        3. 展开配置中的环境变量引用
        4. 解析为配置对象

        Raises:
            ConfigError: 配置格式错误
        """
        load_dotenv(self.config_path.parent.parent / ".env")

        if self.config_path.exists():
            logger.info(f"加载配置文件: {self.config_path}")
            with open(self.config_path, "r", encoding="utf-8") as f:
                self._raw_config = yaml.safe_load(f) or {}
        else:
            logger.warning(f"配置文件不存在，使用默认配置: {self.config_path}")
            self._raw_config = {}

        return self.load_dict(self._raw_config)

    def load_dict(self, data: Dict[str, Any]) -> AgentWireConfig:
        """从字典加载配置（测试和嵌入场景）"""
        self._raw_config = resolve_env_vars(data)
        try:
            self._config = AgentWireConfig(**self._raw_config)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}")
        return self._config

    async def reload(self) -> AgentWireConfig:
        """重新加载配置"""
        logger.info("重新加载配置...")
        return await self.load()

    @property
    def config(self) -> AgentWireConfig:
        """获取当前配置"""
        if self._config is None:
            raise RuntimeError("配置尚未加载，请先调用 load()")
        return self._config

    def get(self, key: str, default: Any = None) -> Any:
        """
        获取配置值

        Args:
            key: 配置键，支持点号分隔的嵌套键
            default: 默认值
        """
        value: Any = self._raw_config
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    @property
    def log_level(self) -> int:
        return getattr(logging, self.config.system.log_level.upper(), logging.INFO)

    def build_channel_registry(self) -> ChannelRegistry:
        """构建渠道注册表"""
        config = self.config
        channels = [
            ChannelConfig.from_dict({"id": channel_id, **settings.model_dump()})
            for channel_id, settings in config.channels.items()
        ]
        default_channel = config.system.default_channel
        if default_channel is None and channels:
            default_channel = channels[0].id
        return ChannelRegistry(channels, default_channel=default_channel)

    def build_loop_config(self) -> LoopConfig:
        settings = self.config.loop
        return LoopConfig(
            max_iterations=settings.max_iterations,
            max_runtime_seconds=settings.max_runtime_seconds,
            require_tool_success=settings.require_tool_success,
            auto_approve=set(settings.auto_approve),
            stream=settings.stream,
        )

    def build_policy(self, mode: Optional[str] = None) -> ToolPolicy:
        """按模式构建工具策略，未配置的模式使用内置默认"""
        mode = mode or self.config.system.default_mode
        settings = self.config.modes.get(mode)
        if settings is None:
            return create_tool_policy(mode)
        return create_tool_policy(
            mode,
            custom_dangerous_tools=settings.dangerous_tools,
            allowed_tools=settings.allowed_tools,
            plan_dir=settings.plan_dir,
            plan_suffix=settings.plan_suffix,
        )

    def mode_prompt(self, mode: Optional[str] = None) -> Optional[str]:
        """模式的动态上下文提示"""
        settings = self.config.modes.get(mode or self.config.system.default_mode)
        return settings.prompt if settings else None

    def build_subagent_registry(self) -> SubAgentRegistry:
        """构建子代理注册表"""
        return SubAgentRegistry([
            SubAgentConfig.from_dict(agent.model_dump())
            for agent in self.config.subagents.agents
        ])

    @property
    def fallback_to_parent(self) -> bool:
        return self.config.subagents.fallback_to_parent
