"""
渠道配置

一个渠道 = 一种后端协议 + 地址 + 凭证 + 模型 + 生成参数。
支持在字符串中引用环境变量。
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from agentwire.system.llm.errors import ConfigError
from agentwire.system.services.logger import Layer, LoggerMixin

_ENV_PATTERN = re.compile(r'\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)')


def resolve_env_vars(value: Any) -> Any:
    """
    解析环境变量

    支持 ${VAR_NAME} 或 $VAR_NAME 格式，未定义的变量保持原样
    """
    if isinstance(value, str):
        def replace(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        return _ENV_PATTERN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    return value


class ChannelType(str, Enum):
    """后端协议族"""
    GEMINI = "gemini"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OPENAI_RESPONSES = "openai-responses"


DEFAULT_BASE_URLS = {
    ChannelType.GEMINI: "https://generativelanguage.googleapis.com/v1beta",
    ChannelType.OPENAI: "https://api.openai.com/v1",
    ChannelType.ANTHROPIC: "https://api.anthropic.com",
    ChannelType.OPENAI_RESPONSES: "https://api.openai.com/v1",
}


@dataclass
class ChannelConfig:
    """
    单个渠道的配置

    options 中的键只有在 options_enabled 中显式为 True 时才会发给后端。
    use_authorization_header 为 True 时使用 Authorization: Bearer，
    否则使用该后端的自定义密钥头。
    """
    id: str
    type: ChannelType
    model: str = ""
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout: float = 120.0
    use_authorization_header: bool = False
    options: Dict[str, Any] = field(default_factory=dict)
    options_enabled: Dict[str, bool] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.type, ChannelType):
            try:
                self.type = ChannelType(self.type)
            except ValueError:
                raise ConfigError(f"Unknown channel type: {self.type}")
        self.api_key = resolve_env_vars(self.api_key)
        self.base_url = resolve_env_vars(self.base_url)
        self.headers = resolve_env_vars(self.headers)
        self.extra = resolve_env_vars(self.extra)

    @property
    def effective_base_url(self) -> str:
        """去掉末尾斜杠的基础地址，未配置时使用后端默认地址"""
        return (self.base_url or DEFAULT_BASE_URLS[self.type]).rstrip("/")

    @classmethod
    def from_dict(cls, data: dict) -> "ChannelConfig":
        """从字典创建"""
        known_keys = {
            "id", "type", "model", "api_key", "base_url", "timeout",
            "use_authorization_header", "options", "options_enabled",
            "headers", "enabled",
        }
        extra = {k: v for k, v in data.items() if k not in known_keys}
        if "type" not in data:
            raise ConfigError(f"Channel {data.get('id', '?')} is missing 'type'")

        return cls(
            id=data.get("id", ""),
            type=data["type"],
            model=data.get("model", ""),
            api_key=data.get("api_key"),
            base_url=data.get("base_url"),
            timeout=data.get("timeout", 120.0),
            use_authorization_header=data.get("use_authorization_header", False),
            options=dict(data.get("options") or {}),
            options_enabled=dict(data.get("options_enabled") or {}),
            headers=dict(data.get("headers") or {}),
            enabled=data.get("enabled", True),
            extra=extra,
        )

    def to_dict(self) -> dict:
        """转换为字典（不输出密钥）"""
        result = {
            "id": self.id,
            "type": self.type.value,
            "model": self.model,
            "timeout": self.timeout,
            "use_authorization_header": self.use_authorization_header,
            "options": self.options,
            "options_enabled": self.options_enabled,
            "enabled": self.enabled,
        }
        if self.base_url:
            result["base_url"] = self.base_url
        if self.headers:
            result["headers"] = self.headers
        if self.extra:
            result.update(self.extra)
        return result


class ChannelRegistry(LoggerMixin):
    """
    渠道注册表

    启动时构建一次，以引用方式传给工具循环和子代理执行器。
    对核心而言是只读的。
    """

    _log_layer = Layer.CONFIG

    def __init__(
        self,
        channels: Optional[List[ChannelConfig]] = None,
        default_channel: Optional[str] = None,
    ):
        self._channels: Dict[str, ChannelConfig] = {}
        for channel in channels or []:
            self.add(channel)
        self.default_channel = default_channel

    def add(self, channel: ChannelConfig) -> None:
        """添加渠道"""
        if not channel.id:
            raise ConfigError("Channel id must not be empty")
        self._channels[channel.id] = channel
        self.log_debug(f"Registered channel {channel.id} ({channel.type.value})")

    def find(self, channel_id: Optional[str]) -> Optional[ChannelConfig]:
        """查找启用的渠道，找不到返回 None"""
        if channel_id is None:
            channel_id = self.default_channel
        channel = self._channels.get(channel_id) if channel_id else None
        if channel is None or not channel.enabled:
            return None
        return channel

    def get(self, channel_id: Optional[str] = None) -> ChannelConfig:
        """
        获取渠道配置

        Raises:
            ConfigError: 渠道不存在或已禁用
        """
        channel = self.find(channel_id)
        if channel is None:
            raise ConfigError(
                f"Channel not found: {channel_id or self.default_channel}. "
                f"Available: {self.list_ids()}"
            )
        return channel

    def list_ids(self) -> List[str]:
        return [cid for cid, c in self._channels.items() if c.enabled]

    def __len__(self) -> int:
        return len(self._channels)
