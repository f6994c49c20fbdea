"""
适配器工厂

按渠道类型提供协议适配器。适配器类在构造时显式注册，
不做任何延迟导入。
"""

from __future__ import annotations

from typing import Dict, Optional, Type

from agentwire.system.llm.adapters.anthropic import AnthropicAdapter
from agentwire.system.llm.adapters.base import BaseAdapter
from agentwire.system.llm.adapters.gemini import GeminiAdapter
from agentwire.system.llm.adapters.openai import OpenAIAdapter
from agentwire.system.llm.adapters.openai_responses import OpenAIResponsesAdapter
from agentwire.system.llm.config import ChannelConfig, ChannelType
from agentwire.system.llm.errors import ConfigError
from agentwire.system.services.logger import Layer, LoggerMixin

BUILTIN_ADAPTERS: Dict[ChannelType, Type[BaseAdapter]] = {
    ChannelType.GEMINI: GeminiAdapter,
    ChannelType.OPENAI: OpenAIAdapter,
    ChannelType.ANTHROPIC: AnthropicAdapter,
    ChannelType.OPENAI_RESPONSES: OpenAIResponsesAdapter,
}


class AdapterFactory(LoggerMixin):
    """
    适配器工厂

    适配器无状态，每种类型只创建一个实例并复用。
    """

    _log_layer = Layer.ADAPTER

    def __init__(self, adapters: Optional[Dict[ChannelType, Type[BaseAdapter]]] = None):
        self._classes: Dict[ChannelType, Type[BaseAdapter]] = dict(
            BUILTIN_ADAPTERS if adapters is None else adapters
        )
        self._instances: Dict[ChannelType, BaseAdapter] = {}

    def register(self, channel_type: ChannelType, adapter_class: Type[BaseAdapter]) -> None:
        """
        注册适配器类

        Args:
            channel_type: 渠道类型
            adapter_class: 适配器类
        """
        self._classes[channel_type] = adapter_class
        self._instances.pop(channel_type, None)
        self.log_info(f"Registered adapter for {channel_type.value}: {adapter_class.__name__}")

    def get(self, channel_type: ChannelType) -> BaseAdapter:
        """
        获取适配器

        Raises:
            ConfigError: 类型未注册
        """
        channel_type = ChannelType(channel_type)
        if channel_type not in self._instances:
            if channel_type not in self._classes:
                raise ConfigError(
                    f"No adapter for channel type: {channel_type.value}. "
                    f"Available: {[t.value for t in self._classes]}"
                )
            self._instances[channel_type] = self._classes[channel_type]()
        return self._instances[channel_type]

    def for_channel(self, channel: ChannelConfig) -> BaseAdapter:
        """获取渠道对应的适配器，并校验配置"""
        adapter = self.get(channel.type)
        if not adapter.validate_config(channel):
            raise ConfigError(f"Invalid configuration for channel {channel.id}: missing credentials or model")
        return adapter


def create_adapter(channel_type: ChannelType) -> BaseAdapter:
    """
    便捷函数：创建单个适配器

    Examples:
        adapter = create_adapter(ChannelType.ANTHROPIC)
        spec = adapter.build_request(request, channel)
    """
    return BUILTIN_ADAPTERS[ChannelType(channel_type)]()
