"""
协议适配器基类

统一请求/响应/流事件与各后端原生格式之间的转换。
适配器不依赖核心的其他部分，也不发起网络请求，
只产出 HttpRequestSpec 交给传输层。
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from agentwire.system.llm.config import ChannelConfig, ChannelType
from agentwire.system.llm.errors import ProtocolError
from agentwire.system.llm.message import (
    Content,
    GenerateRequest,
    GenerateResponse,
    Part,
    Role,
    StreamDelta,
    ToolDeclaration,
)
from agentwire.system.services.logger import Layer, LoggerMixin


@dataclass
class HttpRequestSpec:
    """待发送的HTTP请求描述"""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None
    stream: bool = False
    timeout: float = 120.0


def find_last_user_message_group_index(history: List[Content]) -> int:
    """
    查找最后一组连续用户输入的起始索引

    从后向前查找：先跳过非用户输入内容，找到用户输入后继续向前，
    直到连续组结束。动态提示词插入在该索引之前。

    Returns:
        起始索引；历史中没有用户输入时返回 -1
    """
    first_index = -1
    found = False
    for i in range(len(history) - 1, -1, -1):
        if history[i].is_user_input:
            first_index = i
            found = True
        elif found:
            break
    return first_index


def clean_internal_fields(history: List[Content]) -> List[Content]:
    """
    清理内部字段

    去掉内部标记、用量统计和思考片段，返回新的列表，不修改原历史。
    清理后没有任何片段的内容会被丢弃。
    """
    cleaned = []
    for content in history:
        parts = [Part(
            text=p.text,
            function_call=p.function_call,
            function_response=p.function_response,
        ) for p in content.parts if not p.thought]
        if not parts:
            continue
        cleaned.append(Content(role=content.role, parts=parts))
    return cleaned


def prepare_history(req: GenerateRequest) -> List[Content]:
    """
    在插入点注入动态上下文并清理内部字段

    没有插入点时把动态上下文追加到末尾。
    """
    history = list(req.history)
    if req.dynamic_context:
        context = Content(role=Role.USER, parts=[Part.of_text(req.dynamic_context)])
        index = find_last_user_message_group_index(history)
        if index == -1:
            history.append(context)
        else:
            history.insert(index, context)
    return clean_internal_fields(history)


def select_enabled_options(req: GenerateRequest, channel: ChannelConfig) -> Dict[str, Any]:
    """
    合并渠道与请求的生成参数，只保留启用的键

    请求上的值与开关覆盖渠道上的同名项。
    """
    options = {**channel.options, **req.options}
    enabled = {**channel.options_enabled, **req.options_enabled}
    return {k: v for k, v in options.items() if enabled.get(k) is True and v is not None}


def parse_arguments(raw: Any) -> Dict[str, Any]:
    """解析工具参数JSON，失败时保留原始字符串"""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {"raw": raw}
    return value if isinstance(value, dict) else {"value": value}


class BaseAdapter(ABC, LoggerMixin):
    """
    协议适配器基类

    子类实现:
    - build_request: 统一请求 -> HttpRequestSpec
    - parse_response: 非流式响应 -> GenerateResponse
    - parse_stream_chunk: 单个原始流事件 -> StreamDelta（无法识别时返回 None）
    - convert_tools: 工具声明 -> 后端原生格式
    """

    _log_layer = Layer.ADAPTER
    channel_type: ChannelType

    @abstractmethod
    def build_request(
        self,
        req: GenerateRequest,
        channel: ChannelConfig,
        tools: Optional[List[ToolDeclaration]] = None,
    ) -> HttpRequestSpec:
        """构建生成请求"""
        pass

    @abstractmethod
    def parse_response(self, raw: Dict[str, Any]) -> GenerateResponse:
        """解析非流式响应"""
        pass

    @abstractmethod
    def _parse_event(self, event: Dict[str, Any]) -> Optional[StreamDelta]:
        """解析已解码的单个流事件"""
        pass

    @abstractmethod
    def convert_tools(self, tools: List[ToolDeclaration]) -> List[Dict[str, Any]]:
        """转换工具声明"""
        pass

    @abstractmethod
    def build_models_request(self, channel: ChannelConfig) -> HttpRequestSpec:
        """构建模型列表请求"""
        pass

    def parse_stream_chunk(self, raw: Union[str, bytes, Dict[str, Any]]) -> Optional[StreamDelta]:
        """
        解析单个原始流事件

        无法识别或格式错误的事件返回 None（丢弃而不是报错）。
        """
        event: Any = raw
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            try:
                event = json.loads(raw)
            except json.JSONDecodeError:
                self.log_debug(f"Dropped non-JSON stream event: {raw[:80]!r}")
                return None
        if not isinstance(event, dict):
            return None
        try:
            return self._parse_event(event)
        except (KeyError, TypeError, ValueError, IndexError, AttributeError) as e:
            self.log_debug(f"Dropped malformed stream event: {e}")
            return None

    def parse_models(self, raw: Dict[str, Any]) -> List[str]:
        """解析模型列表响应，默认读取 data[].id"""
        return sorted(item["id"] for item in raw.get("data", []) if item.get("id"))

    def validate_config(self, config: ChannelConfig) -> bool:
        """配置类型与本适配器一致且凭证存在时返回 True"""
        if config.type != self.channel_type:
            return False
        if not config.api_key or config.api_key.startswith("$"):
            return False
        return bool(config.model)

    def check_status(self, status: int, body: Any) -> None:
        """
        检查HTTP状态

        Raises:
            ProtocolError: 非2xx状态
        """
        if status < 200 or status >= 300:
            raise ProtocolError(status, body)

    def auth_headers(self, channel: ChannelConfig, custom_header: str) -> Dict[str, str]:
        """根据渠道开关选择 Bearer 头或自定义密钥头"""
        if not channel.api_key:
            return {}
        if channel.use_authorization_header:
            return {"Authorization": f"Bearer {channel.api_key}"}
        return {custom_header: channel.api_key}

    def _headers(self, channel: ChannelConfig, auth: Dict[str, str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update(auth)
        headers.update(channel.headers)
        return headers

    @staticmethod
    def _model(req: GenerateRequest, channel: ChannelConfig) -> str:
        return req.model or channel.model

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(type={self.channel_type.value})"
