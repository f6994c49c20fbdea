"""
LLM基础设施模块

提供统一的请求/响应/流数据模型、多后端协议适配器和 HTTP 传输。

支持的后端协议族:
- gemini (Gemini generateContent)
- openai (OpenAI Chat Completions 及兼容接口)
- anthropic (Anthropic Messages)
- openai-responses (OpenAI Responses)
"""

from agentwire.system.llm.errors import (
    AgentWireError,
    BudgetExceeded,
    CancellationRequested,
    ConfigError,
    InvalidToolCallTransition,
    ProtocolError,
    ToolExecutionError,
)
from agentwire.system.llm.message import (
    ChunkType,
    Content,
    FinishReason,
    FunctionCall,
    FunctionResponse,
    GenerateRequest,
    GenerateResponse,
    Part,
    Role,
    StreamChunk,
    StreamDelta,
    ToolDeclaration,
    Usage,
)
from agentwire.system.llm.config import ChannelConfig, ChannelRegistry, ChannelType
from agentwire.system.llm.factory import AdapterFactory, create_adapter
from agentwire.system.llm.transport import HttpTransport

__all__ = [
    # 错误
    "AgentWireError",
    "BudgetExceeded",
    "CancellationRequested",
    "ConfigError",
    "InvalidToolCallTransition",
    "ProtocolError",
    "ToolExecutionError",
    # 数据模型
    "ChunkType",
    "Content",
    "FinishReason",
    "FunctionCall",
    "FunctionResponse",
    "GenerateRequest",
    "GenerateResponse",
    "Part",
    "Role",
    "StreamChunk",
    "StreamDelta",
    "ToolDeclaration",
    "Usage",
    # 配置
    "ChannelConfig",
    "ChannelRegistry",
    "ChannelType",
    # 工厂和传输
    "AdapterFactory",
    "create_adapter",
    "HttpTransport",
]
