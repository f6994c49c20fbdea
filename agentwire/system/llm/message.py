"""
统一消息类型定义

适配器、流累积器和工具循环之间传递的数据结构。
后端原生格式只存在于适配器内部，不会越过这一层。
"""

from __future__ import annotations

import copy
import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Role(str, Enum):
    """内容角色"""
    USER = "user"
    MODEL = "model"
    TOOL = "tool"


class FinishReason(str, Enum):
    """完成原因"""
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


def generate_tool_call_id() -> str:
    """生成工具调用ID，格式 fc_{毫秒时间戳}_{7位随机串}"""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"fc_{int(time.time() * 1000)}_{suffix}"


@dataclass
class FunctionCall:
    """模型发起的函数调用"""
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "args": self.args}

    @classmethod
    def from_dict(cls, data: dict) -> "FunctionCall":
        return cls(
            id=data.get("id") or generate_tool_call_id(),
            name=data["name"],
            args=data.get("args") or {},
        )


@dataclass
class FunctionResponse:
    """函数调用的执行结果"""
    id: str
    name: str
    response: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "response": self.response}

    @classmethod
    def from_dict(cls, data: dict) -> "FunctionResponse":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            response=data.get("response") or {},
        )


@dataclass
class Part:
    """
    内容片段

    text / function_call / function_response 三者取其一。
    thought 标记思考内容，发送给后端前会被清理掉。
    """
    text: Optional[str] = None
    thought: bool = False
    function_call: Optional[FunctionCall] = None
    function_response: Optional[FunctionResponse] = None

    @classmethod
    def of_text(cls, text: str, thought: bool = False) -> "Part":
        return cls(text=text, thought=thought)

    @classmethod
    def of_call(cls, call: FunctionCall) -> "Part":
        return cls(function_call=call)

    @classmethod
    def of_response(cls, response: FunctionResponse) -> "Part":
        return cls(function_response=response)

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {}
        if self.text is not None:
            result["text"] = self.text
        if self.thought:
            result["thought"] = True
        if self.function_call is not None:
            result["functionCall"] = self.function_call.to_dict()
        if self.function_response is not None:
            result["functionResponse"] = self.function_response.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "Part":
        call = data.get("functionCall")
        response = data.get("functionResponse")
        return cls(
            text=data.get("text"),
            thought=bool(data.get("thought", False)),
            function_call=FunctionCall.from_dict(call) if call else None,
            function_response=FunctionResponse.from_dict(response) if response else None,
        )


@dataclass
class Usage:
    """Token使用统计"""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def merge(self, other: Optional["Usage"]) -> "Usage":
        """合并增量统计，非零字段覆盖"""
        if other is None:
            return self
        prompt = other.prompt_tokens or self.prompt_tokens
        completion = other.completion_tokens or self.completion_tokens
        total = other.total_tokens or (prompt + completion)
        return Usage(prompt, completion, max(total, prompt + completion))

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Usage":
        return cls(
            prompt_tokens=data.get("prompt_tokens", 0),
            completion_tokens=data.get("completion_tokens", 0),
            total_tokens=data.get("total_tokens", 0),
        )


@dataclass
class Content:
    """
    对话中的一条内容

    追加到历史后不再修改，历史只允许追加。
    """
    role: Role
    parts: List[Part] = field(default_factory=list)
    is_user_input: bool = False
    is_function_response: bool = False
    usage: Optional[Usage] = None
    model_version: Optional[str] = None
    finish_reason: Optional[str] = None

    @classmethod
    def user(cls, text: str, is_user_input: bool = True) -> "Content":
        """创建用户输入"""
        return cls(role=Role.USER, parts=[Part.of_text(text)], is_user_input=is_user_input)

    @classmethod
    def model(cls, text: str = "", calls: Optional[List[FunctionCall]] = None) -> "Content":
        """创建模型回复"""
        parts = [Part.of_text(text)] if text else []
        parts.extend(Part.of_call(call) for call in calls or [])
        return cls(role=Role.MODEL, parts=parts)

    @classmethod
    def function_responses(cls, responses: List[FunctionResponse]) -> "Content":
        """创建函数响应内容（以user角色回传给模型）"""
        return cls(
            role=Role.USER,
            parts=[Part.of_response(r) for r in responses],
            is_function_response=True,
        )

    @property
    def text(self) -> str:
        """拼接所有非思考文本"""
        return "".join(p.text for p in self.parts if p.text and not p.thought)

    @property
    def function_calls(self) -> List[FunctionCall]:
        return [p.function_call for p in self.parts if p.function_call is not None]

    @property
    def function_response_ids(self) -> List[str]:
        return [p.function_response.id for p in self.parts if p.function_response is not None]

    def copy(self) -> "Content":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {
            "role": self.role.value,
            "parts": [p.to_dict() for p in self.parts],
        }
        if self.is_user_input:
            result["isUserInput"] = True
        if self.is_function_response:
            result["isFunctionResponse"] = True
        if self.usage is not None:
            result["usage"] = self.usage.to_dict()
        if self.model_version:
            result["modelVersion"] = self.model_version
        if self.finish_reason:
            result["finishReason"] = self.finish_reason
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "Content":
        usage = data.get("usage")
        return cls(
            role=Role(data["role"]),
            parts=[Part.from_dict(p) for p in data.get("parts", [])],
            is_user_input=bool(data.get("isUserInput", False)),
            is_function_response=bool(data.get("isFunctionResponse", False)),
            usage=Usage.from_dict(usage) if usage else None,
            model_version=data.get("modelVersion"),
            finish_reason=data.get("finishReason"),
        )


@dataclass
class ToolDeclaration:
    """工具声明，parameters 为 JSON Schema"""
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    category: str = "builtin"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "category": self.category,
        }


@dataclass
class GenerateRequest:
    """
    统一生成请求

    options 为不透明的参数包，只有 options_enabled 中为 True 的键
    才会被序列化到后端请求里。
    """
    history: List[Content] = field(default_factory=list)
    system_instruction: Optional[str] = None
    dynamic_context: Optional[str] = None
    tools: List[ToolDeclaration] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)
    options_enabled: Dict[str, bool] = field(default_factory=dict)
    model: Optional[str] = None
    stream: bool = True


@dataclass
class GenerateResponse:
    """统一非流式响应"""
    content: Content
    usage: Optional[Usage] = None
    model_version: Optional[str] = None
    finish_reason: Optional[str] = None
    raw: Optional[Any] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.content.function_calls)


@dataclass
class ToolCallFragment:
    """
    流式工具调用片段

    key 在一次流内唯一标识一个调用（块索引、输出项ID等），
    id / name 只在开始片段中出现。
    """
    key: str
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


@dataclass
class StreamDelta:
    """
    适配器解析单个原始流事件的结果

    仅在适配器与流累积器之间传递。
    """
    text: Optional[str] = None
    thought: Optional[str] = None
    call_starts: List[ToolCallFragment] = field(default_factory=list)
    call_deltas: List[ToolCallFragment] = field(default_factory=list)
    call_ends: List[str] = field(default_factory=list)
    complete_calls: List[FunctionCall] = field(default_factory=list)
    usage: Optional[Usage] = None
    model_version: Optional[str] = None
    finish_reason: Optional[str] = None
    done: bool = False
    error: Optional[str] = None


class ChunkType(str, Enum):
    """对外流事件类型"""
    CHUNK = "chunk"
    TOOLS_EXECUTING = "toolsExecuting"
    TOOL_STATUS = "toolStatus"
    AWAITING_CONFIRMATION = "awaitingConfirmation"
    TOOL_ITERATION = "toolIteration"
    COMPLETE = "complete"
    CHECKPOINTS = "checkpoints"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_CHUNK_TYPES = frozenset({ChunkType.COMPLETE, ChunkType.CANCELLED, ChunkType.ERROR})


def _serialize(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass
class StreamChunk:
    """
    对外流事件

    每个事件都带 conversation_id。一轮中 complete / cancelled / error
    三者恰好出现一次，其余事件仅作提示。
    """
    type: ChunkType
    conversation_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_CHUNK_TYPES

    @classmethod
    def text(cls, conversation_id: str, delta: str, thought: bool = False) -> "StreamChunk":
        return cls(ChunkType.CHUNK, conversation_id, {"delta": delta, "thought": thought})

    @classmethod
    def tools_executing(
        cls,
        conversation_id: str,
        tool_names: List[str],
        content: Optional[Content] = None,
    ) -> "StreamChunk":
        return cls(
            ChunkType.TOOLS_EXECUTING,
            conversation_id,
            {"tool_names": tool_names, "content": content},
        )

    @classmethod
    def tool_status(cls, conversation_id: str, call_id: str, status: str) -> "StreamChunk":
        return cls(ChunkType.TOOL_STATUS, conversation_id, {"call_id": call_id, "status": status})

    @classmethod
    def awaiting_confirmation(
        cls,
        conversation_id: str,
        pending_tool_calls: List[Any],
        content: Optional[Content] = None,
    ) -> "StreamChunk":
        return cls(
            ChunkType.AWAITING_CONFIRMATION,
            conversation_id,
            {"pending_tool_calls": pending_tool_calls, "content": content},
        )

    @classmethod
    def tool_iteration(
        cls,
        conversation_id: str,
        content: Content,
        tool_results: List[Any],
        checkpoints: Optional[List[Any]] = None,
    ) -> "StreamChunk":
        return cls(
            ChunkType.TOOL_ITERATION,
            conversation_id,
            {"content": content, "tool_results": tool_results, "checkpoints": checkpoints or []},
        )

    @classmethod
    def complete(
        cls,
        conversation_id: str,
        content: Content,
        checkpoints: Optional[List[Any]] = None,
    ) -> "StreamChunk":
        return cls(
            ChunkType.COMPLETE,
            conversation_id,
            {"content": content, "usage": content.usage, "checkpoints": checkpoints or []},
        )

    @classmethod
    def checkpoints(cls, conversation_id: str, checkpoints: List[Any]) -> "StreamChunk":
        return cls(ChunkType.CHECKPOINTS, conversation_id, {"checkpoints": checkpoints})

    @classmethod
    def cancelled(cls, conversation_id: str, content: Optional[Content] = None) -> "StreamChunk":
        return cls(ChunkType.CANCELLED, conversation_id, {"content": content})

    @classmethod
    def error(cls, conversation_id: str, code: str, message: str) -> "StreamChunk":
        return cls(ChunkType.ERROR, conversation_id, {"code": code, "message": message})

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "conversationId": self.conversation_id,
            "timestamp": self.timestamp,
            **_serialize(self.data),
        }
