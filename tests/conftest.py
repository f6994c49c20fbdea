"""
Pytest 配置和公共 fixtures

agentwire 测试配置。
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import pytest

# 添加项目根目录到路径
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from agentwire.agent.infrastructure.conversation_store import InMemoryConversationStore
from agentwire.agent.runtime.tool_executor import ToolExecutor, ToolRegistry
from agentwire.system.llm.adapters.base import BaseAdapter, HttpRequestSpec
from agentwire.system.llm.config import ChannelConfig, ChannelRegistry
from agentwire.system.llm.message import (
    FunctionCall,
    GenerateResponse,
    StreamChunk,
    StreamDelta,
    Usage,
)


# ============== Mock 对象 ==============

Turn = Union[List[StreamDelta], Exception]


class ScriptedTransport:
    """
    按脚本回放增量的传输层

    每次 stream() 调用消费一轮脚本；脚本用完后重复最后一轮。
    一轮可以是增量列表，也可以是要抛出的异常。
    """

    def __init__(self, turns: Optional[List[Turn]] = None, delay: float = 0.0):
        self.turns: List[Turn] = list(turns or [])
        self.delay = delay
        self.requests: List[HttpRequestSpec] = []

    def _next_turn(self) -> Turn:
        index = min(len(self.requests) - 1, len(self.turns) - 1)
        return self.turns[index]

    async def stream(self, adapter: BaseAdapter, spec: HttpRequestSpec) -> AsyncIterator[StreamDelta]:
        self.requests.append(spec)
        turn = self._next_turn()
        if isinstance(turn, Exception):
            raise turn
        for delta in turn:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield delta

    async def generate(self, adapter: BaseAdapter, spec: HttpRequestSpec) -> GenerateResponse:
        raise NotImplementedError("ScriptedTransport only supports streaming")

    async def aclose(self) -> None:
        pass


def text_turn(*texts: str, model_version: str = "mock-model-001") -> List[StreamDelta]:
    """纯文本回复的一轮"""
    deltas = [StreamDelta(text=t) for t in texts]
    deltas.append(StreamDelta(
        finish_reason="stop",
        usage=Usage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        model_version=model_version,
        done=True,
    ))
    return deltas


def call_turn(*calls: FunctionCall, text: Optional[str] = None) -> List[StreamDelta]:
    """请求工具调用的一轮"""
    deltas = []
    if text:
        deltas.append(StreamDelta(text=text))
    deltas.append(StreamDelta(complete_calls=list(calls)))
    deltas.append(StreamDelta(finish_reason="tool_calls", model_version="mock-model-001", done=True))
    return deltas


async def collect(chunks: AsyncIterator[StreamChunk]) -> List[StreamChunk]:
    """收集一个运行产出的全部事件"""
    return [chunk async for chunk in chunks]


# ============== 临时目录 ==============

@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """临时工作空间"""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    (workspace / "README.md").write_text("# Demo\nline two\nline three\n", encoding="utf-8")
    return workspace


# ============== 配置 Fixtures ==============

@pytest.fixture
def gemini_channel() -> ChannelConfig:
    return ChannelConfig(id="gemini", type="gemini", model="gemini-2.5-pro", api_key="test-key")


@pytest.fixture
def channels(gemini_channel: ChannelConfig) -> ChannelRegistry:
    """测试渠道注册表"""
    return ChannelRegistry(
        [
            gemini_channel,
            ChannelConfig(id="claude", type="anthropic", model="claude-sonnet-4", api_key="test-key"),
        ],
        default_channel="gemini",
    )


@pytest.fixture
def test_config() -> Dict[str, Any]:
    """测试配置"""
    return {
        "system": {"default_channel": "claude", "default_mode": "agent"},
        "channels": {
            "gemini": {"type": "gemini", "model": "gemini-2.5-pro", "api_key": "${TEST_GEMINI_KEY}"},
            "claude": {
                "type": "anthropic",
                "model": "claude-sonnet-4",
                "api_key": "sk-test",
                "options": {"temperature": 0.2},
                "options_enabled": {"temperature": True},
            },
        },
        "loop": {"max_iterations": 8, "require_tool_success": True},
        "modes": {"plan": {"plan_dir": "docs/plans/"}},
        "subagents": {
            "fallback_to_parent": True,
            "agents": [{
                "type": "researcher",
                "name": "Researcher",
                "channel": {"channel_id": "gemini"},
                "tools": {"mode": "whitelist", "list": ["read_file"]},
                "max_iterations": 5,
            }],
        },
    }


# ============== 工具 Fixtures ==============

@pytest.fixture
def registry() -> ToolRegistry:
    """创建带工具的注册表"""
    registry = ToolRegistry()
    registry.register("read_file", lambda path: f"content of {path}")
    registry.register("write_file", lambda path, content="": f"wrote {path}")
    registry.register("execute_command", lambda command: f"ran {command}")
    return registry


@pytest.fixture
def executor(registry: ToolRegistry) -> ToolExecutor:
    return ToolExecutor(registry=registry)


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


# ============== 环境变量 ==============

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """清理测试环境变量"""
    monkeypatch.setenv("AGENTWIRE_ENV", "test")
    monkeypatch.delenv("TEST_GEMINI_KEY", raising=False)
