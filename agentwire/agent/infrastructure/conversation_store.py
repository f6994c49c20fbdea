"""
Conversation Store

对话历史存储，负责：
- 按对话追加内容（只追加，不修改）
- 自定义元数据（子代理、工具循环的记账信息）
- 轮次边界的检查点记录

提供内存实现和 JSONL 文件实现，写入按对话加锁。
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from agentwire.system.llm.message import Content
from agentwire.system.services.logger import Layer, LoggerMixin


@dataclass
class CheckpointRecord:
    """检查点：某条消息处的对话状态标记"""
    conversation_id: str
    message_index: int
    tool_name: str
    phase: str = "after"
    history_length: int = 0
    id: str = field(default_factory=lambda: f"cp_{uuid4().hex[:12]}")
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "messageIndex": self.message_index,
            "toolName": self.tool_name,
            "phase": self.phase,
            "historyLength": self.history_length,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckpointRecord":
        return cls(
            id=data["id"],
            conversation_id=data["conversationId"],
            message_index=data["messageIndex"],
            tool_name=data["toolName"],
            phase=data.get("phase", "after"),
            history_length=data.get("historyLength", 0),
            created_at=data.get("createdAt", ""),
        )


class ConversationStore(ABC):
    """对话存储接口"""

    @abstractmethod
    async def append_content(self, conversation_id: str, content: Content) -> int:
        """追加一条内容，返回其索引"""

    @abstractmethod
    async def get_history(self, conversation_id: str) -> List[Content]:
        """获取历史（副本）"""

    @abstractmethod
    async def get_custom_metadata(self, conversation_id: str, key: str) -> Any:
        """读取自定义元数据"""

    @abstractmethod
    async def set_custom_metadata(self, conversation_id: str, key: str, value: Any) -> None:
        """写入自定义元数据"""

    @abstractmethod
    async def create_checkpoint(
        self,
        conversation_id: str,
        message_index: int,
        tool_name: str,
        phase: str = "after",
    ) -> CheckpointRecord:
        """创建检查点"""

    @abstractmethod
    async def list_checkpoints(self, conversation_id: str) -> List[CheckpointRecord]:
        """列出检查点"""


class InMemoryConversationStore(ConversationStore, LoggerMixin):
    """
    内存对话存储

    追加和读取都做深拷贝，外部无法原地修改已追加的内容。
    """

    _log_layer = Layer.STORE

    def __init__(self):
        self._histories: Dict[str, List[Content]] = {}
        self._metadata: Dict[str, Dict[str, Any]] = {}
        self._checkpoints: Dict[str, List[CheckpointRecord]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_lock(self, conversation_id: str) -> asyncio.Lock:
        if conversation_id not in self._locks:
            self._locks[conversation_id] = asyncio.Lock()
        return self._locks[conversation_id]

    async def append_content(self, conversation_id: str, content: Content) -> int:
        async with self._get_lock(conversation_id):
            history = self._histories.setdefault(conversation_id, [])
            history.append(content.copy())
            index = len(history) - 1
            await self._on_append(conversation_id, content, index)
            return index

    async def _on_append(self, conversation_id: str, content: Content, index: int) -> None:
        pass

    async def get_history(self, conversation_id: str) -> List[Content]:
        return [c.copy() for c in self._histories.get(conversation_id, [])]

    async def history_length(self, conversation_id: str) -> int:
        return len(self._histories.get(conversation_id, []))

    async def get_custom_metadata(self, conversation_id: str, key: str) -> Any:
        return self._metadata.get(conversation_id, {}).get(key)

    async def set_custom_metadata(self, conversation_id: str, key: str, value: Any) -> None:
        async with self._get_lock(conversation_id):
            self._metadata.setdefault(conversation_id, {})[key] = value
            await self._on_metadata(conversation_id)

    async def _on_metadata(self, conversation_id: str) -> None:
        pass

    async def create_checkpoint(
        self,
        conversation_id: str,
        message_index: int,
        tool_name: str,
        phase: str = "after",
    ) -> CheckpointRecord:
        record = CheckpointRecord(
            conversation_id=conversation_id,
            message_index=message_index,
            tool_name=tool_name,
            phase=phase,
            history_length=len(self._histories.get(conversation_id, [])),
        )
        self._checkpoints.setdefault(conversation_id, []).append(record)
        await self._on_metadata(conversation_id)
        self.log_debug(f"Checkpoint {record.id} at #{message_index} ({tool_name}/{phase})", conversation_id)
        return record

    async def list_checkpoints(self, conversation_id: str) -> List[CheckpointRecord]:
        return list(self._checkpoints.get(conversation_id, []))

    def list_conversations(self) -> List[str]:
        return list(self._histories)

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self._get_lock(conversation_id):
            existed = conversation_id in self._histories
            self._histories.pop(conversation_id, None)
            self._metadata.pop(conversation_id, None)
            self._checkpoints.pop(conversation_id, None)
        self._locks.pop(conversation_id, None)
        return existed


class JsonlConversationStore(InMemoryConversationStore):
    """
    JSONL 文件对话存储

    每个对话一个 {id}.jsonl 历史文件和一个 {id}.meta.json 元数据文件，
    启动时加载目录中已有的对话。
    """

    def __init__(self, conversations_dir: Path):
        super().__init__()
        self._dir = Path(conversations_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._load()

    @property
    def conversations_dir(self) -> Path:
        return self._dir

    def _history_path(self, conversation_id: str) -> Path:
        return self._dir / f"{conversation_id}.jsonl"

    def _meta_path(self, conversation_id: str) -> Path:
        return self._dir / f"{conversation_id}.meta.json"

    def _load(self) -> None:
        for path in sorted(self._dir.glob("*.jsonl")):
            conversation_id = path.stem
            history = []
            for line in path.read_text(encoding="utf-8").splitlines():
                if line.strip():
                    history.append(Content.from_dict(json.loads(line)))
            self._histories[conversation_id] = history

            meta_path = self._meta_path(conversation_id)
            if meta_path.exists():
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
                self._metadata[conversation_id] = meta.get("custom", {})
                self._checkpoints[conversation_id] = [
                    CheckpointRecord.from_dict(cp) for cp in meta.get("checkpoints", [])
                ]
        if self._histories:
            self.log_info(f"Loaded {len(self._histories)} conversations from {self._dir}")

    async def _on_append(self, conversation_id: str, content: Content, index: int) -> None:
        with open(self._history_path(conversation_id), "a", encoding="utf-8") as f:
            f.write(json.dumps(content.to_dict(), ensure_ascii=False) + "\n")

    async def _on_metadata(self, conversation_id: str) -> None:
        data = {
            "conversationId": conversation_id,
            "updatedAt": datetime.now().isoformat(),
            "custom": self._metadata.get(conversation_id, {}),
            "checkpoints": [cp.to_dict() for cp in self._checkpoints.get(conversation_id, [])],
        }
        self._meta_path(conversation_id).write_text(
            json.dumps(data, indent=2, ensure_ascii=False, default=str),
            encoding="utf-8",
        )

    async def delete_conversation(self, conversation_id: str) -> bool:
        existed = await super().delete_conversation(conversation_id)
        for path in (self._history_path(conversation_id), self._meta_path(conversation_id)):
            if path.exists():
                path.unlink()
        return existed
