"""
Agent Infrastructure

对话存储与检查点。
"""

from agentwire.agent.infrastructure.conversation_store import (
    CheckpointRecord,
    ConversationStore,
    InMemoryConversationStore,
    JsonlConversationStore,
)

__all__ = [
    "CheckpointRecord",
    "ConversationStore",
    "InMemoryConversationStore",
    "JsonlConversationStore",
]
