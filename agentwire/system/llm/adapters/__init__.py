"""
协议适配器

每种后端协议族一个适配器：
- gemini: Gemini generateContent
- openai: OpenAI Chat Completions
- anthropic: Anthropic Messages
- openai-responses: OpenAI Responses
"""

from agentwire.system.llm.adapters.base import (
    BaseAdapter,
    HttpRequestSpec,
    clean_internal_fields,
    find_last_user_message_group_index,
    prepare_history,
    select_enabled_options,
)
from agentwire.system.llm.adapters.gemini import GeminiAdapter
from agentwire.system.llm.adapters.openai import OpenAIAdapter
from agentwire.system.llm.adapters.anthropic import AnthropicAdapter
from agentwire.system.llm.adapters.openai_responses import OpenAIResponsesAdapter

__all__ = [
    "BaseAdapter",
    "HttpRequestSpec",
    "clean_internal_fields",
    "find_last_user_message_group_index",
    "prepare_history",
    "select_enabled_options",
    "GeminiAdapter",
    "OpenAIAdapter",
    "AnthropicAdapter",
    "OpenAIResponsesAdapter",
]
